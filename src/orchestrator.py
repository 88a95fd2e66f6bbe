"""Run orchestration: drive one assistant run from creation to a reply.

State machine
-------------
::

    queued ─► in_progress ─► completed ─► reply
                  │  ▲
                  ▼  │ submit_tool_outputs
            requires_action
                  │
       (any) ─► failed / cancelled / expired / incomplete ─► RunFailed

While the run is active the orchestrator either dispatches the pending
tool-call batch (``requires_action``) or sleeps ``PollPolicy.interval`` and
re-fetches the run.  A hard wall-clock deadline (``PollPolicy.timeout``,
default 50 s) keeps the turn under the hosting platform's request limit:
once it passes, a cancel request is fired without waiting for it and
:class:`TurnTimeout` is raised.

Each batch is submitted exactly once; the response to the submission is
the next state, so a new batch can only show up on a later poll.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from src import config
from src.models import Run, RunStatus, TurnResult
from src.services.assistant_client import AssistantAPIError, AssistantClient, message_text
from src.services.side_effects import SideEffects
from src.tools.dispatcher import RunState, ToolDispatcher

logger = logging.getLogger(__name__)

_CITATION_RE = re.compile(r"【[^】]*】")
_MULTI_SPACE_RE = re.compile(r"[ \t]{2,}")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"[ \t]+([.,!?;:])")

SUPPORT_PHONE = "+1 (775) 310-7770"


# ── Error taxonomy ───────────────────────────────────────────────────


class TurnError(Exception):
    """A failure that ends the turn.  ``str(exc)`` is for logs only."""

    code = "internal_error"
    status_code = 500
    user_message = (
        "Sorry, something went wrong on our side. "
        f"Please try again in a moment or call us at {SUPPORT_PHONE}."
    )


class UpstreamUnavailable(TurnError):
    code = "upstream_unavailable"
    status_code = 502


class TurnTimeout(TurnError):
    code = "timeout"
    status_code = 504
    user_message = (
        "Sorry, that took too long to answer. "
        f"Please send your message again or call us at {SUPPORT_PHONE}."
    )


class RunFailed(TurnError):
    code = "run_failed"

    def __init__(self, status: RunStatus, detail: str | None = None):
        self.status = status
        super().__init__(f"Run ended with status {status.value}" + (f": {detail}" if detail else ""))


class NoResponse(TurnError):
    code = "no_response"


class NotConfigured(TurnError):
    code = "not_configured"
    status_code = 503
    user_message = "The chat assistant is not available right now. Please call us at " + SUPPORT_PHONE + "."


# ── Polling ──────────────────────────────────────────────────────────


@dataclass
class PollPolicy:
    """Inter-poll delay, hard deadline and the clock/sleep they run on."""

    interval: float = field(default_factory=lambda: config.RUN_POLL_INTERVAL_SECONDS)
    timeout: float = field(default_factory=lambda: config.RUN_TIMEOUT_SECONDS)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


def clean_reply(text: str) -> str:
    """Strip bracketed citation markers (``【4:0†source】``) from *text*."""
    text = _CITATION_RE.sub("", text)
    text = _MULTI_SPACE_RE.sub(" ", text)
    text = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", text)
    return text.strip()


class RunOrchestrator:
    def __init__(
        self,
        assistant: AssistantClient,
        dispatcher: ToolDispatcher,
        side_effects: SideEffects,
        policy: PollPolicy | None = None,
    ):
        self._assistant = assistant
        self._dispatcher = dispatcher
        self._side_effects = side_effects
        self._policy = policy or PollPolicy()

    async def drive(self, run: Run, state: RunState) -> TurnResult:
        """Poll *run* to a terminal state, dispatching tools on the way."""
        policy = self._policy
        started = policy.clock()
        rid = state.request_id

        while not run.status.is_terminal:
            remaining = policy.timeout - (policy.clock() - started)
            if remaining <= 0:
                self._cancel(state.thread_id, run.id, rid)
                raise TurnTimeout(f"Run {run.id} still {run.status.value} after {policy.timeout:.0f}s")
            try:
                run = await asyncio.wait_for(self._step(run, state), timeout=remaining)
            except asyncio.TimeoutError as exc:
                self._cancel(state.thread_id, run.id, rid)
                raise TurnTimeout(f"Run {run.id} step exceeded the deadline") from exc
            except AssistantAPIError as exc:
                raise UpstreamUnavailable(f"Polling run {run.id} failed: {exc}") from exc

        logger.info("[%s] Run %s finished: %s", rid, run.id, run.status.value)
        if run.status is not RunStatus.COMPLETED:
            detail = (run.last_error or {}).get("message")
            raise RunFailed(run.status, detail)

        return TurnResult(message=await self._reply_text(run, state), action=state.action)

    async def _step(self, run: Run, state: RunState) -> Run:
        if run.status is RunStatus.REQUIRES_ACTION:
            calls = run.pending_tool_calls()
            if calls:
                logger.info(
                    "[%s] Run %s requires %d tool call(s): %s",
                    state.request_id, run.id, len(calls), ", ".join(c.name for c in calls),
                )
                outputs = await self._dispatcher.dispatch_batch(calls, state)
                return await self._assistant.submit_tool_outputs(state.thread_id, run.id, outputs)
            logger.warning("[%s] Run %s requires action but has no tool calls", state.request_id, run.id)

        await self._policy.sleep(self._policy.interval)
        return await self._assistant.get_run(state.thread_id, run.id)

    async def _reply_text(self, run: Run, state: RunState) -> str:
        try:
            messages = await self._assistant.list_messages(state.thread_id, run_id=run.id, limit=10)
        except AssistantAPIError as exc:
            raise UpstreamUnavailable(f"Listing messages for run {run.id} failed: {exc}") from exc

        # Newest first
        for message in messages:
            if message.get("role") != "assistant":
                continue
            text = clean_reply(message_text(message))
            if text:
                return text
        raise NoResponse(f"Run {run.id} completed without assistant text")

    def _cancel(self, thread_id: str, run_id: str, request_id: str) -> None:
        logger.warning("[%s] Deadline exceeded, cancelling run %s", request_id, run_id)
        self._side_effects.fire(self._assistant.cancel_run(thread_id, run_id), "cancel-run")
