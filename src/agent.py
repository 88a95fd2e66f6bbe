"""Turn handling and service wiring for the Repair ASAP lead bot.

Architecture:
  One inbound chat message (or photo) is one **turn**:

    1. **TurnHandler** creates a thread if the caller has none, uploads
       and caches any photo, appends the user message and starts a run.
    2. **RunOrchestrator** polls the run, and whenever it pauses on
       ``requires_action`` hands the tool-call batch to the
       **ToolDispatcher**.
    3. The dispatcher talks to the connectors (CRM, Google Sheets,
       calendar, Telegram) and turns every result into a tool output.
    4. The orchestrator returns the cleaned assistant reply plus the
       optional form pre-fill action.

  Inbound CRM messages (SMS, Yelp, Thumbtack) go through
  **InboundResponder**, which loads the contact, applies the owner
  cooldown and reply delay, runs the same turn on a per-contact thread and
  writes follow-up tags and notes back to the CRM.

  ``create_lead_agent()`` builds every client once; the FastAPI lifespan
  keeps the resulting :class:`LeadAgent` on ``app.state`` and closes it on
  shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from src import config
from src.models import InboundMessage, InboundReply, ReplyTiming, TurnResult
from src.orchestrator import NotConfigured, PollPolicy, RunOrchestrator, UpstreamUnavailable
from src.services.assistant_client import AssistantAPIError, AssistantClient
from src.services.cache import CachedPhoto, PhotoCache
from src.services.calendar_client import CalendarClient
from src.services.crm_client import CRMClient
from src.services.inbound import (
    ContactContext,
    ContactNotFound,
    determine_follow_ups,
    execute_follow_ups,
    load_contact_context,
    normalize_channel,
    reply_delay_range,
)
from src.services.leads import LeadRecorder, LeadSavePolicy
from src.services.notifier import TelegramNotifier
from src.services.sheets_client import SheetsClient
from src.services.side_effects import SideEffects
from src.tools.dispatcher import RunState, ToolDispatcher

logger = logging.getLogger(__name__)


@dataclass
class TurnContent:
    text: str | None = None
    photo: CachedPhoto | None = None


@dataclass
class TurnContext:
    request_id: str = "-"
    channel: str = "webchat"
    page: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    def instructions(self) -> str | None:
        """Per-run hint telling the assistant where the customer is."""
        parts = [f"Channel: {self.channel}."]
        if self.page:
            parts.append(f"The customer is on the page {self.page}.")
        parts.extend(f"{k}: {v}." for k, v in self.extra.items())
        return " ".join(parts)


class TurnHandler:
    def __init__(
        self,
        assistant: AssistantClient,
        orchestrator: RunOrchestrator,
        photo_cache: PhotoCache,
        notifier: TelegramNotifier,
        side_effects: SideEffects,
    ):
        self._assistant = assistant
        self._orchestrator = orchestrator
        self._photos = photo_cache
        self._notifier = notifier
        self._side_effects = side_effects

    async def create_thread(self) -> str:
        self._require_configured()
        try:
            return await self._assistant.create_thread()
        except AssistantAPIError as exc:
            raise UpstreamUnavailable(f"Creating thread failed: {exc}") from exc

    async def handle_turn(
        self,
        thread_id: str | None,
        content: TurnContent,
        context: TurnContext,
    ) -> tuple[str, TurnResult]:
        """Run one turn and return ``(thread_id, result)``."""
        self._require_configured()
        rid = context.request_id

        try:
            if not thread_id:
                thread_id = await self._assistant.create_thread()
                logger.info("[%s] Started new thread %s", rid, thread_id)

            image_file_id = None
            if content.photo is not None:
                self._photos.put(thread_id, content.photo)
                image_file_id = await self._assistant.upload_image(
                    content.photo.data, content.photo.file_name, content.photo.mime_type,
                )
                self._side_effects.fire(
                    self._notifier.send_photo(
                        content.photo.data,
                        caption=f"📸 Photo in website chat {thread_id}\n{content.text or ''}",
                        file_name=content.photo.file_name,
                    ),
                    "notify-photo",
                )

            # Not retried: a failed append aborts the turn
            await self._assistant.add_message(thread_id, content.text, image_file_id=image_file_id)
            run = await self._assistant.create_run(
                thread_id, additional_instructions=context.instructions(),
            )
        except AssistantAPIError as exc:
            raise UpstreamUnavailable(f"Starting turn failed: {exc}") from exc

        logger.info("[%s] Run %s started on thread %s", rid, run.id, thread_id)
        state = RunState(thread_id=thread_id, request_id=rid, source=f"chatbot-{context.channel}")
        result = await self._orchestrator.drive(run, state)
        return thread_id, result

    def _require_configured(self) -> None:
        if not self._assistant.is_configured:
            raise NotConfigured("Assistant credentials are missing")


# ── Inbound CRM messages ─────────────────────────────────────────────

MAX_CONTACT_THREADS = 5000


class InboundResponder:
    """Answers inbound CRM messages (SMS, Yelp, ...) with the same assistant.

    Safety rules, in order: outbound (team) messages and empty messages are
    ignored; the bot stays silent while a team member wrote within the
    cooldown; otherwise it waits a human-like, channel-specific delay before
    running the turn.  The reply goes back in the webhook response and the
    CRM workflow sends it.
    """

    def __init__(
        self,
        crm: CRMClient,
        turns: TurnHandler,
        *,
        cooldown_seconds: float = 120 * 60,
        delay_enabled: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
        max_threads: int = MAX_CONTACT_THREADS,
    ):
        self._crm = crm
        self._turns = turns
        self._cooldown = cooldown_seconds
        self._delay_enabled = delay_enabled
        self._clock = clock
        self._sleep = sleep
        self._uniform = uniform
        self._max_threads = max_threads
        # contact id -> assistant thread id, oldest first
        self._threads: OrderedDict[str, str] = OrderedDict()

    def thread_for(self, contact_id: str) -> str | None:
        return self._threads.get(contact_id)

    async def handle(self, message: InboundMessage, request_id: str = "-") -> InboundReply:
        contact_id = message.contact_id
        if message.direction == "outbound":
            logger.info("[%s] Outbound message for %s, bot stays silent", request_id, contact_id)
            return InboundReply.skip("Outbound message from owner/team")

        photo_urls = message.attachment_urls()
        if not message.text and not photo_urls:
            logger.warning("[%s] Empty inbound message for %s, skipping", request_id, contact_id)
            return InboundReply.skip("Empty message")

        contact = await self._load(contact_id)

        last_team_at = contact.last_team_message_at()
        if last_team_at is not None:
            elapsed = self._clock() - last_team_at.timestamp()
            if elapsed < self._cooldown:
                minutes = max(0, round(elapsed / 60))
                logger.info("[%s] Owner active %dmin ago, bot stays silent", request_id, minutes)
                return InboundReply.skip(
                    f"Owner was active {minutes} minutes ago (cooldown: {round(self._cooldown / 60)}min)"
                )

        channel = normalize_channel(message.channel)
        first_reply = not contact.bot_has_replied
        delay = await self._human_delay(channel, first_reply)

        text = message.text
        if photo_urls:
            text = "\n".join(p for p in (text, "Photos: " + " ".join(photo_urls)) if p)

        thread_id = self._threads.get(contact_id)
        context = TurnContext(
            request_id=request_id,
            channel=channel,
            extra=contact.instructions(with_history=thread_id is None),
        )
        thread_id, result = await self._turns.handle_turn(thread_id, TurnContent(text=text), context)
        self._remember(contact_id, thread_id)

        actions = determine_follow_ups(result.message, contact)
        await execute_follow_ups(self._crm, contact_id, actions)
        logger.info(
            "[%s] Inbound %s reply for %s (delay %.1fs, %d follow-up(s))",
            request_id, channel, contact_id, delay, len(actions),
        )
        return InboundReply(
            success=True,
            message=result.message,
            actions=actions,
            timing=ReplyTiming(delay_seconds=delay, is_first_bot_message=first_reply),
        )

    async def preview(
        self,
        text: str,
        *,
        channel: str | None = None,
        contact_id: str | None = None,
        customer_name: str | None = None,
        request_id: str = "-",
    ) -> dict[str, Any]:
        """Dry run: answer on a throwaway thread, write nothing back."""
        if contact_id:
            contact = await self._load(contact_id)
        else:
            contact = ContactContext(
                contact_id="test", name=customer_name or "Test Customer", source=channel or "test",
            )
        channel = normalize_channel(channel or "yelp")
        context = TurnContext(
            request_id=request_id, channel=channel, extra=contact.instructions(with_history=True),
        )
        _, result = await self._turns.handle_turn(None, TurnContent(text=text), context)
        return {
            "dryRun": True,
            "channel": channel,
            "customerContext": {
                "name": contact.name,
                "source": contact.source,
                "tags": contact.tags,
                "historyLength": len(contact.history),
            },
            "aiResponse": result.message,
            "actions": [a.model_dump(exclude_none=True) for a in determine_follow_ups(result.message, contact)],
        }

    async def _load(self, contact_id: str) -> ContactContext:
        try:
            return await load_contact_context(self._crm, contact_id)
        except ContactNotFound as exc:
            raise UpstreamUnavailable(str(exc)) from exc

    async def _human_delay(self, channel: str, first_reply: bool) -> float:
        low, high = reply_delay_range(channel, first_reply)
        if not self._delay_enabled or high <= 0:
            return 0.0
        delay = self._uniform(low, high)
        logger.info("Applying human-like delay: %.1fs (%s)", delay, channel)
        await self._sleep(delay)
        return delay

    def _remember(self, contact_id: str, thread_id: str) -> None:
        self._threads[contact_id] = thread_id
        self._threads.move_to_end(contact_id)
        while len(self._threads) > self._max_threads:
            self._threads.popitem(last=False)


# ── Wiring ───────────────────────────────────────────────────────────


@dataclass
class LeadAgent:
    """Every long-lived client the routes need, built once per process."""

    turns: TurnHandler
    inbound: InboundResponder
    leads: LeadRecorder
    calendar: CalendarClient
    crm: CRMClient
    sheets: SheetsClient
    notifier: TelegramNotifier
    assistant: AssistantClient
    photo_cache: PhotoCache
    side_effects: SideEffects

    async def aclose(self) -> None:
        await self.side_effects.drain(timeout=5)
        for client in (self.assistant, self.crm, self.calendar, self.sheets, self.notifier):
            await client.aclose()


def create_lead_agent(policy: PollPolicy | None = None) -> LeadAgent:
    """Build the clients, the dispatcher and the turn handler."""
    side_effects = SideEffects()
    photo_cache = PhotoCache(ttl_seconds=config.PHOTO_CACHE_TTL_SECONDS)
    assistant = AssistantClient()
    crm = CRMClient()
    calendar = CalendarClient()
    sheets = SheetsClient()
    notifier = TelegramNotifier()

    leads = LeadRecorder(
        crm, sheets, notifier, side_effects, policy=LeadSavePolicy.parse(config.LEAD_SAVE_POLICY),
    )
    dispatcher = ToolDispatcher(
        leads=leads,
        calendar=calendar,
        assistant=assistant,
        photo_cache=photo_cache,
        side_effects=side_effects,
    )
    orchestrator = RunOrchestrator(assistant, dispatcher, side_effects, policy)
    turns = TurnHandler(assistant, orchestrator, photo_cache, notifier, side_effects)
    inbound = InboundResponder(
        crm,
        turns,
        cooldown_seconds=config.INBOUND_OWNER_COOLDOWN_MINUTES * 60,
        delay_enabled=config.INBOUND_REPLY_DELAY_ENABLED,
    )

    logger.debug(
        "Lead agent wired: assistant configured: %s, crm: %s, calendar: %s, sheets: %s, notifier: %s",
        assistant.is_configured, crm.is_configured, calendar.is_configured,
        sheets.is_configured, notifier.is_configured,
    )
    return LeadAgent(
        turns=turns,
        inbound=inbound,
        leads=leads,
        calendar=calendar,
        crm=crm,
        sheets=sheets,
        notifier=notifier,
        assistant=assistant,
        photo_cache=photo_cache,
        side_effects=side_effects,
    )
