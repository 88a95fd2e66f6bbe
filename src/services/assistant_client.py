"""Async HTTP client for the hosted assistant service (OpenAI Assistants v2).

Only the handful of endpoints a turn needs are wrapped: threads, messages,
vision file uploads, runs, tool-output submission and cancellation.

Retry policy: idempotent reads (run status, message list) are retried with
exponential backoff on timeouts, connection errors, 429 and 5xx
responses.
Writes are attempted exactly once; re-posting a message or a tool-output
batch could duplicate it on the upstream side.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from src import config
from src.models import Run, ToolOutput
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 20.0


class AssistantAPIError(Exception):
    """Raised when an assistant-service call fails (after retries, for reads)."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AssistantClient:
    """Thin async wrapper around the Assistants v2 REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        assistant_id: str | None = None,
        base_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.assistant_id = assistant_id or config.OPENAI_ASSISTANT_ID
        self._api_key = api_key or config.OPENAI_API_KEY
        self._client = httpx.AsyncClient(
            base_url=base_url or config.OPENAI_BASE_URL,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "OpenAI-Beta": "assistants=v2",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key and self.assistant_id)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _send(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        async with metrics.track("assistant", f"{method} {_route(path)}") as call:
            response = await self._client.request(method, path, **kwargs)
            call.check(response.status_code)
        if response.status_code >= 400:
            raise AssistantAPIError(
                f"Assistant API {method} {path} failed: {response.status_code} {response.text}",
                status_code=response.status_code,
            )
        return response.json()

    async def _write(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Single-attempt request; transport errors become AssistantAPIError."""
        try:
            return await self._send(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise AssistantAPIError(
                f"Assistant API {method} {path} unreachable: {type(exc).__name__}",
            ) from exc

    async def _read(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """GET with exponential-backoff retries on transient failures."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                return await self._send("GET", path, params=params)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = exc
                logger.warning(
                    "Assistant API attempt %d/%d failed (%s)",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            except AssistantAPIError as exc:
                if exc.status_code is None or (exc.status_code < 500 and exc.status_code != 429):
                    raise
                last_error = exc
                logger.warning(
                    "Assistant API %s on attempt %d/%d", exc.status_code, attempt, MAX_RETRIES,
                )

            if attempt < MAX_RETRIES:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise AssistantAPIError(
            f"Assistant API GET {path} failed after {MAX_RETRIES} attempts: {last_error}"
        )

    # ── Threads and messages ─────────────────────────────────────────

    async def create_thread(self) -> str:
        data = await self._write("POST", "/threads", json={})
        return data["id"]

    async def add_message(
        self,
        thread_id: str,
        text: str | None = None,
        *,
        image_file_id: str | None = None,
    ) -> str:
        """Append a user message (text and/or an uploaded image)."""
        content: str | list[dict[str, Any]]
        if image_file_id:
            content = []
            if text:
                content.append({"type": "text", "text": text})
            content.append({
                "type": "image_file",
                "image_file": {"file_id": image_file_id, "detail": "low"},
            })
        else:
            content = text or ""
        data = await self._write(
            "POST", f"/threads/{thread_id}/messages",
            json={"role": "user", "content": content},
        )
        return data["id"]

    async def upload_image(self, data: bytes, file_name: str, mime_type: str) -> str:
        """Upload an image for vision use and return its file id."""
        result = await self._write(
            "POST", "/files",
            data={"purpose": "vision"},
            files={"file": (file_name, data, mime_type)},
        )
        return result["id"]

    async def list_messages(
        self,
        thread_id: str,
        *,
        run_id: str | None = None,
        limit: int = 20,
        order: str = "desc",
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit, "order": order}
        if run_id:
            params["run_id"] = run_id
        data = await self._read(f"/threads/{thread_id}/messages", params=params)
        return data.get("data", [])

    # ── Runs ─────────────────────────────────────────────────────────

    async def create_run(
        self,
        thread_id: str,
        *,
        additional_instructions: str | None = None,
    ) -> Run:
        body: dict[str, Any] = {"assistant_id": self.assistant_id}
        if additional_instructions:
            body["additional_instructions"] = additional_instructions
        data = await self._write("POST", f"/threads/{thread_id}/runs", json=body)
        return _parse_run(data)

    async def get_run(self, thread_id: str, run_id: str) -> Run:
        data = await self._read(f"/threads/{thread_id}/runs/{run_id}")
        return _parse_run(data)

    async def submit_tool_outputs(
        self,
        thread_id: str,
        run_id: str,
        outputs: list[ToolOutput],
    ) -> Run:
        data = await self._write(
            "POST", f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            json={"tool_outputs": [o.model_dump() for o in outputs]},
        )
        return _parse_run(data)

    async def cancel_run(self, thread_id: str, run_id: str) -> Run:
        data = await self._write("POST", f"/threads/{thread_id}/runs/{run_id}/cancel")
        return _parse_run(data)


def _parse_run(data: dict[str, Any]) -> Run:
    """Parse a run object; an unrecognised shape or status is an upstream error."""
    try:
        return Run.model_validate(data)
    except ValidationError as exc:
        raise AssistantAPIError(f"Unexpected run object from assistant service: {exc}") from exc


def message_text(message: dict[str, Any]) -> str:
    """Concatenate the text parts of an assistant-service message."""
    parts = []
    for part in message.get("content") or []:
        if part.get("type") == "text":
            value = (part.get("text") or {}).get("value")
            if value:
                parts.append(value)
    return "\n".join(parts)


def _route(path: str) -> str:
    """Collapse ids out of *path* so metrics group by endpoint."""
    parts = path.strip("/").split("/")
    return "/" + "/".join(
        part if part in _STATIC_SEGMENTS else "{id}" for part in parts
    )


_STATIC_SEGMENTS = frozenset({
    "threads", "messages", "runs", "files", "submit_tool_outputs", "cancel",
})
