"""Builders and fakes shared across the tests."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from src.models import BookingResult, CRMResult, Run, SheetResult, SlotsResult, ToolOutput, UploadResult
from src.services.assistant_client import AssistantAPIError
from src.services.cache import PhotoCache
from src.services.leads import LeadRecorder, LeadSavePolicy
from src.services.side_effects import SideEffects
from src.tools.dispatcher import ToolDispatcher


def run_payload(
    status: str,
    *,
    run_id: str = "run_1",
    thread_id: str = "thread_1",
    tool_calls: list[tuple[str, str, Any]] | None = None,
    last_error: dict | None = None,
) -> dict[str, Any]:
    """Build an Assistants v2 run object.

    *tool_calls* is a list of ``(call_id, name, arguments)``; dict
    arguments are JSON-encoded, strings are passed through untouched.
    """
    data: dict[str, Any] = {"id": run_id, "thread_id": thread_id, "status": status}
    if tool_calls is not None:
        data["required_action"] = {
            "type": "submit_tool_outputs",
            "submit_tool_outputs": {
                "tool_calls": [
                    {
                        "id": call_id,
                        "type": "function",
                        "function": {
                            "name": name,
                            "arguments": args if isinstance(args, str) else json.dumps(args),
                        },
                    }
                    for call_id, name, args in tool_calls
                ],
            },
        }
    if last_error is not None:
        data["last_error"] = last_error
    return data


def assistant_message(text: str, *, role: str = "assistant") -> dict[str, Any]:
    return {
        "id": f"msg_{abs(hash(text)) % 10_000}",
        "role": role,
        "content": [{"type": "text", "text": {"value": text, "annotations": []}}],
    }


class FakeAssistant:
    """Scripted stand-in for :class:`AssistantClient`.

    ``polls`` are returned by successive ``get_run`` calls (the last one
    repeats), ``after_submit`` by successive ``submit_tool_outputs``
    calls.  Re-submitting an already answered tool call is rejected the
    way the real service rejects it.
    """

    is_configured = True

    def __init__(
        self,
        *,
        initial: dict[str, Any] | None = None,
        polls: list[dict[str, Any]] | None = None,
        after_submit: list[dict[str, Any]] | None = None,
        messages: list[dict[str, Any]] | None = None,
        thread_id: str = "thread_1",
    ):
        self.initial = initial or run_payload("queued", thread_id=thread_id)
        self.polls = list(polls or [])
        self.after_submit = list(after_submit or [])
        self.messages = list(messages or [])
        self.thread_id = thread_id
        self._last_poll = self.initial

        self.added: list[tuple[str, str | None, str | None]] = []
        self.uploads: list[tuple[bytes, str, str]] = []
        self.run_requests: list[tuple[str, str | None]] = []
        self.get_run_calls = 0
        self.submissions: list[list[ToolOutput]] = []
        self.cancelled: list[str] = []
        self.listed: list[dict[str, Any]] = []
        self._answered: set[str] = set()

    async def create_thread(self) -> str:
        return self.thread_id

    async def add_message(self, thread_id, text=None, *, image_file_id=None) -> str:
        self.added.append((thread_id, text, image_file_id))
        return "msg_user"

    async def upload_image(self, data, file_name, mime_type) -> str:
        self.uploads.append((data, file_name, mime_type))
        return "file_1"

    async def create_run(self, thread_id, *, additional_instructions=None) -> Run:
        self.run_requests.append((thread_id, additional_instructions))
        return Run.model_validate(self.initial)

    async def get_run(self, thread_id, run_id) -> Run:
        self.get_run_calls += 1
        if self.polls:
            self._last_poll = self.polls.pop(0)
        return Run.model_validate(self._last_poll)

    async def submit_tool_outputs(self, thread_id, run_id, outputs) -> Run:
        ids = {o.tool_call_id for o in outputs}
        if ids & self._answered:
            raise AssistantAPIError("Tool outputs already submitted", status_code=400)
        self._answered |= ids
        self.submissions.append(list(outputs))
        return Run.model_validate(self.after_submit.pop(0))

    async def cancel_run(self, thread_id, run_id) -> Run:
        self.cancelled.append(run_id)
        return Run.model_validate(run_payload("cancelling", run_id=run_id, thread_id=thread_id))

    async def list_messages(self, thread_id, *, run_id=None, limit=20, order="desc"):
        self.listed.append({"run_id": run_id, "limit": limit, "order": order})
        return list(self.messages)


@dataclass
class Stack:
    assistant: FakeAssistant
    crm: MagicMock
    sheets: MagicMock
    calendar: MagicMock
    notifier: MagicMock
    side_effects: SideEffects
    photo_cache: PhotoCache
    leads: LeadRecorder
    dispatcher: ToolDispatcher


def build_stack(
    assistant: FakeAssistant | None = None,
    *,
    crm_result: CRMResult | None = None,
    sheet_result: SheetResult | None = None,
    policy: LeadSavePolicy = LeadSavePolicy.ANY,
) -> Stack:
    """A dispatcher wired to mocked connectors and a real SideEffects runner."""
    assistant = assistant or FakeAssistant()

    crm = MagicMock()
    crm.upsert_contact = AsyncMock(return_value=crm_result or CRMResult(success=True, contact_id="abc"))
    crm.add_note = AsyncMock(return_value=True)
    crm.upload_conversation_file = AsyncMock(return_value=UploadResult(url="https://cdn.test/photo.jpg"))
    crm.send_live_chat_message = AsyncMock(return_value=True)

    sheets = MagicMock()
    sheets.append_lead = AsyncMock(return_value=sheet_result or SheetResult(success=True))

    calendar = MagicMock()
    calendar.get_available_slots = AsyncMock(
        return_value=SlotsResult(slots=["11:00 AM"], date="2026-02-25", raw=["2026-02-25T11:00:00-05:00"]),
    )
    calendar.book_appointment = AsyncMock(
        return_value=BookingResult(
            success=True, appointment_id="appt_1",
            start_time="2026-02-25T11:00:00-05:00", end_time="2026-02-25T12:30:00-05:00",
        ),
    )

    notifier = MagicMock()
    notifier.send_text = AsyncMock(return_value=True)
    notifier.send_photo = AsyncMock(return_value=True)

    side_effects = SideEffects()
    photo_cache = PhotoCache()
    leads = LeadRecorder(crm, sheets, notifier, side_effects, policy=policy)
    dispatcher = ToolDispatcher(
        leads=leads,
        calendar=calendar,
        assistant=assistant,
        photo_cache=photo_cache,
        side_effects=side_effects,
    )
    return Stack(
        assistant=assistant, crm=crm, sheets=sheets, calendar=calendar, notifier=notifier,
        side_effects=side_effects, photo_cache=photo_cache, leads=leads, dispatcher=dispatcher,
    )
