"""Tool dispatch: one ToolCall in, exactly one ToolOutput out.

``ToolDispatcher.dispatch`` never raises.  Unknown tool names, malformed
arguments and internal errors all come back as ``{"status": "Error", ...}``
outputs so the run can continue and the assistant can recover in the
conversation.

Output payloads by tool
-----------------------
* save_lead          → ``{"status": "OK"|"Error", "message", "contactId"?}``
* check_availability → the calendar's slot result, relayed as-is
* book_appointment   → the calendar's booking result, relayed as-is
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from src.models import BookingResult, LeadRecord, StructuredAction, ToolCall, ToolOutput
from src.services.assistant_client import AssistantClient, message_text
from src.services.cache import CachedPhoto, PhotoCache
from src.services.calendar_client import CalendarClient
from src.services.leads import LeadRecorder, normalize_phone
from src.services.side_effects import SideEffects
from src.tools.registry import (
    ARGUMENT_SCHEMAS,
    BookAppointmentArgs,
    CheckAvailabilityArgs,
    SaveLeadArgs,
    ToolKind,
    resolve,
)

logger = logging.getLogger(__name__)

TRANSCRIPT_MESSAGE_LIMIT = 50

# Action type the website widget pre-fills its contact form on
FILL_FORM = "FILL_FORM"


@dataclass
class RunState:
    """Mutable per-run context shared by the tool calls of one turn."""

    thread_id: str
    request_id: str = "-"
    source: str = "chatbot"
    contact_id: str | None = None
    # Last lead-save of the run wins
    action: StructuredAction | None = None


def _error(tool_call_id: str, message: str) -> ToolOutput:
    return ToolOutput.from_payload(tool_call_id, {"status": "Error", "message": message})


class ToolDispatcher:
    def __init__(
        self,
        *,
        leads: LeadRecorder,
        calendar: CalendarClient,
        assistant: AssistantClient,
        photo_cache: PhotoCache,
        side_effects: SideEffects,
    ):
        self._leads = leads
        self._calendar = calendar
        self._assistant = assistant
        self._photos = photo_cache
        self._side_effects = side_effects

    async def dispatch_batch(self, calls: list[ToolCall], state: RunState) -> list[ToolOutput]:
        """Run every call of a batch concurrently; one output per call."""
        return list(await asyncio.gather(*(self.dispatch(call, state) for call in calls)))

    async def dispatch(self, call: ToolCall, state: RunState) -> ToolOutput:
        kind = resolve(call.name)
        if kind is ToolKind.UNKNOWN:
            logger.warning("[%s] Unknown tool %r requested", state.request_id, call.name)
            return _error(call.id, "Function not implemented")

        try:
            raw_args = json.loads(call.arguments or "{}")
        except (json.JSONDecodeError, RecursionError) as exc:
            logger.warning("[%s] %s: malformed arguments: %s", state.request_id, call.name, exc)
            return _error(call.id, f"Invalid JSON arguments: {exc}")

        try:
            args = ARGUMENT_SCHEMAS[kind].model_validate(raw_args)
        except ValidationError as exc:
            logger.warning("[%s] %s: invalid arguments: %s", state.request_id, call.name, exc)
            return _error(call.id, f"Invalid arguments: {_summarize(exc)}")

        logger.info("[%s] Dispatching %s (%s)", state.request_id, kind.value, call.id)
        try:
            if kind is ToolKind.SAVE_LEAD:
                payload = await self._save_lead(args, state)
            elif kind is ToolKind.CHECK_AVAILABILITY:
                payload = await self._check_availability(args)
            else:
                payload = await self._book_appointment(args, state)
        except Exception:
            logger.exception("[%s] Tool %s failed", state.request_id, kind.value)
            return _error(call.id, f"Internal error while running {kind.value}")
        return ToolOutput.from_payload(call.id, payload)

    # ── save_lead ────────────────────────────────────────────────────

    async def _save_lead(self, args: SaveLeadArgs, state: RunState) -> dict[str, Any]:
        state.action = StructuredAction(type=FILL_FORM, payload=args.model_dump(exclude_none=True))

        phone = normalize_phone(args.phone)
        if phone is None:
            return {
                "status": "Error",
                "message": f"Invalid phone number {args.phone!r}. Ask the customer for a 10-digit phone number.",
            }

        lead = LeadRecord(
            name=args.name,
            phone=phone,
            email=args.email,
            service=args.service,
            address=args.address,
            zip_code=args.zip_code,
            preferred_date=args.preferred_date,
            preferred_time=args.preferred_time,
            notes=args.notes,
            source=state.source,
            correlation_id=state.request_id,
        )
        outcome = await self._leads.record(lead)
        if not outcome.accepted:
            return {"status": "Error", "message": "The lead could not be saved right now."}

        payload: dict[str, Any] = {"status": "OK", "message": "Lead saved"}
        if outcome.contact_id:
            state.contact_id = outcome.contact_id
            payload["contactId"] = outcome.contact_id
            self._side_effects.fire(
                self._upload_transcript(state.thread_id, outcome.contact_id), "crm-transcript",
            )
            photo = self._photos.get(state.thread_id)
            if photo is not None:
                self._side_effects.fire(
                    self._forward_photo(outcome.contact_id, photo, lead), "crm-photo",
                )
        return payload

    async def _upload_transcript(self, thread_id: str, contact_id: str) -> None:
        messages = await self._assistant.list_messages(
            thread_id, limit=TRANSCRIPT_MESSAGE_LIMIT, order="asc",
        )
        lines = []
        for message in messages:
            speaker = "Customer" if message.get("role") == "user" else "Assistant"
            lines.append(f"{speaker}: {message_text(message) or '[image]'}")
        if lines:
            await self._leads.crm.add_note(contact_id, "📝 Website chat transcript\n\n" + "\n".join(lines))

    async def _forward_photo(self, contact_id: str, photo: CachedPhoto, lead: LeadRecord) -> None:
        upload = await self._leads.crm.upload_conversation_file(
            contact_id, photo.data, photo.file_name, photo.mime_type,
        )
        if upload.url:
            await self._leads.crm.send_live_chat_message(
                contact_id, f"📸 Photo from website chat ({lead.service or 'no service given'})", [upload.url],
            )
        await self._leads.notifier.send_photo(
            photo.data, caption=f"📸 {lead.name} {lead.phone}", file_name=photo.file_name,
        )

    # ── Calendar ─────────────────────────────────────────────────────

    async def _check_availability(self, args: CheckAvailabilityArgs) -> dict[str, Any]:
        result = await self._calendar.get_available_slots(args.date, args.days_ahead)
        return result.to_payload()

    async def _book_appointment(self, args: BookAppointmentArgs, state: RunState) -> dict[str, Any]:
        contact_id = args.contact_id or state.contact_id
        if not contact_id:
            return BookingResult(
                success=False, error="No contactId: save the lead before booking",
            ).to_payload()

        result = await self._calendar.book_appointment(
            contact_id=contact_id,
            start_time=args.start_time,
            service=args.service,
            address=args.address,
            contact_name=args.contact_name,
        )
        if result.success:
            self._side_effects.fire(
                self._leads.notifier.send_text(
                    f"📅 Appointment booked for {args.contact_name or contact_id}\n"
                    f"🔧 {args.service}\n🕒 {result.start_time}\n📍 {args.address or 'TBD'}"
                ),
                "notify-booking",
            )
        return result.to_payload()


def _summarize(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
        for err in exc.errors()
    )
