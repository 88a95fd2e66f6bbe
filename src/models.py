"""Domain models shared by the orchestrator, the tool dispatcher and the
connectors.

Assistant-service objects (runs, tool calls) are parsed from the raw API
JSON with ``model_validate``; unknown fields are ignored so upstream
additions never break a turn.  Connector results serialise with
``by_alias=True`` to the camelCase shapes the assistant sees in tool
outputs.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# ── Assistant runs ───────────────────────────────────────────────────


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"

    @property
    def is_terminal(self) -> bool:
        return self not in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({
    RunStatus.QUEUED,
    RunStatus.IN_PROGRESS,
    RunStatus.REQUIRES_ACTION,
    RunStatus.CANCELLING,
})


class ToolCall(BaseModel):
    """A request from the assistant to run one named capability."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    arguments: str = "{}"

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> ToolCall:
        function = raw.get("function") or {}
        return cls(
            id=raw["id"],
            name=function.get("name", ""),
            arguments=function.get("arguments") or "{}",
        )


class ToolOutput(BaseModel):
    """The answer handed back to the assistant for one ToolCall."""

    tool_call_id: str
    output: str

    @classmethod
    def from_payload(cls, tool_call_id: str, payload: dict[str, Any]) -> ToolOutput:
        return cls(tool_call_id=tool_call_id, output=json.dumps(payload, default=str))

    def payload(self) -> dict[str, Any]:
        return json.loads(self.output)


class Run(BaseModel):
    """One assistant invocation over a thread."""

    model_config = ConfigDict(extra="ignore")

    id: str
    thread_id: str | None = None
    status: RunStatus
    required_action: dict[str, Any] | None = None
    last_error: dict[str, Any] | None = None

    def pending_tool_calls(self) -> list[ToolCall]:
        """Return the ToolCalls the run is waiting on (empty if none)."""
        if not self.required_action:
            return []
        submit = self.required_action.get("submit_tool_outputs") or {}
        return [ToolCall.from_api(raw) for raw in submit.get("tool_calls") or []]


# ── Leads ───────────────────────────────────────────────────────────


class LeadRecord(BaseModel):
    """Normalised lead, ready for the CRM and the spreadsheet."""

    name: str
    phone: str
    email: str | None = None
    service: str | None = None
    address: str | None = None
    zip_code: str | None = None
    preferred_date: str | None = None
    preferred_time: str | None = None
    notes: str | None = None
    source: str = "chatbot"
    correlation_id: str | None = None
    tags: list[str] = Field(default_factory=lambda: ["chatbot-lead", "repair-asap-bot"])
    timestamp: str | None = None


class StructuredAction(BaseModel):
    """Optional hint the front-end may act on, e.g. pre-filling a form."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)


class TurnResult(BaseModel):
    message: str
    action: StructuredAction | None = None


# ── Inbound CRM messages ────────────────────────────────────────────


class InboundMessage(BaseModel):
    """A conversation webhook event from the CRM; field names follow the CRM."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str | None = None
    contact_id: str = Field(..., min_length=1, validation_alias=AliasChoices("contactId", "contact_id"))
    conversation_id: str | None = Field(
        default=None, validation_alias=AliasChoices("conversationId", "conversation_id"),
    )
    direction: str = "inbound"
    body: str | None = None
    message: Any = None
    channel: str | None = None
    attachments: list[Any] = Field(default_factory=list)

    @property
    def text(self) -> str:
        if self.body:
            return self.body.strip()
        return self.message.strip() if isinstance(self.message, str) else ""

    def attachment_urls(self) -> list[str]:
        urls = []
        for item in self.attachments:
            url = item.get("url") if isinstance(item, dict) else item
            if isinstance(url, str) and url:
                urls.append(url)
        return urls


class FollowUpAction(BaseModel):
    type: str
    reason: str | None = None
    tag: str | None = None


class ReplyTiming(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delay_seconds: float = Field(default=0.0, alias="delaySec")
    is_first_bot_message: bool = Field(default=False, alias="isFirstBotMessage")


class InboundReply(BaseModel):
    """Webhook answer; the CRM workflow sends ``message`` back to the customer."""

    success: bool | None = None
    skipped: bool | None = None
    reason: str | None = None
    message: str | None = None
    actions: list[FollowUpAction] | None = None
    timing: ReplyTiming | None = None

    @classmethod
    def skip(cls, reason: str) -> InboundReply:
        return cls(skipped=True, reason=reason)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ── Connector results ───────────────────────────────────────────────


class _ConnectorResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CRMResult(_ConnectorResult):
    success: bool
    contact_id: str | None = Field(default=None, alias="contactId")
    is_new: bool | None = Field(default=None, alias="isNew")
    error: str | None = None


class SheetResult(_ConnectorResult):
    success: bool
    error: str | None = None


class SlotsResult(_ConnectorResult):
    slots: list[str] = Field(default_factory=list)
    date: str
    raw: list[str] | None = None
    error: str | None = None


class BookingResult(_ConnectorResult):
    success: bool
    appointment_id: str | None = Field(default=None, alias="appointmentId")
    start_time: str | None = Field(default=None, alias="startTime")
    end_time: str | None = Field(default=None, alias="endTime")
    error: str | None = None


class UploadResult(_ConnectorResult):
    url: str | None = None
    error: str | None = None
