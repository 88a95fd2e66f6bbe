"""The fixed set of tools the assistant may call.

Each tool name (including legacy aliases still configured on older
assistants) resolves to one :class:`ToolKind`, and every known kind has a
pydantic schema for its arguments.  Names outside the table resolve to
``ToolKind.UNKNOWN``.

``tool_definitions()`` renders the same schemas as Assistants function
definitions, so the assistant's configuration can be regenerated from
code (``python -m src.main --print-tools``).
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ToolKind(str, Enum):
    SAVE_LEAD = "save_lead"
    CHECK_AVAILABILITY = "check_availability"
    BOOK_APPOINTMENT = "book_appointment"
    UNKNOWN = "unknown"


class _Args(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
        # The assistant sometimes sends phone numbers and ZIP codes as JSON numbers
        coerce_numbers_to_str=True,
    )


class SaveLeadArgs(_Args):
    """Save the customer's contact details and job description as a lead."""

    name: str = Field(min_length=1, description="Customer's name")
    phone: str = Field(min_length=1, description="Customer's phone number")
    email: str | None = Field(default=None, description="Customer's email address")
    service: str | None = Field(default=None, description="What needs to be done")
    address: str | None = Field(default=None, description="Job address")
    zip_code: str | None = Field(default=None, alias="zip", description="ZIP code")
    preferred_date: str | None = Field(default=None, alias="date", description="Preferred date")
    preferred_time: str | None = Field(default=None, alias="time", description="Preferred time")
    notes: str | None = Field(default=None, description="Anything else worth passing on")


class CheckAvailabilityArgs(_Args):
    """List free appointment slots starting on a date."""

    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$", description="Date in YYYY-MM-DD format")
    days_ahead: int = Field(default=1, ge=1, le=14, alias="daysAhead", description="Number of days to check")


class BookAppointmentArgs(_Args):
    """Book an appointment for a saved lead."""

    start_time: str = Field(alias="startTime", description="ISO 8601 start time, e.g. 2026-02-25T11:00:00-05:00")
    service: str = Field(min_length=1, description="Service to perform")
    address: str | None = Field(default=None, description="Job address")
    contact_name: str | None = Field(default=None, alias="contactName", description="Customer's name")
    contact_id: str | None = Field(
        default=None, alias="contactId",
        description="CRM contact id returned by save_lead; defaults to the lead saved in this conversation",
    )


ARGUMENT_SCHEMAS: dict[ToolKind, type[_Args]] = {
    ToolKind.SAVE_LEAD: SaveLeadArgs,
    ToolKind.CHECK_AVAILABILITY: CheckAvailabilityArgs,
    ToolKind.BOOK_APPOINTMENT: BookAppointmentArgs,
}

_ALIASES: dict[str, ToolKind] = {
    "save_lead": ToolKind.SAVE_LEAD,
    "saveLead": ToolKind.SAVE_LEAD,
    "save_lead_data": ToolKind.SAVE_LEAD,
    "submit_lead": ToolKind.SAVE_LEAD,
    "capture_lead": ToolKind.SAVE_LEAD,
    "check_availability": ToolKind.CHECK_AVAILABILITY,
    "checkAvailability": ToolKind.CHECK_AVAILABILITY,
    "get_available_slots": ToolKind.CHECK_AVAILABILITY,
    "book_appointment": ToolKind.BOOK_APPOINTMENT,
    "bookAppointment": ToolKind.BOOK_APPOINTMENT,
}


def resolve(name: str) -> ToolKind:
    return _ALIASES.get(name, ToolKind.UNKNOWN)


def tool_definitions() -> list[dict[str, Any]]:
    """Assistants-API function definitions for the canonical tool names."""
    definitions = []
    for kind, schema in ARGUMENT_SCHEMAS.items():
        definitions.append({
            "type": "function",
            "function": {
                "name": kind.value,
                "description": (schema.__doc__ or "").strip(),
                "parameters": schema.model_json_schema(by_alias=True),
            },
        })
    return definitions
