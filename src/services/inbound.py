"""Context and follow-ups for auto-replies to inbound CRM messages.

The CRM posts every conversation message (SMS, Yelp, Thumbtack, ...) to
``/api/webhook/crm-inbound``.  Before the assistant answers, the contact
and its recent conversation are loaded here, which is what the owner
cooldown and the reply delay are decided on.  After the reply, a few
follow-ups (tags, owner notes) are derived from its wording and written
back to the contact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from src.models import FollowUpAction
from src.services.crm_client import CRMClient

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "sms"
HISTORY_LIMIT = 20
ENGAGED_TAG = "AI-Engaged"

# Seconds, (min, max) for the first bot reply and for later ones
RESPONSE_DELAYS: dict[str, tuple[tuple[float, float], tuple[float, float]]] = {
    "yelp": ((8, 15), (10, 20)),
    "thumbtack": ((3, 8), (5, 12)),
    "sms": ((5, 10), (8, 15)),
    "voice": ((0, 0), (0, 0)),
    "webchat": ((0, 0), (0, 0)),
}

_ESCALATION_PHRASES = ("team review", "get back to you personally", "have our team", "someone will reach out")
_BOOKING_PHRASES = ("booked", "appointment", "technician will confirm", "scheduled")


class ContactNotFound(Exception):
    pass


@dataclass
class HistoryMessage:
    direction: str
    body: str
    sent_at: datetime | None = None

    @property
    def from_team(self) -> bool:
        return self.direction == "outbound"


@dataclass
class ContactContext:
    contact_id: str
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    source: str | None = None
    tags: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    history: list[HistoryMessage] = field(default_factory=list)

    @property
    def bot_has_replied(self) -> bool:
        return any(m.from_team for m in self.history)

    def last_team_message_at(self) -> datetime | None:
        for message in reversed(self.history):
            if message.from_team and message.sent_at is not None:
                return message.sent_at
        return None

    def instructions(self, *, with_history: bool = False) -> dict[str, str]:
        """Key/value hints for the run; history only seeds a fresh thread."""
        extra = {
            label: value
            for label, value in (
                ("Customer name", self.name),
                ("Customer phone", self.phone),
                ("Customer email", self.email),
                ("Lead source", self.source),
            )
            if value
        }
        if self.tags:
            extra["Contact tags"] = ", ".join(self.tags)
        if self.notes:
            extra["Notes from the team"] = " | ".join(self.notes)[:1000]
        if with_history and self.history:
            extra["Earlier messages"] = " / ".join(
                f"{'Team' if m.from_team else 'Customer'}: {m.body}" for m in self.history[-10:]
            )[:2000]
        return extra


def parse_timestamp(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


async def load_contact_context(crm: CRMClient, contact_id: str) -> ContactContext:
    """Contact, latest conversation and notes.  Only the contact itself is required."""
    contact = await crm.get_contact(contact_id)
    if contact is None:
        raise ContactNotFound(f"Contact {contact_id} could not be loaded")

    name = " ".join(p for p in (contact.get("firstName"), contact.get("lastName")) if p)
    history = [
        HistoryMessage(
            direction=m.get("direction") or "inbound",
            body=(m.get("body") or m.get("message") or "").strip(),
            sent_at=parse_timestamp(m.get("dateAdded")),
        )
        for m in await crm.get_recent_messages(contact_id, limit=HISTORY_LIMIT)
    ]
    return ContactContext(
        contact_id=contact_id,
        name=name or contact.get("name"),
        phone=contact.get("phone"),
        email=contact.get("email"),
        source=contact.get("source"),
        tags=list(contact.get("tags") or []),
        notes=await crm.get_notes(contact_id),
        history=[m for m in history if m.body],
    )


def normalize_channel(raw: str | None) -> str:
    return (raw or DEFAULT_CHANNEL).strip().lower() or DEFAULT_CHANNEL


def reply_delay_range(channel: str, first_reply: bool) -> tuple[float, float]:
    first, later = RESPONSE_DELAYS.get(channel, RESPONSE_DELAYS[DEFAULT_CHANNEL])
    return first if first_reply else later


def determine_follow_ups(reply: str, context: ContactContext) -> list[FollowUpAction]:
    lower = reply.lower()
    actions = []
    if any(phrase in lower for phrase in _ESCALATION_PHRASES):
        actions.append(FollowUpAction(type="escalate", reason="AI escalated to human team"))
    if any(phrase in lower for phrase in _BOOKING_PHRASES):
        actions.append(FollowUpAction(type="notify_owner", reason="Booking mentioned in response"))
    if ENGAGED_TAG not in context.tags:
        actions.append(FollowUpAction(type="add_tag", tag=ENGAGED_TAG))
    return actions


async def execute_follow_ups(crm: CRMClient, contact_id: str, actions: list[FollowUpAction]) -> None:
    """Write follow-ups to the contact; a failed one is logged and skipped."""
    for action in actions:
        if action.type == "add_tag" and action.tag:
            ok = await crm.add_tags(contact_id, [action.tag])
        elif action.type in ("escalate", "notify_owner"):
            ok = await crm.add_note(contact_id, f"[AI HUB] {action.reason}. Manual follow-up needed.")
        else:
            continue
        if ok:
            logger.info("Follow-up %s done for %s", action.type, contact_id)
        else:
            logger.warning("Follow-up %s failed for %s", action.type, contact_id)
