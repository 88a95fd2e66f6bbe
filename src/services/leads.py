"""Lead normalisation and the CRM + spreadsheet fan-out.

Both the chat tool (``save_lead``) and the lead-intake webhook end up in
:meth:`LeadRecorder.record`, which writes to the CRM and the spreadsheet
concurrently and decides, per :class:`LeadSavePolicy`, whether the lead
counts as saved.

Policies
--------
* ``any``: saved once at least one sink accepted it (default).  A
  failed secondary write is logged and sent to the owner, never shown to
  the customer.
* ``primary``: saved only when the CRM accepted it.
* ``all``: saved only when both sinks accepted it.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from src.models import CRMResult, LeadRecord, SheetResult
from src.services.crm_client import CRMClient
from src.services.metrics import metrics
from src.services.notifier import TelegramNotifier, format_lead_message
from src.services.sheets_client import SheetsClient
from src.services.side_effects import SideEffects

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str | None) -> str | None:
    """Return an E.164-style phone (``+15551234567``) or ``None``.

    Bare 10-digit numbers are treated as US/Canada.  Anything with fewer
    than 10 or more than 15 digits is rejected.
    """
    if not raw:
        return None
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if raw.strip().startswith("+") and 10 <= len(digits) <= 15:
        return f"+{digits}"
    return None


class LeadSavePolicy(str, Enum):
    ANY = "any"
    PRIMARY = "primary"
    ALL = "all"

    @classmethod
    def parse(cls, value: str | None) -> LeadSavePolicy:
        try:
            return cls((value or cls.ANY.value).lower())
        except ValueError:
            logger.warning("Unknown LEAD_SAVE_POLICY %r, using 'any'", value)
            return cls.ANY

    def accepts(self, crm: CRMResult, sheet: SheetResult) -> bool:
        if self is LeadSavePolicy.ALL:
            return crm.success and sheet.success
        if self is LeadSavePolicy.PRIMARY:
            return crm.success
        return crm.success or sheet.success


@dataclass
class LeadSaveOutcome:
    lead: LeadRecord
    crm: CRMResult
    sheet: SheetResult
    accepted: bool

    @property
    def contact_id(self) -> str | None:
        return self.crm.contact_id

    @property
    def failures(self) -> list[str]:
        failed = []
        if not self.crm.success:
            failed.append(f"CRM: {self.crm.error}")
        if not self.sheet.success:
            failed.append(f"Sheet: {self.sheet.error}")
        return failed


class LeadRecorder:
    def __init__(
        self,
        crm: CRMClient,
        sheets: SheetsClient,
        notifier: TelegramNotifier,
        side_effects: SideEffects,
        policy: LeadSavePolicy = LeadSavePolicy.ANY,
    ):
        self.crm = crm
        self.sheets = sheets
        self.notifier = notifier
        self.side_effects = side_effects
        self.policy = policy

    async def record(self, lead: LeadRecord) -> LeadSaveOutcome:
        """Write *lead* to the CRM and the sheet concurrently."""
        if lead.timestamp is None:
            lead = lead.model_copy(update={"timestamp": datetime.now(UTC).isoformat()})

        crm_raw, sheet_raw = await asyncio.gather(
            self.crm.upsert_contact(lead),
            self.sheets.append_lead(lead),
            return_exceptions=True,
        )
        crm_result = _as_result(crm_raw, CRMResult, "CRM")
        sheet_result = _as_result(sheet_raw, SheetResult, "Sheet")

        outcome = LeadSaveOutcome(
            lead=lead,
            crm=crm_result,
            sheet=sheet_result,
            accepted=self.policy.accepts(crm_result, sheet_result),
        )

        metrics.record_lead(lead.source, _outcome_label(outcome))
        if outcome.failures:
            logger.warning(
                "[%s] Lead connector failure (policy=%s, accepted=%s): %s",
                lead.correlation_id, self.policy.value, outcome.accepted, "; ".join(outcome.failures),
            )
            headline = "Lead NOT saved" if not outcome.accepted else "Lead partially saved"
            text = format_lead_message(lead, headline=headline) + "\n⚠️ " + "\n⚠️ ".join(outcome.failures)
        else:
            logger.info("[%s] Lead saved to CRM and sheet", lead.correlation_id)
            text = format_lead_message(lead)
        self.side_effects.fire(self.notifier.send_text(text), "notify-lead")
        return outcome


def _outcome_label(outcome: LeadSaveOutcome) -> str:
    if not outcome.accepted:
        return "rejected"
    return "partial" if outcome.failures else "saved"


def _as_result(raw: Any, model: type, label: str):
    if isinstance(raw, BaseException):
        logger.error("%s connector raised %s: %s", label, type(raw).__name__, raw)
        return model(success=False, error=f"{type(raw).__name__}: {raw}")
    return raw


# ── Webhook intake ───────────────────────────────────────────────────

_NESTED_KEYS = ("contact", "customer", "lead", "data", "fields")

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "full_name", "fullname", "contact_name", "your_name"),
    "first_name": ("first_name", "firstname"),
    "last_name": ("last_name", "lastname"),
    "phone": ("phone", "phone_number", "phonenumber", "mobile", "tel", "telephone"),
    "email": ("email", "e_mail", "email_address"),
    "service": ("service", "service_type", "services", "category", "job_type"),
    "address": ("address", "address1", "street_address", "full_address"),
    "zip_code": ("zip", "zip_code", "zipcode", "postal_code", "postalcode"),
    "preferred_date": ("date", "preferred_date"),
    "preferred_time": ("time", "preferred_time"),
    "notes": ("message", "notes", "comments", "comment", "description", "details"),
    "source": ("source", "utm_source", "lead_source"),
}


def _flatten(payload: dict[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key in _NESTED_KEYS:
        nested = payload.get(key)
        if isinstance(nested, dict):
            flat.update({_norm_key(k): v for k, v in nested.items() if not _is_blank(v)})
    # Non-empty top-level keys win over nested ones
    flat.update({
        _norm_key(k): v for k, v in payload.items() if not isinstance(v, dict) and not _is_blank(v)
    })
    return flat


def _is_blank(value: Any) -> bool:
    if isinstance(value, str):
        return not value.strip()
    return value is None or value == []


def _norm_key(key: str) -> str:
    return re.sub(r"[\s\-]+", "_", str(key).strip().lower())


def _pick(flat: dict[str, Any], field: str) -> str | None:
    for alias in _FIELD_ALIASES[field]:
        value = flat.get(alias)
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value if v)
        if value not in (None, ""):
            return str(value).strip() or None
    return None


def lead_from_intake(payload: dict[str, Any], *, correlation_id: str | None = None) -> LeadRecord | None:
    """Normalise a provider form payload; ``None`` when no usable phone."""
    flat = _flatten(payload)
    phone = normalize_phone(_pick(flat, "phone"))
    if phone is None:
        return None

    name = _pick(flat, "name") or " ".join(
        p for p in (_pick(flat, "first_name"), _pick(flat, "last_name")) if p
    )
    source = _pick(flat, "source") or "webhook"
    return LeadRecord(
        name=name or "Website visitor",
        phone=phone,
        email=_pick(flat, "email"),
        service=_pick(flat, "service"),
        address=_pick(flat, "address"),
        zip_code=_pick(flat, "zip_code"),
        preferred_date=_pick(flat, "preferred_date"),
        preferred_time=_pick(flat, "preferred_time"),
        notes=_pick(flat, "notes"),
        source=source,
        correlation_id=correlation_id,
        tags=["webhook-lead", f"source-{_norm_key(source)}"],
    )
