"""Tests for lead normalisation, the save policy and the CRM + sheet fan-out."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.models import CRMResult, LeadRecord, SheetResult
from src.services.leads import LeadRecorder, LeadSavePolicy, lead_from_intake, normalize_phone
from src.services.side_effects import SideEffects

# ── Phone numbers ────────────────────────────────────────────────────


class TestNormalizePhone:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("5551234567", "+15551234567"),
            ("(555) 123-4567", "+15551234567"),
            ("1-555-123-4567", "+15551234567"),
            ("+44 20 7946 0958", "+442079460958"),
        ],
    )
    def test_valid_numbers(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "12345", "call me", "25551234567"])
    def test_invalid_numbers(self, raw):
        assert normalize_phone(raw) is None


# ── Policy ───────────────────────────────────────────────────────────

OK_CRM = CRMResult(success=True, contact_id="c_1")
BAD_CRM = CRMResult(success=False, error="CRM rejected: 500")
OK_SHEET = SheetResult(success=True)
BAD_SHEET = SheetResult(success=False, error="Google Sheets API 403")


class TestLeadSavePolicy:
    def test_parse_defaults_to_any(self):
        assert LeadSavePolicy.parse(None) is LeadSavePolicy.ANY
        assert LeadSavePolicy.parse("bogus") is LeadSavePolicy.ANY
        assert LeadSavePolicy.parse("ALL") is LeadSavePolicy.ALL

    @pytest.mark.parametrize(
        ("policy", "crm", "sheet", "accepted"),
        [
            (LeadSavePolicy.ANY, OK_CRM, BAD_SHEET, True),
            (LeadSavePolicy.ANY, BAD_CRM, OK_SHEET, True),
            (LeadSavePolicy.ANY, BAD_CRM, BAD_SHEET, False),
            (LeadSavePolicy.PRIMARY, BAD_CRM, OK_SHEET, False),
            (LeadSavePolicy.PRIMARY, OK_CRM, BAD_SHEET, True),
            (LeadSavePolicy.ALL, OK_CRM, BAD_SHEET, False),
            (LeadSavePolicy.ALL, OK_CRM, OK_SHEET, True),
        ],
    )
    def test_accepts(self, policy, crm, sheet, accepted):
        assert policy.accepts(crm, sheet) is accepted


# ── Recorder ─────────────────────────────────────────────────────────


def _recorder(crm_result, sheet_result, policy=LeadSavePolicy.ANY):
    crm = MagicMock()
    if isinstance(crm_result, Exception):
        crm.upsert_contact = AsyncMock(side_effect=crm_result)
    else:
        crm.upsert_contact = AsyncMock(return_value=crm_result)
    sheets = MagicMock()
    sheets.append_lead = AsyncMock(return_value=sheet_result)
    notifier = MagicMock()
    notifier.send_text = AsyncMock(return_value=True)
    side_effects = SideEffects()
    return LeadRecorder(crm, sheets, notifier, side_effects, policy=policy), notifier, side_effects


@pytest.fixture
def lead():
    return LeadRecord(name="Ann", phone="+15551234567", service="Faucet repair", correlation_id="req-1")


class TestLeadRecorder:
    async def test_both_sinks_ok(self, lead):
        recorder, notifier, side_effects = _recorder(OK_CRM, OK_SHEET)
        outcome = await recorder.record(lead)
        await side_effects.drain()

        assert outcome.accepted is True
        assert outcome.contact_id == "c_1"
        assert outcome.failures == []
        assert outcome.lead.timestamp is not None
        text = notifier.send_text.await_args.args[0]
        assert "New lead" in text

    async def test_crm_ok_sheet_failed_is_saved_and_notified(self, lead):
        recorder, notifier, side_effects = _recorder(OK_CRM, BAD_SHEET)
        outcome = await recorder.record(lead)
        await side_effects.drain()

        assert outcome.accepted is True
        assert outcome.failures == ["Sheet: Google Sheets API 403"]
        text = notifier.send_text.await_args.args[0]
        assert "Lead partially saved" in text
        assert "Google Sheets API 403" in text

    async def test_both_failed_is_not_saved(self, lead):
        recorder, notifier, side_effects = _recorder(BAD_CRM, BAD_SHEET)
        outcome = await recorder.record(lead)
        await side_effects.drain()

        assert outcome.accepted is False
        assert "Lead NOT saved" in notifier.send_text.await_args.args[0]

    async def test_outcome_is_counted(self, lead):
        recorder, _, side_effects = _recorder(OK_CRM, BAD_SHEET)
        with patch("src.services.leads.metrics") as mock_metrics:
            await recorder.record(lead)
        await side_effects.drain()
        mock_metrics.record_lead.assert_called_once_with("chatbot", "partial")

    async def test_raising_connector_counts_as_failure(self, lead):
        recorder, _, side_effects = _recorder(RuntimeError("boom"), OK_SHEET)
        outcome = await recorder.record(lead)
        await side_effects.drain()

        assert outcome.accepted is True
        assert outcome.crm.success is False
        assert "RuntimeError" in outcome.crm.error

    async def test_writes_run_concurrently(self, lead):
        order: list[str] = []

        async def _crm(_lead):
            order.append("crm-start")
            await asyncio.sleep(0)
            order.append("crm-end")
            return OK_CRM

        async def _sheet(_lead):
            order.append("sheet-start")
            await asyncio.sleep(0)
            order.append("sheet-end")
            return OK_SHEET

        recorder, _, side_effects = _recorder(OK_CRM, OK_SHEET)
        recorder.crm.upsert_contact = _crm
        recorder.sheets.append_lead = _sheet
        await recorder.record(lead)
        await side_effects.drain()

        assert order.index("sheet-start") < order.index("crm-end")


# ── Webhook intake ───────────────────────────────────────────────────


class TestLeadFromIntake:
    def test_flat_payload(self):
        lead = lead_from_intake(
            {"Full Name": "Bob", "Phone Number": "(775) 555-0100", "Email": "bob@example.com",
             "Message": "Fence repair", "utm_source": "Thumbtack"},
            correlation_id="req-9",
        )
        assert lead.name == "Bob"
        assert lead.phone == "+17755550100"
        assert lead.notes == "Fence repair"
        assert lead.source == "Thumbtack"
        assert lead.tags == ["webhook-lead", "source-thumbtack"]
        assert lead.correlation_id == "req-9"

    def test_nested_payload_and_split_name(self):
        lead = lead_from_intake(
            {"contact": {"first_name": "Cy", "last_name": "Doe", "phone": "7755550101"}},
        )
        assert lead.name == "Cy Doe"
        assert lead.phone == "+17755550101"
        assert lead.source == "webhook"

    def test_top_level_wins_over_nested(self):
        lead = lead_from_intake({"phone": "7755550102", "data": {"phone": "7755550199"}})
        assert lead.phone == "+17755550102"

    def test_empty_top_level_phone_does_not_hide_nested_one(self):
        lead = lead_from_intake({"phone": "", "contact": {"phone": "7755550100", "name": "Bo"}})
        assert lead is not None
        assert lead.phone == "+17755550100"
        assert lead.name == "Bo"

    def test_null_top_level_fields_are_skipped(self):
        lead = lead_from_intake({"phone": None, "email": "  ", "lead": {"phone": "7755550104", "email": "x@y.com"}})
        assert lead.phone == "+17755550104"
        assert lead.email == "x@y.com"

    def test_no_phone_returns_none(self):
        assert lead_from_intake({"name": "Dee", "email": "dee@example.com"}) is None

    def test_missing_name_gets_placeholder(self):
        assert lead_from_intake({"phone": "7755550103"}).name == "Website visitor"
