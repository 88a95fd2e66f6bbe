"""Tests for the GoHighLevel CRM and calendar connectors."""

from __future__ import annotations

import json
from zoneinfo import ZoneInfo

import httpx
import pytest

from src import config
from src.models import LeadRecord
from src.services.calendar_client import CalendarClient, _collect_slots, _format_slot
from src.services.crm_client import CRMClient


def _crm(handler, **kwargs) -> tuple[CRMClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = CRMClient(
        token="pit-test", location_id="loc_1", base_url="https://crm.test",
        transport=httpx.MockTransport(_record), **kwargs,
    )
    return client, seen


def _calendar(handler) -> tuple[CalendarClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = CalendarClient(
        token="pit-test", location_id="loc_1", base_url="https://crm.test",
        calendar_id="cal_1", timezone="America/New_York", duration_minutes=90,
        transport=httpx.MockTransport(_record),
    )
    return client, seen


@pytest.fixture
def lead():
    return LeadRecord(name="Ann", phone="+15551234567", service="Faucet repair", zip_code="89501")


# ── Contacts ─────────────────────────────────────────────────────────


class TestUpsertContact:
    async def test_success_returns_contact_id(self, lead):
        client, seen = _crm(lambda r: httpx.Response(200, json={"contact": {"id": "c_1"}, "new": True}))
        result = await client.upsert_contact(lead)
        assert result.success is True
        assert result.contact_id == "c_1"
        assert result.is_new is True

        body = json.loads(seen[0].content)
        assert body["phone"] == "+15551234567"
        assert body["postalCode"] == "89501"
        assert body["locationId"] == "loc_1"
        assert "notes" not in body
        assert seen[0].headers["Version"] == "2021-07-28"

    async def test_rejection_is_reported_not_raised(self, lead):
        client, _ = _crm(lambda r: httpx.Response(422, json={"message": "bad phone"}))
        result = await client.upsert_contact(lead)
        assert result.success is False
        assert result.error == "CRM rejected: 422"

    async def test_network_error_is_reported(self, lead):
        def _boom(request):
            raise httpx.ConnectTimeout("slow", request=request)

        client, _ = _crm(_boom)
        result = await client.upsert_contact(lead)
        assert result.success is False
        assert result.error

    async def test_missing_config(self, lead, monkeypatch):
        monkeypatch.setattr(config, "PROSBUDDY_API_TOKEN", None)
        client = CRMClient(token=None, location_id="loc_1")
        result = await client.upsert_contact(lead)
        assert result.to_payload() == {"success": False, "error": "CRM Config Missing"}


class TestPipelineAndConversations:
    async def test_pipeline_info_is_cached(self):
        body = {"pipelines": [{"id": "p_1", "name": "Sales", "stages": [{"id": "s_1", "name": "New"}]}]}
        client, seen = _crm(lambda r: httpx.Response(200, json=body))
        first = await client.get_pipeline_info()
        second = await client.get_pipeline_info()
        assert first == second
        assert first["pipelineStageId"] == "s_1"
        assert len(seen) == 1

    async def test_create_opportunity_uses_first_stage(self):
        def _handler(request):
            if request.url.path.endswith("/pipelines"):
                return httpx.Response(
                    200, json={"pipelines": [{"id": "p_1", "stages": [{"id": "s_1"}]}]},
                )
            return httpx.Response(201, json={"opportunity": {"id": "o_1"}})

        client, seen = _crm(_handler)
        opportunity = await client.create_opportunity("c_1", "Ann")
        assert opportunity == {"id": "o_1"}
        body = json.loads(seen[-1].content)
        assert body["pipelineStageId"] == "s_1"
        assert body["name"] == "Lead | Website | Ann"

    async def test_upload_conversation_file_reads_uploaded_files(self):
        client, seen = _crm(
            lambda r: httpx.Response(200, json={"uploadedFiles": {"a.jpg": "https://cdn.test/a.jpg"}}),
        )
        result = await client.upload_conversation_file("c_1", b"img", "a.jpg", "image/jpeg")
        assert result.url == "https://cdn.test/a.jpg"
        assert b'name="fileAttachment"' in seen[0].content

    async def test_upload_conversation_file_legacy_urls(self):
        client, _ = _crm(lambda r: httpx.Response(200, json={"urls": ["https://cdn.test/b.jpg"]}))
        result = await client.upload_conversation_file("c_1", b"img", "b.jpg", "image/jpeg")
        assert result.url == "https://cdn.test/b.jpg"

    async def test_live_chat_message_includes_attachments(self):
        client, seen = _crm(lambda r: httpx.Response(200, json={"messageId": "m_1"}))
        assert await client.send_live_chat_message("c_1", "hello", ["https://cdn.test/a.jpg"]) is True
        body = json.loads(seen[0].content)
        assert body["type"] == "Live_Chat"
        assert body["attachments"] == ["https://cdn.test/a.jpg"]

    async def test_add_note_failure_returns_false(self):
        client, _ = _crm(lambda r: httpx.Response(500, text="oops"))
        assert await client.add_note("c_1", "transcript") is False


class TestInboundContext:
    async def test_get_contact_unwraps_contact(self):
        client, seen = _crm(lambda r: httpx.Response(200, json={"contact": {"id": "c_1", "firstName": "Ann"}}))
        assert await client.get_contact("c_1") == {"id": "c_1", "firstName": "Ann"}
        assert seen[0].url.path == "/contacts/c_1"

    async def test_get_contact_not_found(self):
        client, _ = _crm(lambda r: httpx.Response(404, json={"message": "not found"}))
        assert await client.get_contact("c_404") is None

    async def test_recent_messages_oldest_first(self):
        def _handler(request):
            if request.url.path == "/conversations/search":
                return httpx.Response(200, json={"conversations": [{"id": "conv_1"}]})
            return httpx.Response(200, json={"messages": {"messages": [
                {"body": "later", "dateAdded": "2026-02-25T12:00:00.000Z"},
                {"body": "earlier", "dateAdded": "2026-02-25T10:00:00.000Z"},
            ]}})

        client, seen = _crm(_handler)
        messages = await client.get_recent_messages("c_1")
        assert [m["body"] for m in messages] == ["earlier", "later"]
        assert seen[0].url.params["contactId"] == "c_1"
        assert seen[1].url.path == "/conversations/conv_1/messages"
        assert seen[1].url.params["limit"] == "20"

    async def test_no_conversation_yet(self):
        client, seen = _crm(lambda r: httpx.Response(200, json={"conversations": []}))
        assert await client.get_recent_messages("c_1") == []
        assert len(seen) == 1

    async def test_notes_bodies(self):
        client, _ = _crm(lambda r: httpx.Response(200, json={"notes": [{"body": "Gate code 42"}, {"body": ""}]}))
        assert await client.get_notes("c_1") == ["Gate code 42"]

    async def test_add_tags(self):
        client, seen = _crm(lambda r: httpx.Response(201, json={"tags": ["AI-Engaged"]}))
        assert await client.add_tags("c_1", ["AI-Engaged"]) is True
        assert seen[0].url.path == "/contacts/c_1/tags"
        assert json.loads(seen[0].content) == {"tags": ["AI-Engaged"]}


# ── Calendar ─────────────────────────────────────────────────────────


class TestCalendarSlots:
    async def test_slots_formatted_in_calendar_timezone(self):
        body = {"2026-02-25": {"slots": ["2026-02-25T11:00:00-05:00", "2026-02-25T14:30:00-05:00"]}}
        client, seen = _calendar(lambda r: httpx.Response(200, json=body))
        result = await client.get_available_slots("2026-02-25")
        assert result.slots == ["11:00 AM", "2:30 PM"]
        assert result.raw == body["2026-02-25"]["slots"]
        assert seen[0].headers["Version"] == "2021-04-15"
        assert seen[0].url.params["timezone"] == "America/New_York"

    async def test_invalid_date_is_an_error_result(self):
        client, seen = _calendar(lambda r: httpx.Response(200, json={}))
        result = await client.get_available_slots("25/02/2026")
        assert result.error
        assert result.slots == []
        assert seen == []

    async def test_upstream_error_is_relayed(self):
        client, _ = _calendar(lambda r: httpx.Response(401, json={"message": "unauthorized"}))
        result = await client.get_available_slots("2026-02-25")
        assert result.to_payload() == {"slots": [], "date": "2026-02-25", "error": "Calendar API: 401"}

    def test_collect_slots_nested_shape(self):
        assert _collect_slots({"slots": {"2026-02-25": ["a", "b"]}}) == ["a", "b"]

    def test_format_slot_passes_through_garbage(self):
        assert _format_slot("not-a-time", ZoneInfo("UTC")) == "not-a-time"


class TestCalendarBooking:
    async def test_booking_uses_ninety_minute_slot(self):
        client, seen = _calendar(lambda r: httpx.Response(201, json={"id": "appt_1"}))
        result = await client.book_appointment(
            contact_id="c_1", start_time="2026-02-25T11:00:00-05:00",
            service="Drywall", address="1 Main St", contact_name="Ann",
        )
        assert result.success is True
        assert result.appointment_id == "appt_1"
        assert result.end_time == "2026-02-25T12:30:00-05:00"

        body = json.loads(seen[0].content)
        assert body["calendarId"] == "cal_1"
        assert body["contactId"] == "c_1"
        assert body["title"] == "Handyman Service for Ann"

    async def test_booking_failure_carries_status(self):
        client, _ = _calendar(lambda r: httpx.Response(400, json={"message": "slot taken"}))
        result = await client.book_appointment(
            contact_id="c_1", start_time="2026-02-25T11:00:00-05:00", service="Drywall",
        )
        assert result.success is False
        assert result.error == "Booking failed: 400 - slot taken"

    async def test_invalid_start_time(self):
        client, seen = _calendar(lambda r: httpx.Response(201, json={}))
        result = await client.book_appointment(contact_id="c_1", start_time="tomorrow", service="x")
        assert result.success is False
        assert seen == []
