"""Async client for the GoHighLevel calendar (free slots + booking).

Results are relayed to the assistant as-is, including the ``error`` field,
so it can tell "no slots" apart from "calendar unavailable".
"""

from __future__ import annotations

import logging
from datetime import date as date_cls
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from src import config
from src.models import BookingResult, SlotsResult
from src.services.crm_client import GHLClient

logger = logging.getLogger(__name__)

CALENDAR_API_VERSION = "2021-04-15"


def _format_slot(raw: str, tz: ZoneInfo) -> str:
    """'2026-02-25T11:00:00-05:00' → '11:00 AM' in the calendar timezone."""
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return raw
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(tz).strftime("%I:%M %p").lstrip("0")


def _collect_slots(data: dict[str, Any]) -> list[str]:
    """Flatten both free-slots response shapes into one list.

    ``{"slots": {"2026-02-25": ["..."]}}`` or
    ``{"2026-02-25": {"slots": ["..."]}, "traceId": "..."}``
    """
    collected: list[str] = []
    slots = data.get("slots")
    if isinstance(slots, dict):
        for day_slots in slots.values():
            if isinstance(day_slots, list):
                collected.extend(day_slots)
        return collected
    for day_data in data.values():
        if isinstance(day_data, dict) and isinstance(day_data.get("slots"), list):
            collected.extend(day_data["slots"])
    return collected


class CalendarClient(GHLClient):
    api_version = CALENDAR_API_VERSION
    metrics_service = "calendar"

    def __init__(
        self,
        *args: Any,
        calendar_id: str | None = None,
        timezone: str | None = None,
        duration_minutes: int | None = None,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        self.calendar_id = calendar_id or config.GHL_CALENDAR_ID
        self.tz = ZoneInfo(timezone or config.CALENDAR_TIMEZONE)
        self.duration = timedelta(minutes=duration_minutes or config.APPOINTMENT_DURATION_MINUTES)

    @property
    def is_configured(self) -> bool:
        return bool(self._token and self.location_id and self.calendar_id)

    async def get_available_slots(self, date: str, days_ahead: int = 1) -> SlotsResult:
        """Free slots from *date* (YYYY-MM-DD) for *days_ahead* days."""
        if not self._token or not self.calendar_id:
            return SlotsResult(date=date, error="Calendar config missing")
        try:
            start = datetime.combine(date_cls.fromisoformat(date), datetime.min.time(), tzinfo=self.tz)
        except ValueError:
            return SlotsResult(date=date, error=f"Invalid date: {date!r}, expected YYYY-MM-DD")
        end = start + timedelta(days=max(days_ahead, 1))

        try:
            response = await self._request(
                "GET", f"/calendars/{self.calendar_id}/free-slots",
                params={
                    "startDate": str(int(start.timestamp() * 1000)),
                    "endDate": str(int(end.timestamp() * 1000)),
                    "timezone": str(self.tz),
                },
            )
        except httpx.HTTPError as exc:
            logger.error("Calendar free-slots error: %s", exc)
            return SlotsResult(date=date, error=str(exc) or type(exc).__name__)

        if not response.ok:
            logger.error("Calendar free-slots error %s: %s", response.status_code, response.text)
            return SlotsResult(date=date, error=f"Calendar API: {response.status_code}")

        raw = _collect_slots(response.data if isinstance(response.data, dict) else {})
        slots = [_format_slot(s, self.tz) for s in raw]
        logger.info("Available slots date=%s count=%d", date, len(slots))
        return SlotsResult(slots=slots, date=date, raw=raw)

    async def book_appointment(
        self,
        *,
        contact_id: str,
        start_time: str,
        service: str,
        address: str | None = None,
        contact_name: str | None = None,
    ) -> BookingResult:
        if not self.is_configured:
            return BookingResult(success=False, error="API config missing")
        try:
            start = datetime.fromisoformat(start_time.replace("Z", "+00:00"))
        except ValueError:
            return BookingResult(success=False, error=f"Invalid startTime: {start_time!r}")
        if start.tzinfo is None:
            start = start.replace(tzinfo=self.tz)
        end = start + self.duration

        payload = {
            "calendarId": self.calendar_id,
            "locationId": self.location_id,
            "contactId": contact_id,
            "startTime": start.isoformat(),
            "endTime": end.isoformat(),
            "title": f"Handyman Service for {contact_name or 'Customer'}",
            "description": "\n".join([
                f"🔧 Service: {service}",
                f"📍 Address: {address or 'TBD'}",
                "📋 Booked via Website Chatbot",
            ]),
            "address": address or "",
            "appointmentStatus": "new",
            "toNotify": True,
        }
        try:
            response = await self._request("POST", "/calendars/events/appointments", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Calendar booking error: %s", exc)
            return BookingResult(success=False, error=str(exc) or type(exc).__name__)

        data = response.data if isinstance(response.data, dict) else {}
        if not response.ok:
            logger.error("Calendar booking error %s: %s", response.status_code, response.text)
            detail = data.get("message") or response.text
            return BookingResult(success=False, error=f"Booking failed: {response.status_code} - {detail}")

        appointment_id = data.get("id") or (data.get("appointment") or {}).get("id") or data.get("eventId")
        logger.info(
            "Appointment booked id=%s contact=%s start=%s service=%s",
            appointment_id, contact_id, start.isoformat(), service,
        )
        return BookingResult(
            success=True,
            appointment_id=appointment_id,
            start_time=start.isoformat(),
            end_time=end.isoformat(),
        )
