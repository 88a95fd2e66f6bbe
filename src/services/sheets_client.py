"""Google Sheets connector: appends one row per lead.

Row layout (``GOOGLE_SHEET_RANGE``, default ``Sheet1!A:K``):

    A Timestamp | B Created at (local) | C Source | D Name | E Phone |
    F Email | G Address | H Service | I Notes | J Preferred time |
    K Correlation id
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from src import config
from src.models import LeadRecord, SheetResult
from src.services.google_auth import GoogleAuthError, ServiceAccountTokenProvider, parse_service_account
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
REQUEST_TIMEOUT_SECONDS = 15.0


def format_readable_date(iso_timestamp: str, timezone: str = "America/New_York") -> str:
    """'2026-02-25T16:05:00+00:00' → 'Feb 25, 2026, 11:05 AM'."""
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Failed to format date %r", iso_timestamp)
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    local = dt.astimezone(ZoneInfo(timezone))
    return local.strftime("%b %d, %Y, %I:%M %p").replace(" 0", " ")


def lead_to_row(lead: LeadRecord, timezone: str = "America/New_York") -> list[str]:
    timestamp = lead.timestamp or datetime.now(UTC).isoformat()
    address = " ".join(p for p in (lead.address, lead.zip_code) if p)
    preferred = " ".join(p for p in (lead.preferred_date, lead.preferred_time) if p)
    return [
        timestamp,
        format_readable_date(timestamp, timezone),
        lead.source or "Unknown",
        lead.name or "",
        lead.phone or "",
        lead.email or "",
        address,
        lead.service or "",
        lead.notes or "",
        preferred,
        lead.correlation_id or "",
    ]


class SheetsClient:
    def __init__(
        self,
        sheet_id: str | None = None,
        credentials_json: str | None = None,
        sheet_range: str | None = None,
        *,
        timezone: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._sheet_id = sheet_id or config.GOOGLE_SHEET_ID
        self._range = sheet_range or config.GOOGLE_SHEET_RANGE
        self._timezone = timezone or config.CALENDAR_TIMEZONE
        self._client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS, transport=transport)
        self._auth: ServiceAccountTokenProvider | None = None
        self._config_error: str | None = None
        try:
            creds = parse_service_account(credentials_json or config.GOOGLE_SERVICE_ACCOUNT_CREDENTIALS)
            self._auth = ServiceAccountTokenProvider(creds, http=self._client)
        except GoogleAuthError as exc:
            self._config_error = str(exc)
            logger.warning("Google Sheets disabled: %s", exc)

    @property
    def is_configured(self) -> bool:
        return bool(self._sheet_id and self._auth)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def append_lead(self, lead: LeadRecord) -> SheetResult:
        if self._auth is None:
            return SheetResult(success=False, error=f"Google Sheets configuration incomplete: {self._config_error}")
        if not self._sheet_id:
            return SheetResult(success=False, error="Google Sheets configuration error: SHEET_ID missing")

        row = lead_to_row(lead, self._timezone)
        url = f"{SHEETS_API}/{self._sheet_id}/values/{quote(self._range, safe='')}:append"
        try:
            token = await self._auth.get_token()
            async with metrics.track("sheets", "values.append") as call:
                response = await self._client.post(
                    url,
                    params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
                    headers={"Authorization": f"Bearer {token}"},
                    json={"values": [row]},
                )
                call.check(response.status_code)
        except GoogleAuthError as exc:
            logger.error("Google Sheets auth failed: %s", exc)
            return SheetResult(success=False, error=str(exc))
        except httpx.HTTPError as exc:
            logger.error("Google Sheets request failed: %s", exc)
            return SheetResult(success=False, error=str(exc) or type(exc).__name__)

        if response.status_code >= 400:
            detail = _google_error(response)
            logger.error("Google Sheets append rejected %s: %s", response.status_code, detail)
            return SheetResult(success=False, error=detail)

        logger.info("Lead row appended to sheet (%s)", lead.correlation_id or lead.name)
        return SheetResult(success=True)


def _google_error(response: httpx.Response) -> str:
    try:
        body: Any = response.json()
    except ValueError:
        return f"Google Sheets API {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return f"Google Sheets API {response.status_code}: {error['message']}"
    return f"Google Sheets API {response.status_code}"
