"""Owner notifications through a Telegram bot.

Used for new leads, partially saved leads and photos sent in chat.  Every
call goes through :class:`~src.services.side_effects.SideEffects`, so an
exception here is logged and forgotten; methods still return ``False`` on
the expected failure modes so callers that do await them can log it.
"""

from __future__ import annotations

import logging

import httpx

from src import config
from src.models import LeadRecord
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
REQUEST_TIMEOUT_SECONDS = 10.0
MAX_CAPTION_LENGTH = 1024


class TelegramNotifier:
    def __init__(
        self,
        bot_token: str | None = None,
        chat_id: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = bot_token or config.TELEGRAM_BOT_TOKEN
        self._chat_id = chat_id or config.TELEGRAM_CHAT_ID
        self._client = httpx.AsyncClient(
            base_url=f"{TELEGRAM_API}/bot{self._token}",
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._token and self._chat_id)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send_text(self, text: str) -> bool:
        if not self.is_configured:
            logger.debug("Notifier not configured, dropping message")
            return False
        async with metrics.track("telegram", "sendMessage") as call:
            response = await self._client.post(
                "/sendMessage",
                json={"chat_id": self._chat_id, "text": text, "disable_web_page_preview": True},
            )
            call.check(response.status_code)
        if response.status_code >= 400:
            logger.warning("Telegram sendMessage failed: %s %s", response.status_code, response.text)
            return False
        return True

    async def send_photo(self, data: bytes, *, caption: str = "", file_name: str = "photo.jpg") -> bool:
        if not self.is_configured:
            return False
        async with metrics.track("telegram", "sendPhoto") as call:
            response = await self._client.post(
                "/sendPhoto",
                data={"chat_id": self._chat_id, "caption": caption[:MAX_CAPTION_LENGTH]},
                files={"photo": (file_name, data)},
            )
            call.check(response.status_code)
        if response.status_code >= 400:
            logger.warning("Telegram sendPhoto failed: %s %s", response.status_code, response.text)
            return False
        return True


def format_lead_message(lead: LeadRecord, *, headline: str = "New lead") -> str:
    lines = [f"🔔 {headline} ({lead.source})", f"👤 {lead.name}", f"📞 {lead.phone}"]
    if lead.email:
        lines.append(f"✉️ {lead.email}")
    if lead.service:
        lines.append(f"🔧 {lead.service}")
    if lead.address or lead.zip_code:
        lines.append(f"📍 {' '.join(p for p in (lead.address, lead.zip_code) if p)}")
    if lead.preferred_date or lead.preferred_time:
        lines.append(f"📅 {' '.join(p for p in (lead.preferred_date, lead.preferred_time) if p)}")
    if lead.notes:
        lines.append(f"💬 {lead.notes}")
    if lead.correlation_id:
        lines.append(f"#️⃣ {lead.correlation_id}")
    return "\n".join(lines)
