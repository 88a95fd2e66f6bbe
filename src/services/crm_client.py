"""Async client for the GoHighLevel ("ProsBuddy") CRM.

Every public method returns a result object (or ``None`` / ``False``)
instead of raising: CRM failures are side-effect failures and must never
break a conversation.  Nothing is retried automatically; each call is
attempted once.

API docs: https://highlevel.stoplight.io/
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src import config
from src.models import CRMResult, LeadRecord, UploadResult
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

CONTACTS_API_VERSION = "2021-07-28"
REQUEST_TIMEOUT_SECONDS = 15.0


class GHLResponse:
    """Status + parsed body of one GoHighLevel call."""

    __slots__ = ("status_code", "data", "text")

    def __init__(self, status_code: int, data: Any, text: str):
        self.status_code = status_code
        self.data = data
        self.text = text

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class GHLClient:
    """Shared plumbing for the CRM and calendar connectors."""

    api_version = CONTACTS_API_VERSION
    metrics_service = "crm"

    def __init__(
        self,
        token: str | None = None,
        location_id: str | None = None,
        base_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = token or config.PROSBUDDY_API_TOKEN
        self.location_id = location_id or config.PROSBUDDY_LOCATION_ID
        self._client = httpx.AsyncClient(
            base_url=base_url or config.PROSBUDDY_API_URL,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Version": self.api_version,
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._token and self.location_id)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> GHLResponse:
        """Send one request.  Transport errors propagate as ``httpx.HTTPError``."""
        async with metrics.track(self.metrics_service, f"{method} {path.split('?')[0]}") as call:
            response = await self._client.request(method, path, **kwargs)
            call.check(response.status_code)
        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        return GHLResponse(response.status_code, data, response.text)


class CRMClient(GHLClient):
    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        # First pipeline + stage, fetched lazily once per client
        self._pipeline_info: dict[str, str] | None = None

    # ── Contacts ─────────────────────────────────────────────────────

    async def upsert_contact(self, lead: LeadRecord) -> CRMResult:
        """Create or update the contact for *lead* (dedupes on phone/email)."""
        if not self.is_configured:
            logger.error("CRM Error: PROSBUDDY_API_TOKEN or PROSBUDDY_LOCATION_ID missing")
            return CRMResult(success=False, error="CRM Config Missing")

        # /contacts/upsert rejects a 'notes' field; notes go in a separate call
        payload: dict[str, Any] = {
            "firstName": lead.name,
            "phone": lead.phone,
            "email": lead.email,
            "address1": lead.address,
            "postalCode": lead.zip_code,
            "locationId": self.location_id,
            "tags": lead.tags,
            "source": f"Service: {lead.service or 'Not specified'}",
        }
        payload = {k: v for k, v in payload.items() if v is not None}

        try:
            response = await self._request("POST", "/contacts/upsert", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Network error sending lead to CRM: %s", exc)
            return CRMResult(success=False, error=str(exc) or type(exc).__name__)

        if not response.ok:
            logger.error("CRM API Error %s: %s", response.status_code, response.text)
            return CRMResult(success=False, error=f"CRM rejected: {response.status_code}")

        data = response.data if isinstance(response.data, dict) else {}
        contact_id = (data.get("contact") or {}).get("id") or data.get("id")
        is_new = data.get("new") is True
        logger.info("CRM upsert OK contact=%s new=%s name=%s", contact_id, is_new, lead.name)
        return CRMResult(success=True, contact_id=contact_id, is_new=is_new)

    async def add_note(self, contact_id: str, body: str) -> bool:
        """Attach a note (e.g. the chat transcript) to a contact."""
        if not self.is_configured:
            return False
        try:
            response = await self._request(
                "POST", f"/contacts/{contact_id}/notes", json={"body": body},
            )
        except httpx.HTTPError as exc:
            logger.warning("CRM note failed for %s: %s", contact_id, exc)
            return False
        if not response.ok:
            logger.warning("CRM note rejected for %s: %s", contact_id, response.status_code)
        return response.ok

    # ── Pipelines / opportunities ────────────────────────────────────

    async def get_pipeline_info(self) -> dict[str, str] | None:
        """Return the first pipeline and its first stage (cached)."""
        if self._pipeline_info is not None:
            return self._pipeline_info
        if not self.is_configured:
            return None

        try:
            response = await self._request(
                "GET", "/opportunities/pipelines", params={"locationId": self.location_id},
            )
        except httpx.HTTPError as exc:
            logger.error("Error fetching pipeline info: %s", exc)
            return None
        if not response.ok:
            logger.error("Failed to fetch pipelines: %s", response.status_code)
            return None

        pipelines = response.data.get("pipelines") or []
        if not pipelines:
            logger.error("No pipelines found in CRM")
            return None
        pipeline = pipelines[0]
        stages = pipeline.get("stages") or []
        if not stages:
            logger.error("No stages found in pipeline %s", pipeline.get("id"))
            return None

        self._pipeline_info = {
            "pipelineId": pipeline["id"],
            "pipelineStageId": stages[0]["id"],
            "pipelineName": pipeline.get("name", ""),
            "stageName": stages[0].get("name", ""),
        }
        logger.info(
            "Pipeline info loaded: %s / %s",
            self._pipeline_info["pipelineName"], self._pipeline_info["stageName"],
        )
        return self._pipeline_info

    async def create_opportunity(
        self,
        contact_id: str,
        contact_name: str,
        source: str = "Website Quote Form",
    ) -> dict[str, Any] | None:
        pipeline = await self.get_pipeline_info()
        if pipeline is None:
            logger.error("Cannot create opportunity: no pipeline info")
            return None

        name = f"Lead | Website | {contact_name}"
        try:
            response = await self._request(
                "POST", "/opportunities/",
                json={
                    "pipelineId": pipeline["pipelineId"],
                    "pipelineStageId": pipeline["pipelineStageId"],
                    "locationId": self.location_id,
                    "contactId": contact_id,
                    "name": name,
                    "status": "open",
                    "source": source,
                    "monetaryValue": 0,
                },
            )
        except httpx.HTTPError as exc:
            logger.error("Opportunity creation error: %s", exc)
            return None
        if not response.ok:
            logger.error("Opportunity creation failed %s: %s", response.status_code, response.text)
            return None

        opportunity = response.data.get("opportunity")
        logger.info("Opportunity created: %s (%s)", name, pipeline["stageName"])
        return opportunity

    # ── Conversations ────────────────────────────────────────────────

    async def upload_conversation_file(
        self,
        contact_id: str,
        data: bytes,
        file_name: str,
        mime_type: str,
    ) -> UploadResult:
        """Upload one attachment so it can be referenced in a message."""
        if not self.is_configured:
            return UploadResult(error="CRM Config Missing")
        try:
            response = await self._request(
                "POST", "/conversations/messages/upload",
                data={"contactId": contact_id, "locationId": self.location_id},
                files={"fileAttachment": (file_name, data, mime_type)},
            )
        except httpx.HTTPError as exc:
            logger.error("Conversation file upload error %s: %s", file_name, exc)
            return UploadResult(error=str(exc) or type(exc).__name__)

        if not response.ok:
            logger.error("Conversation file upload failed %s: %s", response.status_code, file_name)
            return UploadResult(error=str(response.status_code))

        body = response.data if isinstance(response.data, dict) else {}
        # { uploadedFiles: { "<name>": "<url>" } }, older accounts: urls / url / fileUrl
        files = body.get("uploadedFiles")
        url = next(iter(files.values()), None) if isinstance(files, dict) else None
        url = url or (body.get("urls") or [None])[0] or body.get("url") or body.get("fileUrl")
        logger.info("File uploaded to conversation: %s -> %s", file_name, url)
        return UploadResult(url=url)

    async def send_live_chat_message(
        self,
        contact_id: str,
        text: str,
        attachment_urls: list[str] | None = None,
    ) -> bool:
        """Post a Live_Chat message into the contact's conversation view."""
        if not self.is_configured:
            return False
        payload: dict[str, Any] = {"type": "Live_Chat", "contactId": contact_id, "message": text}
        if attachment_urls:
            payload["attachments"] = attachment_urls
        try:
            response = await self._request("POST", "/conversations/messages", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Live_Chat message error: %s", exc)
            return False
        if not response.ok:
            logger.error("Live_Chat message failed %s: %s", response.status_code, response.text)
            return False
        logger.info(
            "Live_Chat message sent contact=%s attachments=%d",
            contact_id, len(attachment_urls or []),
        )
        return True

    # ── Inbound conversation context ─────────────────────────────────

    async def get_contact(self, contact_id: str) -> dict[str, Any] | None:
        if not self.is_configured:
            return None
        try:
            response = await self._request("GET", f"/contacts/{contact_id}")
        except httpx.HTTPError as exc:
            logger.error("CRM contact lookup failed for %s: %s", contact_id, exc)
            return None
        if not response.ok:
            logger.error("CRM contact lookup rejected for %s: %s", contact_id, response.status_code)
            return None
        data = response.data if isinstance(response.data, dict) else {}
        return data.get("contact") or data

    async def get_recent_messages(self, contact_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Messages of the contact's latest conversation, oldest first."""
        if not self.is_configured:
            return []
        try:
            found = await self._request(
                "GET", "/conversations/search",
                params={"contactId": contact_id, "locationId": self.location_id, "limit": 1},
            )
            conversations = found.data.get("conversations") if found.ok else None
            if not conversations:
                return []
            response = await self._request(
                "GET", f"/conversations/{conversations[0]['id']}/messages", params={"limit": limit},
            )
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch conversation history for %s: %s", contact_id, exc)
            return []
        if not response.ok:
            logger.warning("Conversation history rejected for %s: %s", contact_id, response.status_code)
            return []

        # { messages: [...] } or, on newer accounts, { messages: { messages: [...] } }
        messages = response.data.get("messages") or []
        if isinstance(messages, dict):
            messages = messages.get("messages") or []
        return sorted(messages, key=lambda m: m.get("dateAdded") or "")

    async def get_notes(self, contact_id: str) -> list[str]:
        if not self.is_configured:
            return []
        try:
            response = await self._request("GET", f"/contacts/{contact_id}/notes")
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch notes for %s: %s", contact_id, exc)
            return []
        if not response.ok:
            return []
        return [n["body"] for n in response.data.get("notes") or [] if n.get("body")]

    async def add_tags(self, contact_id: str, tags: list[str]) -> bool:
        if not self.is_configured:
            return False
        try:
            response = await self._request("POST", f"/contacts/{contact_id}/tags", json={"tags": tags})
        except httpx.HTTPError as exc:
            logger.warning("CRM tag failed for %s: %s", contact_id, exc)
            return False
        if not response.ok:
            logger.warning("CRM tag rejected for %s: %s", contact_id, response.status_code)
        return response.ok
