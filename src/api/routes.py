"""FastAPI route definitions for the Repair ASAP lead bot API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from src import config
from src.agent import LeadAgent, TurnContent, TurnContext
from src.api.schemas import (
    MAX_QUOTE_PHOTOS,
    HealthResponse,
    InboundPreviewRequest,
    PhotoPayload,
    QuoteRequest,
    QuoteResponse,
    SheetJobRequest,
    ThreadResponse,
    TurnRequest,
    TurnResponse,
    is_valid_email,
)
from src.models import InboundMessage, LeadRecord
from src.orchestrator import SUPPORT_PHONE, NotConfigured
from src.services.cache import CachedPhoto
from src.services.crm_client import CRMClient
from src.services.leads import lead_from_intake, normalize_phone

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_agent(request: Request) -> LeadAgent:
    """Retrieve the wired services from app state (set by the lifespan)."""
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return agent


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "-")


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check; 503 while the assistant credentials are missing."""
    agent = _get_agent(request)
    connectors = {
        "assistant": agent.assistant.is_configured,
        "crm": agent.crm.is_configured,
        "calendar": agent.calendar.is_configured,
        "sheets": agent.sheets.is_configured,
        "notifier": agent.notifier.is_configured,
    }
    missing = config.missing_settings(*config.ASSISTANT_SETTINGS)
    if missing:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "missing": missing, "connectors": connectors},
        )
    return HealthResponse(connectors=connectors)


# ── Chat ─────────────────────────────────────────────────────────────


@router.post("/threads", response_model=ThreadResponse)
@router.post("/thread", response_model=ThreadResponse, include_in_schema=False)
async def create_thread(http_request: Request):
    """Start a conversation; the widget keeps the id for later turns."""
    agent = _get_agent(http_request)
    thread_id = await agent.turns.create_thread()
    logger.info("[%s] Thread created: %s", _request_id(http_request), thread_id)
    return ThreadResponse(thread_id=thread_id)


def _cached_photo(photo: PhotoPayload) -> CachedPhoto:
    if photo.too_large:
        raise HTTPException(status_code=413, detail="Photo is too large (max ~5 MB).")
    try:
        data = photo.decode()
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return CachedPhoto(data=data, mime_type=photo.type, file_name=photo.name)


@router.post("/turn", response_model=TurnResponse, response_model_exclude_none=True)
@router.post("/message", response_model=TurnResponse, response_model_exclude_none=True, include_in_schema=False)
async def turn(request: TurnRequest, http_request: Request):
    """Send one message (and/or photo) and wait for the assistant's reply.

    Failures surface as :class:`~src.orchestrator.TurnError` and are
    rendered by the app-level exception handler.
    """
    agent = _get_agent(http_request)
    content = TurnContent(
        text=request.message.strip() if request.message else None,
        photo=_cached_photo(request.photo) if request.photo else None,
    )
    context = TurnContext(
        request_id=_request_id(http_request),
        channel=request.context.channel,
        page=request.context.page,
    )
    thread_id, result = await agent.turns.handle_turn(request.thread_id, content, context)
    return TurnResponse(thread_id=thread_id, message=result.message, action=result.action)


# ── Calendar ─────────────────────────────────────────────────────────


@router.get("/availability")
async def availability(
    http_request: Request,
    date: str = Query(..., pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD"),
    days: int = Query(1, ge=1, le=14),
):
    agent = _get_agent(http_request)
    if not agent.calendar.is_configured:
        raise NotConfigured(
            "Calendar settings missing: " + ", ".join(config.missing_settings(*config.CALENDAR_SETTINGS))
        )
    result = await agent.calendar.get_available_slots(date, days)
    return result.to_payload()


# ── Lead intake ──────────────────────────────────────────────────────


async def _read_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        form = await request.form()
        return dict(form)


@router.post("/webhook/lead-intake")
async def lead_intake(http_request: Request, background_tasks: BackgroundTasks):
    """Accept a third-party form submission.  Always answers 200."""
    agent = _get_agent(http_request)
    rid = _request_id(http_request)

    payload = await _read_body(http_request)
    lead = lead_from_intake(payload, correlation_id=rid) if isinstance(payload, dict) else None
    if lead is None:
        logger.info("[%s] Lead intake ignored: no valid phone", rid)
        return {"status": "ignored", "reason": "no valid phone number"}

    background_tasks.add_task(agent.side_effects.run, agent.leads.record(lead), "webhook-lead")
    logger.info("[%s] Lead intake accepted from %s", rid, lead.source)
    return {"status": "accepted"}


# ── Inbound CRM messages ─────────────────────────────────────────────


def _require_inbound(http_request: Request) -> LeadAgent:
    agent = _get_agent(http_request)
    token = config.INBOUND_WEBHOOK_TOKEN
    if token and http_request.headers.get("X-Webhook-Token") != token:
        raise HTTPException(status_code=401, detail="Invalid webhook token")
    if not agent.crm.is_configured:
        raise NotConfigured("CRM settings missing: " + ", ".join(config.missing_settings(*config.CRM_SETTINGS)))
    return agent


@router.post("/webhook/crm-inbound")
async def crm_inbound(message: InboundMessage, http_request: Request):
    """Inbound CRM conversation message.

    Answers ``{success, message, actions, timing}``; the CRM workflow sends
    ``message`` to the customer.  Ignored events answer ``{skipped, reason}``.
    """
    agent = _require_inbound(http_request)
    reply = await agent.inbound.handle(message, _request_id(http_request))
    return reply.to_payload()


@router.post("/inbound/test")
async def inbound_preview(request: InboundPreviewRequest, http_request: Request):
    """Preview the reply to an inbound message without writing to the CRM."""
    agent = _get_agent(http_request)
    if request.contact_id:
        agent = _require_inbound(http_request)
    return await agent.inbound.preview(
        request.message,
        channel=request.channel,
        contact_id=request.contact_id,
        customer_name=request.customer_name,
        request_id=_request_id(http_request),
    )


# ── Quote form ───────────────────────────────────────────────────────


async def _upload_quote_photos(crm: CRMClient, contact_id: str, photos: list[PhotoPayload]) -> list[str]:
    uploads = []
    for i, photo in enumerate(photos[:MAX_QUOTE_PHOTOS]):
        if photo.too_large:
            logger.warning("Skipping oversized quote photo %s", photo.name)
            continue
        try:
            data = photo.decode()
        except ValueError:
            logger.warning("Skipping undecodable quote photo %s", photo.name)
            continue
        uploads.append(
            crm.upload_conversation_file(contact_id, data, photo.name or f"photo-{i + 1}.jpg", photo.type)
        )
    results = await asyncio.gather(*uploads)
    return [r.url for r in results if r.url]


@router.post("/quote", response_model=QuoteResponse)
async def quote(request: QuoteRequest, http_request: Request):
    """Quote form: CRM contact, photos into its conversation, an opportunity."""
    agent = _get_agent(http_request)
    rid = _request_id(http_request)

    if not request.name.strip() or not request.phone.strip():
        raise HTTPException(status_code=400, detail="Name and phone are required")
    if request.email and not is_valid_email(request.email):
        raise HTTPException(status_code=400, detail="Invalid email format")
    if not agent.crm.is_configured:
        raise NotConfigured("CRM settings missing: " + ", ".join(config.missing_settings(*config.CRM_SETTINGS)))

    notes = ["📋 Source: Website Quote Form"]
    if request.service:
        notes.append(f"🔧 Service: {request.service}")
    if request.date:
        notes.append(f"📅 Preferred Date: {request.date}")
    if request.message:
        notes.append(f"💬 Message: {request.message}")

    lead = LeadRecord(
        name=request.name.strip(),
        phone=normalize_phone(request.phone) or request.phone.strip(),
        email=request.email or None,
        service=request.service or "Not specified",
        preferred_date=request.date,
        notes="\n\n".join(notes),
        source="quote-form",
        correlation_id=rid,
        tags=["quote-form", "website-lead"],
    )
    crm_result = await agent.crm.upsert_contact(lead)
    if not crm_result.success:
        logger.error("[%s] Quote CRM submission failed: %s", rid, crm_result.error)
        raise HTTPException(
            status_code=500,
            detail=f"Failed to submit quote. Please try again or call us at {SUPPORT_PHONE}.",
        )

    contact_id = crm_result.contact_id
    photo_urls: list[str] = []
    if contact_id:
        photo_urls = await _upload_quote_photos(agent.crm, contact_id, request.photos)

        lines = ["📋 New Quote Request from Website", f"👤 {lead.name}"]
        if request.service:
            lines.append(f"🔧 Service: {request.service}")
        if request.date:
            lines.append(f"📅 Preferred Date: {request.date}")
        if request.message:
            lines.append(f'💬 "{request.message}"')
        if photo_urls:
            lines.append(f"📸 {len(photo_urls)} photo(s) attached")

        await agent.side_effects.run(
            agent.crm.send_live_chat_message(contact_id, "\n".join(lines), photo_urls), "quote-live-chat",
        )
        await agent.side_effects.run(
            agent.crm.create_opportunity(contact_id, lead.name, "Website Quote Form"), "quote-opportunity",
        )

    logger.info("[%s] Quote submission OK: %s, %d photo(s)", rid, lead.name, len(photo_urls))
    return QuoteResponse(contact_id=contact_id, photos_uploaded=len(photo_urls))


# ── Queue worker ─────────────────────────────────────────────────────


@router.post("/jobs/sheet-append")
async def sheet_append_job(http_request: Request):
    """Append one queued lead row.  5xx tells the queue to retry."""
    agent = _get_agent(http_request)
    rid = _request_id(http_request)

    if config.SHEET_JOB_TOKEN and http_request.headers.get("X-Job-Token") != config.SHEET_JOB_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid job token")

    try:
        job = SheetJobRequest.model_validate(await http_request.json())
    except (ValueError, ValidationError) as exc:
        logger.error("[%s] Invalid sheet job: %s", rid, exc)
        raise HTTPException(status_code=400, detail="Bad Request: Invalid job data") from exc

    if not agent.sheets.is_configured:
        raise NotConfigured("Sheet settings missing: " + ", ".join(config.missing_settings(*config.SHEET_SETTINGS)))

    lead = LeadRecord(
        name=job.name,
        phone=normalize_phone(job.phone) or job.phone,
        email=job.email,
        service=job.service,
        address=job.address,
        zip_code=job.zip,
        notes=job.message,
        source=job.source,
        correlation_id=rid,
        timestamp=job.timestamp,
    )
    result = await agent.sheets.append_lead(lead)
    if not result.success:
        logger.error("[%s] Sheet job failed: %s", rid, result.error)
        raise HTTPException(status_code=500, detail="Failed to add lead to sheet")

    logger.info("[%s] Sheet job processed for %s", rid, lead.name)
    return {"status": "ok"}
