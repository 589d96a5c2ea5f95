"""FastAPI routes for health, the WhatsApp webhook, the agent bridge and
notification triggers.

The services behind these routes use blocking clients, so every call
into them goes through ``asyncio.to_thread`` and the event loop stays
free for other requests.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Literal

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from src import config
from src.api.schemas import (
    AgentReplyMetadata,
    AgentRequest,
    AgentResponse,
    DatabaseHealthResponse,
    HealthResponse,
    NotificationBatchResponse,
    WelcomeRequest,
)
from src.services.bridge import InboundMessage
from src.services.messaging import MessagingError
from src.templates import AGENT_UNAVAILABLE_REPLY

logger = logging.getLogger(__name__)

router = APIRouter()


def get_service(request: Request, name: str):
    """Retrieve a service built by the lifespan (see ``server.py``)."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return service


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "?")


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/health/db", response_model=DatabaseHealthResponse)
async def database_health(request: Request):
    store = get_service(request, "store")
    if await asyncio.to_thread(store.test_connection):
        return DatabaseHealthResponse(success=True, message="Neo4j connection successful")
    return JSONResponse(
        status_code=503,
        content=DatabaseHealthResponse(success=False, message="Neo4j connection failed").model_dump(),
    )


# ── WhatsApp webhook ─────────────────────────────────────────────────


@router.post("/webhook/twilio")
async def twilio_webhook(request: Request):
    """Inbound WhatsApp message from Twilio.

    In production the ``X-Twilio-Signature`` header must match the signed
    public URL and the posted form fields.
    """
    bridge = get_service(request, "bridge")
    request_id = _request_id(request)
    form = dict(await request.form())

    if config.IS_PRODUCTION:
        messenger = get_service(request, "messenger")
        url = config.WEBHOOK_PUBLIC_URL or str(request.url)
        signature = request.headers.get("X-Twilio-Signature")
        if not messenger.validate_request(url, form, signature):
            logger.warning("[%s] Rejected webhook with missing or invalid signature", request_id)
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        message = InboundMessage.from_form(form)
        return await asyncio.to_thread(bridge.handle_inbound, message)
    except Exception:
        logger.exception("[%s] Error handling webhook", request_id)
        return _error(500, "Failed to process webhook")


# ── Agent bridge ─────────────────────────────────────────────────────


@router.post("/agent", response_model=AgentResponse)
async def ask_agent(body: AgentRequest, request: Request):
    """Forward a message to the agent with the sender's context and history."""
    bridge = get_service(request, "bridge")
    try:
        reply = await asyncio.to_thread(
            bridge.ask, body.message, body.phone_number, body.template_context,
        )
    except Exception:
        # Full traceback stays server-side; the client gets the canned reply
        logger.exception("[%s] Error calling the agent", _request_id(request))
        return _error(500, "Failed to process message", response=AGENT_UNAVAILABLE_REPLY)

    return AgentResponse(
        response=reply.response,
        metadata=AgentReplyMetadata(userFound=reply.user_found, historyLength=reply.history_length),
    )


# ── Notifications ────────────────────────────────────────────────────


@router.get("/notifications/medications", response_model=NotificationBatchResponse)
async def send_medication_reminders(request: Request):
    """Remind every user whose doses fall inside the look-ahead window."""
    dispatcher = get_service(request, "dispatcher")
    try:
        results = await dispatcher.run_due_reminders()
    except Exception:
        logger.exception("[%s] Error sending medication reminders", _request_id(request))
        return _error(500, "Failed to send medication reminders")
    return NotificationBatchResponse(results=[r.to_dict() for r in results])


@router.get("/notifications/confirmation", response_model=NotificationBatchResponse)
async def send_medication_confirmation(
    request: Request,
    test: bool = False,
    time: str | None = Query(default=None, description="HH:MM override, test mode only"),
):
    """Twice-daily "did you take your medication?" check."""
    dispatcher = get_service(request, "dispatcher")
    override = None
    if test and time:
        if not dispatcher.test_mode_allowed:
            return _error(403, "Notification test mode is disabled")
        override = time

    try:
        results = await dispatcher.run_confirmation(override=override)
    except ValueError as exc:
        return _error(422, str(exc))
    except Exception:
        logger.exception("[%s] Error sending medication confirmations", _request_id(request))
        return _error(500, "Failed to send medication confirmations")
    return NotificationBatchResponse(results=[r.to_dict() for r in results])


@router.post("/notifications/welcome/{role}")
async def send_welcome(role: Literal["elder", "caretaker"], body: WelcomeRequest, request: Request):
    dispatcher = get_service(request, "dispatcher")
    try:
        message_id = await dispatcher.send_welcome(role, body.phone_number, body.user_name)
    except (MessagingError, OSError):
        logger.exception("[%s] Error sending %s welcome", _request_id(request), role)
        return _error(500, "Failed to send welcome message")
    return {"success": True, "messageId": message_id}
