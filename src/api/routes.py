"""FastAPI route definitions: channel webhook, cron trigger and health."""

from __future__ import annotations

import asyncio
import hmac
import logging
import threading
from typing import Union

from fastapi import APIRouter, Header, HTTPException, Request

from src import config
from src.api.schemas import (
    BatchFailureResponse,
    BatchSummaryResponse,
    HealthResponse,
    InboundMessageRequest,
    ProcessMessageResponse,
    SkippedResponse,
)
from src.errors import Cancelled, ClinicNotProcessable, ConversationCreateFailed, NoModuleAvailable
from src.models import InboundMessage

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_component(request: Request, name: str):
    """Retrieve a component built during the FastAPI lifespan (see ``server.py``)."""
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return component


def _check_cron_auth(authorization: str | None) -> None:
    secret = config.CRON_SECRET
    if not secret:
        raise HTTPException(status_code=401, detail="Cron endpoints are disabled.")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Invalid cron credentials.")


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/webhooks/messages", response_model=Union[ProcessMessageResponse, SkippedResponse])
async def receive_message(body: InboundMessageRequest, http_request: Request):
    """Process one inbound patient message and return the stored reply.

    ``process_message`` is synchronous (LLM and storage calls), so it runs
    in a worker thread.  On timeout the cancel event is set and the engine
    stops before its next step; no reply is stored.
    """
    processor = _get_component(http_request, "processor")
    request_id = getattr(http_request.state, "request_id", "?")
    cancel = threading.Event()
    inbound = InboundMessage(
        clinic_id=body.clinic_id,
        patient_id=body.patient_id,
        channel=body.channel,
        text=body.text,
        external_message_id=body.external_message_id,
    )

    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(processor.process_message, inbound, cancel=cancel),
            timeout=config.PROCESS_TIMEOUT_SECONDS,
        )
    except (ClinicNotProcessable, NoModuleAvailable) as exc:
        logger.info("[%s] Skipped: %s", request_id, exc)
        return SkippedResponse(reason=type(exc).__name__)
    except ConversationCreateFailed as e:
        logger.error("[%s] %s", request_id, e)
        raise HTTPException(
            status_code=503, detail="Conversation storage is unavailable. Please retry.",
        ) from e
    except (asyncio.TimeoutError, Cancelled) as e:
        cancel.set()
        logger.warning("[%s] Message processing timed out or was cancelled", request_id)
        raise HTTPException(status_code=504, detail="Processing timed out. Please retry.") from e
    except Exception as e:
        # Full traceback server-side only.
        logger.exception("[%s] Error processing inbound message", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ProcessMessageResponse(
        conversation_id=result.conversation_id,
        module=result.module,
        response_text=result.response_text,
        tool_call_count=result.tool_call_count,
        tool_call_names=list(result.tool_call_names),
        queued=result.queued,
        outcome=result.outcome,
        replayed=result.replayed,
    )


def _summary_response(summary) -> BatchSummaryResponse:
    return BatchSummaryResponse(
        candidates=summary.candidates,
        eligible=summary.eligible,
        processed=summary.processed,
        skipped=summary.skipped,
        failed=summary.failed,
        failures=[
            BatchFailureResponse(
                clinic_id=f.clinic_id,
                conversation_id=f.conversation_id,
                error_type=f.error_type,
            )
            for f in summary.failures
        ],
    )


@router.post("/cron/follow-ups", response_model=BatchSummaryResponse)
async def run_follow_ups(http_request: Request, authorization: str | None = Header(None)):
    """Run one follow-up batch (bearer ``CRON_SECRET``)."""
    _check_cron_auth(authorization)
    orchestrator = _get_component(http_request, "orchestrator")
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        summary = await asyncio.to_thread(orchestrator.run_batch)
    except Exception as e:
        logger.exception("[%s] Follow-up batch failed", request_id)
        raise HTTPException(status_code=500, detail="The batch could not be run.") from e

    return _summary_response(summary)


@router.post("/cron/confirmations", response_model=BatchSummaryResponse)
async def run_confirmations(http_request: Request, authorization: str | None = Header(None)):
    """Send due appointment confirmation reminders (bearer ``CRON_SECRET``)."""
    _check_cron_auth(authorization)
    orchestrator = _get_component(http_request, "confirmations")
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        summary = await asyncio.to_thread(orchestrator.run_batch)
    except Exception as e:
        logger.exception("[%s] Confirmation batch failed", request_id)
        raise HTTPException(status_code=500, detail="The batch could not be run.") from e

    return _summary_response(summary)
