"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class InboundMessageRequest(BaseModel):
    """Inbound patient message delivered by a messaging channel."""

    clinic_id: str = Field(..., min_length=1, max_length=100)
    patient_id: str = Field(..., min_length=1, max_length=100)
    channel: str = Field(..., min_length=1, max_length=50, description="e.g. whatsapp, sms")
    text: str = Field(..., min_length=1, max_length=4000, description="The patient's message")
    external_message_id: str | None = Field(
        None,
        max_length=200,
        description="Channel message id; redeliveries with the same id are replayed, not reprocessed",
    )


class ProcessMessageResponse(BaseModel):
    status: str = "processed"
    conversation_id: str
    module: str
    response_text: str
    tool_call_count: int
    tool_call_names: list[str]
    queued: bool
    outcome: str
    replayed: bool = False


class SkippedResponse(BaseModel):
    status: str = "skipped"
    reason: str


class BatchFailureResponse(BaseModel):
    clinic_id: str
    conversation_id: str | None = None
    error_type: str


class BatchSummaryResponse(BaseModel):
    candidates: int
    eligible: int
    processed: int
    skipped: int
    failed: int
    failures: list[BatchFailureResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "clinic-agents"
