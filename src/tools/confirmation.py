"""Confirmation module tools: record the patient's answer to a reminder."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from src.services.clinic import RecordNotFound, ServiceConflict
from src.tools.registry import (
    ToolConflictError,
    ToolContext,
    ToolValidationError,
    tool_handler,
)

logger = logging.getLogger(__name__)

MODULE = "confirmation"


class AppointmentArgs(BaseModel):
    appointment_id: str = Field(..., description="Appointment id from the reminder.")


class RescheduleFromConfirmationArgs(BaseModel):
    appointment_id: str = Field(..., description="Appointment id from the reminder.")
    reason: str = Field("", description="Brief reason the patient wants another time.")


def _set_status(ctx: ToolContext, appointment_id: str, status: str):
    try:
        return ctx.services.scheduling.set_status(
            ctx.clinic_id, ctx.patient_id, appointment_id, status,
        )
    except ServiceConflict as exc:
        raise ToolConflictError(str(exc)) from exc
    except RecordNotFound as exc:
        raise ToolValidationError(str(exc)) from exc


@tool_handler(MODULE, args_schema=AppointmentArgs)
def confirm_attendance(ctx: ToolContext, appointment_id: str) -> dict:
    """Confirm that the patient will attend.  Call this as soon as the patient
    explicitly says they will come."""
    appointment = _set_status(ctx, appointment_id, "confirmed")
    ctx.services.confirmations.mark_responded(ctx.clinic_id, appointment_id, "confirmed")
    return {
        "confirmed": True,
        "appointment_id": appointment.id,
        "starts_at": appointment.starts_at.isoformat(),
    }


@tool_handler(MODULE, args_schema=RescheduleFromConfirmationArgs)
def reschedule_from_confirmation(ctx: ToolContext, appointment_id: str, reason: str = "") -> dict:
    """Hand the patient to the scheduling assistant when they cannot make it
    but want a new time."""
    owned = ctx.services.scheduling.list_appointments(ctx.clinic_id, ctx.patient_id)
    if not any(a.id == appointment_id for a in owned):
        raise ToolValidationError(f"Appointment {appointment_id} not found")
    ctx.services.confirmations.mark_responded(ctx.clinic_id, appointment_id, "reschedule")
    logger.info("Appointment %s: patient asked to reschedule (%s)", appointment_id, reason or "no reason")
    return {"route_to": "scheduling", "appointment_id": appointment_id, "reason": reason}


@tool_handler(MODULE, args_schema=AppointmentArgs)
def mark_no_show(ctx: ToolContext, appointment_id: str) -> dict:
    """Mark the appointment as a no-show.  Only when its time has passed and
    the patient neither attended nor answered the reminders."""
    appointment = _set_status(ctx, appointment_id, "no_show")
    return {"no_show": True, "appointment_id": appointment.id}


CONFIRMATION_TOOLS = (confirm_attendance, reschedule_from_confirmation, mark_no_show)
