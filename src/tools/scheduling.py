"""Scheduling module tools.

Each tool delegates to the clinic's ``SchedulingService`` and returns a
small JSON-serialisable payload the agent can turn into a reply.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from pydantic import BaseModel, Field

from src.prompts import fixed_text
from src.services.clinic import Appointment, RecordNotFound, ServiceConflict
from src.tools.registry import (
    APPEND_KEY,
    ToolConflictError,
    ToolContext,
    ToolValidationError,
    tool_handler,
)

logger = logging.getLogger(__name__)

MODULE = "scheduling"
MAX_RANGE_DAYS = 14
MAX_SLOTS_RETURNED = 20


def _appointment_payload(appointment: Appointment) -> dict:
    return {
        "appointment_id": appointment.id,
        "starts_at": appointment.starts_at.isoformat(),
        "professional_id": appointment.professional_id,
        "service": appointment.service,
        "status": appointment.status,
    }


# ── Argument schemas ─────────────────────────────────────────────────


class CheckAvailabilityArgs(BaseModel):
    date_from: date = Field(..., description="First day to search, YYYY-MM-DD.")
    date_to: date | None = Field(
        None, description="Last day to search, YYYY-MM-DD (defaults to date_from).",
    )
    professional_id: str | None = Field(None, description="Restrict to one professional.")


class BookAppointmentArgs(BaseModel):
    starts_at: datetime = Field(..., description="Exact slot start, ISO 8601, from check_availability.")
    professional_id: str | None = Field(None, description="Professional returned with the slot.")
    service: str | None = Field(None, description="Type of consultation, if the patient said.")


class RescheduleAppointmentArgs(BaseModel):
    appointment_id: str = Field(..., description="Appointment id from list_patient_appointments.")
    new_start: datetime = Field(..., description="New slot start, ISO 8601.")


class CancelAppointmentArgs(BaseModel):
    appointment_id: str = Field(..., description="Appointment id from list_patient_appointments.")
    reason: str = Field("Cancelled by patient via chat", description="Why the patient cancels.")


class NoArgs(BaseModel):
    pass


# ── Tools ────────────────────────────────────────────────────────────


@tool_handler(MODULE, args_schema=CheckAvailabilityArgs)
def check_availability(
    ctx: ToolContext,
    date_from: date,
    date_to: date | None = None,
    professional_id: str | None = None,
) -> dict:
    """Check free appointment slots between two dates (at most 14 days apart).

    Never offer a time to the patient that this tool did not return.
    """
    date_to = date_to or date_from
    if date_to < date_from:
        raise ToolValidationError("date_to must not be before date_from")
    if date_to - date_from > timedelta(days=MAX_RANGE_DAYS):
        raise ToolValidationError(f"search at most {MAX_RANGE_DAYS} days at a time")

    slots = ctx.services.scheduling.available_slots(
        ctx.clinic_id, date_from, date_to, professional_id,
    )
    return {
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "count": len(slots),
        "slots": [
            {
                "starts_at": slot.starts_at.isoformat(),
                "professional_id": slot.professional_id,
                "professional": slot.professional_name,
            }
            for slot in slots[:MAX_SLOTS_RETURNED]
        ],
    }


@tool_handler(MODULE, args_schema=BookAppointmentArgs)
def book_appointment(
    ctx: ToolContext,
    starts_at: datetime,
    professional_id: str | None = None,
    service: str | None = None,
) -> dict:
    """Book an appointment for the patient.  Only call this after the patient
    explicitly confirmed the slot."""
    try:
        appointment = ctx.services.scheduling.book(
            ctx.clinic_id, ctx.patient_id, starts_at, professional_id, service,
        )
    except ServiceConflict as exc:
        raise ToolConflictError(str(exc)) from exc
    except RecordNotFound as exc:
        raise ToolValidationError(str(exc)) from exc

    payload = {"booked": True, **_appointment_payload(appointment)}
    payload["reminders_scheduled"] = len(ctx.services.confirmations.schedule_for(appointment))

    if ctx.feature_enabled("billing", "auto_billing"):
        billing = ctx.services.billing
        invoice = billing.create_invoice_for_appointment(appointment)
        link = billing.create_payment_link(ctx.clinic_id, ctx.patient_id, invoice.id)
        payload["invoice"] = {"invoice_id": invoice.id, "amount_cents": invoice.amount_cents}
        locale = ctx.clinic.locale if ctx.clinic else None
        payload[APPEND_KEY] = fixed_text("payment_link", locale).format(url=link)
        logger.info("Auto-billing: invoice %s created for appointment %s", invoice.id, appointment.id)

    return payload


@tool_handler(MODULE, args_schema=RescheduleAppointmentArgs)
def reschedule_appointment(ctx: ToolContext, appointment_id: str, new_start: datetime) -> dict:
    """Move one of the patient's appointments to a new free slot."""
    try:
        appointment = ctx.services.scheduling.reschedule(
            ctx.clinic_id, ctx.patient_id, appointment_id, new_start,
        )
    except ServiceConflict as exc:
        raise ToolConflictError(str(exc)) from exc
    except RecordNotFound as exc:
        raise ToolValidationError(str(exc)) from exc
    ctx.services.confirmations.schedule_for(appointment)
    return {"rescheduled": True, **_appointment_payload(appointment)}


@tool_handler(MODULE, args_schema=CancelAppointmentArgs)
def cancel_appointment(ctx: ToolContext, appointment_id: str, reason: str) -> dict:
    """Cancel one of the patient's appointments."""
    try:
        appointment = ctx.services.scheduling.cancel(
            ctx.clinic_id, ctx.patient_id, appointment_id, reason,
        )
    except RecordNotFound as exc:
        raise ToolValidationError(str(exc)) from exc
    return {"cancelled": True, **_appointment_payload(appointment)}


@tool_handler(MODULE, args_schema=NoArgs)
def list_patient_appointments(ctx: ToolContext) -> dict:
    """List the patient's upcoming appointments."""
    appointments = ctx.services.scheduling.list_appointments(ctx.clinic_id, ctx.patient_id)
    return {
        "count": len(appointments),
        "appointments": [_appointment_payload(a) for a in appointments],
    }


SCHEDULING_TOOLS = (
    check_availability,
    book_appointment,
    reschedule_appointment,
    cancel_appointment,
    list_patient_appointments,
)
