"""Clinic business collaborators used by the module tools.

The engine does not own scheduling, billing or confirmation logic: tools
delegate to the ``SchedulingService``, ``BillingService`` and
``ConfirmationQueue`` protocols below.  The in-memory implementations
back the CLI, the default server wiring and the tests.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from src.models import new_id, utcnow

logger = logging.getLogger(__name__)

# Appointments in these statuses hold their slot.
ACTIVE_APPOINTMENT_STATUSES = frozenset({"scheduled", "confirmed"})

# Reminder stages: label and hours before the appointment.
CONFIRMATION_STAGES = (("48h", 48), ("24h", 24), ("2h", 2))


class ServiceConflict(Exception):
    """The request clashes with the current state of the record."""


class SlotUnavailable(ServiceConflict):
    """The requested time is not free."""


class InvoiceAlreadyPaid(ServiceConflict):
    pass


class RecordNotFound(Exception):
    """The appointment or invoice does not exist for this patient."""


@dataclass(frozen=True)
class Professional:
    id: str
    name: str
    specialty: str | None = None


@dataclass(frozen=True)
class Slot:
    starts_at: datetime
    professional_id: str
    professional_name: str


@dataclass(frozen=True)
class Appointment:
    id: str
    clinic_id: str
    patient_id: str
    professional_id: str
    starts_at: datetime
    status: str = "scheduled"
    service: str | None = None


@dataclass(frozen=True)
class Invoice:
    id: str
    clinic_id: str
    patient_id: str
    amount_cents: int
    status: str = "pending"
    appointment_id: str | None = None
    payment_link: str | None = None
    due_date: date | None = None


@dataclass(frozen=True)
class ConfirmationRequest:
    """One scheduled attendance reminder for an appointment.

    Status moves ``pending`` → ``processing`` → ``sent`` (or ``failed``);
    a ``sent`` reminder becomes ``responded`` once the patient answers.
    """

    clinic_id: str
    patient_id: str
    appointment_id: str
    stage: str
    scheduled_at: datetime
    status: str = "pending"
    response: str | None = None
    sent_at: datetime | None = None
    id: str = field(default_factory=new_id)


class SchedulingService(Protocol):
    def available_slots(
        self, clinic_id: str, date_from: date, date_to: date, professional_id: str | None = None,
    ) -> list[Slot]: ...

    def book(
        self,
        clinic_id: str,
        patient_id: str,
        starts_at: datetime,
        professional_id: str | None = None,
        service: str | None = None,
    ) -> Appointment: ...

    def reschedule(
        self, clinic_id: str, patient_id: str, appointment_id: str, new_start: datetime,
    ) -> Appointment: ...

    def cancel(
        self, clinic_id: str, patient_id: str, appointment_id: str, reason: str,
    ) -> Appointment: ...

    def list_appointments(self, clinic_id: str, patient_id: str) -> list[Appointment]: ...

    def get_appointment(self, clinic_id: str, appointment_id: str) -> Appointment | None: ...

    def set_status(
        self, clinic_id: str, patient_id: str, appointment_id: str, status: str,
    ) -> Appointment: ...

    def get_professional(self, clinic_id: str, professional_id: str) -> Professional | None: ...


class BillingService(Protocol):
    def list_invoices(self, clinic_id: str, patient_id: str) -> list[Invoice]: ...

    def create_payment_link(self, clinic_id: str, patient_id: str, invoice_id: str) -> str: ...

    def send_payment_reminder(self, clinic_id: str, patient_id: str, invoice_id: str) -> None: ...

    def create_invoice_for_appointment(self, appointment: Appointment) -> Invoice: ...


class ConfirmationQueue(Protocol):
    def schedule_for(
        self, appointment: Appointment, now: datetime | None = None,
    ) -> list[ConfirmationRequest]: ...

    def due(self, now: datetime, limit: int) -> list[ConfirmationRequest]: ...

    def mark(self, request_id: str, status: str) -> ConfirmationRequest: ...

    def mark_responded(self, clinic_id: str, appointment_id: str, response: str) -> int: ...


def build_confirmation_requests(
    appointment: Appointment, now: datetime | None = None,
) -> list[ConfirmationRequest]:
    """Reminder requests for *appointment*, skipping stages already past."""
    now = now or utcnow()
    requests = []
    for stage, hours in CONFIRMATION_STAGES:
        scheduled_at = appointment.starts_at - timedelta(hours=hours)
        if scheduled_at > now:
            requests.append(ConfirmationRequest(
                clinic_id=appointment.clinic_id,
                patient_id=appointment.patient_id,
                appointment_id=appointment.id,
                stage=stage,
                scheduled_at=scheduled_at,
            ))
    return requests


# ── In-memory implementations ────────────────────────────────────────


class InMemorySchedulingService:
    """Hourly slots on weekdays within ``opening_hours`` (clinic-local time)."""

    def __init__(
        self,
        professionals: dict[str, list[Professional]] | None = None,
        *,
        timezone: str = "America/Sao_Paulo",
        opening_hours: tuple[int, int] = (9, 17),
    ) -> None:
        self._professionals = professionals or {}
        self._tz = ZoneInfo(timezone)
        self._opening_hours = opening_hours
        self._appointments: dict[str, Appointment] = {}
        self._lock = threading.Lock()

    def add_professional(self, clinic_id: str, professional: Professional) -> None:
        self._professionals.setdefault(clinic_id, []).append(professional)

    def get_professional(self, clinic_id: str, professional_id: str) -> Professional | None:
        return next(
            (p for p in self._professionals.get(clinic_id, []) if p.id == professional_id), None,
        )

    def _professionals_for(self, clinic_id: str, professional_id: str | None) -> list[Professional]:
        staff = self._professionals.get(clinic_id, [])
        if professional_id:
            staff = [p for p in staff if p.id == professional_id]
        return staff

    def _is_taken(self, professional_id: str, starts_at: datetime) -> bool:
        return any(
            a.professional_id == professional_id
            and a.starts_at == starts_at
            and a.status in ACTIVE_APPOINTMENT_STATUSES
            for a in self._appointments.values()
        )

    def available_slots(
        self, clinic_id: str, date_from: date, date_to: date, professional_id: str | None = None,
    ) -> list[Slot]:
        start_hour, end_hour = self._opening_hours
        slots: list[Slot] = []
        day = date_from
        with self._lock:
            while day <= date_to:
                if day.weekday() < 5:
                    for hour in range(start_hour, end_hour):
                        starts_at = datetime.combine(day, time(hour), tzinfo=self._tz)
                        for prof in self._professionals_for(clinic_id, professional_id):
                            if not self._is_taken(prof.id, starts_at):
                                slots.append(Slot(starts_at, prof.id, prof.name))
                day += timedelta(days=1)
        return slots

    def book(
        self,
        clinic_id: str,
        patient_id: str,
        starts_at: datetime,
        professional_id: str | None = None,
        service: str | None = None,
    ) -> Appointment:
        if starts_at.tzinfo is None:
            starts_at = starts_at.replace(tzinfo=self._tz)
        staff = self._professionals_for(clinic_id, professional_id)
        if not staff:
            raise RecordNotFound("No matching professional for this clinic")
        with self._lock:
            for prof in staff:
                if not self._is_taken(prof.id, starts_at):
                    appointment = Appointment(
                        id=new_id(),
                        clinic_id=clinic_id,
                        patient_id=patient_id,
                        professional_id=prof.id,
                        starts_at=starts_at,
                        service=service,
                    )
                    self._appointments[appointment.id] = appointment
                    return appointment
        raise SlotUnavailable(f"{starts_at.isoformat()} is no longer available")

    def _owned(self, clinic_id: str, patient_id: str, appointment_id: str) -> Appointment:
        appointment = self._appointments.get(appointment_id)
        if appointment is None or (appointment.clinic_id, appointment.patient_id) != (clinic_id, patient_id):
            raise RecordNotFound(f"Appointment {appointment_id} not found")
        return appointment

    def get_appointment(self, clinic_id: str, appointment_id: str) -> Appointment | None:
        appointment = self._appointments.get(appointment_id)
        if appointment is None or appointment.clinic_id != clinic_id:
            return None
        return appointment

    def reschedule(
        self, clinic_id: str, patient_id: str, appointment_id: str, new_start: datetime,
    ) -> Appointment:
        if new_start.tzinfo is None:
            new_start = new_start.replace(tzinfo=self._tz)
        with self._lock:
            current = self._owned(clinic_id, patient_id, appointment_id)
            if self._is_taken(current.professional_id, new_start):
                raise SlotUnavailable(f"{new_start.isoformat()} is no longer available")
            # A moved appointment needs confirming again.
            updated = replace(current, starts_at=new_start, status="scheduled")
            self._appointments[appointment_id] = updated
            return updated

    def cancel(
        self, clinic_id: str, patient_id: str, appointment_id: str, reason: str,
    ) -> Appointment:
        with self._lock:
            current = self._owned(clinic_id, patient_id, appointment_id)
            updated = replace(current, status="cancelled")
            self._appointments[appointment_id] = updated
        logger.debug("Cancelled appointment %s: %s", appointment_id, reason)
        return updated

    def set_status(
        self, clinic_id: str, patient_id: str, appointment_id: str, status: str,
    ) -> Appointment:
        with self._lock:
            current = self._owned(clinic_id, patient_id, appointment_id)
            if current.status not in ACTIVE_APPOINTMENT_STATUSES:
                raise ServiceConflict(f"Appointment {appointment_id} is already {current.status}")
            updated = replace(current, status=status)
            self._appointments[appointment_id] = updated
        return updated

    def list_appointments(self, clinic_id: str, patient_id: str) -> list[Appointment]:
        with self._lock:
            return sorted(
                (
                    a for a in self._appointments.values()
                    if a.clinic_id == clinic_id and a.patient_id == patient_id
                    and a.status in ACTIVE_APPOINTMENT_STATUSES
                ),
                key=lambda a: a.starts_at,
            )


@dataclass
class InMemoryBillingService:
    default_amount_cents: int = 20_000
    payment_base_url: str = "https://pay.example.com/i"
    invoices: dict[str, Invoice] = field(default_factory=dict)
    reminders_sent: list[str] = field(default_factory=list)

    def add_invoice(self, invoice: Invoice) -> Invoice:
        self.invoices[invoice.id] = invoice
        return invoice

    def list_invoices(self, clinic_id: str, patient_id: str) -> list[Invoice]:
        return [
            i for i in self.invoices.values()
            if i.clinic_id == clinic_id and i.patient_id == patient_id
        ]

    def _owned(self, clinic_id: str, patient_id: str, invoice_id: str) -> Invoice:
        invoice = self.invoices.get(invoice_id)
        if invoice is None or (invoice.clinic_id, invoice.patient_id) != (clinic_id, patient_id):
            raise RecordNotFound(f"Invoice {invoice_id} not found")
        return invoice

    def create_payment_link(self, clinic_id: str, patient_id: str, invoice_id: str) -> str:
        invoice = self._owned(clinic_id, patient_id, invoice_id)
        if invoice.status == "paid":
            raise InvoiceAlreadyPaid(f"Invoice {invoice_id} is already paid")
        link = invoice.payment_link or f"{self.payment_base_url}/{invoice.id}"
        self.invoices[invoice_id] = replace(invoice, payment_link=link)
        return link

    def send_payment_reminder(self, clinic_id: str, patient_id: str, invoice_id: str) -> None:
        self._owned(clinic_id, patient_id, invoice_id)
        self.reminders_sent.append(invoice_id)

    def create_invoice_for_appointment(self, appointment: Appointment) -> Invoice:
        invoice = Invoice(
            id=new_id(),
            clinic_id=appointment.clinic_id,
            patient_id=appointment.patient_id,
            amount_cents=self.default_amount_cents,
            appointment_id=appointment.id,
            due_date=appointment.starts_at.date(),
        )
        return self.add_invoice(invoice)


class InMemoryConfirmationQueue:
    """Reminder requests keyed by id, due oldest first."""

    def __init__(self) -> None:
        self._requests: dict[str, ConfirmationRequest] = {}
        self._lock = threading.Lock()

    def add(self, request: ConfirmationRequest) -> ConfirmationRequest:
        with self._lock:
            self._requests[request.id] = request
        return request

    def all(self) -> list[ConfirmationRequest]:
        with self._lock:
            return sorted(self._requests.values(), key=lambda r: r.scheduled_at)

    def schedule_for(
        self, appointment: Appointment, now: datetime | None = None,
    ) -> list[ConfirmationRequest]:
        """Replace the appointment's pending reminders with fresh stages."""
        requests = build_confirmation_requests(appointment, now)
        with self._lock:
            stale = [
                r.id for r in self._requests.values()
                if r.appointment_id == appointment.id and r.status == "pending"
            ]
            for request_id in stale:
                del self._requests[request_id]
            for request in requests:
                self._requests[request.id] = request
        return requests

    def due(self, now: datetime, limit: int) -> list[ConfirmationRequest]:
        with self._lock:
            pending = [
                r for r in self._requests.values()
                if r.status == "pending" and r.scheduled_at <= now
            ]
        return sorted(pending, key=lambda r: r.scheduled_at)[:limit]

    def mark(self, request_id: str, status: str) -> ConfirmationRequest:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                raise RecordNotFound(f"Confirmation request {request_id} not found")
            updated = replace(
                current, status=status,
                sent_at=utcnow() if status == "sent" else current.sent_at,
            )
            self._requests[request_id] = updated
        return updated

    def mark_responded(self, clinic_id: str, appointment_id: str, response: str) -> int:
        """Record the patient's answer on every sent reminder; returns how many."""
        with self._lock:
            sent = [
                r for r in self._requests.values()
                if (r.clinic_id, r.appointment_id) == (clinic_id, appointment_id)
                and r.status == "sent"
            ]
            for request in sent:
                self._requests[request.id] = replace(request, status="responded", response=response)
        return len(sent)


@dataclass(frozen=True)
class ClinicServices:
    scheduling: SchedulingService
    billing: BillingService
    confirmations: ConfirmationQueue = field(default_factory=InMemoryConfirmationQueue)
