"""Cron Orchestrators: follow-ups for unanswered conversations and
appointment confirmation reminders.

A follow-up batch pages through candidate conversations, drops clinics the gate
denies with one lookup per page, then re-enters the Message Processor
with a synthetic system-originated message per candidate.  Candidates
run concurrently up to ``fan_out``; one failure is logged and recorded,
never fatal to the batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta

from src.config import (
    CONFIRMATION_CHANNEL,
    CRON_BATCH_SIZE,
    CRON_FAN_OUT,
    CRON_MAX_PAGES,
    FOLLOW_UP_AFTER_HOURS,
)
from src.delivery import clinic_timezone, within_send_window
from src.errors import BatchItemFailed, ClinicNotProcessable, NoModuleAvailable
from src.gate import SubscriptionGate
from src.models import ROLE_SYSTEM, BatchSummary, FollowUpCandidate, InboundMessage, utcnow
from src.processor import MessageProcessor
from src.prompts import CONFIRMATION_TRIGGER, FOLLOW_UP_TRIGGER
from src.services.clinic import Appointment, ClinicServices, ConfirmationRequest
from src.services.metrics import metrics
from src.services.repository import Repository

logger = logging.getLogger(__name__)


def follow_up_message_id(candidate: FollowUpCandidate) -> str:
    """External id of the synthetic message; one follow-up per unanswered reply."""
    return f"follow-up:{candidate.conversation_id}:{candidate.last_message_id}"


class CronOrchestrator:
    def __init__(
        self,
        repository: Repository,
        gate: SubscriptionGate,
        processor: MessageProcessor,
        *,
        fan_out: int = CRON_FAN_OUT,
        batch_size: int = CRON_BATCH_SIZE,
        max_pages: int = CRON_MAX_PAGES,
        follow_up_after_hours: int = FOLLOW_UP_AFTER_HOURS,
        required_feature: tuple[str, str] | None = None,
    ) -> None:
        self.repository = repository
        self.gate = gate
        self.processor = processor
        self.fan_out = max(1, fan_out)
        self.batch_size = batch_size
        self.max_pages = max(1, max_pages)
        self.follow_up_after = timedelta(hours=follow_up_after_hours)
        # (module, feature key) a clinic must have enabled to be included
        self.required_feature = required_feature

    def run_batch(self, now: datetime | None = None) -> BatchSummary:
        now = now or utcnow()
        summary = BatchSummary()
        eligible = self._collect_eligible(now - self.follow_up_after, summary)
        summary.eligible = len(eligible)
        if summary.skipped:
            logger.info("Cron: %d candidate(s) skipped by the gate", summary.skipped)
        if not eligible:
            return summary

        with ThreadPoolExecutor(max_workers=self.fan_out, thread_name_prefix="cron") as pool:
            futures = {pool.submit(self._process_one, c): c for c in eligible}
            for future in as_completed(futures):
                candidate = futures[future]
                try:
                    future.result()
                except (ClinicNotProcessable, NoModuleAvailable) as exc:
                    # Gate or module config changed after the batch lookup.
                    logger.info("Cron: skipped conversation %s: %s", candidate.conversation_id, exc)
                    summary.skipped += 1
                except Exception as exc:
                    logger.exception(
                        "Cron: follow-up failed for clinic=%s conversation=%s",
                        candidate.clinic_id, candidate.conversation_id,
                    )
                    summary.failed += 1
                    summary.failures.append(BatchItemFailed(
                        clinic_id=candidate.clinic_id,
                        conversation_id=candidate.conversation_id,
                        error_type=type(exc).__name__,
                        message=str(exc),
                    ))
                else:
                    summary.processed += 1

        metrics.record_batch(summary.processed, summary.skipped, summary.failed)
        logger.info(
            "Cron batch done: %d candidate(s), %d processed, %d skipped, %d failed",
            summary.candidates, summary.processed, summary.skipped, summary.failed,
        )
        return summary

    def _collect_eligible(
        self, unanswered_before: datetime, summary: BatchSummary,
    ) -> list[FollowUpCandidate]:
        """Page through candidates until ``batch_size`` pass the gate.

        Denied clinics never count toward ``batch_size``.
        """
        eligible: list[FollowUpCandidate] = []
        offset = 0
        for _ in range(self.max_pages):
            page = self.repository.find_follow_up_candidates(
                unanswered_before, self.batch_size, offset=offset,
            )
            if not page:
                break
            offset += len(page)
            summary.candidates += len(page)

            allowed = self.gate.processable_clinic_ids({c.clinic_id for c in page})
            if self.required_feature is not None:
                module, key = self.required_feature
                allowed = {cid for cid in allowed if self.gate.is_feature_enabled(cid, module, key)}

            for candidate in page:
                if candidate.clinic_id not in allowed:
                    summary.skipped += 1
                elif len(eligible) < self.batch_size:
                    eligible.append(candidate)
            if len(eligible) >= self.batch_size or len(page) < self.batch_size:
                break
        return eligible

    def _process_one(self, candidate: FollowUpCandidate):
        return self.processor.process_message(InboundMessage(
            clinic_id=candidate.clinic_id,
            patient_id=candidate.patient_id,
            channel=candidate.channel,
            text=FOLLOW_UP_TRIGGER,
            external_message_id=follow_up_message_id(candidate),
            origin=ROLE_SYSTEM,
        ))


# ── Appointment confirmations ────────────────────────────────────────

CONFIRMATION_MODULE = "confirmation"
# Appointments in these statuses get no reminder.
SKIPPED_APPOINTMENT_STATUSES = frozenset({"cancelled", "completed", "no_show"})


def confirmation_message_id(request: ConfirmationRequest) -> str:
    return f"confirmation:{request.id}"


class ConfirmationOrchestrator:
    """Sends due appointment reminders through the confirmation module.

    Each due request is checked (gate, appointment status, clinic send
    window), then pinned to the confirmation module of the patient's
    active conversation and processed as a system-originated message.
    A request outside the send window stays pending for the next run.
    """

    def __init__(
        self,
        repository: Repository,
        gate: SubscriptionGate,
        processor: MessageProcessor,
        services: ClinicServices,
        *,
        fan_out: int = CRON_FAN_OUT,
        batch_size: int = CRON_BATCH_SIZE,
        channel: str = CONFIRMATION_CHANNEL,
    ) -> None:
        self.repository = repository
        self.gate = gate
        self.processor = processor
        self.services = services
        self.fan_out = max(1, fan_out)
        self.batch_size = batch_size
        self.channel = channel

    def run_batch(self, now: datetime | None = None) -> BatchSummary:
        now = now or utcnow()
        queue = self.services.confirmations
        due = queue.due(now, self.batch_size)
        summary = BatchSummary(candidates=len(due))
        if not due:
            return summary

        allowed = self.gate.processable_clinic_ids({r.clinic_id for r in due})
        ready: list[tuple[ConfirmationRequest, Appointment]] = []
        for request in due:
            reason = None
            appointment = self.services.scheduling.get_appointment(
                request.clinic_id, request.appointment_id,
            )
            if request.clinic_id not in allowed:
                reason = "clinic not processable"
            elif appointment is None:
                reason = "appointment not found"
            elif appointment.status in SKIPPED_APPOINTMENT_STATUSES:
                reason = f"appointment is {appointment.status}"
            elif not self._in_send_window(request.clinic_id, now):
                logger.info("Confirmation %s: outside the send window; kept pending", request.id)
                summary.skipped += 1
                continue

            if reason is not None:
                logger.info("Confirmation %s dropped: %s", request.id, reason)
                queue.mark(request.id, "failed")
                summary.skipped += 1
            else:
                ready.append((request, appointment))

        summary.eligible = len(ready)
        with ThreadPoolExecutor(max_workers=self.fan_out, thread_name_prefix="confirm") as pool:
            futures = {pool.submit(self._send_one, r, a): r for r, a in ready}
            for future in as_completed(futures):
                request = futures[future]
                try:
                    future.result()
                except (ClinicNotProcessable, NoModuleAvailable) as exc:
                    logger.info("Confirmation %s skipped: %s", request.id, exc)
                    queue.mark(request.id, "failed")
                    summary.skipped += 1
                except Exception as exc:
                    logger.exception(
                        "Confirmation %s failed for clinic=%s", request.id, request.clinic_id,
                    )
                    queue.mark(request.id, "failed")
                    summary.failed += 1
                    summary.failures.append(BatchItemFailed(
                        clinic_id=request.clinic_id,
                        conversation_id=None,
                        error_type=type(exc).__name__,
                        message=str(exc),
                    ))
                else:
                    queue.mark(request.id, "sent")
                    summary.processed += 1

        metrics.record_batch(summary.processed, summary.skipped, summary.failed, job="confirmations")
        logger.info(
            "Confirmation batch done: %d due, %d sent, %d skipped, %d failed",
            summary.candidates, summary.processed, summary.skipped, summary.failed,
        )
        return summary

    def _in_send_window(self, clinic_id: str, now: datetime) -> bool:
        return within_send_window(now.astimezone(clinic_timezone(self.repository, clinic_id)))

    def _send_one(self, request: ConfirmationRequest, appointment: Appointment):
        if CONFIRMATION_MODULE not in self.processor.agents:
            raise NoModuleAvailable(request.clinic_id)
        self.services.confirmations.mark(request.id, "processing")

        conversation = self.processor.conversations.resolve_active_conversation(
            request.clinic_id, request.patient_id, self.channel,
        )
        self.processor.conversations.assign_module(conversation.id, CONFIRMATION_MODULE)

        tz = clinic_timezone(self.repository, request.clinic_id)
        local_start = appointment.starts_at.astimezone(tz)
        professional = self.services.scheduling.get_professional(
            request.clinic_id, appointment.professional_id,
        )
        text = CONFIRMATION_TRIGGER.format(
            appointment_id=appointment.id,
            professional=professional.name if professional else "the professional",
            date=local_start.strftime("%d/%m/%Y"),
            time=local_start.strftime("%H:%M"),
            timezone=tz.key,
            stage=request.stage,
        )
        return self.processor.process_message(InboundMessage(
            clinic_id=request.clinic_id,
            patient_id=request.patient_id,
            channel=self.channel,
            text=text,
            external_message_id=confirmation_message_id(request),
            origin=ROLE_SYSTEM,
        ))
