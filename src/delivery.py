"""Delivery policies: decide whether a reply is sent now or queued.

The processor only depends on the ``DeliveryPolicy`` hook.  A queued reply
is still stored in the conversation; it is also put in the outbox for the
delivery collaborator to send later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.models import utcnow
from src.services.repository import Repository

logger = logging.getLogger(__name__)

SUNDAY = 6


@dataclass(frozen=True)
class DeliveryRequest:
    clinic_id: str
    patient_id: str
    conversation_id: str
    channel: str
    module: str
    text: str
    escalated: bool = False
    now: datetime = field(default_factory=utcnow)


class DeliveryPolicy(Protocol):
    def should_queue(self, request: DeliveryRequest) -> bool: ...


class ImmediateDeliveryPolicy:
    """Never queues."""

    def should_queue(self, request: DeliveryRequest) -> bool:
        return False


DEFAULT_WINDOW = (time(8, 0), time(20, 0))
DEFAULT_CLOSED_WEEKDAYS = frozenset({SUNDAY})


def clinic_timezone(repository: Repository, clinic_id: str) -> ZoneInfo:
    """The clinic's timezone, UTC when the clinic or its zone is unknown."""
    clinic = repository.get_clinic(clinic_id)
    if clinic is None:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(clinic.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r for clinic %s", clinic.timezone, clinic_id)
        return ZoneInfo("UTC")


def within_send_window(
    local_now: datetime,
    window: tuple[time, time] = DEFAULT_WINDOW,
    closed_weekdays: frozenset[int] = DEFAULT_CLOSED_WEEKDAYS,
) -> bool:
    opens, closes = window
    return local_now.weekday() not in closed_weekdays and opens <= local_now.time() < closes


class BusinessHoursDeliveryPolicy:
    """Queue outside the clinic's send window or past the daily cap.

    The window is evaluated in the clinic's timezone (UTC if unknown).
    The cap counts replies actually delivered to the patient since local
    midnight; replies still waiting in the outbox do not count.
    """

    def __init__(
        self,
        repository: Repository,
        *,
        window: tuple[time, time] = DEFAULT_WINDOW,
        daily_cap: int = 3,
        closed_weekdays: frozenset[int] = DEFAULT_CLOSED_WEEKDAYS,
    ) -> None:
        self._repository = repository
        self._window = window
        self._daily_cap = daily_cap
        self._closed_weekdays = closed_weekdays

    def should_queue(self, request: DeliveryRequest) -> bool:
        local_now = request.now.astimezone(clinic_timezone(self._repository, request.clinic_id))
        if not within_send_window(local_now, self._window, self._closed_weekdays):
            return True

        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        sent_today = self._repository.count_outbound_since(
            request.clinic_id, request.patient_id, midnight,
        )
        if sent_today >= self._daily_cap:
            logger.info(
                "Daily cap reached for clinic=%s patient=%s (%d sent)",
                request.clinic_id, request.patient_id, sent_today,
            )
            return True
        return False

