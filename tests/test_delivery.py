"""Tests for the delivery (queue vs. send) policies."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from src.delivery import (
    BusinessHoursDeliveryPolicy,
    DeliveryRequest,
    ImmediateDeliveryPolicy,
    clinic_timezone,
    within_send_window,
)
from src.models import ROLE_ASSISTANT, Clinic, Message
from src.services.memory_store import InMemoryRepository


def _request(now: datetime) -> DeliveryRequest:
    return DeliveryRequest(
        clinic_id="c1", patient_id="p1", conversation_id="conv", channel="whatsapp",
        module="scheduling", text="hi", now=now,
    )


@pytest.fixture
def repo():
    repo = InMemoryRepository()
    # São Paulo is UTC-3 all year
    repo.add_clinic(Clinic(id="c1", name="Sorriso", timezone="America/Sao_Paulo"))
    return repo


class TestImmediatePolicy:
    def test_never_queues(self):
        policy = ImmediateDeliveryPolicy()
        assert policy.should_queue(_request(datetime(2026, 10, 18, 3, 0, tzinfo=UTC))) is False


class TestBusinessHoursPolicy:
    def test_inside_window_sends(self, repo):
        policy = BusinessHoursDeliveryPolicy(repo)
        # Monday 10:00 in São Paulo
        assert policy.should_queue(_request(datetime(2026, 10, 19, 13, 0, tzinfo=UTC))) is False

    def test_window_uses_clinic_timezone(self, repo):
        policy = BusinessHoursDeliveryPolicy(repo)
        # 22:00 UTC is 19:00 local (open); 23:30 UTC is 20:30 local (closed)
        assert policy.should_queue(_request(datetime(2026, 10, 19, 22, 0, tzinfo=UTC))) is False
        assert policy.should_queue(_request(datetime(2026, 10, 19, 23, 30, tzinfo=UTC))) is True

    def test_early_morning_queues(self, repo):
        policy = BusinessHoursDeliveryPolicy(repo)
        # Monday 07:00 local
        assert policy.should_queue(_request(datetime(2026, 10, 19, 10, 0, tzinfo=UTC))) is True

    def test_sunday_queues(self, repo):
        policy = BusinessHoursDeliveryPolicy(repo)
        # Sunday 12:00 local
        assert policy.should_queue(_request(datetime(2026, 10, 18, 15, 0, tzinfo=UTC))) is True

    def test_daily_cap_queues(self, repo):
        conversation = repo.create_conversation("c1", "p1", "whatsapp")
        sent_at = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)  # 09:00 local
        for i in range(3):
            repo.append_message(Message(
                conversation_id=conversation.id, clinic_id="c1", role=ROLE_ASSISTANT,
                content=f"reply {i}", created_at=sent_at,
            ))
        policy = BusinessHoursDeliveryPolicy(repo, daily_cap=3)
        assert policy.should_queue(_request(datetime(2026, 10, 19, 14, 0, tzinfo=UTC))) is True

    def test_queued_replies_do_not_count_toward_cap(self, repo):
        conversation = repo.create_conversation("c1", "p1", "whatsapp")
        sent_at = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        for i in range(3):
            repo.append_message(Message(
                conversation_id=conversation.id, clinic_id="c1", role=ROLE_ASSISTANT,
                content=f"held {i}", created_at=sent_at, metadata={"queued": True},
            ))
        policy = BusinessHoursDeliveryPolicy(repo, daily_cap=3)
        assert policy.should_queue(_request(datetime(2026, 10, 19, 14, 0, tzinfo=UTC))) is False

    def test_yesterdays_messages_do_not_count(self, repo):
        conversation = repo.create_conversation("c1", "p1", "whatsapp")
        yesterday = datetime(2026, 10, 17, 15, 0, tzinfo=UTC)
        for i in range(5):
            repo.append_message(Message(
                conversation_id=conversation.id, clinic_id="c1", role=ROLE_ASSISTANT,
                content=f"reply {i}", created_at=yesterday,
            ))
        policy = BusinessHoursDeliveryPolicy(repo, daily_cap=3)
        assert policy.should_queue(_request(datetime(2026, 10, 19, 14, 0, tzinfo=UTC))) is False

    def test_unknown_clinic_falls_back_to_utc(self):
        policy = BusinessHoursDeliveryPolicy(InMemoryRepository())
        # Monday 12:00 UTC
        assert policy.should_queue(_request(datetime(2026, 10, 19, 12, 0, tzinfo=UTC))) is False


class TestSendWindow:
    @pytest.mark.parametrize("local, expected", [
        (datetime(2026, 10, 19, 8, 0), True),
        (datetime(2026, 10, 19, 19, 59), True),
        (datetime(2026, 10, 19, 20, 0), False),
        (datetime(2026, 10, 18, 12, 0), False),  # Sunday
    ])
    def test_window_edges(self, local, expected):
        assert within_send_window(local) is expected

    def test_unknown_timezone_falls_back_to_utc(self):
        repo = InMemoryRepository()
        repo.add_clinic(Clinic(id="c9", name="Nowhere", timezone="Mars/Olympus"))
        assert clinic_timezone(repo, "c9").key == "UTC"
