"""Tests for the cron orchestrator's follow-up batches."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from conftest import ScriptedAgent

from src.agents.base import RespondDirectly
from src.cron import CronOrchestrator, follow_up_message_id
from src.errors import ClinicNotProcessable
from src.models import (
    ROLE_SYSTEM,
    Clinic,
    FollowUpCandidate,
    InboundMessage,
    ModuleConfig,
    Patient,
    ProcessMessageResult,
    utcnow,
)
from src.prompts import FOLLOW_UP_TRIGGER

LATER = timedelta(hours=25)


def _add_clinic(repository, clinic_id: str, status: str | None) -> None:
    repository.add_clinic(Clinic(id=clinic_id, name=f"Clinic {clinic_id}", timezone="UTC"))
    repository.add_patient(Patient(id="p1", clinic_id=clinic_id, name="Maria Silva"))
    repository.set_subscription(clinic_id, status)
    repository.set_module_config(ModuleConfig(clinic_id, "scheduling"))


def _talk(processor, clinic_id: str, text: str = "Hi") -> str:
    return processor.process_message(InboundMessage(
        clinic_id=clinic_id, patient_id="p1", channel="whatsapp", text=text,
    )).conversation_id


class TestRunBatch:
    def test_follows_up_unanswered_conversation(self, make_components, repository):
        agent = ScriptedAgent("scheduling", [
            RespondDirectly("Which day suits you?"),
            RespondDirectly("Just checking in: still want to book?"),
        ])
        components = make_components(agent)
        conversation_id = _talk(components.processor, "c1")

        summary = components.orchestrator.run_batch(now=utcnow() + LATER)

        assert (summary.candidates, summary.eligible, summary.processed) == (1, 1, 1)
        assert summary.failed == 0
        rows = repository.all_messages(conversation_id)
        assert rows[-2].role == ROLE_SYSTEM
        assert rows[-2].external_id.startswith(f"follow-up:{conversation_id}:")
        assert rows[-1].content == "Just checking in: still want to book?"
        assert agent.calls[-1]["context"].origin == ROLE_SYSTEM

    def test_recent_conversations_are_not_candidates(self, make_components):
        components = make_components(ScriptedAgent("scheduling"))
        _talk(components.processor, "c1")
        summary = components.orchestrator.run_batch(now=utcnow() + timedelta(hours=1))
        assert summary.candidates == 0

    def test_rerun_does_not_follow_up_twice(self, make_components, repository):
        components = make_components(ScriptedAgent("scheduling"))
        conversation_id = _talk(components.processor, "c1")

        components.orchestrator.run_batch(now=utcnow() + LATER)
        second = components.orchestrator.run_batch(now=utcnow() + 2 * LATER)

        assert second.candidates == 0
        assert len(repository.all_messages(conversation_id)) == 4

    def test_denied_clinics_are_skipped(self, make_components, repository):
        _add_clinic(repository, "c2", "active")
        components = make_components(ScriptedAgent("scheduling"))
        _talk(components.processor, "c1")
        _talk(components.processor, "c2")
        repository.set_subscription("c2", "canceled")
        components.gate.invalidate("c2")

        summary = components.orchestrator.run_batch(now=utcnow() + LATER)

        assert summary.candidates == 2
        assert summary.eligible == 1
        assert summary.processed == 1
        assert summary.skipped == 1

    def test_escalated_conversations_are_not_candidates(self, make_components):
        components = make_components(ScriptedAgent("scheduling"))
        conversation_id = _talk(components.processor, "c1")
        components.conversations.mark_escalated(conversation_id)
        assert components.orchestrator.run_batch(now=utcnow() + LATER).candidates == 0

    def test_feature_gated_batch(self, make_components, repository):
        _add_clinic(repository, "c2", "active")
        repository.set_module_config(ModuleConfig("c2", "billing", settings={"auto_billing": True}))
        components = make_components(ScriptedAgent("scheduling"))
        _talk(components.processor, "c1")
        _talk(components.processor, "c2")

        orchestrator = CronOrchestrator(
            repository, components.gate, components.processor,
            required_feature=("billing", "auto_billing"),
        )
        summary = orchestrator.run_batch(now=utcnow() + LATER)
        assert summary.eligible == 1
        assert summary.processed == 1

    def test_denied_clinic_does_not_starve_small_batches(self, make_components, repository):
        _add_clinic(repository, "c0", "active")
        components = make_components(ScriptedAgent("scheduling"))
        older = _talk(components.processor, "c0")
        newer = _talk(components.processor, "c1")
        repository.set_subscription("c0", "canceled")
        components.gate.invalidate("c0")

        orchestrator = CronOrchestrator(
            repository, components.gate, components.processor, batch_size=1,
        )
        summary = orchestrator.run_batch(now=utcnow() + LATER)

        assert summary.processed == 1
        assert summary.skipped == 1
        assert len(repository.all_messages(newer)) == 4
        assert len(repository.all_messages(older)) == 2

    def test_page_scan_is_bounded(self, make_components, repository):
        for clinic_id in ("c2", "c3", "c4"):
            _add_clinic(repository, clinic_id, "active")
        components = make_components(ScriptedAgent("scheduling"))
        for clinic_id in ("c2", "c3", "c4", "c1"):
            _talk(components.processor, clinic_id)
        for clinic_id in ("c2", "c3", "c4"):
            repository.set_subscription(clinic_id, "canceled")
            components.gate.invalidate(clinic_id)

        orchestrator = CronOrchestrator(
            repository, components.gate, components.processor, batch_size=1, max_pages=2,
        )
        summary = orchestrator.run_batch(now=utcnow() + LATER)

        assert summary.candidates == 2
        assert summary.processed == 0


def _candidate(clinic_id: str) -> FollowUpCandidate:
    return FollowUpCandidate(
        clinic_id=clinic_id, conversation_id=f"conv-{clinic_id}", patient_id="p1",
        channel="whatsapp", module="scheduling", last_message_id="m1",
        last_message_at=utcnow(),
    )


class TestIsolation:
    @pytest.fixture
    def repo(self):
        repo = MagicMock()
        repo.find_follow_up_candidates.return_value = [_candidate(c) for c in ("c1", "c2", "c3")]
        return repo

    @pytest.fixture
    def gate(self):
        gate = MagicMock()
        gate.processable_clinic_ids.side_effect = lambda ids: set(ids)
        return gate

    def test_one_failure_does_not_abort_the_batch(self, repo, gate):
        def process(inbound, **_):
            if inbound.clinic_id == "c2":
                raise RuntimeError("storage timeout")
            return ProcessMessageResult(conversation_id="x", module="scheduling", response_text="ok")

        processor = MagicMock()
        processor.process_message.side_effect = process

        summary = CronOrchestrator(repo, gate, processor, fan_out=3).run_batch()

        assert summary.processed == 2
        assert summary.failed == 1
        [failure] = summary.failures
        assert failure.clinic_id == "c2"
        assert failure.error_type == "RuntimeError"

    def test_gate_race_counts_as_skipped(self, repo, gate):
        processor = MagicMock()
        processor.process_message.side_effect = ClinicNotProcessable("c1")
        summary = CronOrchestrator(repo, gate, processor).run_batch()
        assert summary.skipped == 3
        assert summary.failed == 0

    def test_synthetic_message_shape(self, repo, gate):
        processor = MagicMock()
        repo.find_follow_up_candidates.return_value = [_candidate("c1")]
        CronOrchestrator(repo, gate, processor).run_batch()

        inbound: InboundMessage = processor.process_message.call_args[0][0]
        assert inbound.origin == ROLE_SYSTEM
        assert inbound.text == FOLLOW_UP_TRIGGER
        assert inbound.external_message_id == "follow-up:conv-c1:m1"
        assert inbound.external_message_id == follow_up_message_id(_candidate("c1"))

    def test_empty_batch_skips_gate(self, gate):
        repo = MagicMock()
        repo.find_follow_up_candidates.return_value = []
        summary = CronOrchestrator(repo, gate, MagicMock()).run_batch()
        assert summary.candidates == 0
        gate.processable_clinic_ids.assert_not_called()
