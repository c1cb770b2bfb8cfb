"""Thread-safe in-memory implementation of the ``Repository`` interface.

It enforces the same uniqueness constraints a relational backing store
would (partial unique indexes), which makes it a faithful stand-in for
the concurrency tests, the CLI and the default server wiring.  Data is
lost on process restart.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

from src.models import (
    ACTIVE,
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    Clinic,
    Conversation,
    FollowUpCandidate,
    Message,
    ModuleConfig,
    OutboundItem,
    Patient,
    new_id,
    utcnow,
)
from src.services.repository import DuplicateKeyError, Repository, RepositoryError

logger = logging.getLogger(__name__)


class InMemoryRepository(Repository):
    """Dictionary-backed store guarded by a single lock."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._clinics: dict[str, Clinic] = {}
        self._patients: dict[tuple[str, str], Patient] = {}
        self._subscriptions: dict[str, str] = {}
        self._module_configs: dict[tuple[str, str], ModuleConfig] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: list[Message] = []
        self._outbox: list[OutboundItem] = []

    # ── Seeding helpers (not part of the Repository contract) ────────

    def add_clinic(self, clinic: Clinic) -> Clinic:
        with self._lock:
            self._clinics[clinic.id] = clinic
        return clinic

    def add_patient(self, patient: Patient) -> Patient:
        with self._lock:
            self._patients[(patient.clinic_id, patient.id)] = patient
        return patient

    def set_subscription(self, clinic_id: str, status: str | None) -> None:
        with self._lock:
            if status is None:
                self._subscriptions.pop(clinic_id, None)
            else:
                self._subscriptions[clinic_id] = status

    def set_module_config(self, config: ModuleConfig) -> None:
        with self._lock:
            self._module_configs[(config.clinic_id, config.module_type)] = config

    def list_conversations(self) -> list[Conversation]:
        with self._lock:
            return list(self._conversations.values())

    def all_messages(self, conversation_id: str) -> list[Message]:
        with self._lock:
            return [m for m in self._messages if m.conversation_id == conversation_id]

    @property
    def outbox(self) -> list[OutboundItem]:
        with self._lock:
            return list(self._outbox)

    # ── Clinic configuration ─────────────────────────────────────────

    def get_clinic(self, clinic_id: str) -> Clinic | None:
        return self._clinics.get(clinic_id)

    def get_patient(self, clinic_id: str, patient_id: str) -> Patient | None:
        return self._patients.get((clinic_id, patient_id))

    def get_subscription_status(self, clinic_id: str) -> str | None:
        return self._subscriptions.get(clinic_id)

    def get_subscription_statuses(self, clinic_ids: Iterable[str]) -> dict[str, str]:
        with self._lock:
            return {
                cid: self._subscriptions[cid]
                for cid in clinic_ids
                if cid in self._subscriptions
            }

    def get_module_settings(self, clinic_id: str, module_type: str) -> Any:
        config = self._module_configs.get((clinic_id, module_type))
        return config.settings if config else None

    def list_active_modules(self, clinic_id: str) -> list[str]:
        with self._lock:
            return sorted(
                cfg.module_type
                for (cid, _), cfg in self._module_configs.items()
                if cid == clinic_id and cfg.active
            )

    # ── Conversations ────────────────────────────────────────────────

    def find_active_conversation(
        self, clinic_id: str, patient_id: str, channel: str,
    ) -> Conversation | None:
        with self._lock:
            matches = [
                c for c in self._conversations.values()
                if c.clinic_id == clinic_id
                and c.patient_id == patient_id
                and c.channel == channel
                and c.status == ACTIVE
            ]
        if not matches:
            return None
        return max(matches, key=lambda c: c.created_at)

    def create_conversation(
        self, clinic_id: str, patient_id: str, channel: str,
    ) -> Conversation:
        with self._lock:
            # Partial unique index: one active row per tuple
            for c in self._conversations.values():
                if (
                    c.clinic_id == clinic_id
                    and c.patient_id == patient_id
                    and c.channel == channel
                    and c.status == ACTIVE
                ):
                    raise DuplicateKeyError("conversations_one_active_per_tuple")
            conversation = Conversation(
                id=new_id(), clinic_id=clinic_id, patient_id=patient_id, channel=channel,
            )
            self._conversations[conversation.id] = conversation
            return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def update_conversation(
        self,
        conversation_id: str,
        *,
        status: str | None = None,
        module: str | None = None,
    ) -> Conversation:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise RepositoryError(f"Conversation {conversation_id} not found")
            changes: dict[str, Any] = {}
            if status is not None:
                changes["status"] = status
            if module is not None:
                changes["module"] = module
            updated = replace(current, **changes)
            self._conversations[conversation_id] = updated
            return updated

    # ── Messages ─────────────────────────────────────────────────────

    def append_message(self, message: Message) -> Message:
        with self._lock:
            for existing in self._messages:
                if (
                    message.external_id
                    and existing.external_id == message.external_id
                    and existing.clinic_id == message.clinic_id
                ):
                    raise DuplicateKeyError("messages_clinic_external_id")
                if (
                    message.reply_to
                    and existing.reply_to == message.reply_to
                    and existing.conversation_id == message.conversation_id
                ):
                    raise DuplicateKeyError("messages_conversation_reply_to")
            self._messages.append(message)
            return message

    def find_inbound_message(self, clinic_id: str, external_id: str) -> Message | None:
        with self._lock:
            return next(
                (
                    m for m in self._messages
                    if m.clinic_id == clinic_id and m.external_id == external_id
                ),
                None,
            )

    def find_reply(self, conversation_id: str, reply_to: str) -> Message | None:
        with self._lock:
            return next(
                (
                    m for m in self._messages
                    if m.conversation_id == conversation_id and m.reply_to == reply_to
                ),
                None,
            )

    def list_messages(self, conversation_id: str, limit: int) -> list[Message]:
        rows = self.all_messages(conversation_id)
        rows.sort(key=lambda m: m.created_at)
        return rows[-limit:] if limit > 0 else []

    def count_outbound_since(self, clinic_id: str, patient_id: str, since: datetime) -> int:
        with self._lock:
            conversation_ids = {
                c.id for c in self._conversations.values()
                if c.clinic_id == clinic_id and c.patient_id == patient_id
            }
            return sum(
                1 for m in self._messages
                if m.conversation_id in conversation_ids
                and m.role == ROLE_ASSISTANT
                and m.created_at >= since
                and not m.metadata.get("queued", False)
            )

    def enqueue_outbound(self, item: OutboundItem) -> OutboundItem:
        with self._lock:
            self._outbox.append(item)
        logger.debug("Outbox: queued %s for conversation %s", item.id, item.conversation_id)
        return item

    # ── Cron ─────────────────────────────────────────────────────────

    def find_follow_up_candidates(
        self, unanswered_before: datetime, limit: int, offset: int = 0,
    ) -> list[FollowUpCandidate]:
        candidates: list[FollowUpCandidate] = []
        passed = 0
        with self._lock:
            active = [c for c in self._conversations.values() if c.status == ACTIVE]
            for conversation in sorted(active, key=lambda c: c.created_at):
                rows = [m for m in self._messages if m.conversation_id == conversation.id]
                if not rows:
                    continue
                last = max(rows, key=lambda m: m.created_at)
                if last.role != ROLE_ASSISTANT or last.created_at >= unanswered_before:
                    continue
                # A reply to an automated follow-up is not followed up again
                if last.metadata.get("origin") == ROLE_SYSTEM:
                    continue
                if passed < offset:
                    passed += 1
                    continue
                candidates.append(
                    FollowUpCandidate(
                        clinic_id=conversation.clinic_id,
                        conversation_id=conversation.id,
                        patient_id=conversation.patient_id,
                        channel=conversation.channel,
                        module=conversation.module,
                        last_message_id=last.id,
                        last_message_at=last.created_at,
                    )
                )
                if len(candidates) >= limit:
                    break
        return candidates
