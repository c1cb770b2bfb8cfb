"""The narrow storage interface the orchestration core is allowed to use.

Any row store can back it (Postgres, Supabase, DynamoDB …) as long as it
honours the two uniqueness constraints below and reports violations as
``DuplicateKeyError``:

* at most one ``active`` conversation per (clinic, patient, channel)
* at most one inbound message per (clinic, external_id) and at most one
  assistant reply per (conversation, reply_to)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from src.models import (
    Clinic,
    Conversation,
    FollowUpCandidate,
    Message,
    OutboundItem,
    Patient,
)


class RepositoryError(Exception):
    """Raised when the underlying store fails."""


class DuplicateKeyError(RepositoryError):
    """A write violated a uniqueness constraint."""

    def __init__(self, constraint: str):
        self.constraint = constraint
        super().__init__(f"Duplicate key violates {constraint}")


class Repository(ABC):
    """Storage operations used by the gate, the stores and the processor."""

    # ── Clinic configuration ─────────────────────────────────────────

    @abstractmethod
    def get_clinic(self, clinic_id: str) -> Clinic | None: ...

    @abstractmethod
    def get_patient(self, clinic_id: str, patient_id: str) -> Patient | None: ...

    @abstractmethod
    def get_subscription_status(self, clinic_id: str) -> str | None:
        """Return the clinic's subscription status, or ``None`` if it has none."""

    @abstractmethod
    def get_subscription_statuses(self, clinic_ids: Iterable[str]) -> dict[str, str]:
        """Batch variant: ``{clinic_id: status}`` for clinics that have a row."""

    @abstractmethod
    def get_module_settings(self, clinic_id: str, module_type: str) -> Any:
        """Return the raw settings value for the module, or ``None``."""

    @abstractmethod
    def list_active_modules(self, clinic_id: str) -> list[str]: ...

    # ── Conversations ────────────────────────────────────────────────

    @abstractmethod
    def find_active_conversation(
        self, clinic_id: str, patient_id: str, channel: str,
    ) -> Conversation | None:
        """Most recently created active conversation for the tuple."""

    @abstractmethod
    def create_conversation(
        self, clinic_id: str, patient_id: str, channel: str,
    ) -> Conversation:
        """Insert a new active conversation.

        Raises ``DuplicateKeyError`` if an active one already exists.
        """

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    @abstractmethod
    def update_conversation(
        self,
        conversation_id: str,
        *,
        status: str | None = None,
        module: str | None = None,
    ) -> Conversation: ...

    # ── Messages ─────────────────────────────────────────────────────

    @abstractmethod
    def append_message(self, message: Message) -> Message:
        """Append an immutable message.

        Raises ``DuplicateKeyError`` on a repeated inbound ``external_id``
        or a second reply to the same inbound message.
        """

    @abstractmethod
    def find_inbound_message(self, clinic_id: str, external_id: str) -> Message | None: ...

    @abstractmethod
    def find_reply(self, conversation_id: str, reply_to: str) -> Message | None: ...

    @abstractmethod
    def list_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """The last ``limit`` messages, oldest first."""

    @abstractmethod
    def count_outbound_since(self, clinic_id: str, patient_id: str, since: datetime) -> int:
        """Assistant replies delivered to the patient since ``since``.

        Replies stored with ``metadata["queued"]`` set are still in the
        outbox and are not counted.
        """

    @abstractmethod
    def enqueue_outbound(self, item: OutboundItem) -> OutboundItem: ...

    # ── Cron ─────────────────────────────────────────────────────────

    @abstractmethod
    def find_follow_up_candidates(
        self, unanswered_before: datetime, limit: int, offset: int = 0,
    ) -> list[FollowUpCandidate]:
        """Active conversations whose latest message is an assistant reply
        older than ``unanswered_before``, oldest conversation first.  The
        first ``offset`` matches are skipped so callers can page."""
