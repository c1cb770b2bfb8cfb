"""Conversation Store — find-or-create of the active conversation per
(clinic, patient, channel), plus the status/module transitions driven by
the engine.

Creation relies on the storage-level uniqueness constraint (one active
conversation per tuple).  A ``DuplicateKeyError`` on insert means another
caller won the race: the loser re-resolves and adopts the winner's
conversation instead of surfacing the conflict.
"""

from __future__ import annotations

import logging

from src.errors import ConversationCreateFailed
from src.models import ESCALATED, RESOLVED, Conversation
from src.services.repository import DuplicateKeyError, Repository

logger = logging.getLogger(__name__)

MAX_CREATE_ATTEMPTS = 3


class ConversationStore:
    """Sole writer of conversation status transitions in this core."""

    def __init__(self, repository: Repository, *, max_attempts: int = MAX_CREATE_ATTEMPTS) -> None:
        self._repository = repository
        self._max_attempts = max_attempts

    def resolve_active_conversation(
        self, clinic_id: str, patient_id: str, channel: str,
    ) -> Conversation:
        """Return the active conversation for the tuple, creating it if needed.

        Raises:
            ConversationCreateFailed: storage kept failing, or kept
                reporting a conflict without ever exposing the winner.
        """
        last_error = ""
        for attempt in range(1, self._max_attempts + 1):
            try:
                existing = self._repository.find_active_conversation(clinic_id, patient_id, channel)
                if existing is not None:
                    return existing
                conversation = self._repository.create_conversation(clinic_id, patient_id, channel)
                logger.info(
                    "Created conversation %s for clinic=%s patient=%s channel=%s",
                    conversation.id, clinic_id, patient_id, channel,
                )
                return conversation

            except DuplicateKeyError as exc:
                last_error = str(exc)
                winner = self._find_quietly(clinic_id, patient_id, channel)
                if winner is not None:
                    logger.info(
                        "Lost conversation create race for clinic=%s patient=%s; adopting %s",
                        clinic_id, patient_id, winner.id,
                    )
                    return winner
                logger.warning(
                    "Conversation create conflict without a visible winner (attempt %d/%d)",
                    attempt, self._max_attempts,
                )

            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Conversation resolve attempt %d/%d failed for clinic=%s patient=%s: %s",
                    attempt, self._max_attempts, clinic_id, patient_id, last_error,
                )

        raise ConversationCreateFailed(clinic_id, patient_id, channel, last_error)

    def _find_quietly(self, clinic_id: str, patient_id: str, channel: str) -> Conversation | None:
        try:
            return self._repository.find_active_conversation(clinic_id, patient_id, channel)
        except Exception:
            logger.exception("Re-resolve after create conflict failed")
            return None

    # ── Transitions ──────────────────────────────────────────────────

    def mark_escalated(self, conversation_id: str) -> Conversation:
        logger.info("Conversation %s escalated to a human", conversation_id)
        return self._repository.update_conversation(conversation_id, status=ESCALATED)

    def mark_resolved(self, conversation_id: str) -> Conversation:
        return self._repository.update_conversation(conversation_id, status=RESOLVED)

    def assign_module(self, conversation_id: str, module: str) -> Conversation:
        return self._repository.update_conversation(conversation_id, module=module)
