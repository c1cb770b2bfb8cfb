"""Message Processor: one inbound message in, one stored reply out.

Steps of ``process_message``:

  1. subscription gate (``ClinicNotProcessable``, nothing else happens)
  2. duplicate check on the inbound external id (replay the stored reply)
  3. resolve the active conversation
  4. pick the module (sticky, or routed for a new conversation)
  5. append the inbound message
  6. run the engine
  7. ask the delivery policy whether the reply is queued
  8. append the reply (and the outbox item when queued), apply
     escalation / hand-off side effects

Idempotency rests on two storage constraints: the inbound external id
is unique per clinic, and a reply is unique per inbound row.  A retried
or concurrent duplicate may re-run the engine, but only the first reply
append is kept; the others return that stored reply.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence

from src.agents.base import AgentContext
from src.agents.registry import AgentRegistry
from src.config import MAX_HISTORY_MESSAGES
from src.conversations import ConversationStore
from src.delivery import DeliveryPolicy, DeliveryRequest, ImmediateDeliveryPolicy
from src.engine import Engine
from src.errors import Cancelled, ClinicNotProcessable, NoModuleAvailable
from src.gate import SubscriptionGate
from src.models import (
    OUTCOME_RESPONDED,
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_USER,
    Conversation,
    InboundMessage,
    Message,
    OutboundItem,
    ProcessMessageResult,
)
from src.router import ModuleRouter, fallback_module
from src.services.metrics import metrics
from src.services.repository import DuplicateKeyError, Repository

logger = logging.getLogger(__name__)


def _replayed(reply: Message) -> ProcessMessageResult:
    meta = reply.metadata
    return ProcessMessageResult(
        conversation_id=reply.conversation_id,
        module=meta.get("module", ""),
        response_text=reply.content,
        tool_call_names=tuple(meta.get("tool_call_names", ())),
        queued=bool(meta.get("queued", False)),
        outcome=meta.get("outcome", OUTCOME_RESPONDED),
        replayed=True,
    )


class MessageProcessor:
    def __init__(
        self,
        repository: Repository,
        gate: SubscriptionGate,
        conversations: ConversationStore,
        engine: Engine,
        agents: AgentRegistry,
        *,
        router: ModuleRouter | None = None,
        delivery_policy: DeliveryPolicy | None = None,
        history_limit: int = MAX_HISTORY_MESSAGES,
    ) -> None:
        self.repository = repository
        self.gate = gate
        self.conversations = conversations
        self.engine = engine
        self.agents = agents
        self.router = router
        self.delivery_policy = delivery_policy or ImmediateDeliveryPolicy()
        self.history_limit = history_limit

    def process_message(
        self,
        inbound: InboundMessage,
        *,
        cancel: threading.Event | None = None,
    ) -> ProcessMessageResult:
        """Process *inbound* and return the stored reply.

        Raises:
            ClinicNotProcessable: the gate denied the clinic.
            NoModuleAvailable: the clinic has no registered, enabled module.
            ConversationCreateFailed: no active conversation could be resolved.
            Cancelled: *cancel* was set; no reply is stored.
        """
        clinic_id = inbound.clinic_id

        if not self.gate.is_processable(clinic_id):
            logger.info("Gate denied clinic %s; skipping inbound message", clinic_id)
            metrics.record_gate_denied("not_processable")
            raise ClinicNotProcessable(clinic_id)

        # ── Duplicate delivery ───────────────────────────────────────
        inbound_row: Message | None = None
        if inbound.external_message_id:
            inbound_row = self.repository.find_inbound_message(clinic_id, inbound.external_message_id)
            if inbound_row is not None:
                reply = self.repository.find_reply(inbound_row.conversation_id, inbound_row.id)
                if reply is not None:
                    logger.info(
                        "Duplicate inbound %s for clinic %s; replaying stored reply",
                        inbound.external_message_id, clinic_id,
                    )
                    return _replayed(reply)

        # ── Conversation & module ────────────────────────────────────
        conversation = None
        if inbound_row is not None:
            # Stored earlier but never answered: finish it in its own conversation.
            conversation = self.repository.get_conversation(inbound_row.conversation_id)
        if conversation is None:
            conversation = self.conversations.resolve_active_conversation(
                clinic_id, inbound.patient_id, inbound.channel,
            )

        history = [
            row for row in self.repository.list_messages(conversation.id, self.history_limit + 1)
            if inbound_row is None or row.id != inbound_row.id
        ][-self.history_limit:]

        module = self._select_module(conversation, inbound.text, history)

        # ── Inbound append ───────────────────────────────────────────
        if inbound_row is None:
            try:
                inbound_row = self.repository.append_message(Message(
                    conversation_id=conversation.id,
                    clinic_id=clinic_id,
                    role=ROLE_SYSTEM if inbound.origin == ROLE_SYSTEM else ROLE_USER,
                    content=inbound.text,
                    external_id=inbound.external_message_id,
                    metadata={"origin": inbound.origin, "channel": inbound.channel},
                ))
            except DuplicateKeyError:
                # A concurrent delivery of the same message stored it first.
                inbound_row = self.repository.find_inbound_message(clinic_id, inbound.external_message_id)
                if inbound_row is None:
                    raise
                reply = self.repository.find_reply(inbound_row.conversation_id, inbound_row.id)
                if reply is not None:
                    return _replayed(reply)

        # ── Engine ───────────────────────────────────────────────────
        context = AgentContext(
            clinic_id=clinic_id,
            patient_id=inbound.patient_id,
            conversation_id=conversation.id,
            channel=inbound.channel,
            module=module,
            history=tuple(history),
            clinic=self.repository.get_clinic(clinic_id),
            patient=self.repository.get_patient(clinic_id, inbound.patient_id),
            origin=inbound.origin,
        )
        try:
            result = self.engine.run(module, context, inbound.text, cancel=cancel)
        except Cancelled as exc:
            self._log_cancelled(conversation, exc.tool_calls)
            raise
        self._raise_if_cancelled(cancel, conversation, result.tool_calls)

        # ── Delivery decision & reply ────────────────────────────────
        queued = self._should_queue(DeliveryRequest(
            clinic_id=clinic_id,
            patient_id=inbound.patient_id,
            conversation_id=conversation.id,
            channel=inbound.channel,
            module=module,
            text=result.reply_text,
            escalated=result.escalated,
        ))

        # The caller may have given up while the policy ran.
        self._raise_if_cancelled(cancel, conversation, result.tool_calls)

        try:
            reply = self.repository.append_message(Message(
                conversation_id=conversation.id,
                clinic_id=clinic_id,
                role=ROLE_ASSISTANT,
                content=result.reply_text,
                reply_to=inbound_row.id,
                metadata={
                    "module": module,
                    "tool_call_names": result.tool_call_names,
                    "queued": queued,
                    "outcome": result.outcome,
                    "origin": inbound.origin,
                },
            ))
        except DuplicateKeyError:
            stored = self.repository.find_reply(conversation.id, inbound_row.id)
            if stored is None:
                raise
            logger.info("Reply to %s already stored by a concurrent run; replaying it", inbound_row.id)
            return _replayed(stored)

        if queued:
            self.repository.enqueue_outbound(OutboundItem(
                conversation_id=conversation.id,
                clinic_id=clinic_id,
                patient_id=inbound.patient_id,
                channel=inbound.channel,
                content=reply.content,
                message_id=reply.id,
            ))

        self._apply_effects(conversation, module, result.escalated, result.route_to)

        return ProcessMessageResult(
            conversation_id=conversation.id,
            module=module,
            response_text=result.reply_text,
            tool_call_names=tuple(result.tool_call_names),
            queued=queued,
            outcome=result.outcome,
        )

    # ── Helpers ──────────────────────────────────────────────────────

    def _select_module(
        self, conversation: Conversation, text: str, history: Sequence[Message],
    ) -> str:
        if conversation.module and conversation.module in self.agents:
            return conversation.module

        enabled = self.repository.list_active_modules(conversation.clinic_id)
        eligible = [m for m in enabled if m in self.agents]
        if not eligible:
            raise NoModuleAvailable(conversation.clinic_id)

        if len(eligible) == 1:
            module = eligible[0]
        elif self.router is not None:
            module = self.router.route(text, eligible, history)
        else:
            module = fallback_module(eligible)

        self.conversations.assign_module(conversation.id, module)
        logger.info("Conversation %s assigned to module %s", conversation.id, module)
        return module

    def _raise_if_cancelled(
        self, cancel: threading.Event | None, conversation: Conversation, tool_calls,
    ) -> None:
        if cancel is not None and cancel.is_set():
            self._log_cancelled(conversation, tool_calls)
            raise Cancelled(tool_calls)

    def _log_cancelled(self, conversation: Conversation, tool_calls) -> None:
        logger.warning(
            "Processing of conversation %s cancelled after %d tool call(s)",
            conversation.id, len(tool_calls),
        )

    def _should_queue(self, request: DeliveryRequest) -> bool:
        try:
            return bool(self.delivery_policy.should_queue(request))
        except Exception:
            # Hold the reply when the policy cannot decide.
            logger.exception("Delivery policy failed for conversation %s; queueing", request.conversation_id)
            return True

    def _apply_effects(
        self, conversation: Conversation, module: str, escalated: bool, route_to: str | None,
    ) -> None:
        if escalated:
            self.conversations.mark_escalated(conversation.id)
        if route_to and route_to != module:
            if route_to in self.agents:
                self.conversations.assign_module(conversation.id, route_to)
                logger.info("Conversation %s handed from %s to %s", conversation.id, module, route_to)
            else:
                logger.warning("Ignoring hand-off to unregistered module %r", route_to)
