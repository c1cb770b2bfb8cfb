"""Value objects shared by the engine, the stores and the API layer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from src.errors import BatchItemFailed

# ── Conversation status ──────────────────────────────────────────────
ACTIVE = "active"
ESCALATED = "escalated"
RESOLVED = "resolved"

# ── Message roles ────────────────────────────────────────────────────
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"

# ── Engine outcomes ──────────────────────────────────────────────────
OUTCOME_RESPONDED = "responded"
OUTCOME_ESCALATED = "escalated"
OUTCOME_BUDGET_EXHAUSTED = "budget_exhausted"
OUTCOME_INVALID_TOOL_CALL = "invalid_tool_call"
OUTCOME_AGENT_FAILED = "agent_failed"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Clinic data ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class Clinic:
    id: str
    name: str
    timezone: str = "America/Sao_Paulo"
    phone: str | None = None
    address: str | None = None
    # Language of the fixed texts and of the agents' replies.
    locale: str = "en"


@dataclass(frozen=True)
class Patient:
    id: str
    clinic_id: str
    name: str
    phone: str | None = None

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0] if self.name else ""


@dataclass(frozen=True)
class Subscription:
    clinic_id: str
    status: str


@dataclass(frozen=True)
class ModuleConfig:
    """Per-(clinic, module) configuration.  ``settings`` is an open bag."""

    clinic_id: str
    module_type: str
    active: bool = True
    settings: Any = field(default_factory=dict)


# ── Conversations & messages ─────────────────────────────────────────


@dataclass(frozen=True)
class Conversation:
    id: str
    clinic_id: str
    patient_id: str
    channel: str
    status: str = ACTIVE
    module: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Message:
    """A stored message.  Immutable once appended.

    ``external_id`` is the channel's id for inbound messages and
    ``reply_to`` links an assistant reply to the inbound row it answers;
    both are unique at the storage layer.
    """

    conversation_id: str
    clinic_id: str
    role: str
    content: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    external_id: str | None = None
    reply_to: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OutboundItem:
    """A reply held for later delivery by the outbound collaborator."""

    conversation_id: str
    clinic_id: str
    patient_id: str
    channel: str
    content: str
    message_id: str
    id: str = field(default_factory=new_id)
    status: str = "pending"
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class InboundMessage:
    """Inbound message as received from a messaging channel (or the cron)."""

    clinic_id: str
    patient_id: str
    channel: str
    text: str
    external_message_id: str | None = None
    origin: str = ROLE_USER


# ── Engine results ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolCall:
    """One executed tool invocation, in call order."""

    tool_name: str
    arguments: dict[str, Any]
    result_summary: str
    ok: bool = True
    failure_kind: str | None = None
    call_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class EngineResult:
    """Normalized result of one engine pass.

    The count and names are derived from the call log so that
    ``tool_call_count == len(tool_call_names)`` always holds.
    """

    response_text: str
    tool_calls: tuple[ToolCall, ...] = ()
    outcome: str = OUTCOME_RESPONDED
    route_to: str | None = None
    escalation_reason: str | None = None
    # Verbatim text from tools (payment links), added after the agent's reply.
    appended: tuple[str, ...] = ()

    @property
    def tool_call_count(self) -> int:
        return len(self.tool_calls)

    @property
    def tool_call_names(self) -> list[str]:
        return [call.tool_name for call in self.tool_calls]

    @property
    def escalated(self) -> bool:
        return self.outcome == OUTCOME_ESCALATED

    @property
    def reply_text(self) -> str:
        return "\n\n".join((self.response_text, *self.appended))


@dataclass(frozen=True)
class ProcessMessageResult:
    conversation_id: str
    module: str
    response_text: str
    tool_call_names: tuple[str, ...] = ()
    queued: bool = False
    outcome: str = OUTCOME_RESPONDED
    replayed: bool = False

    @property
    def tool_call_count(self) -> int:
        return len(self.tool_call_names)


# ── Cron ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FollowUpCandidate:
    """An active conversation whose last message went unanswered."""

    clinic_id: str
    conversation_id: str
    patient_id: str
    channel: str
    module: str | None
    last_message_id: str
    last_message_at: datetime


@dataclass
class BatchSummary:
    candidates: int = 0
    eligible: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[BatchItemFailed] = field(default_factory=list)
