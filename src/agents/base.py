"""Module Agent contract.

An agent decides the next step of an engine pass; it never executes
tools itself.  The engine owns execution, counting and bounding.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from src.models import ROLE_USER, Clinic, Message, Patient, ToolCall, new_id


# ── Agent steps ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class RespondDirectly:
    text: str


@dataclass(frozen=True)
class InvokeTool:
    """Ask the engine to run ``tool_name``.  ``text`` is any reply draft the
    model produced alongside the call; the engine uses it only if the pass
    ends before the agent gets another turn."""

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    text: str = ""
    call_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class Escalate:
    reason: str = ""


AgentStep = Union[RespondDirectly, InvokeTool, Escalate]


# ── Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AgentContext:
    """Everything an agent may know about the conversation it is answering."""

    clinic_id: str
    patient_id: str
    conversation_id: str
    channel: str
    module: str
    history: tuple[Message, ...] = ()
    clinic: Clinic | None = None
    patient: Patient | None = None
    origin: str = ROLE_USER


class ModuleAgent(ABC):
    """One implementation per module, selected by ``AgentRegistry``."""

    module: str

    @abstractmethod
    def decide(
        self,
        context: AgentContext,
        message_text: str,
        tool_calls: Sequence[ToolCall] = (),
        *,
        allow_tools: bool = True,
    ) -> AgentStep:
        """Return the next step given the calls already executed this pass.

        With ``allow_tools=False`` the call budget is spent and the agent
        must answer with what it has.
        """
