"""Typed failures raised at the boundaries of the orchestration engine.

Gate and conversation-store failures escape to the caller (webhook
handler, cron loop) as one of these types so the caller can pick a retry
policy.  Per-tool failures never appear here: they are converted into
failed ``ToolOutcome`` values inside the tool layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.models import ToolCall


class ClinicAgentError(Exception):
    """Base class for every typed failure of the engine."""


class ClinicNotProcessable(ClinicAgentError):
    """The subscription gate denied the clinic.  Callers should skip, not retry."""

    def __init__(self, clinic_id: str):
        self.clinic_id = clinic_id
        super().__init__(f"Clinic {clinic_id} is not processable by automated flows")


class NoModuleAvailable(ClinicAgentError):
    """The clinic has no enabled module with a registered agent."""

    def __init__(self, clinic_id: str):
        self.clinic_id = clinic_id
        super().__init__(f"No registered module is enabled for clinic {clinic_id}")


class ConversationCreateFailed(ClinicAgentError):
    """Storage refused to create or surface an active conversation.

    Safe to retry the whole ``process_message`` call from scratch.
    """

    def __init__(self, clinic_id: str, patient_id: str, channel: str, reason: str = ""):
        self.clinic_id = clinic_id
        self.patient_id = patient_id
        self.channel = channel
        message = f"Could not create conversation for ({clinic_id}, {patient_id}, {channel})"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class InvalidToolCall(ClinicAgentError, LookupError):
    """An agent asked for a tool its module does not register."""

    def __init__(self, module: str, tool_name: str):
        self.module = module
        self.tool_name = tool_name
        super().__init__(f"Tool {tool_name!r} is not registered for module {module!r}")


class Cancelled(ClinicAgentError):
    """Processing was aborted between tool-loop iterations.

    ``tool_calls`` holds the calls that already ran.  Their side effects
    are not rolled back and no outbound message is produced.
    """

    def __init__(self, tool_calls: tuple[ToolCall, ...] = ()):
        self.tool_calls = tuple(tool_calls)
        super().__init__(f"Processing cancelled after {len(self.tool_calls)} tool call(s)")


@dataclass(frozen=True)
class BatchItemFailed:
    """One isolated failure inside a cron batch (recorded, never raised)."""

    clinic_id: str
    conversation_id: str | None
    error_type: str
    message: str
