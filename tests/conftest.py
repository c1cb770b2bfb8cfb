"""Shared test fixtures for the clinic agents test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence

import pytest


# Set before any src import: config.py reads these at module load.
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("METRICS_ENABLED", "false")

from src.agents.base import AgentContext, AgentStep, ModuleAgent, RespondDirectly  # noqa: E402
from src.agents.registry import AgentRegistry  # noqa: E402
from src.bootstrap import AppComponents, build_components, build_tool_registry  # noqa: E402
from src.models import Clinic, ModuleConfig, Patient, ToolCall  # noqa: E402
from src.services.clinic import (  # noqa: E402
    ClinicServices,
    InMemoryBillingService,
    InMemorySchedulingService,
    Professional,
)
from src.services.memory_store import InMemoryRepository  # noqa: E402


class ScriptedAgent(ModuleAgent):
    """Plays back a fixed list of steps, or asks a callable for each one.

    Every ``decide`` call is recorded so tests can check what the engine
    passed in.  Once the script runs out the agent answers ``"done"``.
    """

    def __init__(
        self,
        module: str,
        steps: Sequence[AgentStep] | Callable[..., AgentStep] = (),
    ) -> None:
        self.module = module
        self._steps = steps if callable(steps) else list(steps)
        self.calls: list[dict] = []

    def decide(
        self,
        context: AgentContext,
        message_text: str,
        tool_calls: Sequence[ToolCall] = (),
        *,
        allow_tools: bool = True,
    ) -> AgentStep:
        self.calls.append({
            "context": context,
            "message_text": message_text,
            "tool_calls": tuple(tool_calls),
            "allow_tools": allow_tools,
        })
        if callable(self._steps):
            return self._steps(context, message_text, tool_calls, allow_tools)
        if self._steps:
            return self._steps.pop(0)
        return RespondDirectly("done")


@pytest.fixture
def services() -> ClinicServices:
    scheduling = InMemorySchedulingService(timezone="UTC")
    scheduling.add_professional("c1", Professional("d1", "Dr. Ana Costa"))
    return ClinicServices(scheduling=scheduling, billing=InMemoryBillingService())


@pytest.fixture
def repository() -> InMemoryRepository:
    """Clinic ``c1`` (active) with patient ``p1`` and the scheduling module enabled."""
    repo = InMemoryRepository()
    repo.add_clinic(Clinic(id="c1", name="Sorriso Dental", timezone="UTC", phone="+55 11 4000-1234"))
    repo.add_patient(Patient(id="p1", clinic_id="c1", name="Maria Silva"))
    repo.set_subscription("c1", "active")
    repo.set_module_config(ModuleConfig(clinic_id="c1", module_type="scheduling"))
    return repo


@pytest.fixture
def tools():
    return build_tool_registry()


@pytest.fixture
def make_components(repository, services, tools) -> Callable[..., AppComponents]:
    """Factory: wire the engine around scripted agents.

    ``make_components(ScriptedAgent("scheduling", [...]), delivery_policy=...)``
    """

    built: list[AppComponents] = []

    def _make(*agents: ModuleAgent, **kwargs) -> AppComponents:
        components = build_components(
            repository, services, AgentRegistry(agents), tools=tools, **kwargs,
        )
        built.append(components)
        return components

    yield _make
    for components in built:
        components.engine.shutdown()
