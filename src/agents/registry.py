"""Module → agent table, built once at start-up."""

from __future__ import annotations

from collections.abc import Iterable
from types import MappingProxyType

from src.agents.base import ModuleAgent


class AgentRegistry:
    def __init__(self, agents: Iterable[ModuleAgent]) -> None:
        table: dict[str, ModuleAgent] = {}
        for agent in agents:
            if agent.module in table:
                raise ValueError(f"An agent is already registered for module {agent.module!r}")
            table[agent.module] = agent
        self._agents = MappingProxyType(table)

    def get(self, module: str | None) -> ModuleAgent | None:
        if module is None:
            return None
        return self._agents.get(module)

    def __contains__(self, module: object) -> bool:
        return module in self._agents

    def modules(self) -> tuple[str, ...]:
        """Registered modules, in registration order."""
        return tuple(self._agents)
