"""Tool Registry — a process-wide, read-only namespace of tool handlers
keyed by (module, tool name).

A ``ToolHandler`` pairs a pydantic argument schema with a plain function
``func(context, **arguments)``.  ``invoke`` never raises: bad arguments,
business conflicts, upstream outages and unexpected exceptions all come
back as a failed ``ToolOutcome`` that the engine records and feeds to
the agent.

Tools are declared with the ``tool_handler`` decorator, in the spirit of
LangChain's ``@tool``::

    @tool_handler("scheduling", args_schema=CheckAvailabilityArgs)
    def check_availability(ctx: ToolContext, date_from: date, ...) -> dict:
        \"\"\"Check free appointment slots between two dates.\"\"\"
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from src.errors import InvalidToolCall

if TYPE_CHECKING:
    from src.models import Clinic, Patient
    from src.services.clinic import ClinicServices

logger = logging.getLogger(__name__)

MAX_SUMMARY_CHARS = 1_000
# Payload key a tool sets to add text to the reply without the agent seeing it.
APPEND_KEY = "append_to_response"

# ── Failure kinds ────────────────────────────────────────────────────
VALIDATION_FAILED = "validation_failed"
CONFLICT_FAILED = "conflict_failed"
UPSTREAM_UNAVAILABLE = "upstream_unavailable"
EXECUTION_FAILED = "execution_failed"


class ToolError(Exception):
    """Raised by tool functions to report a typed, patient-safe failure."""

    kind = EXECUTION_FAILED


class ToolValidationError(ToolError):
    kind = VALIDATION_FAILED


class ToolConflictError(ToolError):
    kind = CONFLICT_FAILED


class ToolUpstreamError(ToolError):
    kind = UPSTREAM_UNAVAILABLE


# ── Invocation context & outcome ─────────────────────────────────────


@dataclass(frozen=True)
class ToolContext:
    """What a tool may know about the pass that invoked it."""

    clinic_id: str
    patient_id: str
    conversation_id: str
    services: ClinicServices
    clinic: Clinic | None = None
    patient: Patient | None = None
    feature_enabled: Callable[[str, str], bool] = lambda module, key: False


@dataclass(frozen=True)
class ToolOutcome:
    ok: bool
    payload: Any = None
    failure_kind: str | None = None
    message: str = ""

    @classmethod
    def success(cls, payload: Any) -> ToolOutcome:
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, kind: str, message: str) -> ToolOutcome:
        return cls(ok=False, failure_kind=kind, message=message)

    @property
    def route_to(self) -> str | None:
        """Module hand-off requested by a successful tool, if any."""
        if self.ok and isinstance(self.payload, Mapping):
            target = self.payload.get("route_to")
            return target if isinstance(target, str) else None
        return None

    @property
    def append_to_response(self) -> str | None:
        """Text added verbatim after the agent's reply; the agent never sees it."""
        if self.ok and isinstance(self.payload, Mapping):
            text = self.payload.get(APPEND_KEY)
            return text if isinstance(text, str) and text else None
        return None

    def summary(self, limit: int = MAX_SUMMARY_CHARS) -> str:
        """Short text the agent (and the audit trail) sees for this call."""
        if not self.ok:
            text = f"{self.failure_kind}: {self.message}"
        elif isinstance(self.payload, str):
            text = self.payload
        else:
            payload = self.payload
            if isinstance(payload, Mapping) and APPEND_KEY in payload:
                payload = {k: v for k, v in payload.items() if k != APPEND_KEY}
            try:
                text = json.dumps(payload, default=str, ensure_ascii=False)
            except (TypeError, ValueError):
                text = str(self.payload)
        if len(text) > limit:
            text = text[: limit - 1] + "…"
        return text


# ── Handlers ─────────────────────────────────────────────────────────


def _first_validation_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid arguments"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "arguments"
    return f"{location}: {first.get('msg', 'invalid value')}"


@dataclass(frozen=True)
class ToolHandler:
    module: str
    name: str
    description: str
    args_schema: type[BaseModel]
    func: Callable[..., Any]

    def invoke(self, arguments: Mapping[str, Any] | None, context: ToolContext) -> ToolOutcome:
        """Validate *arguments* and run the tool; never raises."""
        try:
            parsed = self.args_schema.model_validate(dict(arguments or {}))
        except ValidationError as exc:
            return ToolOutcome.failure(VALIDATION_FAILED, _first_validation_error(exc))

        try:
            payload = self.func(context, **parsed.model_dump())
        except ToolError as exc:
            return ToolOutcome.failure(exc.kind, str(exc))
        except (TimeoutError, ConnectionError) as exc:
            logger.warning("Tool %s/%s upstream failure: %s", self.module, self.name, exc)
            return ToolOutcome.failure(
                UPSTREAM_UNAVAILABLE, "The service is temporarily unavailable.",
            )
        except Exception:
            logger.exception("Tool %s/%s raised unexpectedly", self.module, self.name)
            return ToolOutcome.failure(EXECUTION_FAILED, "The tool failed unexpectedly.")
        return ToolOutcome.success(payload)

    def as_tool_schema(self) -> dict[str, Any]:
        """Anthropic-format tool definition for ``bind_tools``."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_schema.model_json_schema(),
        }


def tool_handler(
    module: str,
    *,
    args_schema: type[BaseModel],
    name: str | None = None,
) -> Callable[[Callable[..., Any]], ToolHandler]:
    """Decorator turning ``func(ctx, **args)`` into a ``ToolHandler``.

    The description shown to the LLM is the function's docstring.
    """

    def decorator(func: Callable[..., Any]) -> ToolHandler:
        return ToolHandler(
            module=module,
            name=name or func.__name__,
            description=inspect.getdoc(func) or "",
            args_schema=args_schema,
            func=func,
        )

    return decorator


# ── Registry ─────────────────────────────────────────────────────────


class ToolRegistry:
    """Immutable (module, tool name) → handler table, built once at start-up."""

    def __init__(self, handlers: Iterable[ToolHandler]) -> None:
        table: dict[str, dict[str, ToolHandler]] = {}
        for handler in handlers:
            module_tools = table.setdefault(handler.module, {})
            if handler.name in module_tools:
                raise ValueError(
                    f"Tool {handler.name!r} is already registered for module {handler.module!r}"
                )
            module_tools[handler.name] = handler
        self._table: Mapping[str, Mapping[str, ToolHandler]] = MappingProxyType(
            {module: MappingProxyType(tools) for module, tools in table.items()}
        )

    def lookup(self, module: str, tool_name: str) -> ToolHandler:
        """Return the handler, or raise ``InvalidToolCall`` if it is not registered."""
        try:
            return self._table[module][tool_name]
        except KeyError:
            raise InvalidToolCall(module, tool_name) from None

    def has_tool(self, module: str, tool_name: str) -> bool:
        return tool_name in self._table.get(module, {})

    def tools_for(self, module: str) -> tuple[ToolHandler, ...]:
        return tuple(self._table.get(module, {}).values())

    def modules(self) -> frozenset[str]:
        return frozenset(self._table)
