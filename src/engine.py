"""Engine: the bounded tool-calling loop of one processing pass.

Architecture:
  A two-node LangGraph ``StateGraph``, compiled once per engine:

    decide        asks the module's agent for its next step
    execute_tool  runs the requested tool through the registry

    decide → (InvokeTool within budget?) → execute_tool → decide (loop)
           → (RespondDirectly / Escalate / budget spent / error) → END

  The agent only *chooses* tools.  Lookup, execution, the per-pass call
  budget and the ordered call log all live here, so a misbehaving agent
  cannot bypass them.  Once ``max_tool_calls`` calls have run, the agent
  is asked one last time with ``allow_tools=False`` and whatever it says
  becomes the reply.

  Tool failures (including timeouts) are recorded and handed back to the
  agent; they never escape as exceptions.  An unknown tool or an agent
  error ends the pass with the fixed fallback reply.  Cancellation is
  checked before every ``decide``.
"""

from __future__ import annotations

import logging
import operator
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Annotated, Any

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from src.agents.base import AgentContext, Escalate, InvokeTool, RespondDirectly
from src.agents.registry import AgentRegistry
from src.config import MAX_TOOL_CALLS, TOOL_TIMEOUT_SECONDS
from src.errors import Cancelled, InvalidToolCall
from src.gate import SubscriptionGate
from src.models import (
    OUTCOME_AGENT_FAILED,
    OUTCOME_BUDGET_EXHAUSTED,
    OUTCOME_ESCALATED,
    OUTCOME_INVALID_TOOL_CALL,
    OUTCOME_RESPONDED,
    EngineResult,
    ToolCall,
)
from src.prompts import fixed_text
from src.services.clinic import ClinicServices
from src.services.metrics import metrics
from src.tools.registry import (
    UPSTREAM_UNAVAILABLE,
    ToolContext,
    ToolHandler,
    ToolOutcome,
    ToolRegistry,
)

logger = logging.getLogger(__name__)

TOOL_WORKERS = 16


def _locale(context: AgentContext) -> str | None:
    return context.clinic.locale if context.clinic else None


# ── State schema ─────────────────────────────────────────────────────


class PassState(TypedDict, total=False):
    """State of one pass.

    ``tool_calls`` and ``appended`` use an ``operator.add`` reducer so
    ``execute_tool`` appends one record (and any verbatim reply text) per
    call.  ``pending`` carries the step chosen by
    ``decide`` to ``execute_tool`` and is cleared once it has run.
    """

    module: str
    context: AgentContext
    message_text: str
    cancel: threading.Event | None
    tool_calls: Annotated[list[ToolCall], operator.add]
    appended: Annotated[list[str], operator.add]
    pending: InvokeTool | None
    response_text: str
    outcome: str
    route_to: str | None
    escalation_reason: str | None


class Engine:
    def __init__(
        self,
        agents: AgentRegistry,
        tools: ToolRegistry,
        services: ClinicServices,
        *,
        gate: SubscriptionGate | None = None,
        max_tool_calls: int = MAX_TOOL_CALLS,
        tool_timeout_seconds: float | None = TOOL_TIMEOUT_SECONDS,
        tool_workers: int = TOOL_WORKERS,
    ) -> None:
        if max_tool_calls < 1:
            raise ValueError("max_tool_calls must be at least 1")
        self.agents = agents
        self.tools = tools
        self.services = services
        self.gate = gate
        self.max_tool_calls = max_tool_calls
        self.tool_timeout_seconds = tool_timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=tool_workers, thread_name_prefix="tool")
        self._graph = self._build_graph()

    # ── Public API ───────────────────────────────────────────────────

    def run(
        self,
        module: str,
        context: AgentContext,
        message_text: str,
        *,
        cancel: threading.Event | None = None,
    ) -> EngineResult:
        """Run one pass for *module*.  Raises ``Cancelled`` if *cancel* is set
        before the agent is asked for its next step."""
        if module not in self.agents:
            raise ValueError(f"No agent registered for module {module!r}")

        final = self._graph.invoke(
            {
                "module": module,
                "context": context,
                "message_text": message_text,
                "cancel": cancel,
                "tool_calls": [],
                "appended": [],
                "pending": None,
                "route_to": None,
                "escalation_reason": None,
            },
            # decide + execute_tool per call, one closing decide, some slack.
            config={"recursion_limit": 2 * self.max_tool_calls + 5},
        )

        result = EngineResult(
            response_text=final.get("response_text") or fixed_text("fallback", _locale(context)),
            tool_calls=tuple(final.get("tool_calls", ())),
            outcome=final.get("outcome", OUTCOME_RESPONDED),
            route_to=final.get("route_to"),
            escalation_reason=final.get("escalation_reason"),
            appended=tuple(final.get("appended", ())),
        )
        metrics.record_engine_pass(module, result.outcome, tool_calls=result.tool_call_count)
        logger.debug(
            "Engine pass for %s/%s: %s after %d tool call(s) %s",
            module, context.conversation_id, result.outcome,
            result.tool_call_count, result.tool_call_names,
        )
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ── Nodes ────────────────────────────────────────────────────────

    def _decide_node(self, state: PassState) -> dict:
        calls = state["tool_calls"]
        cancel = state.get("cancel")
        if cancel is not None and cancel.is_set():
            raise Cancelled(tuple(calls))

        module = state["module"]
        budget_spent = len(calls) >= self.max_tool_calls
        locale = _locale(state["context"])
        agent = self.agents.get(module)
        try:
            step = agent.decide(
                state["context"], state["message_text"], tuple(calls),
                allow_tools=not budget_spent,
            )
        except Exception:
            logger.exception("Agent %s failed to decide; replying with fallback", module)
            return {"outcome": OUTCOME_AGENT_FAILED, "response_text": fixed_text("fallback", locale)}

        if isinstance(step, Escalate):
            logger.info("Agent %s escalated: %s", module, step.reason or "(no reason)")
            return {
                "outcome": OUTCOME_ESCALATED,
                "response_text": fixed_text("handoff", locale),
                "escalation_reason": step.reason,
            }

        if budget_spent:
            if isinstance(step, InvokeTool):
                logger.warning(
                    "Agent %s asked for %s after the %d-call budget was spent",
                    module, step.tool_name, self.max_tool_calls,
                )
            text = getattr(step, "text", "")
            return {
                "outcome": OUTCOME_BUDGET_EXHAUSTED,
                "response_text": text or fixed_text("budget_exhausted", locale),
            }

        if isinstance(step, RespondDirectly):
            return {
                "outcome": OUTCOME_RESPONDED,
                "response_text": step.text or fixed_text("fallback", locale),
            }

        if isinstance(step, InvokeTool):
            try:
                self.tools.lookup(module, step.tool_name)
            except InvalidToolCall:
                logger.error(
                    "Agent %s requested unknown tool %r; ending pass with fallback",
                    module, step.tool_name,
                )
                return {"outcome": OUTCOME_INVALID_TOOL_CALL, "response_text": fixed_text("fallback", locale)}
            return {"pending": step}

        logger.error("Agent %s returned an unknown step %r", module, step)
        return {"outcome": OUTCOME_AGENT_FAILED, "response_text": fixed_text("fallback", locale)}

    def _execute_tool_node(self, state: PassState) -> dict:
        step: InvokeTool = state["pending"]
        module = state["module"]
        handler = self.tools.lookup(module, step.tool_name)

        t0 = time.perf_counter()
        outcome = self._invoke(handler, step.arguments, self._tool_context(state["context"]))
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_tool_call(
            module, handler.name, ok=outcome.ok, latency_ms=elapsed,
            failure_kind=outcome.failure_kind,
        )
        if not outcome.ok:
            logger.warning(
                "Tool %s/%s failed (%s): %s", module, handler.name,
                outcome.failure_kind, outcome.message,
            )

        call = ToolCall(
            tool_name=handler.name,
            arguments=dict(step.arguments),
            result_summary=outcome.summary(),
            ok=outcome.ok,
            failure_kind=outcome.failure_kind,
            call_id=step.call_id,
        )
        update: dict[str, Any] = {"tool_calls": [call], "pending": None}
        if outcome.route_to:
            update["route_to"] = outcome.route_to
        if outcome.append_to_response:
            update["appended"] = [outcome.append_to_response]
        return update

    # ── Helpers ──────────────────────────────────────────────────────

    def _tool_context(self, context: AgentContext) -> ToolContext:
        gate = self.gate
        if gate is None:
            return ToolContext(
                clinic_id=context.clinic_id,
                patient_id=context.patient_id,
                conversation_id=context.conversation_id,
                services=self.services,
                clinic=context.clinic,
                patient=context.patient,
            )
        return ToolContext(
            clinic_id=context.clinic_id,
            patient_id=context.patient_id,
            conversation_id=context.conversation_id,
            services=self.services,
            clinic=context.clinic,
            patient=context.patient,
            feature_enabled=lambda module, key: gate.is_feature_enabled(
                context.clinic_id, module, key,
            ),
        )

    def _invoke(self, handler: ToolHandler, arguments: dict, context: ToolContext) -> ToolOutcome:
        if not self.tool_timeout_seconds or self.tool_timeout_seconds <= 0:
            return handler.invoke(arguments, context)
        future = self._executor.submit(handler.invoke, arguments, context)
        try:
            return future.result(timeout=self.tool_timeout_seconds)
        except FutureTimeout:
            if future.cancel():
                # Still queued behind other passes' tools: it will never run.
                logger.warning(
                    "Tool %s never started within %gs; dropped",
                    handler.name, self.tool_timeout_seconds,
                )
                return ToolOutcome.failure(
                    UPSTREAM_UNAVAILABLE,
                    f"The tool could not start within {self.tool_timeout_seconds:g}s and was not run.",
                )
            # Already running; its side effect (if any) may still happen.
            return ToolOutcome.failure(
                UPSTREAM_UNAVAILABLE,
                f"The tool did not answer within {self.tool_timeout_seconds:g}s; "
                "its result is unknown.",
            )

    # ── Graph assembly ───────────────────────────────────────────────

    def _route_after_decide(self, state: PassState) -> str:
        return "execute_tool" if state.get("pending") is not None else END

    def _build_graph(self):
        graph = StateGraph(PassState)
        graph.add_node("decide", self._decide_node)
        graph.add_node("execute_tool", self._execute_tool_node)
        graph.set_entry_point("decide")
        graph.add_conditional_edges(
            "decide", self._route_after_decide, {"execute_tool": "execute_tool", END: END},
        )
        graph.add_edge("execute_tool", "decide")
        compiled = graph.compile()
        logger.debug(
            "Engine compiled: modules=%s, budget=%d, tool timeout=%ss",
            list(self.agents.modules()), self.max_tool_calls, self.tool_timeout_seconds,
        )
        return compiled
