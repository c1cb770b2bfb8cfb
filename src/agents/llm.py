"""LLM-backed Module Agent (Claude via ``langchain-anthropic``).

Each ``decide`` call rebuilds the full prompt from the stored history and
the calls executed so far in the pass, so the agent holds no per-pass
state and can be shared across threads:

    SystemMessage(module prompt)
    history (user / assistant / automated notices)
    HumanMessage(new message)
    AIMessage(tool_calls=[call 1]) → ToolMessage(result 1)
    AIMessage(tool_calls=[call 2]) → ToolMessage(result 2) ...

The model may also call ``escalate_to_human``; that pseudo-tool never
reaches the registry and is turned into an ``Escalate`` step here.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from src.agents.base import (
    AgentContext,
    AgentStep,
    Escalate,
    InvokeTool,
    ModuleAgent,
    RespondDirectly,
)
from src.config import ANTHROPIC_API_KEY, MODEL_NAME
from src.models import ROLE_ASSISTANT, ROLE_SYSTEM, Message, ToolCall, new_id
from src.prompts import get_system_prompt
from src.services.metrics import metrics
from src.tools.registry import ToolHandler

logger = logging.getLogger(__name__)

ESCALATE_TOOL_NAME = "escalate_to_human"

ESCALATE_TOOL: dict[str, Any] = {
    "name": ESCALATE_TOOL_NAME,
    "description": (
        "Hand the conversation to a human member of the clinic's team. "
        "Use when the patient asks for a person, is upset, or you cannot help."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "reason": {"type": "string", "description": "Short reason for the hand-off."},
        },
        "required": [],
    },
}

NO_MORE_TOOLS_NOTE = (
    "You cannot call any more tools for this message. "
    "Reply to the patient using only the results below.\n\n"
)


def _build_llm() -> ChatAnthropic:
    """Build the module agent's LLM (tools are bound per agent)."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,  # Low temperature for consistent, factual responses
        max_tokens=1024,
    )


def extract_text(content: Any) -> str:
    """Plain text of an LLM response: a string or a list of content blocks."""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts).strip()
    return ""


def history_to_messages(history: Sequence[Message]) -> list[AnyMessage]:
    """Translate stored rows into chat messages.

    System-originated rows (cron follow-ups, hand-off notices) are shown to
    the model as tagged human turns; Anthropic only accepts one leading
    system prompt.
    """
    messages: list[AnyMessage] = []
    for row in history:
        if row.role == ROLE_ASSISTANT:
            messages.append(AIMessage(content=row.content))
        elif row.role == ROLE_SYSTEM:
            messages.append(HumanMessage(content=f"[Automated notice] {row.content}"))
        else:
            messages.append(HumanMessage(content=row.content))
    return messages


def _format_call(call: ToolCall) -> str:
    status = "ok" if call.ok else "failed"
    return f"- {call.tool_name}({call.arguments}) [{status}]: {call.result_summary}"


class LLMModuleAgent(ModuleAgent):
    """One agent per module, bound to that module's tools."""

    def __init__(
        self,
        module: str,
        tools: Sequence[ToolHandler],
        *,
        llm: BaseChatModel | None = None,
    ) -> None:
        self.module = module
        self._tools = tuple(tools)
        self._llm = llm if llm is not None else _build_llm()
        self._llm_with_tools = self._llm.bind_tools(
            [t.as_tool_schema() for t in self._tools] + [ESCALATE_TOOL]
        )

    # ── Prompt assembly ──────────────────────────────────────────────

    def build_messages(
        self,
        context: AgentContext,
        message_text: str,
        tool_calls: Sequence[ToolCall] = (),
        *,
        allow_tools: bool = True,
    ) -> list[AnyMessage]:
        messages: list[AnyMessage] = [SystemMessage(content=get_system_prompt(context, self._tools))]
        messages.extend(history_to_messages(context.history))

        if context.origin == ROLE_SYSTEM:
            messages.append(HumanMessage(content=f"[Automated notice] {message_text}"))
        else:
            messages.append(HumanMessage(content=message_text))

        if not tool_calls:
            return messages

        if allow_tools:
            for call in tool_calls:
                messages.append(AIMessage(
                    content="",
                    tool_calls=[{
                        "name": call.tool_name,
                        "args": call.arguments,
                        "id": call.call_id,
                        "type": "tool_call",
                    }],
                ))
                messages.append(ToolMessage(
                    content=call.result_summary,
                    tool_call_id=call.call_id,
                    status="success" if call.ok else "error",
                ))
        else:
            # Tool blocks are rejected when no tools are bound, so results go in as text.
            results = "\n".join(_format_call(call) for call in tool_calls)
            messages.append(HumanMessage(content=NO_MORE_TOOLS_NOTE + results))
        return messages

    # ── Decide ───────────────────────────────────────────────────────

    def decide(
        self,
        context: AgentContext,
        message_text: str,
        tool_calls: Sequence[ToolCall] = (),
        *,
        allow_tools: bool = True,
    ) -> AgentStep:
        messages = self.build_messages(context, message_text, tool_calls, allow_tools=allow_tools)
        llm = self._llm_with_tools if allow_tools else self._llm
        operation = f"{self.module}_decide"

        t0 = time.perf_counter()
        try:
            response = llm.invoke(messages)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_llm_call(
                operation, ok=False, latency_ms=elapsed, error_type=type(exc).__name__,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_llm_call(operation, ok=True, latency_ms=elapsed)

        text = extract_text(response.content)
        requested = getattr(response, "tool_calls", None) or []
        logger.debug(
            "%s agent responded in %.0fms (%d tool call(s) requested)",
            self.module, elapsed, len(requested),
        )

        if not allow_tools or not requested:
            return RespondDirectly(text)

        # One call per step: the engine runs tools strictly in sequence.
        first = requested[0]
        if len(requested) > 1:
            logger.debug("Ignoring %d extra tool call(s) from %s agent", len(requested) - 1, self.module)
        arguments = dict(first.get("args") or {})
        if first["name"] == ESCALATE_TOOL_NAME:
            return Escalate(reason=str(arguments.get("reason", "")))
        return InvokeTool(
            tool_name=first["name"],
            arguments=arguments,
            text=text,
            call_id=first.get("id") or new_id(),
        )
