"""Tests for the LLM-backed module agent with a mocked chat model."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from src.agents.base import AgentContext, Escalate, InvokeTool, RespondDirectly
from src.agents.llm import (
    ESCALATE_TOOL_NAME,
    NO_MORE_TOOLS_NOTE,
    LLMModuleAgent,
    extract_text,
    history_to_messages,
)
from src.models import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER, Clinic, Message, Patient, ToolCall
from src.prompts import FOLLOW_UP_TRIGGER


# ── Helpers ──────────────────────────────────────────────────────────


def _make_mock_llm(response_content="", tool_calls: list | None = None):
    """Mock chat model whose ``bind_tools`` returns a second mock."""
    llm = MagicMock()
    tools_llm = MagicMock()
    llm.bind_tools.return_value = tools_llm
    ai_msg = AIMessage(content=response_content, tool_calls=tool_calls or [])
    llm.invoke.return_value = ai_msg
    tools_llm.invoke.return_value = ai_msg
    return llm, tools_llm


def _row(role: str, content: str) -> Message:
    return Message(conversation_id="conv-1", clinic_id="c1", role=role, content=content)


def _context(**kwargs) -> AgentContext:
    fields = {
        "clinic_id": "c1",
        "patient_id": "p1",
        "conversation_id": "conv-1",
        "channel": "whatsapp",
        "module": "scheduling",
        "clinic": Clinic(id="c1", name="Sorriso Dental", timezone="UTC"),
        "patient": Patient(id="p1", clinic_id="c1", name="Maria Silva"),
    }
    fields.update(kwargs)
    return AgentContext(**fields)


@pytest.fixture
def scheduling_tools(tools):
    return tools.tools_for("scheduling")


# ── Tests ────────────────────────────────────────────────────────────


class TestExtractText:
    def test_string_content(self):
        assert extract_text("  hello ") == "hello"

    def test_content_blocks(self):
        content = [
            {"type": "text", "text": "Let me check. "},
            {"type": "tool_use", "id": "toolu_1", "name": "x", "input": {}},
            {"type": "text", "text": "One moment."},
        ]
        assert extract_text(content) == "Let me check. One moment."

    def test_unknown_content(self):
        assert extract_text(None) == ""


class TestHistory:
    def test_roles_are_translated(self):
        messages = history_to_messages([
            _row(ROLE_USER, "hi"),
            _row(ROLE_ASSISTANT, "hello"),
            _row(ROLE_SYSTEM, "follow up"),
        ])
        assert isinstance(messages[0], HumanMessage)
        assert isinstance(messages[1], AIMessage)
        assert isinstance(messages[2], HumanMessage)
        assert messages[2].content.startswith("[Automated notice]")


class TestBuildMessages:
    def test_binds_module_tools_and_escalation(self, scheduling_tools):
        llm, _ = _make_mock_llm()
        LLMModuleAgent("scheduling", scheduling_tools, llm=llm)

        [schemas] = llm.bind_tools.call_args[0]
        names = [s["name"] for s in schemas]
        assert "check_availability" in names
        assert ESCALATE_TOOL_NAME in names
        assert "create_payment_link" not in names

    def test_prompt_layout(self, scheduling_tools):
        llm, _ = _make_mock_llm()
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)
        context = _context(history=(_row(ROLE_USER, "hi"), _row(ROLE_ASSISTANT, "hello")))

        messages = agent.build_messages(context, "Any slot on Monday?")

        assert isinstance(messages[0], SystemMessage)
        assert "Maria" in messages[0].content
        assert [m.content for m in messages[1:]] == ["hi", "hello", "Any slot on Monday?"]

    def test_tool_calls_are_paired_with_results(self, scheduling_tools):
        llm, _ = _make_mock_llm()
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)
        calls = [
            ToolCall("check_availability", {"date_from": "2026-10-19"}, '{"count": 8}', call_id="t1"),
            ToolCall("book_appointment", {"starts_at": "x"}, "bad date", ok=False, call_id="t2"),
        ]

        messages = agent.build_messages(_context(), "book", calls)[-4:]

        assert isinstance(messages[0], AIMessage)
        assert messages[0].tool_calls[0]["id"] == "t1"
        assert isinstance(messages[1], ToolMessage)
        assert messages[1].tool_call_id == "t1"
        assert messages[1].status == "success"
        assert messages[3].status == "error"

    def test_results_as_text_when_tools_are_disallowed(self, scheduling_tools):
        llm, _ = _make_mock_llm()
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)
        calls = [ToolCall("check_availability", {}, '{"count": 0}', call_id="t1")]

        messages = agent.build_messages(_context(), "book", calls, allow_tools=False)

        assert not any(isinstance(m, ToolMessage) for m in messages)
        assert messages[-1].content.startswith(NO_MORE_TOOLS_NOTE)
        assert "check_availability" in messages[-1].content

    def test_system_origin_is_marked_automated(self, scheduling_tools):
        llm, _ = _make_mock_llm()
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)
        messages = agent.build_messages(_context(origin=ROLE_SYSTEM), FOLLOW_UP_TRIGGER)
        assert messages[-1].content == f"[Automated notice] {FOLLOW_UP_TRIGGER}"


class TestDecide:
    def test_plain_answer(self, scheduling_tools):
        llm, tools_llm = _make_mock_llm("Hello Maria!")
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)

        step = agent.decide(_context(), "hi")

        assert step == RespondDirectly("Hello Maria!")
        tools_llm.invoke.assert_called_once()
        llm.invoke.assert_not_called()

    def test_tool_request(self, scheduling_tools):
        llm, _ = _make_mock_llm("Checking.", tool_calls=[
            {"name": "check_availability", "args": {"date_from": "2026-10-19"}, "id": "toolu_9"},
            {"name": "list_patient_appointments", "args": {}, "id": "toolu_10"},
        ])
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)

        step = agent.decide(_context(), "Monday?")

        assert isinstance(step, InvokeTool)
        assert step.tool_name == "check_availability"
        assert step.arguments == {"date_from": "2026-10-19"}
        assert step.call_id == "toolu_9"
        assert step.text == "Checking."

    def test_escalation_pseudo_tool(self, scheduling_tools):
        llm, _ = _make_mock_llm(tool_calls=[
            {"name": ESCALATE_TOOL_NAME, "args": {"reason": "wants a human"}, "id": "toolu_1"},
        ])
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)
        assert agent.decide(_context(), "person please") == Escalate("wants a human")

    def test_closing_decide_uses_unbound_model(self, scheduling_tools):
        llm, tools_llm = _make_mock_llm("Here is what I found.")
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)

        step = agent.decide(_context(), "hi", [ToolCall("check_availability", {}, "{}")], allow_tools=False)

        assert step == RespondDirectly("Here is what I found.")
        llm.invoke.assert_called_once()
        tools_llm.invoke.assert_not_called()

    def test_model_errors_propagate(self, scheduling_tools):
        llm, tools_llm = _make_mock_llm()
        tools_llm.invoke.side_effect = RuntimeError("overloaded")
        agent = LLMModuleAgent("scheduling", scheduling_tools, llm=llm)
        with pytest.raises(RuntimeError, match="overloaded"):
            agent.decide(_context(), "hi")
