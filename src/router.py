"""Module router for conversations that have no module yet.

A cheap, deterministic Haiku call classifies the first message of a new
conversation into one of the clinic's eligible modules.  Any failure or
unexpected answer falls back to ``support`` (when eligible) or the first
eligible module, so routing never blocks a reply.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage

from src.agents.llm import extract_text
from src.config import ANTHROPIC_API_KEY, ROUTER_MODEL_NAME
from src.models import ROLE_USER, Message
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

FALLBACK_MODULE = "support"

MODULE_DESCRIPTIONS = {
    "scheduling": "booking, rescheduling or cancelling appointments, checking availability",
    "billing": "invoices, payments, payment links, amounts owed, receipts",
    "support": "greetings, clinic address/phone/hours, general questions, anything else",
    "confirmation": "replying to an appointment reminder: confirming or declining attendance",
}

ROUTER_PROMPT = (
    "Classify this clinic patient conversation. "
    "Reply with exactly one word: the name of the module that should answer.\n\n"
    "Modules:\n{modules}\n\n"
    "{context}Latest message: {message}\n\n"
    "Module:"
)


def _build_router_llm() -> ChatAnthropic:
    """Build a lightweight Haiku LLM for module classification (no tools)."""
    return ChatAnthropic(
        model=ROUTER_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,  # Deterministic classification
        max_tokens=10,    # Only need one word back
    )


def _build_router_context(history: Sequence[Message], max_turns: int = 3) -> str:
    recent = list(history)[-(max_turns * 2):]
    if not recent:
        return ""
    lines = ["Recent conversation:\n"]
    for row in recent:
        speaker = "Patient" if row.role == ROLE_USER else "Assistant"
        lines.append(f"  {speaker}: {row.content[:200]}")
    lines.append("")
    return "\n".join(lines)


def fallback_module(eligible: Sequence[str]) -> str:
    return FALLBACK_MODULE if FALLBACK_MODULE in eligible else eligible[0]


class ModuleRouter:
    def __init__(self, llm: BaseChatModel | None = None) -> None:
        self._llm = llm if llm is not None else _build_router_llm()

    def route(
        self,
        message_text: str,
        eligible: Sequence[str],
        history: Sequence[Message] = (),
    ) -> str:
        """Pick one of *eligible* (non-empty) for *message_text*."""
        if not eligible:
            raise ValueError("route() needs at least one eligible module")
        if len(eligible) == 1:
            return eligible[0]

        modules = "\n".join(
            f"- {name}: {MODULE_DESCRIPTIONS.get(name, name)}" for name in eligible
        )
        prompt = ROUTER_PROMPT.format(
            modules=modules,
            context=_build_router_context(history),
            message=message_text,
        )
        t0 = time.perf_counter()
        try:
            response = self._llm.invoke([HumanMessage(content=prompt)])
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_llm_call(
                "router_classify", ok=False, latency_ms=elapsed, error_type=type(exc).__name__,
            )
            logger.warning("Router failed, using fallback module: %s", exc)
            return fallback_module(eligible)

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_llm_call("router_classify", ok=True, latency_ms=elapsed)

        answer = extract_text(response.content).lower()
        words = re.findall(r"[a-z_]+", answer)
        for word in words:
            if word in eligible:
                logger.debug("Router (%s) chose %s (%.0fms)", ROUTER_MODEL_NAME, word, elapsed)
                return word
        logger.info("Router answer %r matches no eligible module; using fallback", answer)
        return fallback_module(eligible)
