"""Tests for system prompt assembly and the localized fixed texts."""

from __future__ import annotations

import pytest

from src.agents.base import AgentContext
from src.models import Clinic, Patient
from src.prompts import FIXED_TEXTS, MODULE_PROMPTS, fixed_text, get_system_prompt
from src.tools.confirmation import CONFIRMATION_TOOLS


def _context(locale: str = "en", module: str = "confirmation") -> AgentContext:
    return AgentContext(
        clinic_id="c1", patient_id="p1", conversation_id="conv-1",
        channel="whatsapp", module=module,
        clinic=Clinic(id="c1", name="Sorriso Dental", timezone="America/Sao_Paulo", locale=locale),
        patient=Patient(id="p1", clinic_id="c1", name="Maria Silva"),
    )


class TestFixedTexts:
    def test_every_locale_has_every_key(self):
        keys = set(FIXED_TEXTS["en"])
        for locale, texts in FIXED_TEXTS.items():
            assert set(texts) == keys, locale

    @pytest.mark.parametrize("locale", [None, "", "fr", "pt"])
    def test_unknown_locale_falls_back_to_english(self, locale):
        assert fixed_text("handoff", locale) == FIXED_TEXTS["en"]["handoff"]

    def test_portuguese(self):
        assert fixed_text("payment_link", "pt-BR").format(url="u") == "Link de pagamento: u"


class TestSystemPrompt:
    def test_reply_language_follows_clinic(self):
        prompt = get_system_prompt(_context("pt-BR"), CONFIRMATION_TOOLS)
        assert "Always reply in Brazilian Portuguese." in prompt

    def test_confirmation_prompt_lists_its_tools(self):
        prompt = get_system_prompt(_context(), CONFIRMATION_TOOLS)
        assert prompt.startswith(MODULE_PROMPTS["confirmation"])
        for name in ("confirm_attendance", "reschedule_from_confirmation", "mark_no_show"):
            assert f"`{name}`" in prompt
        assert "First name: Maria" in prompt

    def test_unknown_module_uses_support_prompt(self):
        prompt = get_system_prompt(_context(module="marketing"), ())
        assert prompt.startswith(MODULE_PROMPTS["support"])
        assert "- (none)" in prompt
