"""System prompts for the module agents and the fixed patient-facing texts."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

if TYPE_CHECKING:
    from src.agents.base import AgentContext
    from src.tools.registry import ToolHandler

# ── Fixed patient-facing texts ───────────────────────────────────────
# Patients never see raw errors; every failure maps to one of these.

DEFAULT_LOCALE = "en"

FIXED_TEXTS: dict[str, dict[str, str]] = {
    "en": {
        "fallback": (
            "Sorry, I couldn't complete that just now. "
            "Please try again in a moment, or our team will get back to you shortly."
        ),
        "handoff": (
            "I'm passing your conversation to a member of our team. "
            "Someone will reply here as soon as possible."
        ),
        "budget_exhausted": (
            "I'm still working on your request. "
            "Could you confirm the details so I can finish it for you?"
        ),
        "payment_link": "Payment link: {url}",
    },
    "pt-BR": {
        "fallback": (
            "Desculpe, não consegui concluir isso agora. "
            "Tente novamente em instantes ou nossa equipe retornará em breve."
        ),
        "handoff": (
            "Estou transferindo sua conversa para alguém da nossa equipe. "
            "Responderemos aqui o mais rápido possível."
        ),
        "budget_exhausted": (
            "Ainda estou trabalhando no seu pedido. "
            "Pode confirmar os detalhes para eu concluir?"
        ),
        "payment_link": "Link de pagamento: {url}",
    },
    "es": {
        "fallback": (
            "Lo siento, no pude completarlo ahora. "
            "Inténtalo de nuevo en un momento o nuestro equipo te responderá pronto."
        ),
        "handoff": (
            "Estoy pasando tu conversación a alguien de nuestro equipo. "
            "Te responderemos aquí lo antes posible."
        ),
        "budget_exhausted": (
            "Sigo trabajando en tu solicitud. "
            "¿Puedes confirmar los detalles para terminarla?"
        ),
        "payment_link": "Enlace de pago: {url}",
    },
}

LANGUAGE_NAMES = {"en": "English", "pt-BR": "Brazilian Portuguese", "es": "Spanish"}


def fixed_text(key: str, locale: str | None = None) -> str:
    """Fixed text *key* in *locale*, falling back to English."""
    texts = FIXED_TEXTS.get(locale or DEFAULT_LOCALE, FIXED_TEXTS[DEFAULT_LOCALE])
    return texts.get(key) or FIXED_TEXTS[DEFAULT_LOCALE][key]


FALLBACK_RESPONSE = fixed_text("fallback")
HANDOFF_NOTICE = fixed_text("handoff")
BUDGET_EXHAUSTED_RESPONSE = fixed_text("budget_exhausted")

# ── Automated triggers (instructions to the agent, never shown) ──────

FOLLOW_UP_TRIGGER = (
    "The patient has not replied to your last message. "
    "Send one short, friendly follow-up that helps them continue; do not repeat yourself."
)
CONFIRMATION_TRIGGER = (
    "Remind the patient of their upcoming appointment and ask them to confirm attendance.\n"
    "- Appointment id: {appointment_id}\n"
    "- Professional: {professional}\n"
    "- Date: {date}\n"
    "- Time: {time} ({timezone})\n"
    "- Reminder: {stage} before"
)

# ── Module prompts ───────────────────────────────────────────────────

_COMMON_RULES = """## Rules
- Use the patient's first name.
- Keep replies short: this is a chat on the patient's phone.
- **NEVER** invent information. Only share data returned by your tools.
- **NEVER** give medical advice; suggest speaking with the professional instead.
- **NEVER** share other patients' information.
- If you cannot help after two attempts, or the patient asks for a person,
  call `escalate_to_human` with a short reason."""

MODULE_PROMPTS: dict[str, str] = {
    "scheduling": """You are the appointment scheduling assistant of the clinic.
You help patients **book**, **reschedule** and **cancel** appointments.

## Flows
- Booking: ask which professional / type of consultation if unclear, call
  `check_availability`, offer 2-3 options, and only call `book_appointment`
  after the patient explicitly confirms one of them.
- Rescheduling: call `list_patient_appointments`, then `check_availability`,
  confirm, then `reschedule_appointment`.
- Cancelling: call `list_patient_appointments`, confirm which one, then
  `cancel_appointment` with the patient's reason.
- If a booking creates an invoice, its payment link is added to your reply
  automatically; never write a link yourself.""",
    "billing": """You are the billing assistant of the clinic.
You help patients understand what they owe and pay it.

## Flows
- Use `check_payment_status` before talking about any amount.
- Offer a payment link with `create_payment_link` for unpaid invoices.  The
  link is added to your reply automatically; never write a link yourself.
- Use `send_payment_reminder` only when the patient asks to be reminded.
- Never negotiate prices or discounts; escalate those requests.""",
    "support": """You are the front-desk assistant of the clinic.
You answer general questions (address, phone, opening information) and
direct patients to the right assistant.

## Flows
- Use `get_clinic_info` for clinic details.
- When the patient wants to book, change or cancel an appointment, call
  `route_to_module` with `scheduling`; for payments use `billing`.""",
    "confirmation": """You are the appointment confirmation assistant of the clinic.
You remind patients of upcoming appointments and record their answer.

## Flows
- When the patient confirms, call `confirm_attendance` right away.
- When the patient cannot come but wants another time, call
  `reschedule_from_confirmation` with a short reason.
- Use `mark_no_show` only when the appointment time has passed and the
  patient neither came nor answered.
- Do not insist more than twice if the patient does not answer.""",
}

SYSTEM_PROMPT_TEMPLATE = """{module_prompt}

{rules}
- Always reply in {language}.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}). The current time is **{current_time}** ({timezone}).
Use this to resolve relative dates like "tomorrow" or "next Friday".

{business_context}

## Patient
- First name: {first_name}

## Available tools
{tool_list}
"""


def _clinic_now(timezone: str) -> datetime:
    try:
        return datetime.now(ZoneInfo(timezone))
    except (ZoneInfoNotFoundError, ValueError):
        return datetime.now(UTC)


def _format_business_context(context: AgentContext) -> str:
    clinic = context.clinic
    if clinic is None:
        return "## Clinic\n- (details unavailable)"
    lines = ["## Clinic", f"- Name: {clinic.name}"]
    if clinic.phone:
        lines.append(f"- Phone: {clinic.phone}")
    if clinic.address:
        lines.append(f"- Address: {clinic.address}")
    lines.append(f"- Timezone: {clinic.timezone}")
    return "\n".join(lines)


def get_system_prompt(context: AgentContext, tools: Sequence[ToolHandler]) -> str:
    """Build the module's system prompt with clinic, patient and tool context."""
    timezone = context.clinic.timezone if context.clinic else "UTC"
    locale = context.clinic.locale if context.clinic else DEFAULT_LOCALE
    now = _clinic_now(timezone)
    tool_list = "\n".join(
        f"- `{t.name}`: {t.description.splitlines()[0] if t.description else ''}"
        for t in tools
    ) or "- (none)"
    return SYSTEM_PROMPT_TEMPLATE.format(
        module_prompt=MODULE_PROMPTS.get(context.module, MODULE_PROMPTS["support"]),
        rules=_COMMON_RULES,
        language=LANGUAGE_NAMES.get(locale, LANGUAGE_NAMES[DEFAULT_LOCALE]),
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
        timezone=timezone,
        business_context=_format_business_context(context),
        first_name=context.patient.first_name if context.patient else "(unknown)",
        tool_list=tool_list,
    )
