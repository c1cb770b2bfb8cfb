"""Billing module tools."""

from __future__ import annotations

from pydantic import BaseModel, Field

from src.prompts import fixed_text
from src.services.clinic import Invoice, RecordNotFound, ServiceConflict
from src.tools.registry import (
    APPEND_KEY,
    ToolConflictError,
    ToolContext,
    ToolValidationError,
    tool_handler,
)

MODULE = "billing"


def _invoice_payload(invoice: Invoice) -> dict:
    return {
        "invoice_id": invoice.id,
        "amount": f"{invoice.amount_cents / 100:.2f}",
        "status": invoice.status,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
    }


class CheckPaymentStatusArgs(BaseModel):
    invoice_id: str | None = Field(
        None, description="A specific invoice; omit to list all of the patient's invoices.",
    )


class InvoiceArgs(BaseModel):
    invoice_id: str = Field(..., description="Invoice id from check_payment_status.")


@tool_handler(MODULE, args_schema=CheckPaymentStatusArgs)
def check_payment_status(ctx: ToolContext, invoice_id: str | None = None) -> dict:
    """Look up the patient's invoices and whether they are paid."""
    invoices = ctx.services.billing.list_invoices(ctx.clinic_id, ctx.patient_id)
    if invoice_id is not None:
        invoices = [i for i in invoices if i.id == invoice_id]
        if not invoices:
            raise ToolValidationError(f"Invoice {invoice_id} not found")
    return {"count": len(invoices), "invoices": [_invoice_payload(i) for i in invoices]}


@tool_handler(MODULE, args_schema=InvoiceArgs)
def create_payment_link(ctx: ToolContext, invoice_id: str) -> dict:
    """Create (or reuse) a payment link for an unpaid invoice.  The link is
    added to the reply for the patient; do not write it yourself."""
    try:
        link = ctx.services.billing.create_payment_link(ctx.clinic_id, ctx.patient_id, invoice_id)
    except ServiceConflict as exc:
        raise ToolConflictError(str(exc)) from exc
    except RecordNotFound as exc:
        raise ToolValidationError(str(exc)) from exc
    locale = ctx.clinic.locale if ctx.clinic else None
    return {
        "invoice_id": invoice_id,
        "payment_link_created": True,
        APPEND_KEY: fixed_text("payment_link", locale).format(url=link),
    }


@tool_handler(MODULE, args_schema=InvoiceArgs)
def send_payment_reminder(ctx: ToolContext, invoice_id: str) -> dict:
    """Send the patient a payment reminder for an open invoice."""
    try:
        ctx.services.billing.send_payment_reminder(ctx.clinic_id, ctx.patient_id, invoice_id)
    except RecordNotFound as exc:
        raise ToolValidationError(str(exc)) from exc
    return {"invoice_id": invoice_id, "reminder_sent": True}


BILLING_TOOLS = (check_payment_status, create_payment_link, send_payment_reminder)
