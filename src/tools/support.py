"""Support module tools: clinic information and hand-off to another module."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from src.tools.registry import ToolContext, ToolUpstreamError, tool_handler

MODULE = "support"


class NoArgs(BaseModel):
    pass


class RouteToModuleArgs(BaseModel):
    module: Literal["scheduling", "billing"] = Field(
        ..., description="Module that should handle the patient's next messages.",
    )
    reason: str = Field("", description="Short reason for the hand-off.")


@tool_handler(MODULE, args_schema=NoArgs)
def get_clinic_info(ctx: ToolContext) -> dict:
    """Get the clinic's name, phone, address and timezone."""
    clinic = ctx.clinic
    if clinic is None:
        raise ToolUpstreamError("Clinic details are unavailable right now.")
    return {
        "name": clinic.name,
        "phone": clinic.phone,
        "address": clinic.address,
        "timezone": clinic.timezone,
    }


@tool_handler(MODULE, args_schema=RouteToModuleArgs)
def route_to_module(ctx: ToolContext, module: str, reason: str = "") -> dict:
    """Hand the conversation to the scheduling or billing assistant.  Use when
    the patient wants to book/change appointments or has a payment question."""
    return {"route_to": module, "reason": reason}


SUPPORT_TOOLS = (get_clinic_info, route_to_module)
