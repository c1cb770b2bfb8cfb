"""Clinic Agents: conversational agent orchestration for clinics.

Architecture Overview
=====================

An inbound patient message goes through the **Message Processor**:

1. **Gate**: the clinic's subscription must be ``trialing``, ``active``
   or ``past_due``; anything else (or any lookup error) denies.
2. **Conversation Store**: find-or-create the one active conversation
   per (clinic, patient, channel), safe under concurrent deliveries.
3. **Module selection**: sticky per conversation; a new conversation is
   routed by a cheap Haiku classifier among the clinic's enabled modules.
4. **Engine**: a LangGraph loop (decide → execute_tool → decide …) that
   lets the module's agent call at most ``MAX_TOOL_CALLS`` tools and
   records every call, failed or not.
5. **Delivery policy**: decides whether the reply is sent now or queued.

The **Cron Orchestrator** re-enters the same path with synthetic
follow-up messages for unanswered conversations.

Package Structure
-----------------
- ``src/config.py``: configuration from environment / .env / SSM
- ``src/gate.py``, ``src/conversations.py``, ``src/engine.py``,
  ``src/processor.py``, ``src/delivery.py``, ``src/cron.py``, ``src/router.py``
- ``src/agents/``: agent contract, Claude-backed agent, agent registry
- ``src/tools/``: tool registry and per-module tools
- ``src/services/``: repository, in-memory store, clinic collaborators,
  cache and CloudWatch metrics
- ``src/api/``: FastAPI routes and Pydantic schemas
- ``src/server.py`` / ``src/main.py``: FastAPI app and CLI chat
"""
