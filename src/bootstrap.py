"""Process-start wiring.

Registries are built once here and injected; nothing below reaches for a
global registry.  ``build_app_components`` is used by the FastAPI
lifespan and the CLI; tests assemble the same pieces with scripted
agents instead of LLMs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from src.agents.llm import LLMModuleAgent
from src.agents.registry import AgentRegistry
from src.conversations import ConversationStore
from src.cron import ConfirmationOrchestrator, CronOrchestrator
from src.delivery import DeliveryPolicy
from src.engine import Engine
from src.gate import SubscriptionGate
from src.models import Clinic, ModuleConfig, Patient
from src.processor import MessageProcessor
from src.router import ModuleRouter
from src.services.clinic import (
    ClinicServices,
    InMemoryBillingService,
    InMemorySchedulingService,
    Invoice,
    Professional,
)
from src.services.memory_store import InMemoryRepository
from src.services.repository import Repository
from src.tools.billing import BILLING_TOOLS
from src.tools.confirmation import CONFIRMATION_TOOLS
from src.tools.registry import ToolRegistry
from src.tools.scheduling import SCHEDULING_TOOLS
from src.tools.support import SUPPORT_TOOLS

logger = logging.getLogger(__name__)

DEFAULT_MODULES = ("scheduling", "billing", "support", "confirmation")


def build_tool_registry() -> ToolRegistry:
    return ToolRegistry(SCHEDULING_TOOLS + BILLING_TOOLS + SUPPORT_TOOLS + CONFIRMATION_TOOLS)


def build_llm_agents(tools: ToolRegistry, modules=DEFAULT_MODULES) -> AgentRegistry:
    return AgentRegistry(LLMModuleAgent(m, tools.tools_for(m)) for m in modules)


@dataclass
class AppComponents:
    repository: Repository
    gate: SubscriptionGate
    conversations: ConversationStore
    engine: Engine
    processor: MessageProcessor
    orchestrator: CronOrchestrator
    confirmations: ConfirmationOrchestrator


def build_components(
    repository: Repository,
    services: ClinicServices,
    agents: AgentRegistry,
    *,
    tools: ToolRegistry | None = None,
    router: ModuleRouter | None = None,
    delivery_policy: DeliveryPolicy | None = None,
) -> AppComponents:
    """Assemble the engine around the given collaborators."""
    tools = tools or build_tool_registry()
    gate = SubscriptionGate(repository)
    conversations = ConversationStore(repository)
    engine = Engine(agents, tools, services, gate=gate)
    processor = MessageProcessor(
        repository, gate, conversations, engine, agents,
        router=router, delivery_policy=delivery_policy,
    )
    orchestrator = CronOrchestrator(repository, gate, processor)
    confirmations = ConfirmationOrchestrator(repository, gate, processor, services)
    return AppComponents(
        repository, gate, conversations, engine, processor, orchestrator, confirmations,
    )


def seed_demo_clinic(
    repository: InMemoryRepository,
    services: ClinicServices,
    *,
    subscription_status: str | None = "active",
) -> None:
    """Clinic ``c1`` with patient ``p1``, two dentists and one open invoice."""
    repository.add_clinic(Clinic(
        id="c1",
        name="Sorriso Dental Clinic",
        phone="+55 11 4000-1234",
        address="Rua Augusta 1500, São Paulo",
    ))
    repository.add_patient(Patient(id="p1", clinic_id="c1", name="Maria Silva", phone="+55 11 99999-0000"))
    repository.set_subscription("c1", subscription_status)
    for module in DEFAULT_MODULES:
        repository.set_module_config(ModuleConfig(clinic_id="c1", module_type=module))

    scheduling = services.scheduling
    if isinstance(scheduling, InMemorySchedulingService):
        scheduling.add_professional("c1", Professional("d1", "Dr. Ana Costa", "general dentistry"))
        scheduling.add_professional("c1", Professional("d2", "Dr. Bruno Lima", "orthodontics"))
    billing = services.billing
    if isinstance(billing, InMemoryBillingService):
        billing.add_invoice(Invoice(
            id="inv-1001", clinic_id="c1", patient_id="p1",
            amount_cents=35_000, due_date=date.today(),
        ))


def build_app_components(
    *, subscription_status: str | None = "active",
) -> AppComponents:
    """Default wiring: in-memory storage seeded with a demo clinic, LLM agents."""
    repository = InMemoryRepository()
    services = ClinicServices(
        scheduling=InMemorySchedulingService(),
        billing=InMemoryBillingService(),
    )
    seed_demo_clinic(repository, services, subscription_status=subscription_status)

    tools = build_tool_registry()
    agents = build_llm_agents(tools)
    components = build_components(
        repository, services, agents, tools=tools, router=ModuleRouter(),
    )
    logger.info(
        "Components ready: modules=%s, tools=%d",
        list(agents.modules()), sum(len(tools.tools_for(m)) for m in tools.modules()),
    )
    return components
