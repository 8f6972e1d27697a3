from typing import Dict, List, Optional

from crm_agent.config import AgentSettings
from crm_agent.domain.errors import ValidationError
from crm_agent.domain.models.agent_state import AgentDescriptor, TargetAgent, TRIAGE_AGENT_NAME
from crm_agent.domain.orchestration.agent_factory import build_agent, specialist_defaults, triage_defaults
from crm_agent.domain.orchestration.prompts import SPECIALIST_PROMPTS, TRIAGE_PROMPT


class AgentRegistry:
    """The specialist descriptors plus the triage descriptor"""

    def __init__(self, specialists: Dict[str, AgentDescriptor], triage: AgentDescriptor):
        self.specialists = dict(specialists)
        self.triage = triage

    def get(self, name: str) -> AgentDescriptor:
        descriptor = self.specialists.get(name)
        if descriptor is None:
            raise ValidationError(
                f"Unknown agent: {name}",
                suggestion=f"Use one of: {', '.join(self.names())}"
            )
        return descriptor

    def names(self) -> List[str]:
        return list(self.specialists.keys())


def build_default_agents(
    settings: AgentSettings,
    overrides: Optional[Dict[str, Dict]] = None
) -> AgentRegistry:
    """Registry of the four specialists and the triage router"""

    overrides = overrides or {}
    specialists = {
        agent.value: build_agent(
            agent.value,
            SPECIALIST_PROMPTS[agent],
            model_overrides=overrides.get(agent.value),
            base_defaults=specialist_defaults(settings)
        )
        for agent in TargetAgent
    }
    triage = build_agent(
        TRIAGE_AGENT_NAME,
        TRIAGE_PROMPT,
        model_overrides=overrides.get(TRIAGE_AGENT_NAME),
        base_defaults=triage_defaults(settings)
    )
    return AgentRegistry(specialists, triage)
