from typing import Dict, Any, Optional

from crm_agent.config import AgentSettings
from crm_agent.domain.models.agent_state import AgentDescriptor, MemoryPolicy


SPECIALIST_DEFAULTS: Dict[str, Any] = {
    "model_id": "claude-sonnet-4-5",
    "temperature": 0.3,
    "max_turns": 10,
    "max_tokens": 2048,
    "memory": {},
}

TRIAGE_DEFAULTS: Dict[str, Any] = {
    "model_id": "claude-haiku-4-5",
    "temperature": 0.1,
    "max_turns": 1,
    "max_tokens": 256,
    "memory": {"working_memory_enabled": False},
}


def specialist_defaults(settings: AgentSettings) -> Dict[str, Any]:
    return {**SPECIALIST_DEFAULTS, "model_id": settings.specialist_model}


def triage_defaults(settings: AgentSettings) -> Dict[str, Any]:
    return {**TRIAGE_DEFAULTS, "model_id": settings.triage_model}


def build_agent(
    name: str,
    system_prompt: str,
    model_overrides: Optional[Dict[str, Any]] = None,
    memory_options: Optional[Dict[str, Any]] = None,
    base_defaults: Optional[Dict[str, Any]] = None
) -> AgentDescriptor:
    """Merge defaults with shallow overrides into an immutable descriptor"""

    defaults = base_defaults if base_defaults is not None else SPECIALIST_DEFAULTS
    config = {key: value for key, value in defaults.items() if key != "memory"}
    config.update(model_overrides or {})

    memory = dict(defaults.get("memory") or {})
    memory.update(memory_options or {})

    return AgentDescriptor(
        name=name,
        system_prompt=system_prompt,
        memory_policy=MemoryPolicy(**memory),
        **config
    )
