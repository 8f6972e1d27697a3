import pydantic
import pytest

from crm_agent.config import AgentSettings
from crm_agent.domain.errors import ValidationError
from crm_agent.domain.models.agent_state import TargetAgent, WorkingMemoryScope
from crm_agent.domain.orchestration.agent_factory import SPECIALIST_DEFAULTS, TRIAGE_DEFAULTS, build_agent
from crm_agent.domain.orchestration.agent_registry import build_default_agents
from crm_agent.domain.orchestration.prompts import SPECIALIST_PROMPTS


class TestBuildAgent:

    def test_specialist_defaults(self):
        agent = build_agent("order", "You handle orders.")

        assert agent.model_id == SPECIALIST_DEFAULTS["model_id"]
        assert agent.temperature == 0.3
        assert agent.max_turns == 10
        assert agent.max_tokens == 2048
        assert agent.memory_policy.history_enabled is True
        assert agent.memory_policy.history_limit == 5
        assert agent.memory_policy.working_memory_enabled is True

    def test_overrides_are_shallow(self):
        agent = build_agent(
            "analytics",
            "You analyse.",
            model_overrides={"temperature": 0.0},
            memory_options={"working_memory_scope": "conversation"},
        )

        assert agent.temperature == 0.0
        assert agent.max_turns == 10
        assert agent.memory_policy.working_memory_scope == WorkingMemoryScope.CONVERSATION
        assert agent.memory_policy.history_enabled is True

    def test_triage_defaults(self):
        agent = build_agent("triage", "Route.", base_defaults=TRIAGE_DEFAULTS)

        assert agent.model_id == "claude-haiku-4-5"
        assert agent.temperature == 0.1
        assert agent.max_turns == 1
        assert agent.memory_policy.working_memory_enabled is False

    def test_descriptor_is_immutable(self):
        agent = build_agent("quote", "Quote things.")
        with pytest.raises(pydantic.ValidationError):
            agent.temperature = 0.9

    def test_history_limit_cannot_exceed_five(self):
        with pytest.raises(pydantic.ValidationError):
            build_agent("quote", "Quote things.", memory_options={"history_limit": 6})


class TestAgentRegistry:

    def test_four_specialists_from_settings(self):
        registry = build_default_agents(AgentSettings(specialist_model="model-a", triage_model="model-b"))

        assert registry.names() == [agent.value for agent in TargetAgent]
        assert registry.get("order").model_id == "model-a"
        assert registry.get("order").system_prompt == SPECIALIST_PROMPTS[TargetAgent.ORDER]
        assert registry.triage.model_id == "model-b"
        assert registry.triage.name == "triage"

    def test_per_agent_overrides(self):
        registry = build_default_agents(AgentSettings(), overrides={"quote": {"max_turns": 4}, "triage": {"max_tokens": 128}})

        assert registry.get("quote").max_turns == 4
        assert registry.get("customer").max_turns == 10
        assert registry.triage.max_tokens == 128

    def test_unknown_agent(self):
        registry = build_default_agents(AgentSettings())

        with pytest.raises(ValidationError) as excinfo:
            registry.get("billing")
        assert "customer" in excinfo.value.suggestion
