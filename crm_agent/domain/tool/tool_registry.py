from typing import Dict, List, Any, Optional, Iterable, Type
from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from crm_agent.domain.models.agent_state import ToolExecutionContext
from crm_agent.domain.models.tool_outcome import DataOutcome, ErrorOutcome, ToolOutcome
from crm_agent.domain.provider.base import ToolSpec
from crm_agent.domain.tool.progress import ProgressChannel, ProgressStage


class ToolInput(BaseModel):
    """Base for tool argument models; camelCase on the wire, unknown keys rejected"""
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class BaseTool(ABC):
    """A typed tool callable by an agent"""

    name: str = ""
    description: str = ""
    input_model: Type[ToolInput] = ToolInput
    category: str = "general"
    mutates: bool = False

    @abstractmethod
    async def execute(self, params: Any, context: ToolExecutionContext) -> ToolOutcome:
        """Run the tool with validated params"""
        pass

    def spec(self) -> ToolSpec:
        schema = self.input_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        return ToolSpec(name=self.name, description=self.description, parameters=schema)

    def get_info(self) -> Dict[str, Any]:
        return {
            "id": self.name,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "mutates": self.mutates
        }


class ProgressiveTool(BaseTool):
    """Tool that reports progress stages while it runs"""

    @abstractmethod
    async def run(self, params: Any, context: ToolExecutionContext, channel: ProgressChannel) -> Any:
        """Do the work, publishing intermediate stages; the return value is the result"""
        pass

    async def execute(
        self,
        params: Any,
        context: ToolExecutionContext,
        channel: Optional[ProgressChannel] = None
    ) -> ToolOutcome:
        owned = channel is None
        channel = channel or ProgressChannel()
        channel.publish(ProgressStage.LOADING, f"Starting {self.name}")
        try:
            result = await self.run(params, context, channel)
        except Exception as e:
            channel.publish(ProgressStage.ERROR, error=str(e))
            raise
        channel.publish(ProgressStage.COMPLETE, result=result)

        # Non-interactive callers only need the final stage; a caller-supplied channel is left for its reader
        final = channel.drain() if owned else channel.last
        if final is None or final.stage != ProgressStage.COMPLETE:
            return ErrorOutcome(message=f"{self.name} did not complete", code="INTERNAL_ERROR")
        return DataOutcome(payload=final.result, meta=channel.summary())


class ToolSet:
    """The tools visible to one agent"""

    def __init__(self, agent_name: str, tools: Iterable[BaseTool]):
        self.agent_name = agent_name
        self.tools: Dict[str, BaseTool] = {tool.name: tool for tool in tools}

    def get(self, name: str) -> Optional[BaseTool]:
        return self.tools.get(name)

    def names(self) -> List[str]:
        return list(self.tools.keys())

    def specs(self) -> List[ToolSpec]:
        return [tool.spec() for tool in self.tools.values()]

    def __len__(self) -> int:
        return len(self.tools)

    def __contains__(self, name: str) -> bool:
        return name in self.tools


class ToolRegistry:
    """Registry for managing available tools and per-agent catalogues"""

    def __init__(self):
        self.tools: Dict[str, BaseTool] = {}
        self.agent_tools: Dict[str, List[str]] = {}

    def register_tool(self, tool: BaseTool, agents: Iterable[str] = ()):
        """Register a tool and attach it to the given agents"""

        if tool.name in self.tools:
            raise ValueError(f"Tool already registered: {tool.name}")

        self.tools[tool.name] = tool
        for agent in agents:
            self.agent_tools.setdefault(agent, []).append(tool.name)

    def get_tool(self, name: str) -> Optional[BaseTool]:
        return self.tools.get(name)

    def get_tool_set(self, agent_name: str) -> ToolSet:
        """Tools attached to an agent; unknown agents get an empty set"""

        names = self.agent_tools.get(agent_name, [])
        return ToolSet(agent_name, [self.tools[name] for name in names])

    def get_available_tools(self) -> List[Dict[str, Any]]:
        return [tool.get_info() for tool in self.tools.values()]
