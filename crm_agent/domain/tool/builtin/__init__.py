"""Built-in CRM tools and their agent catalogues."""

from crm_agent.domain.models.agent_state import TargetAgent
from crm_agent.domain.tool.builtin.analytics_tools import GetMetricsTool, GetTrendsTool, RunReportTool
from crm_agent.domain.tool.builtin.base import ToolDependencies
from crm_agent.domain.tool.builtin.customer_tools import (
    GetCustomerTool,
    SearchCustomersTool,
    UpdateCustomerNotesTool,
)
from crm_agent.domain.tool.builtin.order_tools import (
    CreateOrderDraftTool,
    CreateQuoteDraftTool,
    GetInvoicesTool,
    GetOrdersTool,
    UpdateOrderLineItemsTool,
)
from crm_agent.domain.tool.builtin.quote_tools import (
    CalculatePriceTool,
    CheckCompatibilityTool,
    ConfigureSystemTool,
)
from crm_agent.domain.tool.tool_registry import ToolRegistry


def build_tool_registry(deps: ToolDependencies) -> ToolRegistry:
    """Registry with every built-in tool attached to its specialist agents"""

    registry = ToolRegistry()
    customer = [TargetAgent.CUSTOMER.value]
    order = [TargetAgent.ORDER.value]
    analytics = [TargetAgent.ANALYTICS.value]
    quote = [TargetAgent.QUOTE.value]

    registry.register_tool(GetCustomerTool(deps), agents=customer)
    registry.register_tool(SearchCustomersTool(deps), agents=customer + order)
    registry.register_tool(UpdateCustomerNotesTool(deps), agents=customer)

    registry.register_tool(GetOrdersTool(deps), agents=order + customer)
    registry.register_tool(GetInvoicesTool(deps), agents=order)
    registry.register_tool(CreateOrderDraftTool(deps), agents=order)
    registry.register_tool(CreateQuoteDraftTool(deps), agents=order + quote)
    registry.register_tool(UpdateOrderLineItemsTool(deps), agents=order)

    registry.register_tool(RunReportTool(deps), agents=analytics)
    registry.register_tool(GetMetricsTool(deps), agents=analytics)
    registry.register_tool(GetTrendsTool(deps), agents=analytics)

    registry.register_tool(ConfigureSystemTool(deps), agents=quote)
    registry.register_tool(CalculatePriceTool(deps), agents=quote)
    registry.register_tool(CheckCompatibilityTool(deps), agents=quote)

    return registry


__all__ = ["ToolDependencies", "build_tool_registry"]
