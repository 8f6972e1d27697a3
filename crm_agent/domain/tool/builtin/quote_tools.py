from typing import Dict, List, Any, Optional, Literal
from itertools import combinations

from pydantic import Field

from crm_agent.domain.errors import NotFoundError, ValidationError
from crm_agent.domain.models.agent_state import ToolExecutionContext
from crm_agent.domain.models.tool_outcome import DataOutcome, ToolOutcome
from crm_agent.domain.tool.builtin.base import DomainTool
from crm_agent.domain.tool.tool_registry import ToolInput


PANEL_WATTS = 400

# (category, category) -> reason when incompatible, None when compatible
COMPATIBILITY_RULES: Dict[frozenset, Optional[str]] = {
    frozenset({"solar_panel", "solar_inverter"}): None,
    frozenset({"solar_panel", "solar_battery"}): None,
    frozenset({"solar_inverter", "solar_battery"}): None,
    frozenset({"solar_panel", "solar_mounting"}): None,
    frozenset({"hvac_split", "hvac_control"}): None,
    frozenset({"hvac_ducted", "hvac_control"}): None,
    frozenset({"heat_pump", "solar_hotwater"}): "Choose one hot water system type",
    frozenset({"heat_pump", "electric_hotwater"}): "Choose one hot water system type",
    frozenset({"solar_hotwater", "electric_hotwater"}): "Choose one hot water system type",
}


def check_pair(category1: str, category2: str) -> Optional[str]:
    """Reason the categories conflict, or None"""
    return COMPATIBILITY_RULES.get(frozenset({category1, category2}))


async def _load_products(tool: DomainTool, organization_id: str, product_ids: List[str]) -> Dict[str, Dict[str, Any]]:
    products = await tool.store.get_products(organization_id, product_ids)
    missing = [product_id for product_id in dict.fromkeys(product_ids) if product_id not in products]
    if missing:
        raise NotFoundError(
            f"Products not found: {', '.join(missing)}",
            suggestion="Verify product IDs are correct and belong to your organization"
        )
    return products


class ComponentInput(ToolInput):
    product_id: str
    quantity: int = Field(ge=1)


class ConfigureSystemInput(ToolInput):
    system_type: Literal["solar", "hvac", "hotwater"]
    components: List[ComponentInput] = Field(min_length=1, max_length=20)


class ConfigureSystemTool(DomainTool):
    name = "configure_system"
    description = (
        "Configure a system (solar, HVAC, or hot water) by selecting compatible components. "
        "Validates component compatibility and provides sizing recommendations."
    )
    input_model = ConfigureSystemInput
    category = "quote"

    async def execute(self, params: ConfigureSystemInput, context: ToolExecutionContext) -> ToolOutcome:

        products = await _load_products(self, context.organization_id, [c.product_id for c in params.components])

        components = []
        for component in params.components:
            product = products[component.product_id]
            components.append({
                "productId": product["id"],
                "productName": product["name"],
                "category": product["category"],
                "quantity": component.quantity,
                "unitPrice": product["base_price"],
                "totalPrice": round(product["base_price"] * component.quantity, 2),
            })

        errors: List[str] = []
        warnings: List[str] = []
        categories = sorted({c["category"] for c in components})
        for first, second in combinations(categories, 2):
            reason = check_pair(first, second)
            if reason and reason not in errors:
                errors.append(reason)

        sizing = None
        if params.system_type == "solar":
            has_panels = "solar_panel" in categories
            has_inverter = "solar_inverter" in categories
            if has_panels and not has_inverter:
                warnings.append("Solar panels configured without an inverter")
            if has_inverter and not has_panels:
                warnings.append("Inverter configured without solar panels")

            panel_count = sum(c["quantity"] for c in components if c["category"] == "solar_panel")
            if panel_count:
                if panel_count <= 10:
                    recommendation = "Small residential system"
                elif panel_count <= 25:
                    recommendation = "Medium residential system"
                else:
                    recommendation = "Large residential or commercial system"
                sizing = {"totalCapacity": panel_count * PANEL_WATTS, "unit": "W", "recommendation": recommendation}

        payload: Dict[str, Any] = {
            "systemType": params.system_type,
            "components": components,
            "validation": {"isValid": not errors, "warnings": warnings, "errors": errors},
        }
        if sizing:
            payload["sizing"] = sizing
        return DataOutcome(payload=payload)


class PriceLineInput(ToolInput):
    product_id: str
    quantity: int = Field(ge=1)
    discount_percent: float = Field(default=0, ge=0, le=100)


class CalculatePriceInput(ToolInput):
    line_items: List[PriceLineInput] = Field(min_length=1, max_length=50)
    overall_discount_percent: float = Field(default=0, ge=0, le=100)
    include_tax: bool = Field(default=True, description="Whether to include GST (10%) in the total")


class CalculatePriceTool(DomainTool):
    name = "calculate_price"
    description = (
        "Calculate pricing for a list of products including discounts and GST. "
        "Shows line totals, subtotal, tax, grand total and margin."
    )
    input_model = CalculatePriceInput
    category = "quote"

    async def execute(self, params: CalculatePriceInput, context: ToolExecutionContext) -> ToolOutcome:

        products = await _load_products(self, context.organization_id, [line.product_id for line in params.line_items])

        lines = []
        total_cost = 0.0
        for line in params.line_items:
            product = products[line.product_id]
            gross = product["base_price"] * line.quantity
            discount = gross * line.discount_percent / 100
            total_cost += (product["cost_price"] or 0) * line.quantity
            lines.append({
                "productId": product["id"],
                "productName": product["name"],
                "quantity": line.quantity,
                "unitPrice": product["base_price"],
                "discount": round(discount, 2),
                "total": round(gross - discount, 2),
            })

        subtotal = sum(line["total"] for line in lines)
        discount_total = subtotal * params.overall_discount_percent / 100
        after_discount = subtotal - discount_total
        tax_amount = after_discount * self.deps.tax_rate if params.include_tax else 0.0

        margin_amount = 0.0
        margin_percentage = 0.0
        if total_cost > 0 and after_discount > 0:
            margin_amount = after_discount - total_cost
            margin_percentage = margin_amount / after_discount * 100

        return DataOutcome(payload={
            "lineItems": lines,
            "subtotal": round(subtotal, 2),
            "discountTotal": round(discount_total, 2),
            "taxAmount": round(tax_amount, 2),
            "total": round(after_discount + tax_amount, 2),
            "margin": {"amount": round(margin_amount, 2), "percentage": round(margin_percentage, 2)},
        })


class CheckCompatibilityInput(ToolInput):
    product_ids: List[str] = Field(min_length=2, max_length=20)


class CheckCompatibilityTool(DomainTool):
    name = "check_compatibility"
    description = "Check whether a set of products are compatible with each other based on their categories."
    input_model = CheckCompatibilityInput
    category = "quote"

    async def execute(self, params: CheckCompatibilityInput, context: ToolExecutionContext) -> ToolOutcome:

        products = await self.store.get_products(context.organization_id, params.product_ids)
        if len(products) < 2:
            raise ValidationError(
                "Need at least 2 valid products to check compatibility",
                suggestion="Verify product IDs are correct"
            )

        checks = []
        for first, second in combinations(list(products.values()), 2):
            reason = check_pair(first["category"], second["category"])
            checks.append({
                "component1": first["name"],
                "component2": second["name"],
                "compatible": reason is None,
                "reason": reason,
            })

        compatible = all(check["compatible"] for check in checks)
        suggestions = [] if compatible else ["Consider selecting alternative products for incompatible items"]
        return DataOutcome(payload={"compatible": compatible, "checks": checks, "suggestions": suggestions})
