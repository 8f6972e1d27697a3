from typing import Dict, Any, Optional, Literal
import asyncio

from pydantic import Field

from crm_agent.domain.errors import NotFoundError
from crm_agent.domain.models.agent_state import ToolExecutionContext
from crm_agent.domain.models.tool_outcome import DataOutcome, ToolOutcome
from crm_agent.domain.tool.builtin.base import DomainTool, DraftTool
from crm_agent.domain.tool.tool_registry import ToolInput


NOTES_SEPARATOR = "\n\n---\n\n"


def append_notes(existing: Optional[str], notes: str) -> str:
    """Append to internal notes; the separator is kept even when there were no notes"""
    return (existing or "") + NOTES_SEPARATOR + notes


def customer_view(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "email": row.get("email"),
        "phone": row.get("phone"),
        "taxId": row.get("tax_id"),
        "status": row["status"],
        "customerType": row.get("customer_type"),
        "internalNotes": row.get("internal_notes") or "",
        "version": row.get("version"),
        "createdAt": row.get("created_at"),
    }


class GetCustomerInput(ToolInput):
    customer_id: str = Field(description="The customer ID")


class GetCustomerTool(DomainTool):
    name = "get_customer"
    description = (
        "Get a customer's profile with their latest activity and order statistics. "
        "Use this when the user asks about a specific customer."
    )
    input_model = GetCustomerInput
    category = "customer"

    async def execute(self, params: GetCustomerInput, context: ToolExecutionContext) -> ToolOutcome:

        org = context.organization_id
        customer, activity, stats = await asyncio.gather(
            self.store.get_customer(org, params.customer_id),
            self.store.get_latest_activity(org, params.customer_id),
            self.store.get_customer_order_stats(org, params.customer_id)
        )
        if customer is None:
            raise NotFoundError(
                "Customer not found",
                suggestion="Verify the customer ID is correct and belongs to your organization"
            )

        latest = None
        if activity:
            latest = {
                "type": activity["activity_type"],
                "description": activity["description"],
                "createdAt": activity["created_at"],
            }

        return DataOutcome(payload={
            "customer": customer_view(customer),
            "latestActivity": latest,
            "orderStats": {
                "orderCount": stats["order_count"],
                "totalRevenue": stats["total_revenue"],
                "lastOrderDate": stats["last_order_date"],
            }
        })


class SearchCustomersInput(ToolInput):
    query: Optional[str] = Field(default=None, max_length=200, description="Name or email fragment")
    status: Optional[Literal["active", "inactive", "prospect", "suspended"]] = None
    limit: int = Field(default=10, ge=1, le=50)


class SearchCustomersTool(DomainTool):
    name = "search_customers"
    description = "Search customers by name or email, optionally filtered by status."
    input_model = SearchCustomersInput
    category = "customer"

    async def execute(self, params: SearchCustomersInput, context: ToolExecutionContext) -> ToolOutcome:
        rows = await self.store.search_customers(
            context.organization_id,
            query=params.query,
            status=params.status,
            limit=params.limit + 1
        )
        has_more = len(rows) > params.limit
        items = [customer_view(row) for row in rows[:params.limit]]
        return DataOutcome(payload=items, meta={"count": len(items), "hasMore": has_more})


class UpdateCustomerNotesInput(ToolInput):
    customer_id: str = Field(description="The customer to annotate")
    notes: str = Field(min_length=1, max_length=2000, description="Text to add to the internal notes")
    append_mode: bool = Field(default=True, description="Append to the existing notes; false replaces them")


class UpdateCustomerNotesTool(DraftTool):
    name = "update_customer_notes"
    description = (
        "Append to a customer's internal notes. "
        "This creates a draft that requires human approval before the notes change."
    )
    input_model = UpdateCustomerNotesInput
    category = "customer"
    action = "update_customer_notes"

    async def execute(self, params: UpdateCustomerNotesInput, context: ToolExecutionContext) -> ToolOutcome:

        def build(conn):
            customer = self.store.require_customer(conn, context.organization_id, params.customer_id)
            before = customer["internal_notes"] or ""
            after = append_notes(before, params.notes) if params.append_mode else params.notes
            return {
                "draft": {
                    "customerId": customer["id"],
                    "customerName": customer["name"],
                    "internalNotes": after,
                    "expectedVersion": customer["version"],
                },
                "diff": {"internalNotes": {"before": before, "after": after}},
                "summary": f"{'Append' if params.append_mode else 'Replace'} notes on \"{customer['name']}\"",
            }

        return self.stage(context, build)
