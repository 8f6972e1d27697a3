from typing import Dict, List, Any, Optional, Literal
from datetime import date, timedelta

from pydantic import Field

from crm_agent.domain.errors import NotFoundError
from crm_agent.domain.models.agent_state import ToolExecutionContext
from crm_agent.domain.models.tool_outcome import DataOutcome, ToolOutcome
from crm_agent.domain.tool.builtin.base import DomainTool, DraftTool
from crm_agent.domain.tool.tool_registry import ToolInput


QUOTE_VALIDITY_DAYS = 30

OrderStatus = Literal["draft", "confirmed", "picking", "picked", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "partial", "paid", "overdue", "refunded"]


def days_overdue(due_date: Optional[str], payment_status: str, today: date) -> int:
    if not due_date or payment_status == "paid":
        return 0
    return max(0, (today - date.fromisoformat(due_date[:10])).days)


class LineItemInput(ToolInput):
    product_id: str = Field(description="Product ID")
    quantity: int = Field(ge=1, description="Quantity")
    unit_price: Optional[float] = Field(default=None, ge=0, description="Override unit price")
    notes: Optional[str] = Field(default=None, max_length=500)


class GetOrdersInput(ToolInput):
    customer_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    start_date: Optional[date] = Field(default=None, description="Order date from (YYYY-MM-DD)")
    end_date: Optional[date] = Field(default=None, description="Order date to (YYYY-MM-DD)")
    limit: int = Field(default=20, ge=1, le=50)


class GetOrdersTool(DomainTool):
    name = "get_orders"
    description = (
        "Get a list of orders with optional filtering by customer, status, date range, and payment status. "
        "Returns order summaries with customer name and totals."
    )
    input_model = GetOrdersInput
    category = "order"

    async def execute(self, params: GetOrdersInput, context: ToolExecutionContext) -> ToolOutcome:
        rows = await self.store.list_orders(
            context.organization_id,
            customer_id=params.customer_id,
            status=params.status,
            payment_status=params.payment_status,
            start_date=params.start_date.isoformat() if params.start_date else None,
            end_date=params.end_date.isoformat() if params.end_date else None,
            limit=params.limit + 1
        )
        has_more = len(rows) > params.limit
        items = [
            {
                "id": row["id"],
                "orderNumber": row["order_number"],
                "customerName": row["customer_name"] or "Unknown Customer",
                "status": row["status"],
                "paymentStatus": row["payment_status"],
                "total": row["total"],
                "orderDate": row["order_date"],
                "dueDate": row["due_date"],
                "version": row["version"],
            }
            for row in rows[:params.limit]
        ]
        return DataOutcome(payload=items, meta={"count": len(items), "hasMore": has_more})


class GetInvoicesInput(ToolInput):
    customer_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    overdue_only: bool = False
    limit: int = Field(default=20, ge=1, le=50)


class GetInvoicesTool(DomainTool):
    name = "get_invoices"
    description = (
        "Get invoices with focus on payment status and amounts due. "
        "Shows overdue days for unpaid invoices."
    )
    input_model = GetInvoicesInput
    category = "order"

    async def execute(self, params: GetInvoicesInput, context: ToolExecutionContext) -> ToolOutcome:

        today = self.deps.today()
        rows = await self.store.list_invoices(
            context.organization_id,
            today=today,
            customer_id=params.customer_id,
            payment_status=params.status,
            overdue_only=params.overdue_only,
            limit=params.limit
        )

        total_overdue = 0.0
        items = []
        for row in rows:
            overdue = days_overdue(row["due_date"], row["payment_status"], today)
            if overdue > 0 and row["balance_due"]:
                total_overdue += row["balance_due"]
            items.append({
                "id": row["id"],
                "invoiceNumber": row["order_number"],
                "customerName": row["customer_name"] or "Unknown Customer",
                "status": row["payment_status"],
                "total": row["total"],
                "paidAmount": row["paid_amount"],
                "balanceDue": row["balance_due"],
                "dueDate": row["due_date"],
                "daysOverdue": overdue,
            })

        return DataOutcome(payload=items, meta={"count": len(items), "totalOverdue": round(total_overdue, 2)})


class CreateOrderDraftInput(ToolInput):
    customer_id: str
    line_items: List[LineItemInput] = Field(min_length=1, max_length=50)
    notes: Optional[str] = Field(default=None, max_length=2000, description="Internal notes")
    customer_notes: Optional[str] = Field(default=None, max_length=2000, description="Notes visible to customer")


def _draft_line_items(line_items: List[LineItemInput]) -> List[Dict[str, Any]]:
    return [item.model_dump(by_alias=True, exclude_none=True) for item in line_items]


class CreateOrderDraftTool(DraftTool):
    name = "create_order_draft"
    description = (
        "Create a draft order for a customer. "
        "This creates a draft that requires human approval before the order is created."
    )
    input_model = CreateOrderDraftInput
    category = "order"
    action = "create_order"

    async def execute(self, params: CreateOrderDraftInput, context: ToolExecutionContext) -> ToolOutcome:

        def build(conn):
            customer = self.store.require_customer(conn, context.organization_id, params.customer_id)
            self.store.require_products(conn, context.organization_id, [item.product_id for item in params.line_items])
            return {
                "draft": {
                    "customerId": customer["id"],
                    "lineItems": _draft_line_items(params.line_items),
                    "notes": params.notes,
                    "customerNotes": params.customer_notes,
                    "status": "draft",
                },
                "summary": f"Create order for \"{customer['name']}\" with {len(params.line_items)} item(s)",
            }

        return self.stage(context, build)


class CreateQuoteDraftInput(ToolInput):
    customer_id: str
    title: str = Field(min_length=1, max_length=200)
    line_items: List[LineItemInput] = Field(min_length=1, max_length=50)
    valid_until: Optional[date] = Field(default=None, description="Quote validity end date (YYYY-MM-DD)")
    notes: Optional[str] = Field(default=None, max_length=2000)
    customer_notes: Optional[str] = Field(default=None, max_length=2000)


class CreateQuoteDraftTool(DraftTool):
    name = "create_quote_draft"
    description = (
        "Create a draft quote for a customer. "
        "This creates a draft that requires human approval before the quote is created."
    )
    input_model = CreateQuoteDraftInput
    category = "order"
    action = "create_quote"

    async def execute(self, params: CreateQuoteDraftInput, context: ToolExecutionContext) -> ToolOutcome:

        valid_until = params.valid_until or (self.deps.today() + timedelta(days=QUOTE_VALIDITY_DAYS))

        def build(conn):
            customer = self.store.require_customer(conn, context.organization_id, params.customer_id)
            self.store.require_products(conn, context.organization_id, [item.product_id for item in params.line_items])
            return {
                "draft": {
                    "customerId": customer["id"],
                    "title": params.title,
                    "lineItems": _draft_line_items(params.line_items),
                    "validUntil": valid_until.isoformat(),
                    "notes": params.notes,
                    "customerNotes": params.customer_notes,
                    "status": "draft",
                },
                "summary": (
                    f"Create quote \"{params.title}\" for \"{customer['name']}\" "
                    f"with {len(params.line_items)} item(s)"
                ),
            }

        return self.stage(context, build)


class LineItemChangeInput(ToolInput):
    line_item_id: str
    quantity: Optional[int] = Field(default=None, ge=1)
    unit_price: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = Field(default=None, max_length=500)
    remove: bool = False


class UpdateOrderLineItemsInput(ToolInput):
    order_id: str
    changes: List[LineItemChangeInput] = Field(min_length=1, max_length=50)


class UpdateOrderLineItemsTool(DraftTool):
    name = "update_order_line_items"
    description = (
        "Change quantities, prices or notes on several line items of an order, or remove line items. "
        "This creates a draft with a before/after diff that requires human approval."
    )
    input_model = UpdateOrderLineItemsInput
    category = "order"
    action = "update_order_line_items"

    async def execute(self, params: UpdateOrderLineItemsInput, context: ToolExecutionContext) -> ToolOutcome:

        tax_rate = self.deps.tax_rate

        def build(conn):
            order = self.store.require_order(conn, context.organization_id, params.order_id)
            items = {item["id"]: item for item in order["line_items"]}

            line_diffs = []
            after_subtotal = sum(item["line_total"] for item in order["line_items"])
            for change in params.changes:
                item = items.get(change.line_item_id)
                if item is None:
                    raise NotFoundError(
                        f"Line item {change.line_item_id} not found on order {order['order_number']}",
                        suggestion="Fetch the order's line items and retry"
                    )
                before = {"quantity": item["quantity"], "unitPrice": item["unit_price"], "lineTotal": item["line_total"]}
                if change.remove:
                    after = None
                    after_subtotal -= item["line_total"]
                else:
                    quantity = change.quantity if change.quantity is not None else item["quantity"]
                    unit_price = change.unit_price if change.unit_price is not None else item["unit_price"]
                    line_total = round(quantity * unit_price, 2)
                    after = {"quantity": quantity, "unitPrice": unit_price, "lineTotal": line_total}
                    after_subtotal += line_total - item["line_total"]
                line_diffs.append({
                    "lineItemId": item["id"],
                    "description": item["description"],
                    "before": before,
                    "after": after,
                })

            after_subtotal = round(after_subtotal, 2)
            after_total = round(after_subtotal + round(after_subtotal * tax_rate, 2), 2)
            return {
                "draft": {
                    "orderId": order["id"],
                    "orderNumber": order["order_number"],
                    "changes": [change.model_dump(by_alias=True, exclude_none=True) for change in params.changes],
                    "expectedVersion": order["version"],
                },
                "diff": {
                    "lineItems": line_diffs,
                    "totals": {
                        "before": {"subtotal": order["subtotal"], "total": order["total"]},
                        "after": {"subtotal": after_subtotal, "total": after_total},
                    },
                },
                "summary": f"Update {len(params.changes)} line item(s) on order {order['order_number']}",
            }

        return self.stage(context, build)
