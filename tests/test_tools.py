import pydantic
import pytest

from crm_agent.domain.errors import NotFoundError, ValidationError
from crm_agent.domain.models.tool_outcome import ApprovalRequiredOutcome, DataOutcome
from crm_agent.domain.tool.builtin.customer_tools import NOTES_SEPARATOR, append_notes
from crm_agent.domain.tool.builtin.analytics_tools import get_date_range, trend_direction
from crm_agent.infrastructure.persistence.demo_seed import DEMO_ORGANIZATION_ID

from tests.support import FIXED_TODAY


async def run_tool(registry, name, arguments, context):
    tool = registry.get_tool(name)
    return await tool.execute(tool.input_model.model_validate(arguments), context)


class TestRegistry:

    def test_each_specialist_has_its_catalogue(self, registry):
        assert set(registry.get_tool_set("customer").names()) == {
            "get_customer", "search_customers", "update_customer_notes", "get_orders"
        }
        assert "create_order_draft" in registry.get_tool_set("order")
        assert set(registry.get_tool_set("analytics").names()) == {"run_report", "get_metrics", "get_trends"}
        assert "calculate_price" in registry.get_tool_set("quote")
        assert len(registry.get_tool_set("triage")) == 0

    def test_duplicate_registration_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.register_tool(registry.get_tool("get_customer"))

    def test_specs_use_camel_case_arguments(self, registry):
        spec = registry.get_tool("update_customer_notes").spec()
        assert set(spec.parameters["properties"]) == {"customerId", "notes", "appendMode"}
        assert spec.parameters["required"] == ["customerId", "notes"]

    def test_mutating_tools_are_flagged(self, registry):
        flagged = {info["name"] for info in registry.get_available_tools() if info["mutates"]}
        assert flagged == {"update_customer_notes", "create_order_draft", "create_quote_draft", "update_order_line_items"}


class TestCustomerTools:

    async def test_get_customer_profile(self, registry, tool_context):
        outcome = await run_tool(registry, "get_customer", {"customerId": "cust_acme"}, tool_context)

        assert outcome.payload["customer"]["name"] == "Acme Builders"
        assert outcome.payload["latestActivity"]["type"] == "call"
        assert outcome.payload["orderStats"]["orderCount"] == 2
        assert outcome.payload["orderStats"]["totalRevenue"] == 19470.0

    async def test_search_reports_more_results(self, registry, tool_context):
        outcome = await run_tool(registry, "search_customers", {"limit": 2}, tool_context)

        assert [c["name"] for c in outcome.payload] == ["Acme Builders", "Harbour Dental"]
        assert outcome.meta == {"count": 2, "hasMore": True}

    async def test_search_by_status(self, registry, tool_context):
        outcome = await run_tool(registry, "search_customers", {"status": "prospect"}, tool_context)
        assert [c["id"] for c in outcome.payload] == ["cust_nguyen"]

    async def test_search_never_crosses_organizations(self, registry, tool_context):
        outcome = await run_tool(registry, "search_customers", {"query": "Other Org"}, tool_context)
        assert outcome.payload == []

    async def test_notes_draft_appends_by_default(self, registry, approvals, store, tool_context):
        outcome = await run_tool(
            registry, "update_customer_notes", {"customerId": "cust_acme", "notes": "Call on Tuesdays"}, tool_context
        )

        assert isinstance(outcome, ApprovalRequiredOutcome)
        assert outcome.action == "update_customer_notes"
        assert outcome.draft["internalNotes"] == "Prefers email contact" + NOTES_SEPARATOR + "Call on Tuesdays"
        assert outcome.diff["internalNotes"]["before"] == "Prefers email contact"
        assert outcome.summary == 'Append notes on "Acme Builders"'

        # Nothing changes until the approval is applied
        customer = await store.get_customer(DEMO_ORGANIZATION_ID, "cust_acme")
        assert customer["internal_notes"] == "Prefers email contact"
        assert approvals.get(outcome.approval_id, DEMO_ORGANIZATION_ID).status.value == "pending"

    async def test_notes_draft_can_replace(self, registry, tool_context):
        outcome = await run_tool(
            registry, "update_customer_notes",
            {"customerId": "cust_acme", "notes": "Key account", "appendMode": False}, tool_context
        )

        assert outcome.draft["internalNotes"] == "Key account"
        assert outcome.summary.startswith("Replace")

    def test_append_to_empty_notes_keeps_leading_separator(self):
        assert append_notes("", "First note") == NOTES_SEPARATOR + "First note"
        assert append_notes(None, "First note") == NOTES_SEPARATOR + "First note"

    async def test_notes_draft_for_missing_customer_stages_nothing(self, registry, approvals, tool_context):
        with pytest.raises(NotFoundError):
            await run_tool(registry, "update_customer_notes", {"customerId": "cust_missing", "notes": "x"}, tool_context)
        assert approvals.list_pending(DEMO_ORGANIZATION_ID) == []


class TestOrderTools:

    async def test_orders_for_customer_newest_first(self, registry, tool_context):
        outcome = await run_tool(registry, "get_orders", {"customerId": "cust_acme"}, tool_context)

        assert [o["orderNumber"] for o in outcome.payload] == ["ORD-00003", "ORD-00001"]
        assert outcome.meta["hasMore"] is False

    async def test_orders_status_filter_rejects_unknown_status(self, registry):
        with pytest.raises(pydantic.ValidationError):
            registry.get_tool("get_orders").input_model.model_validate({"status": "completed"})

    async def test_overdue_invoices(self, registry, tool_context):
        outcome = await run_tool(registry, "get_invoices", {"overdueOnly": True}, tool_context)

        assert len(outcome.payload) == 1
        invoice = outcome.payload[0]
        assert invoice["invoiceNumber"] == "ORD-00001"
        assert invoice["daysOverdue"] == 10
        assert outcome.meta["totalOverdue"] == 9680.0

    async def test_paid_invoice_is_never_overdue(self, registry, tool_context):
        outcome = await run_tool(registry, "get_invoices", {"status": "paid"}, tool_context)

        assert [i["invoiceNumber"] for i in outcome.payload] == ["ORD-00002"]
        assert outcome.payload[0]["daysOverdue"] == 0
        assert outcome.payload[0]["balanceDue"] == 0

    async def test_order_draft_does_not_create_an_order(self, registry, store, tool_context):
        outcome = await run_tool(registry, "create_order_draft", {
            "customerId": "cust_harbour",
            "lineItems": [{"productId": "prod_split_7k", "quantity": 2}],
            "customerNotes": "Install before summer",
        }, tool_context)

        assert outcome.action == "create_order"
        assert outcome.draft["lineItems"] == [{"productId": "prod_split_7k", "quantity": 2}]
        assert outcome.draft["status"] == "draft"
        assert len(await store.list_orders(DEMO_ORGANIZATION_ID)) == 3

    async def test_order_draft_checks_products(self, registry, approvals, tool_context):
        with pytest.raises(NotFoundError, match="prod_unknown"):
            await run_tool(registry, "create_order_draft", {
                "customerId": "cust_harbour",
                "lineItems": [{"productId": "prod_unknown", "quantity": 1}],
            }, tool_context)
        assert approvals.list_pending(DEMO_ORGANIZATION_ID) == []

    async def test_quote_draft_defaults_validity(self, registry, tool_context):
        outcome = await run_tool(registry, "create_quote_draft", {
            "customerId": "cust_nguyen",
            "title": "Rooftop solar",
            "lineItems": [{"productId": "prod_panel_440", "quantity": 12}],
        }, tool_context)

        assert outcome.action == "create_quote"
        assert outcome.draft["validUntil"] == "2025-10-15"

    async def test_line_item_draft_carries_diff_and_version(self, registry, store, tool_context):
        order = (await store.list_orders(DEMO_ORGANIZATION_ID, status="confirmed"))[0]
        line_item = (await store.get_order_line_items(DEMO_ORGANIZATION_ID, order["id"]))[0]

        outcome = await run_tool(registry, "update_order_line_items", {
            "orderId": order["id"],
            "changes": [{"lineItemId": line_item["id"], "quantity": 2}],
        }, tool_context)

        assert outcome.action == "update_order_line_items"
        assert outcome.draft["expectedVersion"] == 1
        line_diff = outcome.diff["lineItems"][0]
        assert line_diff["before"]["quantity"] == 1
        assert line_diff["after"] == {"quantity": 2, "unitPrice": 8900.0, "lineTotal": 17800.0}
        assert outcome.diff["totals"]["after"] == {"subtotal": 17800.0, "total": 19580.0}

    async def test_line_item_draft_rejects_foreign_line_item(self, registry, store, tool_context):
        order = (await store.list_orders(DEMO_ORGANIZATION_ID, status="confirmed"))[0]

        with pytest.raises(NotFoundError):
            await run_tool(registry, "update_order_line_items", {
                "orderId": order["id"],
                "changes": [{"lineItemId": "li_missing", "remove": True}],
            }, tool_context)


class TestAnalyticsTools:

    def test_date_ranges(self):
        assert get_date_range("qtd", FIXED_TODAY).start.isoformat() == "2025-07-01"
        assert get_date_range("ytd", FIXED_TODAY).start.isoformat() == "2025-01-01"
        assert get_date_range("mtd", FIXED_TODAY).start.isoformat() == "2025-09-01"
        assert get_date_range("rolling30", FIXED_TODAY).label == "Last 30 Days"

    def test_trend_direction(self):
        assert trend_direction([1, 1]) == "stable"
        assert trend_direction([10, 10, 20, 20]) == "increasing"
        assert trend_direction([20, 20, 10, 10]) == "decreasing"

    async def test_revenue_by_customer_report(self, registry, tool_context):
        outcome = await run_tool(
            registry, "run_report", {"reportType": "revenue_by_customer", "period": "rolling90"}, tool_context
        )

        payload = outcome.payload
        assert [row["customerName"] for row in payload["rows"]] == ["Acme Builders", "Harbour Dental"]
        assert payload["totals"]["totalRevenue"] == 27159.0
        assert payload["markdown"].startswith("## Revenue by Customer")

    async def test_metric_compares_with_previous_period(self, registry, tool_context):
        outcome = await run_tool(registry, "get_metrics", {"metric": "total_revenue", "period": "rolling30"}, tool_context)

        assert outcome.payload["value"] == 17479.0
        assert outcome.payload["previousValue"] == 9680.0
        assert outcome.payload["trend"] == "up"

    async def test_daily_trend_points(self, registry, tool_context):
        outcome = await run_tool(registry, "get_trends", {"metric": "orders", "period": "rolling60"}, tool_context)

        assert len(outcome.payload["dataPoints"]) == 3
        assert outcome.payload["direction"] == "stable"
        assert outcome.payload["average"] == 1.0


class TestQuoteTools:

    async def test_solar_configuration_sizing(self, registry, tool_context):
        outcome = await run_tool(registry, "configure_system", {
            "systemType": "solar",
            "components": [
                {"productId": "prod_panel_440", "quantity": 20},
                {"productId": "prod_inverter_5k", "quantity": 1},
            ],
        }, tool_context)

        assert outcome.payload["validation"] == {"isValid": True, "warnings": [], "errors": []}
        assert outcome.payload["sizing"]["totalCapacity"] == 8000
        assert outcome.payload["sizing"]["recommendation"] == "Medium residential system"

    async def test_panels_without_inverter_warn(self, registry, tool_context):
        outcome = await run_tool(registry, "configure_system", {
            "systemType": "solar",
            "components": [{"productId": "prod_panel_440", "quantity": 6}],
        }, tool_context)

        assert outcome.payload["validation"]["warnings"] == ["Solar panels configured without an inverter"]

    async def test_two_hot_water_systems_conflict(self, registry, tool_context):
        outcome = await run_tool(
            registry, "check_compatibility", {"productIds": ["prod_heat_pump", "prod_solar_hw"]}, tool_context
        )

        assert outcome.payload["compatible"] is False
        assert outcome.payload["checks"][0]["reason"] == "Choose one hot water system type"

    async def test_compatibility_needs_two_known_products(self, registry, tool_context):
        with pytest.raises(ValidationError):
            await run_tool(registry, "check_compatibility", {"productIds": ["prod_heat_pump", "prod_nope"]}, tool_context)

    async def test_price_with_discount_tax_and_margin(self, registry, tool_context):
        outcome = await run_tool(registry, "calculate_price", {
            "lineItems": [{"productId": "prod_panel_440", "quantity": 10, "discountPercent": 10}],
        }, tool_context)

        assert isinstance(outcome, DataOutcome)
        assert outcome.payload["subtotal"] == 2880.0
        assert outcome.payload["taxAmount"] == 288.0
        assert outcome.payload["total"] == 3168.0
        assert outcome.payload["margin"] == {"amount": 780.0, "percentage": 27.08}
