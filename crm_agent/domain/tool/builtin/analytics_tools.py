from typing import Dict, List, Any, Optional, Literal
from datetime import date, timedelta
import asyncio

from pydantic import Field

from crm_agent.domain.models.agent_state import ToolExecutionContext
from crm_agent.domain.models.tool_outcome import DataOutcome, ToolOutcome
from crm_agent.domain.tool.builtin.base import DomainTool, ToolDependencies
from crm_agent.domain.tool.builtin.formatters import (
    format_as_table,
    format_currency,
    format_number,
    format_percent,
    format_status,
)
from crm_agent.domain.tool.progress import ProgressChannel, ProgressStage
from crm_agent.domain.tool.tool_registry import ProgressiveTool, ToolInput
from crm_agent.infrastructure.persistence.domain_store import PIPELINE_STATUSES


Period = Literal["mtd", "qtd", "ytd", "rolling30", "rolling60", "rolling90", "custom"]


class DateRange:
    def __init__(self, start: date, end: date, label: str):
        self.start = start
        self.end = end
        self.label = label

    def header(self) -> str:
        return f"**{self.label}** ({self.start.isoformat()} to {self.end.isoformat()})"


def get_date_range(
    period: str,
    today: date,
    custom_start: Optional[date] = None,
    custom_end: Optional[date] = None
) -> DateRange:
    """Resolve a named reporting period relative to ``today``"""

    if period == "qtd":
        quarter_month = (today.month - 1) // 3 * 3 + 1
        return DateRange(date(today.year, quarter_month, 1), today, "Quarter to Date")
    if period == "ytd":
        return DateRange(date(today.year, 1, 1), today, "Year to Date")
    if period in ("rolling30", "rolling60", "rolling90"):
        days = int(period[len("rolling"):])
        return DateRange(today - timedelta(days=days), today, f"Last {days} Days")
    if period == "custom":
        start = custom_start or today - timedelta(days=30)
        end = custom_end or today
        return DateRange(start, end, f"{start.isoformat()} to {end.isoformat()}")
    return DateRange(date(today.year, today.month, 1), today, "Month to Date")


def previous_range(current: DateRange) -> DateRange:
    """Window of the same length immediately before ``current``"""

    length = current.end - current.start
    return DateRange(current.start - length, current.end - length, "Previous Period")


def trend_direction(values: List[float]) -> str:
    if len(values) < 3:
        return "stable"
    half = len(values) // 2
    first, second = values[:half], values[half:]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    change = (second_avg - first_avg) / first_avg * 100 if first_avg > 0 else 0
    if change > 5:
        return "increasing"
    if change < -5:
        return "decreasing"
    return "stable"


class RunReportInput(ToolInput):
    report_type: Literal["revenue_by_customer", "revenue_by_product", "orders_by_status", "pipeline_summary"]
    period: Period = "mtd"
    custom_start_date: Optional[date] = None
    custom_end_date: Optional[date] = None
    limit: int = Field(default=20, ge=5, le=100)


class RunReportTool(ProgressiveTool):
    name = "run_report"
    description = (
        "Run a predefined business report. "
        "Available reports: revenue_by_customer, revenue_by_product, orders_by_status, pipeline_summary. "
        "Returns rows, totals and a markdown table for the period."
    )
    input_model = RunReportInput
    category = "analytics"

    def __init__(self, deps: ToolDependencies):
        self.deps = deps

    async def run(self, params: RunReportInput, context: ToolExecutionContext, channel: ProgressChannel) -> Dict[str, Any]:
        store = self.deps.store
        org = context.organization_id
        period = get_date_range(params.period, self.deps.today(), params.custom_start_date, params.custom_end_date)
        start, end = period.start.isoformat(), period.end.isoformat()

        channel.publish(ProgressStage.FETCHING_DATA, f"Querying {params.report_type}")
        if params.report_type == "revenue_by_customer":
            rows = await store.revenue_by_customer(org, start, end, params.limit)
        elif params.report_type == "revenue_by_product":
            rows = await store.revenue_by_product(org, start, end, params.limit)
        elif params.report_type == "orders_by_status":
            rows = await store.orders_by_status(org, start, end)
        else:
            rows = await store.orders_by_status(org, start, end, statuses=PIPELINE_STATUSES)

        channel.publish(ProgressStage.PROCESSING, f"Aggregating {len(rows)} rows")
        title, table_rows, columns, totals = self._shape(params.report_type, rows)

        channel.publish(ProgressStage.ANALYZING, "Formatting report")
        if table_rows:
            markdown = f"## {title}\n\n{period.header()}\n\n{format_as_table(table_rows, columns)}\n\n{totals['line']}"
        else:
            markdown = f"## {title}\n\n{period.header()}\n\nNo data found for this period."

        return {
            "reportType": params.report_type,
            "period": {"label": period.label, "start": start, "end": end},
            "rows": table_rows,
            "totals": {k: v for k, v in totals.items() if k != "line"},
            "markdown": markdown,
        }

    def _shape(self, report_type: str, rows: List[Dict[str, Any]]):
        if report_type == "revenue_by_customer":
            table_rows = [
                {
                    "customerName": row["customer_name"] or "Unknown",
                    "orderCount": row["order_count"],
                    "totalRevenue": round(row["total_revenue"] or 0, 2),
                    "avgOrderValue": round(row["avg_order_value"] or 0, 2),
                }
                for row in rows
            ]
            revenue = round(sum(r["totalRevenue"] for r in table_rows), 2)
            columns = [
                ("customerName", "Customer", None),
                ("orderCount", "Orders", format_number),
                ("totalRevenue", "Revenue", format_currency),
                ("avgOrderValue", "Avg Order", format_currency),
            ]
            line = f"**Total Revenue:** {format_currency(revenue)} | **{len(table_rows)} customers**"
            return "Revenue by Customer", table_rows, columns, {"totalRevenue": revenue, "line": line}

        if report_type == "revenue_by_product":
            table_rows = [
                {
                    "productName": row["product_name"] or "Unknown",
                    "unitsSold": row["units_sold"],
                    "totalRevenue": round(row["total_revenue"] or 0, 2),
                }
                for row in rows
            ]
            revenue = round(sum(r["totalRevenue"] for r in table_rows), 2)
            columns = [
                ("productName", "Product", None),
                ("unitsSold", "Units", format_number),
                ("totalRevenue", "Revenue", format_currency),
            ]
            line = f"**Total Revenue:** {format_currency(revenue)} | **{len(table_rows)} products**"
            return "Revenue by Product", table_rows, columns, {"totalRevenue": revenue, "line": line}

        total_orders = sum(row["count"] for row in rows)
        total_value = round(sum(row["total_value"] or 0 for row in rows), 2)
        if report_type == "orders_by_status":
            table_rows = [
                {
                    "status": row["status"],
                    "count": row["count"],
                    "totalValue": round(row["total_value"] or 0, 2),
                    "percentage": row["count"] / total_orders * 100 if total_orders else 0,
                }
                for row in rows
            ]
            columns = [
                ("status", "Status", format_status),
                ("count", "Count", format_number),
                ("totalValue", "Value", format_currency),
                ("percentage", "%", format_percent),
            ]
            line = f"**Total Orders:** {format_number(total_orders)} | **Total Value:** {format_currency(total_value)}"
            return "Orders by Status", table_rows, columns, {"totalOrders": total_orders, "totalValue": total_value, "line": line}

        table_rows = [
            {"stage": row["status"], "count": row["count"], "value": round(row["total_value"] or 0, 2)}
            for row in rows
        ]
        columns = [
            ("stage", "Stage", format_status),
            ("count", "Orders", format_number),
            ("value", "Value", format_currency),
        ]
        line = f"**Pipeline Total:** {format_currency(total_value)} | **{format_number(total_orders)} orders**"
        return "Pipeline Summary", table_rows, columns, {"pipelineCount": total_orders, "pipelineValue": total_value, "line": line}


class GetMetricsInput(ToolInput):
    metric: Literal["total_revenue", "order_count", "average_order_value", "customer_count"]
    period: Literal["mtd", "qtd", "ytd", "rolling30", "rolling60", "rolling90"] = "mtd"


class GetMetricsTool(DomainTool):
    name = "get_metrics"
    description = (
        "Get a business metric with comparison to the previous period. "
        "Available metrics: total_revenue, order_count, average_order_value, customer_count."
    )
    input_model = GetMetricsInput
    category = "analytics"

    async def execute(self, params: GetMetricsInput, context: ToolExecutionContext) -> ToolOutcome:

        current = get_date_range(params.period, self.deps.today())
        previous = previous_range(current)
        org = context.organization_id

        current_value, previous_value = await asyncio.gather(
            self.store.metric_value(org, params.metric, current.start.isoformat(), current.end.isoformat()),
            self.store.metric_value(org, params.metric, previous.start.isoformat(), previous.end.isoformat())
        )

        change = (current_value - previous_value) / previous_value * 100 if previous_value > 0 else 0.0
        monetary = params.metric in ("total_revenue", "average_order_value")
        return DataOutcome(payload={
            "metric": params.metric,
            "period": current.label,
            "value": round(current_value, 2),
            "previousValue": round(previous_value, 2),
            "change": round(change, 2),
            "trend": "up" if change > 1 else "down" if change < -1 else "flat",
            "formatted": format_currency(current_value) if monetary else format_number(current_value),
        })


class GetTrendsInput(ToolInput):
    metric: Literal["revenue", "orders", "customers"]
    period: Literal["rolling30", "rolling60", "rolling90"] = "rolling30"
    granularity: Literal["daily", "weekly"] = "daily"


class GetTrendsTool(DomainTool):
    name = "get_trends"
    description = (
        "Get trend data showing how a metric changes over time, as daily or weekly points. "
        "Use this when the user asks about trends or historical performance."
    )
    input_model = GetTrendsInput
    category = "analytics"

    async def execute(self, params: GetTrendsInput, context: ToolExecutionContext) -> ToolOutcome:

        period = get_date_range(params.period, self.deps.today())
        points = await self.store.trend_points(
            context.organization_id,
            params.metric,
            period.start.isoformat(),
            period.end.isoformat(),
            params.granularity
        )

        values = [point["value"] for point in points]
        return DataOutcome(payload={
            "dataPoints": points,
            "direction": trend_direction(values),
            "average": round(sum(values) / len(values), 2) if values else 0,
            "range": {"min": min(values) if values else 0, "max": max(values) if values else 0},
        })
