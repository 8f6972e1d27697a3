"""
Organization-scoped CRM data used by the built-in tools and approval handlers.

Reads are coroutines so tools can gather them; mutations take an open
connection from ``Database.transaction()`` so an apply commits atomically.
"""

from typing import Dict, List, Any, Optional, Sequence
from datetime import date, datetime
import json
import sqlite3
import uuid

import structlog

from crm_agent.domain.errors import ConflictError, NotFoundError
from crm_agent.infrastructure.persistence.database import Database

logger = structlog.get_logger(__name__)


REVENUE_EXCLUDED_STATUSES = ("draft", "cancelled")
PIPELINE_STATUSES = ("draft", "confirmed", "picking")
UNPAID_STATUSES = ("pending", "partial")

# Monday of the ISO week containing order_date
_WEEK_START_SQL = "date(order_date, '-' || ((CAST(strftime('%w', order_date) AS INTEGER) + 6) % 7) || ' days')"


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class DomainStore:
    """Customers, products, orders and quotes"""

    def __init__(self, db: Database):
        self.db = db

    # Customers

    async def get_customer(self, organization_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.read_one(
            "SELECT * FROM customers WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (customer_id, organization_id)
        )
        return _row_to_dict(row)

    async def get_latest_activity(self, organization_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.read_one(
            "SELECT id, activity_type, description, created_at FROM customer_activities "
            "WHERE organization_id = ? AND customer_id = ? ORDER BY created_at DESC LIMIT 1",
            (organization_id, customer_id)
        )
        return _row_to_dict(row)

    async def get_customer_order_stats(self, organization_id: str, customer_id: str) -> Dict[str, Any]:
        row = await self.db.read_one(
            "SELECT COUNT(*) AS order_count, COALESCE(SUM(total), 0) AS total_revenue, MAX(order_date) AS last_order_date "
            f"FROM orders WHERE organization_id = ? AND customer_id = ? AND deleted_at IS NULL "
            f"AND status NOT IN ({_placeholders(REVENUE_EXCLUDED_STATUSES)})",
            (organization_id, customer_id, *REVENUE_EXCLUDED_STATUSES)
        )
        return {
            "order_count": row["order_count"],
            "total_revenue": round(row["total_revenue"], 2),
            "last_order_date": row["last_order_date"],
        }

    async def search_customers(
        self,
        organization_id: str,
        query: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM customers WHERE organization_id = ? AND deleted_at IS NULL"
        params: List[Any] = [organization_id]
        if query:
            sql += " AND (name LIKE ? OR email LIKE ?)"
            params.extend([f"%{query}%", f"%{query}%"])
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY name LIMIT ?"
        params.append(limit)
        return [dict(row) for row in await self.db.read_all(sql, params)]

    def update_customer_notes(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        customer_id: str,
        internal_notes: str,
        expected_version: Optional[int] = None
    ) -> Dict[str, Any]:
        """Overwrite internal notes, bumping the version"""

        row = conn.execute(
            "SELECT version FROM customers WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (customer_id, organization_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        if expected_version is not None and row["version"] != expected_version:
            raise ConflictError(
                f"Customer {customer_id} changed since the draft was created",
                suggestion="Review the latest customer record and create a new draft",
                details={"expectedVersion": expected_version, "currentVersion": row["version"]}
            )

        conn.execute(
            "UPDATE customers SET internal_notes = ?, version = version + 1, updated_at = ? "
            "WHERE id = ? AND organization_id = ?",
            (internal_notes, datetime.utcnow().isoformat(), customer_id, organization_id)
        )
        return {"customerId": customer_id, "version": row["version"] + 1}

    def require_customer(self, conn: sqlite3.Connection, organization_id: str, customer_id: str) -> Dict[str, Any]:
        """Customer row inside an open transaction, or NotFoundError"""

        row = conn.execute(
            "SELECT * FROM customers WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (customer_id, organization_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(
                f"Customer {customer_id} not found",
                suggestion="Verify the customer ID is correct and belongs to your organization"
            )
        return dict(row)

    # Products

    def require_products(self, conn: sqlite3.Connection, organization_id: str, product_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        ids = list(dict.fromkeys(product_ids))
        rows = conn.execute(
            f"SELECT * FROM products WHERE organization_id = ? AND deleted_at IS NULL AND id IN ({_placeholders(ids)})",
            (organization_id, *ids)
        ).fetchall()
        found = {row["id"]: dict(row) for row in rows}
        missing = [product_id for product_id in ids if product_id not in found]
        if missing:
            raise NotFoundError(
                f"Products not found: {', '.join(missing)}",
                suggestion="Verify product IDs are correct and belong to your organization"
            )
        return found

    async def get_products(self, organization_id: str, product_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not product_ids:
            return {}
        ids = list(dict.fromkeys(product_ids))
        rows = await self.db.read_all(
            f"SELECT * FROM products WHERE organization_id = ? AND deleted_at IS NULL AND id IN ({_placeholders(ids)})",
            (organization_id, *ids)
        )
        return {row["id"]: dict(row) for row in rows}

    # Orders

    async def get_order(self, organization_id: str, order_id: str) -> Optional[Dict[str, Any]]:
        row = await self.db.read_one(
            "SELECT * FROM orders WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (order_id, organization_id)
        )
        return _row_to_dict(row)

    def require_order(self, conn: sqlite3.Connection, organization_id: str, order_id: str) -> Dict[str, Any]:
        """Order row plus its line items inside an open transaction, or NotFoundError"""

        row = conn.execute(
            "SELECT * FROM orders WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (order_id, organization_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(
                f"Order {order_id} not found",
                suggestion="Verify the order ID is correct and belongs to your organization"
            )
        order = dict(row)
        order["line_items"] = [dict(item) for item in conn.execute(
            "SELECT * FROM order_line_items WHERE organization_id = ? AND order_id = ? ORDER BY rowid",
            (organization_id, order_id)
        ).fetchall()]
        return order

    async def get_order_line_items(self, organization_id: str, order_id: str) -> List[Dict[str, Any]]:
        rows = await self.db.read_all(
            "SELECT * FROM order_line_items WHERE organization_id = ? AND order_id = ? ORDER BY rowid",
            (organization_id, order_id)
        )
        return [dict(row) for row in rows]

    async def list_orders(
        self,
        organization_id: str,
        customer_id: Optional[str] = None,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Orders newest first with the customer name joined; returns up to ``limit`` rows"""

        sql = (
            "SELECT o.*, c.name AS customer_name FROM orders o "
            "LEFT JOIN customers c ON c.id = o.customer_id AND c.organization_id = o.organization_id "
            "WHERE o.organization_id = ? AND o.deleted_at IS NULL"
        )
        params: List[Any] = [organization_id]
        if customer_id:
            sql += " AND o.customer_id = ?"
            params.append(customer_id)
        if status:
            sql += " AND o.status = ?"
            params.append(status)
        if payment_status:
            sql += " AND o.payment_status = ?"
            params.append(payment_status)
        if start_date:
            sql += " AND o.order_date >= ?"
            params.append(start_date)
        if end_date:
            sql += " AND o.order_date <= ?"
            params.append(end_date)
        sql += " ORDER BY o.order_date DESC, o.order_number DESC LIMIT ?"
        params.append(limit)
        return [dict(row) for row in await self.db.read_all(sql, params)]

    async def list_invoices(
        self,
        organization_id: str,
        today: date,
        customer_id: Optional[str] = None,
        payment_status: Optional[str] = None,
        overdue_only: bool = False,
        limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Confirmed orders viewed as invoices"""

        sql = (
            "SELECT o.*, c.name AS customer_name FROM orders o "
            "LEFT JOIN customers c ON c.id = o.customer_id AND c.organization_id = o.organization_id "
            f"WHERE o.organization_id = ? AND o.deleted_at IS NULL "
            f"AND o.status NOT IN ({_placeholders(REVENUE_EXCLUDED_STATUSES)})"
        )
        params: List[Any] = [organization_id, *REVENUE_EXCLUDED_STATUSES]
        if customer_id:
            sql += " AND o.customer_id = ?"
            params.append(customer_id)
        if payment_status:
            sql += " AND o.payment_status = ?"
            params.append(payment_status)
        if overdue_only:
            sql += f" AND o.payment_status IN ({_placeholders(UNPAID_STATUSES)}) AND o.due_date < ?"
            params.extend([*UNPAID_STATUSES, today.isoformat()])
        sql += " ORDER BY o.due_date DESC LIMIT ?"
        params.append(limit)
        return [dict(row) for row in await self.db.read_all(sql, params)]

    def _next_number(self, conn: sqlite3.Connection, table: str, column: str, organization_id: str, prefix: str) -> str:
        row = conn.execute(f"SELECT COUNT(*) AS n FROM {table} WHERE organization_id = ?", (organization_id,)).fetchone()
        return f"{prefix}-{row['n'] + 1:05d}"

    def create_order(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        customer_id: str,
        line_items: List[Dict[str, Any]],
        tax_rate: float,
        internal_notes: Optional[str] = None,
        customer_notes: Optional[str] = None,
        status: str = "draft",
        order_date: Optional[str] = None,
        due_date: Optional[str] = None,
        payment_status: str = "pending",
        paid_amount: float = 0.0
    ) -> Dict[str, Any]:
        """Insert an order with its line items and computed totals"""

        customer = conn.execute(
            "SELECT id FROM customers WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (customer_id, organization_id)
        ).fetchone()
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")

        order_id = str(uuid.uuid4())
        order_number = self._next_number(conn, "orders", "order_number", organization_id, "ORD")
        now = datetime.utcnow().isoformat()
        conn.execute(
            "INSERT INTO orders (id, organization_id, customer_id, order_number, status, payment_status, order_date, "
            "due_date, paid_amount, internal_notes, customer_notes, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                order_id, organization_id, customer_id, order_number, status, payment_status,
                order_date or date.today().isoformat(), due_date, paid_amount,
                internal_notes, customer_notes, now, now
            )
        )
        for item in line_items:
            self._insert_line_item(conn, organization_id, order_id, item)

        totals = self.recompute_order_totals(conn, organization_id, order_id, tax_rate)
        return {"orderId": order_id, "orderNumber": order_number, **totals}

    def _insert_line_item(self, conn: sqlite3.Connection, organization_id: str, order_id: str, item: Dict[str, Any]) -> str:
        product = conn.execute(
            "SELECT id, name, base_price FROM products WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (item["productId"], organization_id)
        ).fetchone()
        if product is None:
            raise NotFoundError(f"Product {item['productId']} not found")

        unit_price = item.get("unitPrice")
        if unit_price is None:
            unit_price = product["base_price"]
        quantity = int(item["quantity"])
        line_item_id = str(uuid.uuid4())
        conn.execute(
            "INSERT INTO order_line_items (id, organization_id, order_id, product_id, description, quantity, "
            "unit_price, line_total, notes) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                line_item_id, organization_id, order_id, product["id"], product["name"], quantity,
                unit_price, round(unit_price * quantity, 2), item.get("notes")
            )
        )
        return line_item_id

    def update_order_line_items(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        order_id: str,
        changes: List[Dict[str, Any]],
        tax_rate: float,
        expected_version: Optional[int] = None
    ) -> Dict[str, Any]:
        """Apply per-row line item changes and recompute totals"""

        order = conn.execute(
            "SELECT id, version FROM orders WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (order_id, organization_id)
        ).fetchone()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if expected_version is not None and order["version"] != expected_version:
            raise ConflictError(
                f"Order {order_id} changed since the draft was created",
                suggestion="Review the latest order and create a new draft",
                details={"expectedVersion": expected_version, "currentVersion": order["version"]}
            )

        for change in changes:
            row = conn.execute(
                "SELECT id, quantity, unit_price, notes FROM order_line_items WHERE id = ? AND order_id = ? AND organization_id = ?",
                (change["lineItemId"], order_id, organization_id)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Line item {change['lineItemId']} not found on order {order_id}")

            if change.get("remove"):
                conn.execute("DELETE FROM order_line_items WHERE id = ?", (row["id"],))
                continue

            quantity = change.get("quantity", row["quantity"])
            unit_price = change.get("unitPrice", row["unit_price"])
            notes = change.get("notes", row["notes"])
            conn.execute(
                "UPDATE order_line_items SET quantity = ?, unit_price = ?, line_total = ?, notes = ? WHERE id = ?",
                (quantity, unit_price, round(quantity * unit_price, 2), notes, row["id"])
            )

        conn.execute(
            "UPDATE orders SET version = version + 1, updated_at = ? WHERE id = ?",
            (datetime.utcnow().isoformat(), order_id)
        )
        totals = self.recompute_order_totals(conn, organization_id, order_id, tax_rate)
        return {"orderId": order_id, "version": order["version"] + 1, **totals}

    def recompute_order_totals(self, conn: sqlite3.Connection, organization_id: str, order_id: str, tax_rate: float) -> Dict[str, float]:
        """Derive subtotal, tax, total and balance due from the line items"""

        row = conn.execute(
            "SELECT COALESCE(SUM(line_total), 0) AS subtotal FROM order_line_items WHERE order_id = ? AND organization_id = ?",
            (order_id, organization_id)
        ).fetchone()
        subtotal = round(row["subtotal"], 2)
        tax_amount = round(subtotal * tax_rate, 2)
        total = round(subtotal + tax_amount, 2)
        paid = conn.execute("SELECT paid_amount FROM orders WHERE id = ?", (order_id,)).fetchone()["paid_amount"]
        balance_due = round(total - paid, 2)
        conn.execute(
            "UPDATE orders SET subtotal = ?, tax_amount = ?, total = ?, balance_due = ? WHERE id = ?",
            (subtotal, tax_amount, total, balance_due, order_id)
        )
        return {"subtotal": subtotal, "taxAmount": tax_amount, "total": total, "balanceDue": balance_due}

    # Quotes

    def create_quote(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        customer_id: str,
        title: str,
        line_items: List[Dict[str, Any]],
        valid_until: str,
        tax_rate: float,
        internal_notes: Optional[str] = None,
        customer_notes: Optional[str] = None
    ) -> Dict[str, Any]:
        customer = conn.execute(
            "SELECT id FROM customers WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
            (customer_id, organization_id)
        ).fetchone()
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")

        priced: List[Dict[str, Any]] = []
        for item in line_items:
            product = conn.execute(
                "SELECT id, name, base_price FROM products WHERE id = ? AND organization_id = ? AND deleted_at IS NULL",
                (item["productId"], organization_id)
            ).fetchone()
            if product is None:
                raise NotFoundError(f"Product {item['productId']} not found")
            unit_price = item.get("unitPrice")
            if unit_price is None:
                unit_price = product["base_price"]
            priced.append({
                "productId": product["id"],
                "description": product["name"],
                "quantity": int(item["quantity"]),
                "unitPrice": unit_price,
                "lineTotal": round(unit_price * int(item["quantity"]), 2),
                "notes": item.get("notes"),
            })

        subtotal = round(sum(item["lineTotal"] for item in priced), 2)
        tax_amount = round(subtotal * tax_rate, 2)
        quote_id = str(uuid.uuid4())
        quote_number = self._next_number(conn, "quotes", "quote_number", organization_id, "Q")
        conn.execute(
            "INSERT INTO quotes (id, organization_id, customer_id, quote_number, title, valid_until, subtotal, "
            "tax_amount, total, internal_notes, customer_notes, line_items_json, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                quote_id, organization_id, customer_id, quote_number, title, valid_until, subtotal,
                tax_amount, round(subtotal + tax_amount, 2), internal_notes, customer_notes,
                json.dumps(priced), datetime.utcnow().isoformat()
            )
        )
        return {"quoteId": quote_id, "quoteNumber": quote_number, "subtotal": subtotal,
                "taxAmount": tax_amount, "total": round(subtotal + tax_amount, 2)}

    # Analytics

    def _revenue_filter(self, alias: str = "") -> str:
        prefix = f"{alias}." if alias else ""
        return (
            f"{prefix}organization_id = ? AND {prefix}deleted_at IS NULL "
            f"AND {prefix}status NOT IN ({_placeholders(REVENUE_EXCLUDED_STATUSES)}) "
            f"AND {prefix}order_date >= ? AND {prefix}order_date <= ?"
        )

    async def revenue_by_customer(self, organization_id: str, start: str, end: str, limit: int) -> List[Dict[str, Any]]:
        rows = await self.db.read_all(
            "SELECT o.customer_id, c.name AS customer_name, COUNT(*) AS order_count, "
            "SUM(o.total) AS total_revenue, AVG(o.total) AS avg_order_value "
            "FROM orders o LEFT JOIN customers c ON c.id = o.customer_id "
            f"WHERE {self._revenue_filter('o')} "
            "GROUP BY o.customer_id, c.name ORDER BY total_revenue DESC LIMIT ?",
            (organization_id, *REVENUE_EXCLUDED_STATUSES, start, end, limit)
        )
        return [dict(row) for row in rows]

    async def revenue_by_product(self, organization_id: str, start: str, end: str, limit: int) -> List[Dict[str, Any]]:
        rows = await self.db.read_all(
            "SELECT li.product_id, p.name AS product_name, SUM(li.quantity) AS units_sold, "
            "SUM(li.line_total) AS total_revenue "
            "FROM order_line_items li JOIN orders o ON o.id = li.order_id "
            "LEFT JOIN products p ON p.id = li.product_id "
            f"WHERE {self._revenue_filter('o')} "
            "GROUP BY li.product_id, p.name ORDER BY total_revenue DESC LIMIT ?",
            (organization_id, *REVENUE_EXCLUDED_STATUSES, start, end, limit)
        )
        return [dict(row) for row in rows]

    async def orders_by_status(
        self,
        organization_id: str,
        start: str,
        end: str,
        statuses: Optional[Sequence[str]] = None
    ) -> List[Dict[str, Any]]:
        sql = (
            "SELECT status, COUNT(*) AS count, COALESCE(SUM(total), 0) AS total_value FROM orders "
            "WHERE organization_id = ? AND deleted_at IS NULL AND order_date >= ? AND order_date <= ?"
        )
        params: List[Any] = [organization_id, start, end]
        if statuses:
            sql += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        sql += " GROUP BY status ORDER BY count DESC"
        return [dict(row) for row in await self.db.read_all(sql, params)]

    async def metric_value(self, organization_id: str, metric: str, start: str, end: str) -> float:
        expressions = {
            "total_revenue": "COALESCE(SUM(total), 0)",
            "order_count": "COUNT(*)",
            "average_order_value": "COALESCE(AVG(total), 0)",
            "customer_count": "COUNT(DISTINCT customer_id)",
        }
        if metric not in expressions:
            raise ValueError(f"Unknown metric: {metric}")
        row = await self.db.read_one(
            f"SELECT {expressions[metric]} AS value FROM orders WHERE {self._revenue_filter()}",
            (organization_id, *REVENUE_EXCLUDED_STATUSES, start, end)
        )
        return float(row["value"] or 0)

    async def trend_points(
        self,
        organization_id: str,
        metric: str,
        start: str,
        end: str,
        granularity: str = "daily"
    ) -> List[Dict[str, Any]]:
        expressions = {
            "revenue": "COALESCE(SUM(total), 0)",
            "orders": "COUNT(*)",
            "customers": "COUNT(DISTINCT customer_id)",
        }
        if metric not in expressions:
            raise ValueError(f"Unknown metric: {metric}")
        bucket = _WEEK_START_SQL if granularity == "weekly" else "order_date"
        rows = await self.db.read_all(
            f"SELECT {bucket} AS bucket, {expressions[metric]} AS value FROM orders "
            f"WHERE {self._revenue_filter()} GROUP BY bucket ORDER BY bucket",
            (organization_id, *REVENUE_EXCLUDED_STATUSES, start, end)
        )
        return [{"date": row["bucket"], "value": float(row["value"] or 0)} for row in rows]

    # Seeding

    def insert_customer(
        self,
        organization_id: str,
        name: str,
        customer_id: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        status: str = "active",
        internal_notes: str = "",
        tax_id: Optional[str] = None
    ) -> str:
        customer_id = customer_id or str(uuid.uuid4())
        now = datetime.utcnow().isoformat()
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO customers (id, organization_id, name, email, phone, status, internal_notes, tax_id, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (customer_id, organization_id, name, email, phone, status, internal_notes, tax_id, now, now)
            )
        return customer_id

    def insert_activity(self, organization_id: str, customer_id: str, activity_type: str, description: str,
                        created_at: Optional[datetime] = None) -> str:
        activity_id = str(uuid.uuid4())
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO customer_activities (id, organization_id, customer_id, activity_type, description, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (activity_id, organization_id, customer_id, activity_type, description,
                 (created_at or datetime.utcnow()).isoformat())
            )
        return activity_id

    def insert_product(
        self,
        organization_id: str,
        name: str,
        sku: str,
        base_price: float,
        cost_price: float = 0.0,
        category: str = "uncategorized",
        product_id: Optional[str] = None
    ) -> str:
        product_id = product_id or str(uuid.uuid4())
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO products (id, organization_id, name, sku, category, base_price, cost_price) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (product_id, organization_id, name, sku, category, base_price, cost_price)
            )
        return product_id
