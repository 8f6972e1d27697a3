from typing import Callable, Dict, Any
import sqlite3

from crm_agent.domain.errors import ValidationError
from crm_agent.infrastructure.persistence.domain_store import DomainStore


ApplyHandler = Callable[[sqlite3.Connection, str, Dict[str, Any], bool], Dict[str, Any]]


class ApplyHandlers:
    """Re-derives each action's mutation from its persisted draft"""

    def __init__(self, store: DomainStore, tax_rate: float = 0.10):
        self.store = store
        self.tax_rate = tax_rate
        self.handlers: Dict[str, ApplyHandler] = {
            "create_order": self.create_order,
            "create_quote": self.create_quote,
            "update_customer_notes": self.update_customer_notes,
            "update_order_line_items": self.update_order_line_items,
        }

    def register(self, action: str, handler: ApplyHandler) -> None:
        self.handlers[action] = handler

    def get(self, action: str) -> ApplyHandler:
        handler = self.handlers.get(action)
        if handler is None:
            raise ValidationError(f"No apply handler for action '{action}'")
        return handler

    def create_order(self, conn: sqlite3.Connection, organization_id: str, draft: Dict[str, Any], force: bool) -> Dict[str, Any]:
        return self.store.create_order(
            conn,
            organization_id,
            customer_id=draft["customerId"],
            line_items=draft["lineItems"],
            tax_rate=self.tax_rate,
            internal_notes=draft.get("notes"),
            customer_notes=draft.get("customerNotes")
        )

    def create_quote(self, conn: sqlite3.Connection, organization_id: str, draft: Dict[str, Any], force: bool) -> Dict[str, Any]:
        return self.store.create_quote(
            conn,
            organization_id,
            customer_id=draft["customerId"],
            title=draft["title"],
            line_items=draft["lineItems"],
            valid_until=draft["validUntil"],
            tax_rate=self.tax_rate,
            internal_notes=draft.get("notes"),
            customer_notes=draft.get("customerNotes")
        )

    def update_customer_notes(self, conn: sqlite3.Connection, organization_id: str, draft: Dict[str, Any], force: bool) -> Dict[str, Any]:
        return self.store.update_customer_notes(
            conn,
            organization_id,
            customer_id=draft["customerId"],
            internal_notes=draft["internalNotes"],
            expected_version=None if force else draft.get("expectedVersion")
        )

    def update_order_line_items(self, conn: sqlite3.Connection, organization_id: str, draft: Dict[str, Any], force: bool) -> Dict[str, Any]:
        return self.store.update_order_line_items(
            conn,
            organization_id,
            order_id=draft["orderId"],
            changes=draft["changes"],
            tax_rate=self.tax_rate,
            expected_version=None if force else draft.get("expectedVersion")
        )
