"""Demo organisation used for local development."""

from typing import Dict
from datetime import date, datetime, timedelta

import structlog

from crm_agent.infrastructure.persistence.domain_store import DomainStore

logger = structlog.get_logger(__name__)


DEMO_ORGANIZATION_ID = "org_demo"
DEMO_USER_ID = "user_demo"

DEMO_PRODUCTS = [
    ("prod_panel_440", "440W Mono Solar Panel", "SP-440", 320.0, 210.0, "solar_panel"),
    ("prod_inverter_5k", "5kW Hybrid Inverter", "INV-5K", 2400.0, 1650.0, "solar_inverter"),
    ("prod_battery_10k", "10kWh Home Battery", "BAT-10", 8900.0, 6700.0, "solar_battery"),
    ("prod_mount_kit", "Tin Roof Mounting Kit", "MNT-TIN", 95.0, 40.0, "solar_mounting"),
    ("prod_split_7k", "7kW Split System", "AC-7K", 2150.0, 1500.0, "hvac_split"),
    ("prod_wifi_ctrl", "WiFi Climate Controller", "CTRL-WIFI", 180.0, 90.0, "hvac_control"),
    ("prod_heat_pump", "270L Heat Pump Hot Water", "HP-270", 3900.0, 2800.0, "heat_pump"),
    ("prod_solar_hw", "Roof Solar Hot Water 300L", "SHW-300", 4600.0, 3300.0, "solar_hotwater"),
]


def seed_demo_data(store: DomainStore, tax_rate: float = 0.10, today: date = None) -> Dict[str, str]:
    """Insert a small, realistic dataset; returns the ids of the seeded customers"""

    today = today or date.today()
    org = DEMO_ORGANIZATION_ID

    for product_id, name, sku, price, cost, category in DEMO_PRODUCTS:
        store.insert_product(org, name, sku, price, cost, category, product_id=product_id)

    customers = {
        "acme": store.insert_customer(org, "Acme Builders", customer_id="cust_acme", email="accounts@acme.example",
                                      phone="+61 2 5550 1000", internal_notes="Prefers email contact"),
        "harbour": store.insert_customer(org, "Harbour Dental", customer_id="cust_harbour",
                                         email="office@harbourdental.example"),
        "nguyen": store.insert_customer(org, "Lan Nguyen", customer_id="cust_nguyen", status="prospect"),
    }
    store.insert_activity(org, customers["acme"], "call", "Discussed battery add-on for the Parramatta site",
                          created_at=datetime.utcnow() - timedelta(days=2))
    store.insert_activity(org, customers["harbour"], "email", "Sent maintenance schedule",
                          created_at=datetime.utcnow() - timedelta(days=9))

    with store.db.transaction() as conn:
        store.create_order(
            conn, org, customers["acme"],
            [{"productId": "prod_panel_440", "quantity": 20}, {"productId": "prod_inverter_5k", "quantity": 1}],
            tax_rate,
            status="delivered",
            order_date=(today - timedelta(days=40)).isoformat(),
            due_date=(today - timedelta(days=10)).isoformat(),
            payment_status="pending"
        )
        store.create_order(
            conn, org, customers["harbour"],
            [{"productId": "prod_split_7k", "quantity": 3}, {"productId": "prod_wifi_ctrl", "quantity": 3}],
            tax_rate,
            status="delivered",
            order_date=(today - timedelta(days=20)).isoformat(),
            due_date=(today + timedelta(days=10)).isoformat(),
            payment_status="paid",
            paid_amount=7689.0
        )
        store.create_order(
            conn, org, customers["acme"],
            [{"productId": "prod_battery_10k", "quantity": 1}],
            tax_rate,
            status="confirmed",
            order_date=(today - timedelta(days=3)).isoformat()
        )

    logger.info("Demo data seeded", organization_id=org, customers=len(customers), products=len(DEMO_PRODUCTS))
    return customers
