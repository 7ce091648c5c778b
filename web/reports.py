"""
web/reports.py -- Quick CSV reports offered on the /reports page.

Each Report pairs a header row with a function that reads the stores and
returns plain rows. to_csv() renders any of them.

Spreadsheet applications evaluate a cell that starts with =, +, -, @, tab or
carriage return as a formula. Names, emails and notes are user-supplied, so
every text cell with such a prefix is written with a leading single quote.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from auth.store import UserStore
from commerce.store import CommerceStore

REPORT_ROW_LIMIT = 10_000
SALES_DAYS = 30
LOW_STOCK_THRESHOLD = 10

_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _sanitize_csv_cell(value: Any) -> Any:
    if isinstance(value, str) and value.startswith(_FORMULA_PREFIXES):
        return "'" + value
    return value


def to_csv(headers: list[str], rows: list[list]) -> str:
    """Render headers plus rows as CSV text. None becomes an empty cell."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(headers)
    for row in rows:
        writer.writerow([_sanitize_csv_cell("" if value is None else value) for value in row])
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Report builders
# ---------------------------------------------------------------------------


def _daily_sales(users: UserStore, commerce: CommerceStore, today: date) -> list[list]:
    """One row per day for the last SALES_DAYS days, oldest first, zero-filled."""
    first = today - timedelta(days=SALES_DAYS - 1)
    sales = commerce.daily_sales(first.isoformat())
    rows = []
    for offset in range(SALES_DAYS):
        day = (first + timedelta(days=offset)).isoformat()
        entry = sales.get(day, {"orders": 0, "revenue": 0.0})
        rows.append([day, entry["orders"], f"{entry['revenue']:.2f}"])
    return rows


def _customers(users: UserStore, commerce: CommerceStore, today: date) -> list[list]:
    customers, _ = users.list_users(role="USER", limit=REPORT_ROW_LIMIT)
    return [[u.id, u.email, u.phone, u.first_name, u.last_name, u.status, u.created_at] for u in customers]


def _low_stock(users: UserStore, commerce: CommerceStore, today: date) -> list[list]:
    products = commerce.low_stock(threshold=LOW_STOCK_THRESHOLD, limit=REPORT_ROW_LIMIT)
    return [[p.sku, p.name, p.category, p.stock, f"{p.price:.2f}"] for p in products]


def _pending_orders(users: UserStore, commerce: CommerceStore, today: date) -> list[list]:
    orders, _ = commerce.list_orders(status="PENDING", sort_order="asc", limit=REPORT_ROW_LIMIT)
    return [
        [o.order_number, o.customer_name, o.customer_email, len(o.items), f"{o.total:.2f}", o.created_at]
        for o in orders
    ]


@dataclass(frozen=True)
class Report:
    slug: str
    title: str
    description: str
    headers: list[str]
    build: Callable[[UserStore, CommerceStore, date], list[list]]

    def render(self, users: UserStore, commerce: CommerceStore, today: date | None = None) -> str:
        return to_csv(self.headers, self.build(users, commerce, today or datetime.now(timezone.utc).date()))

    @property
    def filename(self) -> str:
        return f"{self.slug}.csv"


REPORTS: dict[str, Report] = {
    r.slug: r
    for r in (
        Report(
            "daily-sales",
            "Daily Sales Summary",
            f"Orders and revenue per day over the last {SALES_DAYS} days.",
            ["date", "orders", "revenue"],
            _daily_sales,
        ),
        Report(
            "customers",
            "Customer Registration",
            "Every USER account, newest first.",
            ["id", "email", "phone", "first_name", "last_name", "status", "created_at"],
            _customers,
        ),
        Report(
            "low-stock",
            "Low Stock Alert",
            f"Active products with fewer than {LOW_STOCK_THRESHOLD} units in stock.",
            ["sku", "name", "category", "stock", "price"],
            _low_stock,
        ),
        Report(
            "pending-orders",
            "Pending Orders",
            "Orders still waiting for confirmation, oldest first.",
            ["order_number", "customer_name", "customer_email", "items", "total", "created_at"],
            _pending_orders,
        ),
    )
}
