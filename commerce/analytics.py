"""
commerce/analytics.py -- Dashboard figures assembled from store aggregates.

Both GET /api/dashboard and the web dashboard render the same numbers, so the
assembly lives here rather than in either layer. User figures come in as plain
arguments because commerce/ does not import auth/.

All monthly series cover a fixed trailing window of calendar months ending with
the current month. Months without activity are zero, never missing.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from commerce.store import CommerceStore

PERIODS = (3, 6, 12)


def month_window(months: int, today: date | None = None) -> list[str]:
    """Return the last `months` calendar months as "YYYY-MM", oldest first."""
    today = today or datetime.now(timezone.utc).date()
    year, month = today.year, today.month
    labels = []
    for _ in range(months):
        labels.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return labels[::-1]


def build_dashboard(
    store: CommerceStore,
    signups_by_month: dict[str, int],
    total_users: int,
    months: int = 6,
    today: date | None = None,
) -> dict:
    """Collect stat cards and chart series for the dashboard.

    Returns a dict matching api.models.DashboardResponse.
    """
    labels = month_window(months, today)
    sales = store.monthly_sales()
    empty = {"orders": 0, "revenue": 0.0}
    return {
        "stats": {
            "total_users": total_users,
            "total_products": store.count_products(),
            "active_products": store.count_products(active_only=True),
            "total_orders": store.count_orders(),
            "total_revenue": store.total_revenue(),
        },
        "months": labels,
        "user_growth": [signups_by_month.get(m, 0) for m in labels],
        "orders_per_month": [sales.get(m, empty)["orders"] for m in labels],
        "revenue_per_month": [sales.get(m, empty)["revenue"] for m in labels],
        "order_status": store.order_status_distribution(),
        "categories": store.category_distribution(),
        "top_products": store.top_products(),
    }
