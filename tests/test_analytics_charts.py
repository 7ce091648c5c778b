"""
tests/test_analytics_charts.py -- Dashboard figures and Chart.js configs.

Covers:
- month_window(): length, ordering, year wrap
- build_dashboard(): zero-filled months, stat cards
- web/charts.py: month labels, pie charts drop empty slices, chart set keys
"""

from datetime import date, datetime, timezone

from commerce.analytics import build_dashboard, month_window
from commerce.models import Address, Order, OrderItem, Product
from commerce.store import CommerceStore
from web.charts import bar_chart, dashboard_charts, month_label, pie_chart

_ADDRESS = Address(street="1 Main St", city="Springfield", state="IL", zip_code="62701", country="US")


class TestMonthWindow:
    def test_wraps_year(self) -> None:
        assert month_window(3, today=date(2026, 2, 14)) == ["2025-12", "2026-01", "2026-02"]

    def test_twelve_months_ends_with_current(self) -> None:
        window = month_window(12, today=date(2026, 10, 1))
        assert len(window) == 12
        assert window[0] == "2025-11"
        assert window[-1] == "2026-10"


class TestBuildDashboard:
    def test_zero_filled_series(self) -> None:
        store = CommerceStore("sqlite:///:memory:")
        store.create_product(Product(name="A", price=5.0, category="Home", sku="A"))
        store.create_order(
            Order(
                customer_id=1,
                items=[OrderItem(product_id=1, quantity=2, price=5.0, product_name="A")],
                shipping_address=_ADDRESS,
                billing_address=_ADDRESS,
                payment_method="PAYPAL",
            )
        )
        today = datetime.now(timezone.utc).date()
        data = build_dashboard(store, {"1999-01": 4}, total_users=4, months=6)
        assert len(data["months"]) == 6
        assert data["user_growth"] == [0] * 6
        assert data["months"][-1] == f"{today.year:04d}-{today.month:02d}"
        assert data["orders_per_month"][-1] == 1
        assert data["revenue_per_month"][-1] == 10.0
        assert sum(data["orders_per_month"]) == 1
        assert data["stats"] == {
            "total_users": 4,
            "total_products": 1,
            "active_products": 1,
            "total_orders": 1,
            "total_revenue": 10.0,
        }
        store.close()


class TestCharts:
    def test_month_label(self) -> None:
        assert month_label("2026-03") == "Mar 2026"
        assert month_label("garbage") == "garbage"

    def test_pie_drops_empty_slices(self) -> None:
        chart = pie_chart({"PENDING": 2, "SHIPPED": 0}, colors={"PENDING": "#ffc107"})
        assert chart["data"]["labels"] == ["PENDING"]
        assert chart["data"]["datasets"][0]["backgroundColor"] == ["#ffc107"]
        assert "scales" not in chart["options"]

    def test_horizontal_bar(self) -> None:
        chart = bar_chart(["A"], {"Revenue": [1.0]}, horizontal=True)
        assert chart["options"]["indexAxis"] == "y"

    def test_dashboard_chart_set(self) -> None:
        data = {
            "months": ["2026-01", "2026-02", "2026-03"],
            "user_growth": [1, 0, 2],
            "orders_per_month": [0, 0, 1],
            "revenue_per_month": [0.0, 0.0, 9.5],
            "order_status": {"PENDING": 1},
            "categories": {},
            "top_products": [{"product_id": 1, "name": "A", "quantity": 1, "revenue": 9.5}],
        }
        charts = dashboard_charts(data)
        assert set(charts) == {"user_growth", "orders", "revenue", "order_status", "categories", "top_products"}
        assert charts["orders"]["data"]["labels"] == ["Jan 2026", "Feb 2026", "Mar 2026"]
        assert charts["top_products"]["data"]["labels"] == ["A"]
        assert charts["categories"]["data"]["labels"] == []
