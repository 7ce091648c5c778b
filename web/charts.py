"""
web/charts.py -- Chart.js configuration builders for the dashboard page.

Each builder returns a plain dict that dashboard.html serializes with |tojson
and hands to `new Chart(canvas, config)`. Labels and colours are decided here
so the template stays free of presentation logic.

Layer rule: pure functions, no imports from api/ or other project packages.
"""

from __future__ import annotations

from datetime import date

PALETTE = [
    "#0d6efd",
    "#198754",
    "#ffc107",
    "#dc3545",
    "#6f42c1",
    "#20c997",
    "#fd7e14",
    "#6c757d",
]

# Fixed colours keep a status recognisable across page loads.
STATUS_COLORS = {
    "PENDING": "#ffc107",
    "CONFIRMED": "#0dcaf0",
    "PROCESSING": "#0d6efd",
    "SHIPPED": "#6f42c1",
    "DELIVERED": "#198754",
    "CANCELLED": "#dc3545",
}


def month_label(month: str) -> str:
    """"2026-03" -> "Mar 2026". Unparseable input is returned unchanged."""
    try:
        year, mon = (int(part) for part in month.split("-"))
        return date(year, mon, 1).strftime("%b %Y")
    except ValueError:
        return month


def _color(index: int) -> str:
    return PALETTE[index % len(PALETTE)]


def line_chart(labels: list[str], series: dict[str, list], title: str = "") -> dict:
    """One line per series entry. series maps dataset label -> values."""
    datasets = [
        {
            "label": name,
            "data": values,
            "borderColor": _color(i),
            "backgroundColor": _color(i) + "33",
            "fill": True,
            "tension": 0.3,
        }
        for i, (name, values) in enumerate(series.items())
    ]
    return {
        "type": "line",
        "data": {"labels": labels, "datasets": datasets},
        "options": _options(title, scales=True),
    }


def bar_chart(labels: list[str], series: dict[str, list], title: str = "", horizontal: bool = False) -> dict:
    datasets = [
        {"label": name, "data": values, "backgroundColor": _color(i)} for i, (name, values) in enumerate(series.items())
    ]
    options = _options(title, scales=True)
    if horizontal:
        options["indexAxis"] = "y"
    return {"type": "bar", "data": {"labels": labels, "datasets": datasets}, "options": options}


def pie_chart(distribution: dict[str, int], title: str = "", colors: dict[str, str] | None = None) -> dict:
    """Pie of label -> count. Zero slices are dropped; an empty pie has no labels."""
    items = [(label, count) for label, count in distribution.items() if count]
    labels = [label for label, _ in items]
    colors = colors or {}
    return {
        "type": "pie",
        "data": {
            "labels": labels,
            "datasets": [
                {
                    "data": [count for _, count in items],
                    "backgroundColor": [colors.get(label, _color(i)) for i, label in enumerate(labels)],
                }
            ],
        },
        "options": _options(title, scales=False),
    }


def _options(title: str, scales: bool) -> dict:
    options: dict = {
        "responsive": True,
        "maintainAspectRatio": False,
        "plugins": {
            "legend": {"position": "bottom"},
            "title": {"display": bool(title), "text": title},
        },
    }
    if scales:
        options["scales"] = {"y": {"beginAtZero": True}}
    return options


def dashboard_charts(data: dict) -> dict[str, dict]:
    """Build every dashboard chart from commerce.analytics.build_dashboard() output."""
    labels = [month_label(m) for m in data["months"]]
    top = data["top_products"]
    return {
        "user_growth": line_chart(labels, {"New users": data["user_growth"]}, "User growth"),
        "orders": bar_chart(labels, {"Orders": data["orders_per_month"]}, "Orders per month"),
        "revenue": line_chart(labels, {"Revenue": data["revenue_per_month"]}, "Revenue per month"),
        "order_status": pie_chart(data["order_status"], "Orders by status", STATUS_COLORS),
        "categories": pie_chart(data["categories"], "Products by category"),
        "top_products": bar_chart(
            [p["name"] for p in top],
            {"Revenue": [p["revenue"] for p in top]},
            "Top products",
            horizontal=True,
        ),
    }
