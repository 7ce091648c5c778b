"""
api/routes/dashboard.py -- Aggregated metrics endpoint for the back office.

Returns a single payload suitable for driving dashboard widgets:
  - Stat cards: users, products, orders, revenue
  - Monthly series (user sign-ups, orders, revenue) over a 3/6/12 month window
  - Order status and product category distributions
  - Top products by revenue

This is a read-only aggregate route -- no mutations here.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import DashboardResponse, success_envelope
from audit.events import log_audit_event
from auth.dependencies import require_permission
from auth.models import User
from auth.store import UserStore
from commerce.analytics import PERIODS, build_dashboard

# Auth policy:
# - GET /api/dashboard: analytics permission (SUPER_ADMIN, ADMIN, MANAGER)
router = APIRouter()


@router.get("/dashboard")
def get_dashboard(
    request: Request,
    months: int = 6,
    current_user: User = Depends(require_permission("analytics", "read")),
) -> dict:
    """Return dashboard metrics. months must be one of 3, 6 or 12."""
    if months not in PERIODS:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_period", "message": "months must be 3, 6 or 12."},
        )
    user_store: UserStore = request.app.state.user_store
    data = build_dashboard(
        request.app.state.commerce,
        user_store.signups_by_month(),
        user_store.count_users(),
        months=months,
    )
    log_audit_event(
        request.app.state.audit_store, current_user.id, "READ_DASHBOARD", "Dashboard", None, {"months": months}, request
    )
    return success_envelope(DashboardResponse(**data))
