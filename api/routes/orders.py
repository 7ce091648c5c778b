"""
api/routes/orders.py -- Order management REST endpoints.

Routes:
  GET    /api/orders                -- search/filter/sort/paginate (orders:read)
  POST   /api/orders                -- place an order (orders:write)
  GET    /api/orders/{id}           -- one order (orders:read)
  PATCH  /api/orders/{id}           -- status / tracking number / notes (orders:write)
  DELETE /api/orders/{id}           -- delete (orders:delete)
  GET    /api/orders/{id}/history   -- audit trail of this order (orders:read)

Order lines must reference existing, active products. Each line is priced from
the catalogue; a client-sent price that no longer matches is refused (409).
The customer must be an existing user; their name and email are copied onto the order.
DELIVERED and CANCELLED are final: the status of such an order cannot change.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    OrderCreate,
    OrderOut,
    OrderPatch,
    OrderStatusEnum,
    PaginationMeta,
    SortOrderEnum,
    success_envelope,
)
from api.routes.audit_logs import entity_history
from audit.events import diff_changes, log_audit_event
from auth.dependencies import require_permission
from auth.models import User
from commerce.models import Address, Order, OrderItem
from commerce.store import CommerceStore

FINAL_STATUSES = frozenset({"DELIVERED", "CANCELLED"})

router = APIRouter()


def _fail(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _get_or_404(store: CommerceStore, order_id: int) -> Order:
    order = store.get_order(order_id)
    if order is None:
        raise _fail(404, "not_found", "Order not found.")
    return order


@router.get("/orders")
def list_orders(
    request: Request,
    search: str = Query(default="", max_length=100),
    status: Optional[OrderStatusEnum] = None,
    customer_id: Optional[int] = None,
    sort_by: str = Query(default="created_at", max_length=30),
    sort_order: SortOrderEnum = SortOrderEnum.desc,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(require_permission("orders", "read")),
) -> dict:
    store: CommerceStore = request.app.state.commerce
    try:
        orders, total = store.list_orders(
            search=search,
            status=status.value if status else "",
            customer_id=customer_id,
            sort_by=sort_by,
            sort_order=sort_order.value,
            page=page,
            limit=limit,
        )
    except ValueError as exc:
        raise _fail(400, "invalid_sort", str(exc)) from exc

    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "READ_ORDERS",
        "Orders",
        None,
        {"page": page, "limit": limit, "search": search, "status": status.value if status else None},
        request,
    )
    return success_envelope(
        [OrderOut.from_order(o) for o in orders],
        pagination=PaginationMeta.build(page, limit, total),
    )


@router.post("/orders", status_code=201)
def create_order(
    request: Request,
    body: OrderCreate,
    current_user: User = Depends(require_permission("orders", "write")),
) -> dict:
    """Place an order. Line prices are taken from the catalogue and the total is computed from them."""
    store: CommerceStore = request.app.state.commerce
    customer = request.app.state.user_store.get_by_id(body.customer_id)
    if customer is None:
        raise _fail(400, "customer_not_found", f"Customer {body.customer_id} does not exist.")

    products = store.get_products({item.product_id for item in body.items})
    missing = sorted({item.product_id for item in body.items} - set(products))
    if missing:
        raise _fail(400, "invalid_product", f"Unknown product id(s): {missing}.")
    inactive = sorted(pid for pid, p in products.items() if not p.is_active)
    if inactive:
        raise _fail(400, "product_inactive", f"Inactive product id(s): {inactive}.")
    stale = sorted(
        {
            item.product_id
            for item in body.items
            if item.price is not None and round(item.price, 2) != round(products[item.product_id].price, 2)
        }
    )
    if stale:
        raise _fail(409, "price_mismatch", f"Price changed for product id(s): {stale}. Reload and retry.")

    order = Order(
        customer_id=customer.id,
        customer_name=customer.display_name,
        customer_email=customer.email,
        items=[
            OrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                price=products[item.product_id].price,
                product_name=products[item.product_id].name,
            )
            for item in body.items
        ],
        shipping_address=Address(**body.shipping_address.model_dump()),
        billing_address=Address(**body.billing_address.model_dump()),
        payment_method=body.payment_method.value,
        notes=body.notes,
    )
    order_id = store.create_order(order)
    created = store.get_order(order_id)
    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "CREATE_ORDER",
        "Order",
        order_id,
        {"order_number": created.order_number, "customer_id": customer.id, "total": created.total},
        request,
    )
    return success_envelope(OrderOut.from_order(created), message="Order created successfully")


@router.get("/orders/{order_id}")
def get_order(
    request: Request,
    order_id: int,
    current_user: User = Depends(require_permission("orders", "read")),
) -> dict:
    order = _get_or_404(request.app.state.commerce, order_id)
    log_audit_event(request.app.state.audit_store, current_user.id, "READ_ORDER", "Order", order_id, None, request)
    return success_envelope(OrderOut.from_order(order))


@router.patch("/orders/{order_id}")
def update_order(
    request: Request,
    order_id: int,
    body: OrderPatch,
    current_user: User = Depends(require_permission("orders", "write")),
) -> dict:
    store: CommerceStore = request.app.state.commerce
    before = _get_or_404(store, order_id)
    updates = body.model_dump(exclude_unset=True)
    if "status" in updates:
        if updates["status"] is None:
            raise _fail(400, "invalid_value", "status cannot be null.")
        updates["status"] = updates["status"].value
        if before.status in FINAL_STATUSES and updates["status"] != before.status:
            raise _fail(400, "invalid_transition", f"Order is {before.status}; its status can no longer change.")
    if not updates:
        raise _fail(400, "no_changes", "No fields to update.")

    store.update_order(order_id, **updates)
    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "UPDATE_ORDER",
        "Order",
        order_id,
        {"changes": diff_changes(asdict(before), updates)},
        request,
    )
    return success_envelope(OrderOut.from_order(store.get_order(order_id)), message="Order updated successfully")


@router.delete("/orders/{order_id}")
def delete_order(
    request: Request,
    order_id: int,
    current_user: User = Depends(require_permission("orders", "delete")),
) -> dict:
    store: CommerceStore = request.app.state.commerce
    order = _get_or_404(store, order_id)
    store.delete_order(order_id)
    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "DELETE_ORDER",
        "Order",
        order_id,
        {"order_number": order.order_number, "total": order.total},
        request,
    )
    return success_envelope(None, message="Order deleted successfully")


@router.get("/orders/{order_id}/history")
def order_history(
    request: Request,
    order_id: int,
    current_user: User = Depends(require_permission("orders", "read")),
) -> dict:
    """Return the change history of an order, oldest first."""
    history = entity_history(request, "Order", order_id)
    if not history and request.app.state.commerce.get_order(order_id) is None:
        raise _fail(404, "not_found", "Order not found.")
    return success_envelope(history)
