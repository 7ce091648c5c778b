"""
api/routes/products.py -- Product catalogue REST endpoints.

Routes:
  GET    /api/products                -- search/filter/sort/paginate (products:read)
  POST   /api/products                -- create (products:write)
  GET    /api/products/{id}           -- one product (products:read)
  PATCH  /api/products/{id}           -- partial update (products:write)
  DELETE /api/products/{id}           -- delete (products:delete)
  GET    /api/products/{id}/history   -- audit trail of this product (products:read)

UPDATE_PRODUCT entries store {field: {"from", "to"}} so the history view can
show exactly what changed.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import IntegrityError

from api.models import PaginationMeta, ProductCreate, ProductOut, ProductPatch, SortOrderEnum, success_envelope
from api.routes.audit_logs import entity_history
from audit.events import diff_changes, log_audit_event
from auth.dependencies import require_permission
from auth.models import User
from commerce.models import Product
from commerce.store import CommerceStore

router = APIRouter()


def _fail(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _get_or_404(store: CommerceStore, product_id: int) -> Product:
    product = store.get_product(product_id)
    if product is None:
        raise _fail(404, "not_found", "Product not found.")
    return product


@router.get("/products")
def list_products(
    request: Request,
    search: str = Query(default="", max_length=100),
    category: str = Query(default="", max_length=100),
    is_active: Optional[bool] = None,
    sort_by: str = Query(default="created_at", max_length=30),
    sort_order: SortOrderEnum = SortOrderEnum.desc,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(require_permission("products", "read")),
) -> dict:
    store: CommerceStore = request.app.state.commerce
    try:
        products, total = store.list_products(
            search=search,
            category=category,
            is_active=is_active,
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
        "READ_PRODUCTS",
        "Products",
        None,
        {"page": page, "limit": limit, "search": search, "category": category},
        request,
    )
    return success_envelope(
        [ProductOut.from_product(p) for p in products],
        pagination=PaginationMeta.build(page, limit, total),
    )


@router.post("/products", status_code=201)
def create_product(
    request: Request,
    body: ProductCreate,
    current_user: User = Depends(require_permission("products", "write")),
) -> dict:
    """Create a product. A duplicate SKU -> 409."""
    store: CommerceStore = request.app.state.commerce
    product = Product(**body.model_dump())
    try:
        product_id = store.create_product(product)
    except IntegrityError as exc:
        raise _fail(409, "duplicate_sku", f"A product with SKU {body.sku!r} already exists.") from exc

    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "CREATE_PRODUCT",
        "Product",
        product_id,
        body.model_dump(),
        request,
    )
    return success_envelope(
        ProductOut.from_product(store.get_product(product_id)), message="Product created successfully"
    )


@router.get("/products/{product_id}")
def get_product(
    request: Request,
    product_id: int,
    current_user: User = Depends(require_permission("products", "read")),
) -> dict:
    product = _get_or_404(request.app.state.commerce, product_id)
    log_audit_event(
        request.app.state.audit_store, current_user.id, "READ_PRODUCT", "Product", product_id, None, request
    )
    return success_envelope(ProductOut.from_product(product))


@router.patch("/products/{product_id}")
def update_product(
    request: Request,
    product_id: int,
    body: ProductPatch,
    current_user: User = Depends(require_permission("products", "write")),
) -> dict:
    store: CommerceStore = request.app.state.commerce
    before = _get_or_404(store, product_id)
    updates = body.model_dump(exclude_unset=True)
    for key in ("name", "price", "category", "sku", "stock", "is_active"):
        if key in updates and updates[key] is None:
            raise _fail(400, "invalid_value", f"{key} cannot be null.")
    if not updates:
        raise _fail(400, "no_changes", "No fields to update.")

    try:
        store.update_product(product_id, **updates)
    except IntegrityError as exc:
        raise _fail(409, "duplicate_sku", f"A product with SKU {updates.get('sku')!r} already exists.") from exc

    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "UPDATE_PRODUCT",
        "Product",
        product_id,
        {"changes": diff_changes(asdict(before), updates)},
        request,
    )
    return success_envelope(
        ProductOut.from_product(store.get_product(product_id)), message="Product updated successfully"
    )


@router.delete("/products/{product_id}")
def delete_product(
    request: Request,
    product_id: int,
    current_user: User = Depends(require_permission("products", "delete")),
) -> dict:
    store: CommerceStore = request.app.state.commerce
    product = _get_or_404(store, product_id)
    store.delete_product(product_id)
    log_audit_event(
        request.app.state.audit_store,
        current_user.id,
        "DELETE_PRODUCT",
        "Product",
        product_id,
        {"name": product.name, "sku": product.sku},
        request,
    )
    return success_envelope(None, message="Product deleted successfully")


@router.get("/products/{product_id}/history")
def product_history(
    request: Request,
    product_id: int,
    current_user: User = Depends(require_permission("products", "read")),
) -> dict:
    """Return the change history of a product, oldest first.

    Still available after the product is deleted; 404 only when nothing was
    ever recorded for this ID.
    """
    history = entity_history(request, "Product", product_id)
    if not history and request.app.state.commerce.get_product(product_id) is None:
        raise _fail(404, "not_found", "Product not found.")
    return success_envelope(history)
