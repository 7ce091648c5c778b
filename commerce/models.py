"""
commerce/models.py -- Domain dataclasses for the catalogue and orders.

Pattern: Data class (pure data container, zero logic).

Layer rule: no imports from api/, web/, auth/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass

ORDER_STATUSES = ("PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED")
PAYMENT_METHODS = ("CREDIT_CARD", "DEBIT_CARD", "PAYPAL", "BANK_TRANSFER")


@dataclass
class Product:
    name: str
    price: float
    category: str
    sku: str
    stock: int = 0
    description: str | None = None
    is_active: bool = True
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class OrderItem:
    """One order line. price is the unit price at the time of ordering."""

    product_id: int
    quantity: int
    price: float
    product_name: str | None = None  # snapshot, survives product renames/deletes


@dataclass
class Address:
    street: str
    city: str
    state: str
    zip_code: str
    country: str


@dataclass
class Order:
    """A customer order.

    order_number ("ORD-000042") is derived from the row ID on insert.
    customer_name / customer_email are snapshots of the customer at order time.
    total is always sum(quantity * price) over items, computed by the store.
    """

    customer_id: int
    items: list[OrderItem]
    shipping_address: Address
    billing_address: Address
    payment_method: str  # CREDIT_CARD, DEBIT_CARD, PAYPAL, BANK_TRANSFER
    status: str = "PENDING"  # see ORDER_STATUSES
    customer_name: str | None = None
    customer_email: str | None = None
    tracking_number: str | None = None
    notes: str | None = None
    total: float = 0.0
    order_number: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
