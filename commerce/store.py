"""
commerce/store.py -- SQLAlchemy-backed persistence for products and orders.

Uses SQLAlchemy Core (not ORM) so the dataclasses in commerce/models.py remain
the authoritative domain representation.

Pattern: Repository + Data Mapper. CommerceStore is the repository; the
_row_to_* functions are the mappers. Route handlers never touch SQL directly.

Order lines and addresses are stored as JSON text on the order row. Orders are
read and written whole, never queried by line, so a separate table buys
nothing. top_products() aggregates the lines in Python for the same reason.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = CommerceStore()
    pid = store.create_product(Product(name="Mouse", price=19.99, category="Electronics", sku="MS-1", stock=10))
    oid = store.create_order(order)        # fills order_number and total
    products, total = store.list_products(search="mouse", page=1, limit=20)
    store.close()
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import asdict
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from commerce.models import Address, Order, OrderItem, Product
from core.config import get_settings

PRODUCT_SORT_FIELDS = frozenset({"name", "price", "stock", "category", "sku", "created_at", "updated_at"})
ORDER_SORT_FIELDS = frozenset({"order_number", "total", "status", "created_at", "updated_at"})

# Fields update_order() accepts. Lines and the customer are fixed once placed.
_ORDER_MUTABLE = frozenset({"status", "tracking_number", "notes", "shipping_address", "billing_address"})

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("price", Numeric(12, 2, asdecimal=False), nullable=False),
    Column("category", String(100), nullable=False, index=True),
    Column("sku", String(100), nullable=False, unique=True),
    Column("stock", Integer, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_number", String(20), unique=True),
    Column("customer_id", Integer, nullable=False, index=True),
    Column("customer_name", String(255)),
    Column("customer_email", String(255)),
    Column("items", Text, nullable=False),  # JSON array of order lines
    Column("total", Numeric(12, 2, asdecimal=False), nullable=False),
    Column("shipping_address", Text, nullable=False),  # JSON object
    Column("billing_address", Text, nullable=False),  # JSON object
    Column("payment_method", String(20), nullable=False),
    Column("status", String(20), nullable=False, server_default="PENDING"),
    Column("tracking_number", String(100)),
    Column("notes", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def compute_total(items: list[OrderItem]) -> float:
    """Sum of quantity * unit price, rounded to cents."""
    return round(sum(item.quantity * item.price for item in items), 2)


def format_order_number(order_id: int) -> str:
    return f"ORD-{order_id:06d}"


def _items_json(items: list[OrderItem]) -> str:
    return json.dumps([asdict(item) for item in items])


def _address_json(address: Address | dict) -> str:
    return json.dumps(asdict(address) if isinstance(address, Address) else address)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CommerceStore:
    def __init__(self, db_url: str | None = None) -> None:
        url = db_url or get_settings().database_url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine: Engine = create_engine(url, connect_args=connect_args)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def create_product(self, product: Product) -> int:
        """Insert a product and return its ID.

        Raises sqlalchemy.exc.IntegrityError when the SKU is already taken.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _products.insert().values(
                    name=product.name,
                    description=product.description,
                    price=product.price,
                    category=product.category,
                    sku=product.sku,
                    stock=product.stock,
                    is_active=product.is_active,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_product(self, product_id: int) -> Product | None:
        with self.engine.connect() as conn:
            row = conn.execute(_products.select().where(_products.c.id == product_id)).fetchone()
        return _row_to_product(row) if row is not None else None

    def get_products(self, product_ids: set[int]) -> dict[int, Product]:
        if not product_ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(_products.select().where(_products.c.id.in_(product_ids))).fetchall()
        return {row.id: _row_to_product(row) for row in rows}

    def list_products(
        self,
        search: str = "",
        category: str = "",
        is_active: bool | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Product], int]:
        """Return one page of products plus the total match count.

        search: case-insensitive substring of name, SKU or description.
        Raises ValueError for a sort_by outside PRODUCT_SORT_FIELDS.
        """
        if sort_by not in PRODUCT_SORT_FIELDS:
            raise ValueError(f"Cannot sort products by {sort_by!r}")
        conditions = []
        if search:
            term = search.lower()
            conditions.append(
                or_(
                    func.lower(_products.c.name).contains(term, autoescape=True),
                    func.lower(_products.c.sku).contains(term, autoescape=True),
                    func.lower(_products.c.description).contains(term, autoescape=True),
                )
            )
        if category:
            conditions.append(_products.c.category == category)
        if is_active is not None:
            conditions.append(_products.c.is_active == is_active)

        column = _products.c[sort_by]
        order = column.asc() if sort_order == "asc" else column.desc()
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_products).where(*conditions)).scalar() or 0
            rows = conn.execute(
                _products.select()
                .where(*conditions)
                .order_by(order, _products.c.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
        return [_row_to_product(r) for r in rows], total

    def update_product(self, product_id: int, **fields) -> bool:
        """Update mutable product fields and stamp updated_at.

        Returns True if a row was updated, False if product_id was not found.
        Raises IntegrityError when changing sku to one already in use.
        """
        fields.pop("id", None)
        fields.pop("created_at", None)
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_products.update().where(_products.c.id == product_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_product(self, product_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_products.delete().where(_products.c.id == product_id))
            conn.commit()
        return result.rowcount > 0

    def list_categories(self) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_products.c.category).distinct().order_by(_products.c.category)).fetchall()
        return [r[0] for r in rows]

    def count_products(self, active_only: bool = False) -> int:
        query = select(func.count()).select_from(_products)
        if active_only:
            query = query.where(_products.c.is_active.is_(True))
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def low_stock(self, threshold: int = 10, limit: int = 5) -> list[Product]:
        """Active products with stock below threshold, scarcest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _products.select()
                .where((_products.c.stock < threshold) & _products.c.is_active.is_(True))
                .order_by(_products.c.stock.asc(), _products.c.id)
                .limit(limit)
            ).fetchall()
        return [_row_to_product(r) for r in rows]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(self, order: Order) -> int:
        """Insert an order, assign its order_number and total, and return its ID.

        The number is derived from the autoincrement ID inside the same
        transaction, so it is unique without a separate sequence table.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _orders.insert().values(
                    customer_id=order.customer_id,
                    customer_name=order.customer_name,
                    customer_email=order.customer_email,
                    items=_items_json(order.items),
                    total=compute_total(order.items),
                    shipping_address=_address_json(order.shipping_address),
                    billing_address=_address_json(order.billing_address),
                    payment_method=order.payment_method,
                    status=order.status,
                    tracking_number=order.tracking_number,
                    notes=order.notes,
                    created_at=now,
                    updated_at=now,
                )
            )
            order_id = result.inserted_primary_key[0]
            conn.execute(
                _orders.update().where(_orders.c.id == order_id).values(order_number=format_order_number(order_id))
            )
            conn.commit()
        return order_id

    def get_order(self, order_id: int) -> Order | None:
        with self.engine.connect() as conn:
            row = conn.execute(_orders.select().where(_orders.c.id == order_id)).fetchone()
        return _row_to_order(row) if row is not None else None

    def list_orders(
        self,
        search: str = "",
        status: str = "",
        customer_id: int | None = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Order], int]:
        """Return one page of orders plus the total match count.

        search: case-insensitive substring of order number, customer name or
        customer email. Raises ValueError for a sort_by outside ORDER_SORT_FIELDS.
        """
        if sort_by not in ORDER_SORT_FIELDS:
            raise ValueError(f"Cannot sort orders by {sort_by!r}")
        conditions = []
        if search:
            term = search.lower()
            conditions.append(
                or_(
                    func.lower(_orders.c.order_number).contains(term, autoescape=True),
                    func.lower(_orders.c.customer_name).contains(term, autoescape=True),
                    func.lower(_orders.c.customer_email).contains(term, autoescape=True),
                )
            )
        if status:
            conditions.append(_orders.c.status == status)
        if customer_id is not None:
            conditions.append(_orders.c.customer_id == customer_id)

        column = _orders.c[sort_by]
        order = column.asc() if sort_order == "asc" else column.desc()
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_orders).where(*conditions)).scalar() or 0
            rows = conn.execute(
                _orders.select()
                .where(*conditions)
                .order_by(order, _orders.c.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).fetchall()
        return [_row_to_order(r) for r in rows], total

    def update_order(self, order_id: int, **fields) -> bool:
        """Update status, tracking number, notes or addresses of an order.

        Unknown keys raise ValueError rather than being silently ignored.
        Returns True if a row was updated, False if order_id was not found.
        """
        unknown = set(fields) - _ORDER_MUTABLE
        if unknown:
            raise ValueError(f"Order fields not updatable: {sorted(unknown)!r}")
        for key in ("shipping_address", "billing_address"):
            if key in fields:
                fields[key] = _address_json(fields[key])
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_orders.update().where(_orders.c.id == order_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_order(self, order_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_orders.delete().where(_orders.c.id == order_id))
            conn.commit()
        return result.rowcount > 0

    def count_orders(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_orders)).scalar() or 0

    # ------------------------------------------------------------------
    # Dashboard aggregates
    # ------------------------------------------------------------------

    def total_revenue(self) -> float:
        """Sum of order totals, cancelled orders excluded."""
        with self.engine.connect() as conn:
            value = conn.execute(select(func.sum(_orders.c.total)).where(_orders.c.status != "CANCELLED")).scalar()
        return round(float(value or 0), 2)

    def monthly_sales(self) -> dict[str, dict]:
        """Return {"YYYY-MM": {"orders": n, "revenue": x}}, oldest month first.

        Cancelled orders count as orders but contribute no revenue.
        """
        month = func.substr(_orders.c.created_at, 1, 7)
        revenue = func.sum(case((_orders.c.status != "CANCELLED", _orders.c.total), else_=0))
        with self.engine.connect() as conn:
            rows = conn.execute(select(month, func.count(), revenue).group_by(month).order_by(month)).fetchall()
        return {r[0]: {"orders": r[1], "revenue": round(float(r[2] or 0), 2)} for r in rows}

    def daily_sales(self, since: str) -> dict[str, dict]:
        """Return {"YYYY-MM-DD": {"orders": n, "revenue": x}} for orders created on or after since.

        Same counting rule as monthly_sales.
        """
        day = func.substr(_orders.c.created_at, 1, 10)
        revenue = func.sum(case((_orders.c.status != "CANCELLED", _orders.c.total), else_=0))
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(day, func.count(), revenue).where(_orders.c.created_at >= since).group_by(day).order_by(day)
            ).fetchall()
        return {r[0]: {"orders": r[1], "revenue": round(float(r[2] or 0), 2)} for r in rows}

    def order_status_distribution(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_orders.c.status, func.count()).group_by(_orders.c.status)).fetchall()
        return {r[0]: r[1] for r in rows}

    def category_distribution(self) -> dict[str, int]:
        """Return {category: product count}."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_products.c.category, func.count()).group_by(_products.c.category).order_by(_products.c.category)
            ).fetchall()
        return {r[0]: r[1] for r in rows}

    def top_products(self, limit: int = 5) -> list[dict]:
        """Best sellers by revenue across non-cancelled orders.

        Returns [{"product_id", "name", "quantity", "revenue"}], highest revenue first.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(select(_orders.c["items"]).where(_orders.c.status != "CANCELLED")).fetchall()

        quantity: dict[int, int] = defaultdict(int)
        revenue: dict[int, float] = defaultdict(float)
        names: dict[int, str] = {}
        for row in rows:
            for line in json.loads(row[0]):
                pid = line["product_id"]
                quantity[pid] += line["quantity"]
                revenue[pid] += line["quantity"] * line["price"]
                if line.get("product_name"):
                    names[pid] = line["product_name"]

        ranked = sorted(revenue, key=lambda pid: (-revenue[pid], pid))[:limit]
        return [
            {
                "product_id": pid,
                "name": names.get(pid, f"Product #{pid}"),
                "quantity": quantity[pid],
                "revenue": round(revenue[pid], 2),
            }
            for pid in ranked
        ]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        description=row.description,
        price=float(row.price),
        category=row.category,
        sku=row.sku,
        stock=row.stock,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_order(row) -> Order:
    return Order(
        id=row.id,
        order_number=row.order_number,
        customer_id=row.customer_id,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        items=[OrderItem(**line) for line in json.loads(row._mapping["items"])],
        total=float(row.total),
        shipping_address=Address(**json.loads(row.shipping_address)),
        billing_address=Address(**json.loads(row.billing_address)),
        payment_method=row.payment_method,
        status=row.status,
        tracking_number=row.tracking_number,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
