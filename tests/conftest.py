"""
tests/conftest.py -- Shared test fixtures for BackOffice integration tests.

This module provides:
  - _make_test_stores(): isolated in-memory DBs for users, audit and commerce
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - app_ctx: a running TestClient plus the stores and user/token helpers
  - web_ctx: same, with follow_redirects=False for web route tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. A uuid in
the name keeps every test on its own database.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates the signing keys in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from itertools import count
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from audit.store import AuditStore
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from commerce.models import Address, Order, OrderItem, Product
from commerce.store import CommerceStore

# Rate limits are exercised by slowapi itself; here they would only make
# test order matter.
limiter.enabled = False

DEFAULT_PASSWORD = "password123"

_seq = count(1)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _make_test_stores() -> tuple[UserStore, AuditStore, CommerceStore]:
    """Create isolated named shared-memory SQLite stores for one test."""
    return (
        UserStore(db_url=_memory_url("users")),
        AuditStore(db_url=_memory_url("audit")),
        CommerceStore(db_url=_memory_url("commerce")),
    )


def _patch_lifespan(user_store: UserStore, audit_store: AuditStore, commerce: CommerceStore, setup_required: bool):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.audit_store = audit_store
        app.state.commerce = commerce
        app.state.setup_required = setup_required
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Context object handed to tests
# ---------------------------------------------------------------------------


@dataclass
class AppContext:
    client: TestClient
    user_store: UserStore
    audit_store: AuditStore
    commerce: CommerceStore
    users: dict[str, User] = field(default_factory=dict)

    def make_user(
        self,
        role: str = "USER",
        email: str | None = None,
        phone: str | None = None,
        password: str = DEFAULT_PASSWORD,
        status: str = "ACTIVE",
        **extra,
    ) -> User:
        """Insert a user directly in the store and return it with its ID."""
        if email is None and phone is None:
            email = f"{role.lower()}{next(_seq)}@example.com"
        uid = self.user_store.create_user(
            User(
                email=email,
                phone=phone,
                hashed_password=hash_password(password) if password else None,
                first_name="Test",
                last_name=role.title(),
                role=role,
                status=status,
                **extra,
            )
        )
        return self.user_store.get_by_id(uid)

    def headers(self, user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user, expire_seconds=3600)}"}

    def as_role(self, role: str) -> dict[str, str]:
        """Bearer headers for a cached ACTIVE user of the given role."""
        if role not in self.users:
            self.users[role] = self.make_user(role)
        return self.headers(self.users[role])

    def login_cookies(self, user: User) -> None:
        """Put a valid access cookie in the client jar (web UI session)."""
        self.client.cookies.set("access_token", create_access_token(user, expire_seconds=3600))

    def make_product(self, **overrides) -> Product:
        n = next(_seq)
        fields = {
            "name": f"Widget {n}",
            "price": 10.0,
            "category": "Gadgets",
            "sku": f"SKU-{n:05d}",
            "stock": 25,
        }
        fields.update(overrides)
        return self.commerce.get_product(self.commerce.create_product(Product(**fields)))

    def make_order(self, customer: User, lines: list[tuple[Product, int]], status: str = "PENDING") -> Order:
        address = Address(street="1 Main St", city="Springfield", state="IL", zip_code="62701", country="US")
        order_id = self.commerce.create_order(
            Order(
                customer_id=customer.id,
                customer_name=customer.display_name,
                customer_email=customer.email,
                items=[
                    OrderItem(product_id=p.id, quantity=qty, price=p.price, product_name=p.name) for p, qty in lines
                ],
                shipping_address=address,
                billing_address=address,
                payment_method="CREDIT_CARD",
                status=status,
            )
        )
        return self.commerce.get_order(order_id)


def _context(follow_redirects: bool, setup_required: bool = False) -> Generator[AppContext, None, None]:
    user_store, audit_store, commerce = _make_test_stores()
    app.router.lifespan_context = _patch_lifespan(user_store, audit_store, commerce, setup_required)
    with TestClient(app, follow_redirects=follow_redirects, raise_server_exceptions=True) as client:
        yield AppContext(client=client, user_store=user_store, audit_store=audit_store, commerce=commerce)
    commerce.close()
    audit_store.close()
    user_store.close()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app_ctx() -> Generator[AppContext, None, None]:
    """TestClient against the real app with isolated stores, for API tests."""
    yield from _context(follow_redirects=True)


@pytest.fixture
def web_ctx() -> Generator[AppContext, None, None]:
    """TestClient with follow_redirects=False for web route tests.

    We assert on redirect *locations* (e.g. 302 to /login), which are
    invisible once the client follows the redirect.
    """
    yield from _context(follow_redirects=False)


@pytest.fixture
def fresh_ctx() -> Generator[AppContext, None, None]:
    """An app with no users yet: setup_required is True."""
    yield from _context(follow_redirects=False, setup_required=True)
