#!/usr/bin/env python3
"""
BackOffice -- command-line administration.

Usage:
  python main.py seed
  python main.py create-user --email ops@example.com --password s3cretpass --role ADMIN
  python main.py create-user --phone "+1 555 0100" --password s3cretpass

Both commands write to DATABASE_URL (default: backoffice.db next to the code).
The web server does not need to be running.
"""

import argparse
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.models import AuditLog
from audit.store import AuditStore
from auth.models import User
from auth.permissions import ROLES
from auth.store import UserStore, now_iso
from auth.tokens import hash_password
from commerce.models import Address, Order, OrderItem, Product
from commerce.store import CommerceStore

# email, password, first name, last name, role
_DEFAULT_USERS = [
    ("admin@example.com", "admin123", "Super", "Admin", "SUPER_ADMIN"),
    ("manager@example.com", "manager123", "John", "Manager", "MANAGER"),
    ("user@example.com", "user123", "Jane", "User", "USER"),
    ("guest@example.com", "guest123", "Guest", "User", "GUEST"),
]

# name, price, category, sku, stock
_DEMO_PRODUCTS = [
    ("Wireless Mouse", 24.99, "Electronics", "ELEC-001", 150),
    ("Mechanical Keyboard", 89.00, "Electronics", "ELEC-002", 42),
    ("USB-C Hub", 39.50, "Electronics", "ELEC-003", 7),
    ("Standing Desk", 349.00, "Furniture", "FURN-001", 12),
    ("Ergonomic Chair", 229.00, "Furniture", "FURN-002", 3),
    ("Notebook (A5)", 4.25, "Stationery", "STAT-001", 500),
    ("Gel Pens (10 pack)", 8.99, "Stationery", "STAT-002", 0),
    ("Coffee Beans 1kg", 18.75, "Groceries", "GROC-001", 60),
]

_DEMO_ADDRESS = Address(street="1 Market Street", city="Springfield", state="IL", zip_code="62701", country="US")


def _create_user(
    store: UserStore,
    email: Optional[str],
    phone: Optional[str],
    password: str,
    first_name: Optional[str],
    last_name: Optional[str],
    role: str,
) -> Optional[int]:
    """Insert one ACTIVE, already-verified user. Returns None if the email or phone is taken."""
    if store.find_by_email_or_phone(email, phone) is not None:
        return None
    now = now_iso()
    user = User(
        email=email,
        phone=phone,
        hashed_password=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=role,
        status="ACTIVE",
        email_verified_at=now if email else None,
        phone_verified_at=now if phone else None,
    )
    try:
        return store.create_user(user)
    except IntegrityError:
        return None


def seed(user_store: UserStore, commerce: CommerceStore, audit_store: AuditStore) -> None:
    """Create the default accounts and a small demo catalogue. Safe to re-run."""
    print("Creating users...")
    for email, password, first, last, role in _DEFAULT_USERS:
        if _create_user(user_store, email, None, password, first, last, role) is None:
            print(f"  exists   {email}")
        else:
            print(f"  created  {email} ({role})")

    print("Creating products...")
    product_ids: list[int] = []
    for name, price, category, sku, stock in _DEMO_PRODUCTS:
        try:
            product_ids.append(
                commerce.create_product(Product(name=name, price=price, category=category, sku=sku, stock=stock))
            )
            print(f"  created  {sku} {name}")
        except IntegrityError:
            print(f"  exists   {sku}")

    customer = user_store.get_by_email("user@example.com")
    if product_ids and customer is not None:
        print("Creating orders...")
        products = commerce.get_products(set(product_ids))
        plan = [
            ("DELIVERED", [(product_ids[0], 2), (product_ids[5], 10)]),
            ("SHIPPED", [(product_ids[1], 1)]),
            ("PROCESSING", [(product_ids[3], 1), (product_ids[4], 1)]),
            ("PENDING", [(product_ids[7], 3)]),
            ("CANCELLED", [(product_ids[2], 1)]),
        ]
        for status, lines in plan:
            items = [
                OrderItem(product_id=pid, quantity=qty, price=products[pid].price, product_name=products[pid].name)
                for pid, qty in lines
                if pid in products
            ]
            order_id = commerce.create_order(
                Order(
                    customer_id=customer.id,
                    customer_name=customer.display_name,
                    customer_email=customer.email,
                    items=items,
                    shipping_address=_DEMO_ADDRESS,
                    billing_address=_DEMO_ADDRESS,
                    payment_method="CREDIT_CARD",
                    status=status,
                )
            )
            print(f"  created  order #{order_id} ({status})")

    admin = user_store.get_by_email("admin@example.com")
    audit_store.record(
        AuditLog(
            action="SYSTEM_INITIALIZED",
            resource="System",
            user_id=admin.id if admin else None,
            details={"message": "Database seeded"},
            ip_address="127.0.0.1",
            user_agent="main.py seed",
        )
    )

    print("\nDefault login credentials:")
    for email, password, _, _, role in _DEFAULT_USERS:
        print(f"  {role:<12} {email} / {password}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="backoffice",
        description="BackOffice administration commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("seed", help="Create the default users and demo products/orders")

    create = sub.add_parser("create-user", help="Create one active user")
    create.add_argument("--email", help="Email address (email or phone is required)")
    create.add_argument("--phone", help="Phone number")
    create.add_argument("--password", required=True, help="Password, at least 8 characters")
    create.add_argument("--first-name")
    create.add_argument("--last-name")
    create.add_argument("--role", choices=ROLES, default="USER")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        return

    user_store = UserStore()
    try:
        if args.command == "seed":
            commerce = CommerceStore()
            audit_store = AuditStore()
            try:
                seed(user_store, commerce, audit_store)
            finally:
                commerce.close()
                audit_store.close()
            return

        email = args.email.strip().lower() if args.email else None
        phone = args.phone.strip() if args.phone else None
        if not (email or phone):
            parser.error("create-user needs --email or --phone")
        if len(args.password) < 8:
            parser.error("--password must be at least 8 characters")
        user_id = _create_user(user_store, email, phone, args.password, args.first_name, args.last_name, args.role)
        if user_id is None:
            print(f"  [!] A user with {email or phone} already exists.")
            sys.exit(1)
        print(f"Created user #{user_id} {email or phone} ({args.role}).")
    finally:
        user_store.close()


if __name__ == "__main__":
    main()
