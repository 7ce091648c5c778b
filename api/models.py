"""
API request and response models for the back-office REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/, audit/ and
commerce/, which own the internal domain representation. Route handlers map
between the two via the from_* factory classmethods below.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.

Every successful JSON response uses the same envelope:
    {"success": true, "data": ..., "message": "...", "pagination": {...}}
message and pagination are present only when relevant (see success_envelope()).
Errors use ErrorResponse: {"error": {"code", "message", "detail"}}.
"""

from enum import Enum
from math import ceil
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from audit.models import AuditLog
from auth.models import User
from commerce.models import Order, Product

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PHONE_PATTERN = r"^\+?[0-9 ()\-]{6,20}$"
OTP_PATTERN = r"^\d{6}$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    USER = "USER"
    GUEST = "GUEST"


class UserStatusEnum(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"


class OrderStatusEnum(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentMethodEnum(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    BANK_TRANSFER = "BANK_TRANSFER"


class SortOrderEnum(str, Enum):
    asc = "asc"
    desc = "desc"


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"


class PaginationMeta(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "PaginationMeta":
        total_pages = ceil(total / limit) if limit else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


def success_envelope(
    data: Any = None,
    message: Optional[str] = None,
    pagination: Optional[PaginationMeta] = None,
) -> dict:
    """Build the success envelope, omitting message/pagination when not given.

    data may be a pydantic model, a list of models, or plain JSON values.
    """
    body: dict[str, Any] = {"success": True, "data": jsonable_encoder(data)}
    if message is not None:
        body["message"] = message
    if pagination is not None:
        body["pagination"] = pagination.model_dump()
    return body


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login.

    Exactly one identifier (email or phone) and one credential (password or
    otp) are expected. Those combinations are checked in the handler so they
    can return 400 rather than a schema error.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    password: Optional[str] = Field(default=None, min_length=1, max_length=128)
    otp: Optional[str] = Field(default=None, pattern=OTP_PATTERN)
    provider: Optional[str] = Field(default=None, max_length=30)
    two_factor_token: Optional[str] = Field(default=None, pattern=OTP_PATTERN)


class SignupRequest(BaseModel):
    """Request body for POST /api/auth/signup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=100)


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class SendOtpRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class VerifyEmailRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)


class VerifyPhoneRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(pattern=OTP_PATTERN)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class TwoFactorRequest(BaseModel):
    enabled: bool


class OAuthProviderInfo(BaseModel):
    """Metadata for one configured OAuth provider."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserOut(BaseModel):
    """Public view of a user. Never carries the password hash or OAuth subject."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str]
    phone: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    avatar: Optional[str]
    role: str
    status: str
    email_verified_at: Optional[str]
    phone_verified_at: Optional[str]
    two_factor_enabled: bool
    oauth_provider: Optional[str]
    last_login: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            email=user.email,
            phone=user.phone,
            first_name=user.first_name,
            last_name=user.last_name,
            avatar=user.avatar,
            role=user.role,
            status=user.status,
            email_verified_at=user.email_verified_at,
            phone_verified_at=user.phone_verified_at,
            two_factor_enabled=user.two_factor_enabled,
            oauth_provider=user.oauth_provider,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserSummary(BaseModel):
    """Compact user reference embedded in audit log rows."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    role: str

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
        )


class UserCreate(BaseModel):
    """Request body for POST /api/users (admin-created accounts)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: RoleEnum = RoleEnum.USER
    status: UserStatusEnum = UserStatusEnum.ACTIVE


class UserPatch(BaseModel):
    """Request body for PATCH /api/users/{id}. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    role: Optional[RoleEnum] = None
    status: Optional[UserStatusEnum] = None


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


class ProductCreate(BaseModel):
    """Request body for POST /api/products."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    price: float = Field(gt=0)
    category: str = Field(min_length=1, max_length=100)
    sku: str = Field(min_length=1, max_length=100)
    stock: int = Field(ge=0)
    is_active: bool = True


class ProductPatch(BaseModel):
    """Request body for PATCH /api/products/{id}. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    price: Optional[float] = Field(default=None, gt=0)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    sku: Optional[str] = Field(default=None, min_length=1, max_length=100)
    stock: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class ProductOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str]
    price: float
    category: str
    sku: str
    stock: int
    is_active: bool
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_product(cls, product: Product) -> "ProductOut":
        return cls(
            id=product.id,
            name=product.name,
            description=product.description,
            price=product.price,
            category=product.category,
            sku=product.sku,
            stock=product.stock,
            is_active=product.is_active,
            created_at=product.created_at,
            updated_at=product.updated_at,
        )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class AddressModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    zip_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=1, max_length=100)


class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    # Optional echo of the catalogue price; the stored line price always comes from the product.
    price: Optional[float] = Field(default=None, gt=0)


class OrderCreate(BaseModel):
    """Request body for POST /api/orders."""

    model_config = ConfigDict(str_strip_whitespace=True)

    customer_id: int
    items: list[OrderItemIn] = Field(min_length=1, max_length=100)
    shipping_address: AddressModel
    billing_address: AddressModel
    payment_method: PaymentMethodEnum
    notes: Optional[str] = Field(default=None, max_length=2000)


class OrderPatch(BaseModel):
    """Request body for PATCH /api/orders/{id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: Optional[OrderStatusEnum] = None
    tracking_number: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=2000)


class OrderItemOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: int
    product_name: Optional[str]
    quantity: int
    price: float
    subtotal: float


class OrderOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    order_number: Optional[str]
    customer_id: int
    customer_name: Optional[str]
    customer_email: Optional[str]
    items: list[OrderItemOut]
    total: float
    shipping_address: AddressModel
    billing_address: AddressModel
    payment_method: str
    status: str
    tracking_number: Optional[str]
    notes: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_order(cls, order: Order) -> "OrderOut":
        return cls(
            id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            items=[
                OrderItemOut(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    price=item.price,
                    subtotal=round(item.quantity * item.price, 2),
                )
                for item in order.items
            ],
            total=order.total,
            shipping_address=AddressModel(**vars(order.shipping_address)),
            billing_address=AddressModel(**vars(order.billing_address)),
            payment_method=order.payment_method,
            status=order.status,
            tracking_number=order.tracking_number,
            notes=order.notes,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


# ---------------------------------------------------------------------------
# Audit logs
# ---------------------------------------------------------------------------


class AuditLogCreate(BaseModel):
    """Request body for POST /api/audit-logs.

    action and resource are checked in the handler (400, not 422) so a
    missing field reads as a business error.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    action: Optional[str] = Field(default=None, max_length=100)
    resource: Optional[str] = Field(default=None, max_length=100)
    resource_id: Optional[str] = Field(default=None, max_length=100)
    details: Optional[dict] = None
    target_user_id: Optional[int] = None


class AuditLogOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[int]
    action: str
    resource: str
    resource_id: Optional[str]
    details: dict
    ip_address: Optional[str]
    user_agent: Optional[str]
    timestamp: str
    user: Optional[UserSummary] = None

    @classmethod
    def from_log(cls, log: AuditLog, user: Optional[User] = None) -> "AuditLogOut":
        return cls(
            id=log.id,
            user_id=log.user_id,
            action=log.action,
            resource=log.resource,
            resource_id=log.resource_id,
            details=log.details,
            ip_address=log.ip_address,
            user_agent=log.user_agent,
            timestamp=log.timestamp or "",
            user=UserSummary.from_user(user) if user is not None else None,
        )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class AppSettingsModel(BaseModel):
    """Full settings document: response of GET and body of PUT /api/settings."""

    model_config = ConfigDict(str_strip_whitespace=True)

    site_name: str = Field(min_length=1, max_length=255)
    site_description: Optional[str] = Field(default=None, max_length=1000)
    contact_email: EmailStr
    contact_phone: Optional[str] = Field(default=None, max_length=32)
    maintenance_mode: bool = False
    allow_registration: bool = True
    require_email_verification: bool = True
    require_phone_verification: bool = False
    max_login_attempts: int = Field(default=5, ge=1, le=10)
    session_timeout: int = Field(default=60, ge=15, le=1440)  # minutes


class AppSettingsPatch(BaseModel):
    """Body of PATCH /api/settings. Only the supplied fields change."""

    model_config = ConfigDict(str_strip_whitespace=True)

    site_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    site_description: Optional[str] = Field(default=None, max_length=1000)
    contact_email: Optional[EmailStr] = None
    contact_phone: Optional[str] = Field(default=None, max_length=32)
    maintenance_mode: Optional[bool] = None
    allow_registration: Optional[bool] = None
    require_email_verification: Optional[bool] = None
    require_phone_verification: Optional[bool] = None
    max_login_attempts: Optional[int] = Field(default=None, ge=1, le=10)
    session_timeout: Optional[int] = Field(default=None, ge=15, le=1440)

    @field_validator(
        "site_name",
        "contact_email",
        "maintenance_mode",
        "allow_registration",
        "require_email_verification",
        "require_phone_verification",
        "max_login_attempts",
        "session_timeout",
        mode="before",
    )
    @classmethod
    def reject_explicit_null(cls, value):
        """Required settings may be omitted but never cleared."""
        if value is None:
            raise ValueError("may not be null")
        return value


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class DashboardStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_users: int
    total_products: int
    active_products: int
    total_orders: int
    total_revenue: float


class DashboardResponse(BaseModel):
    """data of GET /api/dashboard.

    Series are month-aligned: labels[i] matches every series' [i] entry.
    """

    model_config = ConfigDict(frozen=True)

    stats: DashboardStats
    months: list[str]
    user_growth: list[int]
    orders_per_month: list[int]
    revenue_per_month: list[float]
    order_status: dict[str, int]
    categories: dict[str, int]
    top_products: list[dict]
