"""
audit/models.py -- Domain dataclass for audit log entries.

Layer rule: no imports from api/, web/, auth/, or commerce/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class AuditLog:
    """One recorded action.

    action is an upper-case verb phrase (LOGIN, CREATE_PRODUCT, READ_USERS...).
    resource names the entity type ("Product", "Users"). resource_id is a
    string so non-integer identifiers (order numbers) fit too.
    user_id is None for anonymous events such as a failed login for an
    unknown email.
    """

    action: str
    resource: str
    user_id: int | None = None
    resource_id: str | None = None
    details: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    timestamp: str | None = None
