"""
auth/models.py -- Domain dataclasses for authentication and access entities.

Pattern: Data class (pure data container). Dataclasses own the domain shape;
stores, the resolver and the orchestrator do the work. normalize_email() is the
one shared rule: every store and flow compares emails in canonical form.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

GUEST_ROLE = "guest"
SUPER_ADMIN_ROLE = "super_admin"
DEFAULT_ROLE = "user"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class WriteResult(str, Enum):
    """Outcome of a conditional write against a store."""

    UPDATED = "updated"
    NOT_FOUND = "not_found"


@dataclass
class DeviceMeta:
    """Informational client metadata captured at login. No behavioral effect."""

    platform: str | None = None
    origin: str | None = None
    user_agent: str | None = None


@dataclass
class Session:
    """One device-scoped login.

    At most one row per (user_id, device_id) has active=True at any time.
    access_token is replaced in place on refresh; a superseding login or a
    logout flips active to False, which is terminal for the row.
    """

    user_id: int
    device_id: str
    access_token: str
    refresh_token: str
    platform: str | None = None
    origin: str | None = None
    user_agent: str | None = None
    active: bool = True
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class UserRecord:
    """An account as seen by the auth core.

    role_ids keeps the order roles were attached in; permission resolution
    walks them in that order.
    """

    email: str
    password_hash: str
    id: int | None = None
    email_verified: bool = False
    active: bool = True
    role_ids: list[int] = field(default_factory=list)
    created_at: str | None = None


@dataclass
class Role:
    slug: str  # unique, e.g. "guest", "super_admin"
    id: int | None = None
    name: str = ""
    active: bool = True
    is_default: bool = False


@dataclass
class ProtectedOperation:
    """An addressable (method, path) unit that permission is checked against."""

    method: str
    path: str
    id: int | None = None
    active: bool = True
