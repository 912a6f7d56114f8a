"""
auth/permissions.py -- Role/grant based access resolution.

authorize(actor, method, path) answers one question: may this actor invoke the
protected operation addressed by (method, path)?

Resolution order:
  1. The operation must exist and be active. Otherwise the answer is DENIED,
     for every actor including super_admin. Nothing later overrides this.
  2. Guest: allowed iff the active "guest" role holds a grant for the operation.
  3. Authenticated user: roles are walked in the order they were attached.
     - A missing or inactive user sets the denial flag; evaluation continues.
     - A missing or inactive role sets the denial flag and is skipped.
     - A "super_admin" role allows immediately, flag or not.
     - Any other role allows immediately if it holds a grant AND the denial
       flag is not set at that moment.
     The flag is sticky and is only consulted when a grant matches, so a role
     that matched before a disabled one has already allowed.
     TODO: decide whether a disabled role should deny outright once product
     confirms the intended semantics.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Union

from auth.interfaces import GrantDirectory, OperationDirectory, RoleDirectory, UserDirectory
from auth.models import GUEST_ROLE, SUPER_ADMIN_ROLE

logger = logging.getLogger("devicegate.auth.permissions")


@dataclass(frozen=True)
class Guest:
    """The unauthenticated actor."""


@dataclass(frozen=True)
class AuthenticatedUser:
    id: int


Actor = Union[Guest, AuthenticatedUser]

GUEST = Guest()


class Decision(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOWED


class PermissionResolver:
    def __init__(
        self,
        users: UserDirectory,
        roles: RoleDirectory,
        operations: OperationDirectory,
        grants: GrantDirectory,
    ) -> None:
        self._users = users
        self._roles = roles
        self._operations = operations
        self._grants = grants

    def authorize(self, actor: Actor, method: str, path: str) -> Decision:
        operation = self._operations.find_by_method_and_path(method, path)
        if operation is None or not operation.active:
            logger.debug("DENIED %s %s: operation missing or inactive", method, path)
            return Decision.DENIED

        if isinstance(actor, Guest):
            guest_role = self._roles.find_by_slug(GUEST_ROLE)
            if guest_role is None or not guest_role.active:
                return Decision.DENIED
            if self._grants.exists(guest_role.id, operation.id):
                return Decision.ALLOWED
            return Decision.DENIED

        allowed = True
        user = self._users.find_by_id(actor.id)
        if user is None or not user.active:
            allowed = False
        role_ids = user.role_ids if user is not None else []

        for role_id in role_ids:
            role = self._roles.find_by_id(role_id)
            if role is None or not role.active:
                allowed = False
                continue
            if role.slug == SUPER_ADMIN_ROLE:
                logger.debug("ALLOWED %s %s for user %s via super_admin", method, path, actor.id)
                return Decision.ALLOWED
            if self._grants.exists(role.id, operation.id) and allowed:
                logger.debug("ALLOWED %s %s for user %s via role %r", method, path, actor.id, role.slug)
                return Decision.ALLOWED

        logger.debug("DENIED %s %s for user %s", method, path, actor.id)
        return Decision.DENIED
