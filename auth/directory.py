"""
auth/directory.py -- SQLAlchemy Core store for users, roles, operations and grants.

AccessDirectory implements the UserDirectory, RoleDirectory, OperationDirectory
and GrantDirectory protocols from auth/interfaces.py over one database. The
auth core only ever reads through those protocols (plus the two user writes it
requests: create and update_fields); the remaining writes exist for the admin
CLI and the grant-management route.

Role order: user_roles.position records the order roles were attached in.
UserRecord.role_ids is always returned sorted by position, which is the order
PermissionResolver evaluates roles in.

Security:
  All queries use bound parameters. update_fields() only accepts whitelisted
  column names.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import (
    DEFAULT_ROLE,
    GUEST_ROLE,
    SUPER_ADMIN_ROLE,
    ProtectedOperation,
    Role,
    UserRecord,
    normalize_email,
)

logger = logging.getLogger("devicegate.auth.directory")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("slug", String(64), nullable=False, unique=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("is_default", Integer, nullable=False, server_default="0"),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, nullable=False),
    Column("role_id", Integer, nullable=False),
    Column("position", Integer, nullable=False),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)

_operations = Table(
    "operations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("method", String(10), nullable=False),
    Column("path", String(512), nullable=False),
    Column("active", Integer, nullable=False, server_default="1"),
    UniqueConstraint("method", "path", name="uq_operation_method_path"),
)

_grants = Table(
    "grants",
    _metadata,
    Column("role_id", Integer, nullable=False),
    Column("operation_id", Integer, nullable=False),
    UniqueConstraint("role_id", "operation_id", name="uq_grant"),
)

_USER_UPDATE_FIELDS: frozenset[str] = frozenset({"password_hash", "email_verified", "active"})
_BOOL_FIELDS: frozenset[str] = frozenset({"email_verified", "active"})

_BUILTIN_ROLES: tuple[tuple[str, str, bool], ...] = (
    (GUEST_ROLE, "Guest", False),
    (DEFAULT_ROLE, "User", True),
    (SUPER_ADMIN_ROLE, "Super admin", False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AccessDirectory:
    """Repository for users, roles, protected operations and grants.

    Usage:
        directory = AccessDirectory("sqlite:///devicegate.db")
        roles = directory.ensure_builtin_roles()
        user = directory.create(UserRecord(email="a@b.c", password_hash=h, role_ids=[roles["user"].id]))
        op = directory.ensure_operation("POST", "/posts")
        directory.grant(roles["user"].id, op.id)
        directory.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users (UserDirectory)
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> UserRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
            if row is None:
                return None
            return _row_to_user(row, _role_ids_for(conn, row.id))

    def find_by_id(self, user_id: int) -> UserRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return _row_to_user(row, _role_ids_for(conn, row.id))

    def create(self, user: UserRecord) -> UserRecord | None:
        """Insert a user and attach user.role_ids in order, in one transaction.

        Returns None if the email is already taken.
        """
        created_at = _now_iso()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        email=normalize_email(user.email),
                        password_hash=user.password_hash,
                        email_verified=1 if user.email_verified else 0,
                        active=1 if user.active else 0,
                        created_at=created_at,
                    )
                )
                user_id = result.inserted_primary_key[0]
                for position, role_id in enumerate(user.role_ids):
                    conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, position=position))
        except IntegrityError:
            logger.info("User create rejected: email already registered")
            return None
        logger.info("User %s created with roles %s", user_id, user.role_ids)
        return UserRecord(
            id=user_id,
            email=normalize_email(user.email),
            password_hash=user.password_hash,
            email_verified=user.email_verified,
            active=user.active,
            role_ids=list(user.role_ids),
            created_at=created_at,
        )

    def update_fields(self, user_id: int, **fields: Any) -> bool:
        """Update whitelisted columns on a user. Returns False if user_id was not found.

        Unknown keys raise ValueError rather than being silently ignored.
        """
        unknown = set(fields) - _USER_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if not fields:
            return False
        values = {k: (1 if v else 0) if k in _BOOL_FIELDS else v for k, v in fields.items()}
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def attach_role(self, user_id: int, role_id: int) -> bool:
        """Append a role to the end of the user's role order. False if already attached."""
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(_user_roles.c.position).where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id)
                )
            ).fetchone()
            if existing is not None:
                return False
            last = conn.execute(
                select(func.max(_user_roles.c.position)).where(_user_roles.c.user_id == user_id)
            ).scalar()
            position = 0 if last is None else last + 1
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id, position=position))
        return True

    # ------------------------------------------------------------------
    # Roles (RoleDirectory)
    # ------------------------------------------------------------------

    def find_by_slug(self, slug: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.slug == slug)).fetchone()
        return _row_to_role(row) if row is not None else None

    def find_role(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_default(self) -> Role | None:
        """Return the active role flagged is_default (lowest id wins)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select()
                .where((_roles.c.is_default == 1) & (_roles.c.active == 1))
                .order_by(_roles.c.id)
                .limit(1)
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def create_role(self, role: Role) -> Role:
        """Insert a role. Raises sqlalchemy.exc.IntegrityError on a duplicate slug."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _roles.insert().values(
                    slug=role.slug,
                    name=role.name or role.slug,
                    active=1 if role.active else 0,
                    is_default=1 if role.is_default else 0,
                )
            )
        return Role(
            id=result.inserted_primary_key[0],
            slug=role.slug,
            name=role.name or role.slug,
            active=role.active,
            is_default=role.is_default,
        )

    def set_role_active(self, role_id: int, active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(active=1 if active else 0))
        return result.rowcount > 0

    def ensure_builtin_roles(self) -> dict[str, Role]:
        """Create guest, user (default) and super_admin if missing. Idempotent."""
        roles: dict[str, Role] = {}
        for slug, name, is_default in _BUILTIN_ROLES:
            role = self.find_by_slug(slug)
            if role is None:
                role = self.create_role(Role(slug=slug, name=name, is_default=is_default))
                logger.info("Created built-in role %r", slug)
            roles[slug] = role
        return roles

    # ------------------------------------------------------------------
    # Operations (OperationDirectory)
    # ------------------------------------------------------------------

    def find_by_method_and_path(self, method: str, path: str) -> ProtectedOperation | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _operations.select().where(
                    (_operations.c.method == method.upper()) & (_operations.c.path == path)
                )
            ).fetchone()
        return _row_to_operation(row) if row is not None else None

    def create_operation(self, operation: ProtectedOperation) -> ProtectedOperation:
        """Insert an operation. Raises sqlalchemy.exc.IntegrityError if (method, path) exists."""
        method = operation.method.upper()
        with self.engine.begin() as conn:
            result = conn.execute(
                _operations.insert().values(method=method, path=operation.path, active=1 if operation.active else 0)
            )
        return ProtectedOperation(
            id=result.inserted_primary_key[0], method=method, path=operation.path, active=operation.active
        )

    def ensure_operation(self, method: str, path: str) -> ProtectedOperation:
        operation = self.find_by_method_and_path(method, path)
        if operation is not None:
            return operation
        try:
            return self.create_operation(ProtectedOperation(method=method, path=path))
        except IntegrityError:
            # Lost the insert to a concurrent caller; its row is the answer.
            operation = self.find_by_method_and_path(method, path)
            if operation is None:
                raise
            return operation

    def set_operation_active(self, operation_id: int, active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _operations.update().where(_operations.c.id == operation_id).values(active=1 if active else 0)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Grants (GrantDirectory)
    # ------------------------------------------------------------------

    def exists(self, role_id: int, operation_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_grants.c.role_id).where(
                    (_grants.c.role_id == role_id) & (_grants.c.operation_id == operation_id)
                )
            ).fetchone()
        return row is not None

    def grant(self, role_id: int, operation_id: int) -> bool:
        """Allow role to invoke operation. Returns False if the grant already existed."""
        if self.exists(role_id, operation_id):
            return False
        try:
            with self.engine.begin() as conn:
                conn.execute(_grants.insert().values(role_id=role_id, operation_id=operation_id))
        except IntegrityError:
            if not self.exists(role_id, operation_id):
                raise
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


class RoleLookup:
    """RoleDirectory view of an AccessDirectory.

    AccessDirectory serves users and roles from one class, and both protocols
    name their id lookup find_by_id. This adapter exposes the role side under
    the protocol's names.
    """

    def __init__(self, directory: AccessDirectory) -> None:
        self._directory = directory

    def find_by_slug(self, slug: str) -> Role | None:
        return self._directory.find_by_slug(slug)

    def find_by_id(self, role_id: int) -> Role | None:
        return self._directory.find_role(role_id)

    def get_default(self) -> Role | None:
        return self._directory.get_default()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _role_ids_for(conn: Connection, user_id: int) -> list[int]:
    rows = conn.execute(
        select(_user_roles.c.role_id).where(_user_roles.c.user_id == user_id).order_by(_user_roles.c.position)
    ).fetchall()
    return [r.role_id for r in rows]


def _row_to_user(row, role_ids: list[int]) -> UserRecord:
    return UserRecord(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        active=bool(row.active),
        role_ids=role_ids,
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        slug=row.slug,
        name=row.name,
        active=bool(row.active),
        is_default=bool(row.is_default),
    )


def _row_to_operation(row) -> ProtectedOperation:
    return ProtectedOperation(id=row.id, method=row.method, path=row.path, active=bool(row.active))
