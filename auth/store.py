"""
auth/store.py -- SQLAlchemy Core persistence for device sessions.

Pattern: Repository + Data Mapper. SessionStore is the repository;
_row_to_session is the mapper. Nothing outside this module touches the
device_sessions table.

Invariant: at most one row per (user_id, device_id) has active = 1.
  The database enforces it with a partial unique index
  (uq_device_sessions_active). replace_active_session() deactivates the old row
  and inserts the new one inside a single transaction. A concurrent login for
  the same device either waits on the writer lock (SQLite) or trips the unique
  index (PostgreSQL); the loser's transaction is rolled back and retried, so
  neither two active rows nor an empty gap is ever committed.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Session, WriteResult

logger = logging.getLogger("devicegate.auth.store")

_REPLACE_ATTEMPTS = 5

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "device_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("device_id", String(255), nullable=False),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text, nullable=False),
    Column("platform", String(100)),
    Column("origin", String(255)),
    Column("user_agent", Text),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

Index(
    "uq_device_sessions_active",
    _sessions.c.user_id,
    _sessions.c.device_id,
    unique=True,
    sqlite_where=_sessions.c.active == 1,
    postgresql_where=_sessions.c.active == 1,
)
Index("ix_device_sessions_refresh", _sessions.c.refresh_token)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on the session writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Authoritative table of device sessions.

    Usage:
        store = SessionStore("sqlite:///sessions.db")
        store.replace_active_session(user_id, device_id, Session(...))
        session = store.find_active_by_refresh(refresh_token, device_id)
        store.deactivate(user_id, device_id)
        store.close()
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
    # Writes
    # ------------------------------------------------------------------

    def replace_active_session(self, user_id: int, device_id: str, new_session: Session) -> Session:
        """Atomically supersede the device's active session with new_session.

        Deactivate-then-insert runs in one transaction; the partial unique index
        turns a lost race into an IntegrityError, which rolls the whole
        transaction back and is retried. Returns the stored session.

        Raises IntegrityError if the index still rejects the insert after
        _REPLACE_ATTEMPTS tries.
        """
        for attempt in range(1, _REPLACE_ATTEMPTS + 1):
            now = _now_iso()
            try:
                with self.engine.begin() as conn:
                    superseded = conn.execute(
                        _sessions.update()
                        .where(
                            (_sessions.c.user_id == user_id)
                            & (_sessions.c.device_id == device_id)
                            & (_sessions.c.active == 1)
                        )
                        .values(active=0, updated_at=now)
                    ).rowcount
                    result = conn.execute(
                        _sessions.insert().values(
                            user_id=user_id,
                            device_id=device_id,
                            access_token=new_session.access_token,
                            refresh_token=new_session.refresh_token,
                            platform=new_session.platform,
                            origin=new_session.origin,
                            user_agent=new_session.user_agent,
                            active=1,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    session_id = result.inserted_primary_key[0]
            except IntegrityError:
                if attempt == _REPLACE_ATTEMPTS:
                    raise
                logger.info(
                    "Concurrent session replace for user=%s device=%s; retrying (%d/%d)",
                    user_id,
                    device_id,
                    attempt,
                    _REPLACE_ATTEMPTS,
                )
                continue
            logger.debug(
                "Session %s active for user=%s device=%s (superseded %d)", session_id, user_id, device_id, superseded
            )
            return Session(
                id=session_id,
                user_id=user_id,
                device_id=device_id,
                access_token=new_session.access_token,
                refresh_token=new_session.refresh_token,
                platform=new_session.platform,
                origin=new_session.origin,
                user_agent=new_session.user_agent,
                active=True,
                created_at=now,
                updated_at=now,
            )
        raise RuntimeError("session replace loop exited without a result")  # pragma: no cover

    def rotate_access_token(
        self, user_id: int, device_id: str, refresh_token: str, new_access_token: str
    ) -> WriteResult:
        """Replace access_token in place on the active session matching all three keys.

        A single conditional UPDATE: if a concurrent logout or login already
        deactivated the row, nothing matches and NOT_FOUND is returned.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.device_id == device_id)
                    & (_sessions.c.refresh_token == refresh_token)
                    & (_sessions.c.active == 1)
                )
                .values(access_token=new_access_token, updated_at=_now_iso())
            )
        return WriteResult.UPDATED if result.rowcount > 0 else WriteResult.NOT_FOUND

    def deactivate(self, user_id: int, device_id: str) -> WriteResult:
        """Logout: flip the device's active session to inactive."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.device_id == device_id)
                    & (_sessions.c.active == 1)
                )
                .values(active=0, updated_at=_now_iso())
            )
        return WriteResult.UPDATED if result.rowcount > 0 else WriteResult.NOT_FOUND

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_active_by_refresh(self, refresh_token: str, device_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.refresh_token == refresh_token)
                    & (_sessions.c.device_id == device_id)
                    & (_sessions.c.active == 1)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_active(self, user_id: int, device_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.device_id == device_id)
                    & (_sessions.c.active == 1)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active(self, user_id: int) -> list[Session]:
        """Return every active session of a user, most recently created first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.active == 1))
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_for_device(self, user_id: int, device_id: str) -> list[Session]:
        """Return the full history of a device, active or not, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.device_id == device_id))
                .order_by(_sessions.c.id)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        platform=row.platform,
        origin=row.origin,
        user_agent=row.user_agent,
        active=bool(row.active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
