"""
auth/verification.py -- Single-use verification codes for email confirmation
and password reset.

VerificationCodeStore implements the VerificationService protocol. Codes are
six random digits from the secrets module, scoped by (type, origin) -- origin
is the email address for type "EMAIL" -- and expire after a configurable TTL.

Delivery is not this module's job: send_email_code() hands (email, code) to a
dispatch callable supplied by the application. The default dispatcher only
logs that a code was issued. If dispatch raises, the freshly stored code is
deleted again and the exception propagates to the caller.

is_code_valid() consumes the code: a single conditional UPDATE flips used=0 to
used=1, so two concurrent submissions of the same code cannot both succeed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine

logger = logging.getLogger("devicegate.auth.verification")

EMAIL_CODE = "EMAIL"

_metadata = MetaData()

_codes = Table(
    "verification_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(20), nullable=False),
    Column("origin", String(255), nullable=False),
    Column("code", String(16), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def log_dispatch(email: str, code: str) -> None:
    """Default dispatcher: record that a code was issued without revealing it."""
    logger.info("Verification code issued for %s", email)


class VerificationCodeStore:
    """Usage:
    codes = VerificationCodeStore("sqlite:///devicegate.db", dispatch=mailer.send_code)
    codes.send_email_code("a@b.c")
    codes.is_code_valid("EMAIL", "123456", "a@b.c")  # True once, then False
    """

    def __init__(
        self,
        db_url: str,
        ttl_seconds: int = 15 * 60,
        dispatch: Callable[[str, str], None] = log_dispatch,
    ) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._dispatch = dispatch

    def issue_code(self, type: str, origin: str) -> str:
        """Store and return a fresh code for (type, origin)."""
        code = f"{secrets.randbelow(1_000_000):06d}"
        now = datetime.now(timezone.utc)
        with self.engine.begin() as conn:
            conn.execute(
                _codes.insert().values(
                    type=type,
                    origin=origin,
                    code=code,
                    expires_at=(now + self._ttl).isoformat(),
                    used=0,
                    created_at=now.isoformat(),
                )
            )
        return code

    def send_email_code(self, email: str) -> None:
        code = self.issue_code(EMAIL_CODE, email)
        try:
            self._dispatch(email, code)
        except Exception:
            self._discard(EMAIL_CODE, email, code)
            raise

    def is_code_valid(self, type: str, code: str, origin: str) -> bool:
        if not code:
            return False
        now = datetime.now(timezone.utc).isoformat()
        with self.engine.begin() as conn:
            result = conn.execute(
                _codes.update()
                .where(
                    (_codes.c.type == type)
                    & (_codes.c.origin == origin)
                    & (_codes.c.code == code)
                    & (_codes.c.used == 0)
                    & (_codes.c.expires_at > now)
                )
                .values(used=1)
            )
        return result.rowcount > 0

    def _discard(self, type: str, origin: str, code: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _codes.delete().where((_codes.c.type == type) & (_codes.c.origin == origin) & (_codes.c.code == code))
            )

    def close(self) -> None:
        self.engine.dispose()
