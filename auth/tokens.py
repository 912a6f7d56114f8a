"""
auth/tokens.py -- Access/refresh JWT issuing and verification, cookie helper.

Security design decisions:
  JWT: python-jose with HS256. Two independent secrets key the two token kinds.
       Every token also carries a "typ" claim, and verify() checks it against
       the requested SecretClass, so a refresh token can never pass as an access
       token even if an operator misconfigures both secrets to the same value.

  jti: a random id in every token. Two logins from the same device within the
       same second would otherwise mint byte-identical tokens.

  verify() is pure: no I/O, no module-level settings, no exceptions. It returns
       a TokenVerification tagged VALID / INVALID / EXPIRED and callers branch
       on the tag explicitly.

  Secrets: passed in through TokenConfig at construction. This module never
       reads the environment; api/main.py builds TokenConfig from core.config.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from jose import ExpiredSignatureError, JWTError, jwt

_ALGORITHM = "HS256"

REFRESH_COOKIE_NAME = "jwt"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenConfig:
    """Everything TokenIssuer needs, enumerated explicitly."""

    access_secret: str
    refresh_secret: str
    access_ttl: timedelta = timedelta(minutes=15)
    refresh_ttl: timedelta = timedelta(days=30)


class SecretClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class TokenVerification:
    status: TokenStatus
    user_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is TokenStatus.VALID


_INVALID = TokenVerification(TokenStatus.INVALID)
_EXPIRED = TokenVerification(TokenStatus.EXPIRED)


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Signs and verifies time-bounded credentials.

    Usage:
        issuer = TokenIssuer(TokenConfig(access_secret=..., refresh_secret=...))
        token = issuer.issue_access(user_id)
        result = issuer.verify(token, SecretClass.ACCESS)
        if result.ok:
            ...
    """

    def __init__(self, config: TokenConfig) -> None:
        self._config = config

    @property
    def refresh_ttl(self) -> timedelta:
        return self._config.refresh_ttl

    def issue_access(self, user_id: int) -> str:
        return self._issue(user_id, SecretClass.ACCESS)

    def issue_refresh(self, user_id: int) -> str:
        return self._issue(user_id, SecretClass.REFRESH)

    def verify(self, token: str, secret_class: SecretClass) -> TokenVerification:
        """Check signature, expiry and token kind. Never raises."""
        if not token:
            return _INVALID
        try:
            payload = jwt.decode(token, self._secret_for(secret_class), algorithms=[_ALGORITHM])
        except ExpiredSignatureError:
            return _EXPIRED
        except JWTError:
            return _INVALID
        if payload.get("typ") != secret_class.value:
            return _INVALID
        user_id = payload.get("user_id")
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            return _INVALID
        return TokenVerification(TokenStatus.VALID, user_id=user_id)

    def _issue(self, user_id: int, secret_class: SecretClass) -> str:
        ttl = self._config.access_ttl if secret_class is SecretClass.ACCESS else self._config.refresh_ttl
        now = datetime.now(timezone.utc)
        payload = {
            "user_id": user_id,
            "typ": secret_class.value,
            "iat": now,
            "exp": now + ttl,
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._secret_for(secret_class), algorithm=_ALGORITHM)

    def _secret_for(self, secret_class: SecretClass) -> str:
        if secret_class is SecretClass.ACCESS:
            return self._config.access_secret
        return self._config.refresh_secret


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, token: str, max_age: int, secure: bool = True) -> None:
    """Write the refresh token as the httpOnly "jwt" cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="none": the SPA talks to the API cross-site; browsers only accept
        SameSite=None together with Secure.
    max_age: matches the refresh token TTL so both expire together.
    """
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="none",
        secure=secure,
        max_age=max_age,
    )


def clear_refresh_cookie(response, secure: bool = True) -> None:
    response.delete_cookie(REFRESH_COOKIE_NAME, httponly=True, samesite="none", secure=secure)
