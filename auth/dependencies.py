"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and access.

The access token travels in "Authorization: Bearer <token>". The refresh token
never does -- it lives only in the httpOnly "jwt" cookie.

get_current_user() requires a valid access token for an active user.
require_operation_access(method, path) builds a dependency that asks the
PermissionResolver whether the caller (guest when no bearer token is sent) may
invoke the operation the route declares. The address is fixed at declaration
time, so it does not depend on how the router prefix is mounted.

Failures raise AuthError subclasses; the API layer's exception handler turns
them into the standard error envelope.

auth/dependencies.py may import from fastapi because this module is part of the
FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Request

from auth.errors import Forbidden, Unauthorized
from auth.models import DeviceMeta, UserRecord
from auth.permissions import Actor
from auth.service import AuthOrchestrator

DEVICE_HEADER = "Device-Uuid"


def get_orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.auth


def device_id_from(request: Request) -> str | None:
    value = request.headers.get(DEVICE_HEADER, "").strip()
    return value or None


def device_meta_from(request: Request) -> DeviceMeta:
    return DeviceMeta(
        platform=request.headers.get("Platform") or request.headers.get("Sec-CH-UA-Platform"),
        origin=request.headers.get("Origin"),
        user_agent=request.headers.get("User-Agent"),
    )


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_user(request: Request) -> UserRecord:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: UserRecord = Depends(get_current_user)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise Unauthorized("missing_token", "Authentication required.")
    return get_orchestrator(request).authenticate_access_token(token)


def get_actor(request: Request) -> Actor:
    """Guest when no bearer token is sent; a bad or expired token is still an error."""
    return get_orchestrator(request).resolve_actor(bearer_token(request))


def require_operation_access(method: str, path: str) -> Callable[[Request], Actor]:
    """Build a dependency that requires a grant for the operation (method, path).

    path is the full path template the route is served under, prefix included.
    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(actor: Actor = Depends(require_operation_access("POST", "/api/v1/admin-only"))): ...
    """

    def _dependency(request: Request) -> Actor:
        orchestrator = get_orchestrator(request)
        actor = orchestrator.resolve_actor(bearer_token(request))
        if not orchestrator.authorize(actor, method, path).allowed:
            raise Forbidden("You do not have access to this operation.")
        return actor

    return _dependency
