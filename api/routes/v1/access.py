"""
api/routes/v1/access.py -- Permission queries and grant management.

Routes:
  POST /api/v1/access/check   -- may the caller invoke {method, path}? (guest without a token)
  POST /api/v1/access/grants  -- grant a role access to {method, path}

/access/grants is itself a protected operation: require_operation_access asks
the PermissionResolver about GRANTS_OPERATION, so only roles granted that
operation -- or super_admin -- can hand out grants. The router is mounted
under /api/v1 in api/main.py; GRANTS_OPERATION carries the mounted path.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import AccessCheckRequest, AccessCheckResponse, GrantRequest, GrantResponse
from auth.dependencies import get_actor, get_orchestrator, require_operation_access
from auth.directory import AccessDirectory
from auth.errors import NotFound
from auth.permissions import Actor

router = APIRouter()

GRANTS_OPERATION = ("POST", "/api/v1/access/grants")


@router.post("/access/check", response_model=AccessCheckResponse)
def check_access(request: Request, body: AccessCheckRequest, actor: Actor = Depends(get_actor)) -> AccessCheckResponse:
    decision = get_orchestrator(request).authorize(actor, body.method, body.path)
    return AccessCheckResponse(allowed=decision.allowed)


@router.post("/access/grants", response_model=GrantResponse)
def create_grant(
    request: Request,
    body: GrantRequest,
    actor: Actor = Depends(require_operation_access(*GRANTS_OPERATION)),
) -> GrantResponse:
    """Grant body.role access to (method, path), creating the operation if it is new."""
    directory: AccessDirectory = request.app.state.directory
    role = directory.find_by_slug(body.role)
    if role is None:
        raise NotFound("Role not found.")
    operation = directory.ensure_operation(body.method, body.path)
    created = directory.grant(role.id, operation.id)
    return GrantResponse(
        role=role.slug,
        method=operation.method,
        path=operation.path,
        operation_id=operation.id,
        created=created,
    )
