"""
Request dependencies: back-office instance, caller identity and error mapping
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from ..errors import (
    ForexError, InsufficientFunds, InvalidOperation, NotFound, PermissionDenied, ValidationError
)
from ..rbac import Actor, Permission, Role
from ..system import BackOffice


def get_back_office_dep(request: Request) -> BackOffice:
    """BackOffice attached to the application by create_app"""
    return request.app.state.back_office


def get_actor(
    x_actor_id: str = Header(..., description="Caller id, set by the upstream gateway"),
    x_actor_role: str = Header(..., description="Caller role"),
    x_actor_name: Optional[str] = Header(None),
    x_actor_agency: Optional[str] = Header(None)
) -> Actor:
    """Caller identity from gateway headers"""
    try:
        role = Role(x_actor_role)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail=f"Unknown role: {x_actor_role}")
    return Actor(id=x_actor_id, role=role, name=x_actor_name, agency=x_actor_agency)


def http_error(error: ForexError) -> HTTPException:
    """Map an engine error to the HTTP status the API reports"""
    if isinstance(error, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, PermissionDenied):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, (InsufficientFunds, InvalidOperation)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(error))


def require_any_permission(actor: Actor, *permissions: Permission) -> None:
    """403 unless the caller holds at least one of the permissions"""
    if not any(actor.has_permission(permission) for permission in permissions):
        needed = " or ".join(permission.value for permission in permissions)
        raise http_error(PermissionDenied(f"Role {actor.role.value} cannot read this (requires {needed})"))
