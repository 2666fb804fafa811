"""Shared router dependencies: caller identity and error responses."""

from typing import Optional

from fastapi import Header, Request
from fastapi.responses import ORJSONResponse

from services.execution.dispatcher import AuthContext
from services.execution.errors import EngineError, ForbiddenError


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_auth_context(
    request: Request,
    x_org_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> AuthContext:
    """Identity set by the authentication layer in front of this service."""
    return AuthContext(
        org_id=x_org_id,
        user_id=x_user_id,
        actor=x_user_id,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def public_context(request: Request) -> AuthContext:
    return AuthContext(
        actor="public",
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def error_response(error: EngineError) -> ORJSONResponse:
    return ORJSONResponse(status_code=error.status_code, content=error.to_dict())


def require_org(auth: AuthContext) -> str:
    if not auth.org_id:
        raise ForbiddenError("Missing organization")
    return auth.org_id
