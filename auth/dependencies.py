"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive in the Authorization: Bearer <token> header. Refresh
tokens never authenticate a request; they are only redeemed at
/auth/refresh-token.

get_current_user() resolves the bearer token through
AccountService.authenticate_access() and raises HTTP 401 with a code that
tells the client what to do next:
  token_expired  -> call /auth/refresh-token
  invalid_token  -> log in again

require_roles() and require_verified_email() build on get_current_user().
Role checks are set membership over the closed Role enum.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.errors import AccountError
from auth.models import Role, User
from auth.service import AccountService


def get_account_service(request: Request) -> AccountService:
    return request.app.state.account_service


def get_current_user(request: Request) -> User:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    service = get_account_service(request)
    try:
        return service.authenticate_access(auth_header[7:])
    except AccountError as exc:
        raise HTTPException(status_code=401, detail={"code": exc.code, "message": exc.message}) from exc


def require_roles(*roles: Role) -> Callable[..., User]:
    """Build a dependency that admits only users whose role is in roles.

        @router.get("/staff")
        def route(user: User = Depends(require_roles(Role.counselor, Role.admin))): ...
    """
    allowed = frozenset(roles)

    def dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You do not have access to this resource."},
            )
        return user

    return dependency


def require_verified_email(user: User = Depends(get_current_user)) -> User:
    if not user.is_email_verified:
        raise HTTPException(
            status_code=403,
            detail={"code": "email_not_verified", "message": "Email address must be verified first."},
        )
    return user
