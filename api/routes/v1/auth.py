"""
api/routes/v1/auth.py -- Account and credential REST endpoints.

Routes:
  POST   /api/v1/auth/register                -- create account; 201 + tokens
  POST   /api/v1/auth/login                   -- password login; access token + refresh cookie
  POST   /api/v1/auth/refresh-token           -- rotate refresh token (cookie or body)
  GET    /api/v1/auth/verify-email/{token}    -- redeem email verification token
  POST   /api/v1/auth/verify-email/resend     -- issue a new verification token (requires auth)
  POST   /api/v1/auth/password-reset          -- request reset email (same reply for any email)
  POST   /api/v1/auth/password-reset/{token}  -- redeem reset token, set new password
  GET    /api/v1/auth/profile                 -- current profile (requires auth)
  PUT    /api/v1/auth/profile                 -- merge profile/preferences/username (requires auth)
  POST   /api/v1/auth/logout                  -- revoke one refresh token (requires auth)
  POST   /api/v1/auth/logout-all              -- revoke every refresh token (requires auth)
  POST   /api/v1/auth/change-password         -- requires auth + current password
  DELETE /api/v1/auth/account                 -- soft-delete, requires auth + password
  GET    /api/v1/auth/check                   -- token check (requires auth)
  GET    /api/v1/auth/protected-resource      -- requires a verified email

This module is a thin transport layer: every handler calls one
AccountService method. AccountError subclasses propagate to the handler in
api/main.py, which maps error codes to HTTP statuses.

Handlers are plain `def` so FastAPI runs them in its thread pool; bcrypt and
PBKDF2 never block the event loop.

Security:
  [H2] register, login and password-reset are rate-limited per IP.
  [M5] Cache-Control: no-store on every response that carries a credential.
  Refresh tokens travel in an httpOnly cookie scoped to /api/v1/auth.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    CheckResponse,
    DeleteAccountRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_account_service, get_current_user, require_verified_email
from auth.models import User
from auth.service import AccountService, AuthResult
from core.config import get_settings

REFRESH_COOKIE = "refresh_token"
_COOKIE_PATH = "/api/v1/auth"

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response: Response, token: str) -> None:
    """Write the refresh token as an httpOnly cookie.

    samesite="strict": never sent on cross-site requests.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the refresh token lifetime.
    """
    settings = get_settings()
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
        path=_COOKIE_PATH,
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE, path=_COOKIE_PATH)


def _auth_response(result: AuthResult, status_code: int) -> JSONResponse:
    body = AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.access_token,
        expires_in=get_settings().access_token_expire_seconds,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    set_refresh_cookie(resp, result.refresh_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _message(text: str) -> JSONResponse:
    return JSONResponse(content=MessageResponse(message=text).model_dump())


def _presented_refresh_token(request: Request, body_token: str | None) -> str | None:
    return request.cookies.get(REFRESH_COOKIE) or body_token


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2] below @router so the registered endpoint is the limited wrapper
def register(
    request: Request,
    body: RegisterRequest,
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    result = service.register(
        email=body.email,
        password=body.password,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _auth_response(result, status_code=201)


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
def login(
    request: Request,
    body: LoginRequest,
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same bad_credentials error.
    """
    result = service.login(body.email, body.password)
    return _auth_response(result, status_code=200)


@router.post("/auth/refresh-token", response_model=TokenResponse)
def refresh_token(
    request: Request,
    body: RefreshRequest | None = None,
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    token = _presented_refresh_token(request, body.refresh_token if body else None)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "refresh_token_required", "message": "A refresh token is required."},
        )
    pair = service.refresh(token)
    resp = JSONResponse(
        content=TokenResponse(
            access_token=pair.access_token,
            expires_in=get_settings().access_token_expire_seconds,
        ).model_dump()
    )
    set_refresh_cookie(resp, pair.refresh_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/verify-email/{token}", response_model=MessageResponse)
def verify_email(token: str, service: AccountService = Depends(get_account_service)) -> JSONResponse:
    service.verify_email(token)
    return _message("Email address verified.")


@router.post("/auth/password-reset", response_model=MessageResponse)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
def request_password_reset(
    request: Request,
    body: PasswordResetRequest,
    background_tasks: BackgroundTasks,
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    """Always 200 with the same message, whether or not the account exists.

    The email goes out after the response so timing does not reveal the answer.
    """
    resp = _message(service.request_password_reset(body.email, defer=background_tasks.add_task))
    # A returned Response does not pick up injected tasks on its own.
    resp.background = background_tasks
    return resp


@router.post("/auth/password-reset/{token}", response_model=MessageResponse)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
def reset_password(
    request: Request,
    token: str,
    body: PasswordResetConfirm,
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    service.reset_password(token, body.password)
    return _message("Password has been reset. Please log in again.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/verify-email/resend", response_model=MessageResponse)
def resend_verification(
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    service.resend_verification(current_user.id)
    return _message("Verification email sent.")


@router.get("/auth/profile", response_model=UserResponse)
def get_profile(
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> UserResponse:
    return UserResponse.from_user(service.get_profile(current_user.id))


@router.put("/auth/profile", response_model=UserResponse)
def update_profile(
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> UserResponse:
    return UserResponse.from_user(service.update_profile(current_user.id, body.to_updates()))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    token = _presented_refresh_token(request, body.refresh_token if body else None)
    if token:
        service.logout(current_user.id, token)
    resp = _message("Logged out.")
    clear_refresh_cookie(resp)
    return resp


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    service.logout_all(current_user.id)
    resp = _message("Logged out of all devices.")
    clear_refresh_cookie(resp)
    return resp


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    service.change_password(current_user.id, body.current_password, body.new_password)
    resp = _message("Password changed. Please log in again.")
    clear_refresh_cookie(resp)
    return resp


@router.delete("/auth/account", response_model=MessageResponse)
def delete_account(
    body: DeleteAccountRequest,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    service.delete_account(current_user.id, body.password)
    resp = _message("Account deleted.")
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/check", response_model=CheckResponse)
def check(current_user: User = Depends(get_current_user)) -> CheckResponse:
    return CheckResponse(authenticated=True, user=UserResponse.from_user(current_user))


@router.get("/auth/protected-resource", response_model=MessageResponse)
def protected_resource(current_user: User = Depends(require_verified_email)) -> MessageResponse:
    return MessageResponse(message="You can access this resource.")
