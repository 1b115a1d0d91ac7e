"""
api/routes/v1/users.py -- User, login and access-token REST endpoints.

Routes:
  POST   /api/v1/users                  -- create user; 201
  POST   /api/v1/users/login            -- password login; sets signed access_token cookie
  POST   /api/v1/users/logout           -- delete the request's token; 204
  GET    /api/v1/users/me               -- current user (requires token)
  POST   /api/v1/users/change-password  -- change own password (requires token)
  POST   /api/v1/users/reset            -- request a reset token; 204 always
  POST   /api/v1/users/reset-password   -- set password with a reset-password token; 204
  GET    /api/v1/users/{id}             -- read user (owner only)
  PATCH  /api/v1/users/{id}             -- partial update (owner only)
  PUT    /api/v1/users/{id}             -- full replace (owner only)
  DELETE /api/v1/users/{id}             -- delete user and all their tokens; 204

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.login() provides timing equalization; never inline the lookup.
  [M5] Cache-Control: no-store on login responses.
  IDOR guard: /users/{id} routes compare the path id with the token's user_id.
  Mutations pass the acting token in options, so the caller keeps their own
  session while every other session of the user is revoked.
  POST /reset answers 204 whether or not the email exists, so it cannot be
  used to enumerate accounts. Delivering the token is out of scope; it is
  only logged by prefix.

All routes forward options {"remote": True} so the service applies the
remote-caller rules (email_verified is server-controlled).
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    ResetRequestBody,
    SetPasswordRequest,
    TokenResponse,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.dependencies import get_access_token, get_current_user, require_access_token, require_scope
from auth.errors import AccessDeniedError, NotFoundError
from auth.models import RESET_PASSWORD_SCOPE, AccessToken, User
from auth.service import AuthService
from auth.tokens import sign_cookie, token_prefix
from core.config import get_settings

logger = logging.getLogger("tokenward.api")

COOKIE_NAME = "access_token"

# Auth policy:
# - POST   /users, /users/login, /users/reset:   public
# - POST   /users/logout:                        token, any scope
# - POST   /users/reset-password:                token with the reset-password scope
# - everything else:                             general-purpose token (require_access_token)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _remote(token: Optional[AccessToken] = None) -> dict:
    options: dict = {"remote": True}
    if token is not None:
        options["access_token"] = token
    return options


def _require_owner(token: AccessToken, user_id: str) -> None:
    if token.user_id != user_id:
        raise AccessDeniedError("Access token does not belong to this user")


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(request: Request, body: UserCreate) -> UserResponse:
    """Create a user. email_verified in the body is ignored for remote callers."""
    user = await _service(request).create_user(body.model_dump(exclude_unset=True), _remote())
    return UserResponse.from_user(user)


@limiter.limit(_login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/users/login", response_model=TokenResponse)
async def login(request: Request, body: LoginRequest, include: Optional[str] = None) -> JSONResponse:
    """Authenticate with email or username plus password and issue an access token.

    The token id is returned in the body and also set as a signed, httpOnly
    cookie so browser clients need no extra handling.
    """
    settings = get_settings()
    token = await _service(request).login(body.model_dump(exclude_none=True), include, _remote())
    resp = JSONResponse(status_code=200, content=TokenResponse.from_token(token).model_dump(mode="json"))
    resp.set_cookie(
        COOKIE_NAME,
        sign_cookie(token.id, request.app.state.secret_key),
        max_age=token.ttl if token.ttl > 0 else None,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/users/reset", status_code=204)
async def request_password_reset(request: Request, body: ResetRequestBody) -> Response:
    """Issue a reset-password token for the account owning the email.

    Always 204 so the response does not reveal whether the email exists.
    """
    try:
        reset = await _service(request).reset_password(body.email, body.realm, options=_remote())
    except NotFoundError:
        logger.info("Password reset requested for unknown email")
    else:
        logger.info(
            "Reset token %s issued for user %s (delivery not configured)",
            token_prefix(reset.token.id),
            reset.user.id,
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/users/logout", status_code=204)
async def logout(request: Request, token: Optional[AccessToken] = Depends(get_access_token)) -> Response:
    """Delete the request's access token and clear the cookie."""
    await _service(request).logout(token.id if token is not None else None, _remote(token))
    resp = Response(status_code=204)
    resp.delete_cookie(COOKIE_NAME)
    return resp


@router.get("/users/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the user owning the request's access token."""
    return UserResponse.from_user(current_user)


@router.post("/users/change-password", status_code=204)
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    token: AccessToken = Depends(require_access_token),
) -> Response:
    """Change the caller's password. Every other session of the caller is revoked."""
    await _service(request).change_password(token.user_id, body.old_password, body.new_password, _remote(token))
    return Response(status_code=204)


@router.post("/users/reset-password", status_code=204)
async def reset_password(
    request: Request,
    body: SetPasswordRequest,
    token: AccessToken = Depends(require_scope(RESET_PASSWORD_SCOPE)),
) -> Response:
    """Set a new password using a reset-password token.

    The acting token is not exempted: every session of the user, including
    the reset token itself, is revoked.
    """
    await _service(request).set_password(token.user_id, body.new_password, _remote())
    return Response(status_code=204)


@router.get("/users/{user_id}", response_model=UserResponse)
async def get_user(
    request: Request,
    user_id: str,
    token: AccessToken = Depends(require_access_token),
) -> UserResponse:
    _require_owner(token, user_id)
    user = await _service(request).get_user(user_id, _remote(token))
    if user is None:
        raise NotFoundError(f"User {user_id} not found", code="NOT_FOUND")
    return UserResponse.from_user(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    request: Request,
    user_id: str,
    body: UserPatch,
    token: AccessToken = Depends(require_access_token),
) -> UserResponse:
    """Partially update the caller's user. Credential changes revoke other sessions."""
    _require_owner(token, user_id)
    user = await _service(request).update_attributes(user_id, body.model_dump(exclude_unset=True), _remote(token))
    return UserResponse.from_user(user)


@router.put("/users/{user_id}", response_model=UserResponse)
async def replace_user(
    request: Request,
    user_id: str,
    body: UserCreate,
    token: AccessToken = Depends(require_access_token),
) -> UserResponse:
    """Replace the caller's user. Every other session of the caller is revoked."""
    _require_owner(token, user_id)
    user = await _service(request).replace_attributes(user_id, body.model_dump(exclude_unset=True), _remote(token))
    return UserResponse.from_user(user)


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    request: Request,
    user_id: str,
    token: AccessToken = Depends(require_access_token),
) -> Response:
    """Delete the caller's user together with every token they own."""
    _require_owner(token, user_id)
    await _service(request).delete_by_id(user_id, _remote(token))
    resp = Response(status_code=204)
    resp.delete_cookie(COOKIE_NAME)
    return resp
