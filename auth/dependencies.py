"""
auth/dependencies.py -- FastAPI Depends() helpers for access-token authentication.

The request's token is found by auth.tokens.resolve_token_id (params, then
headers, then signed cookies) and validated by the TokenManager held on
app.state. All helpers converge on an AccessToken.

get_access_token() is the soft variant (returns None when no token is sent).
require_access_token() raises 401 AUTHORIZATION_REQUIRED when there is none.
require_scope(scope) builds a dependency that demands a scoped token.

A token that is present but expired or otherwise invalid is always a 401
INVALID_TOKEN, even through the soft variant.

Tokens scoped to "reset-password" only authenticate the reset-password route:
require_access_token() refuses them with 403 ACCESS_DENIED.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import Depends, Request

from auth.errors import AccessDeniedError, authorization_required, user_not_found
from auth.models import RESET_PASSWORD_SCOPE, AccessToken, User
from auth.service import AuthService
from auth.tokens import RequestView, TokenManager


async def _json_body(request: Request) -> Optional[dict[str, Any]]:
    # Starlette caches the body, so the route's own body parsing still works.
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


async def get_access_token(request: Request) -> Optional[AccessToken]:
    """Resolve and validate the request's access token, or return None if none was sent."""
    tokens: TokenManager = request.app.state.token_manager
    view = RequestView.from_request(request, request.app.state.secret_key, await _json_body(request))
    return await tokens.find_for_request(view, request.app.state.token_lookup, {"remote": True})


async def require_access_token(token: Optional[AccessToken] = Depends(get_access_token)) -> AccessToken:
    """Require a general-purpose access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(token: AccessToken = Depends(require_access_token)): ...
    """
    if token is None:
        raise authorization_required()
    if token.scopes == [RESET_PASSWORD_SCOPE]:
        raise AccessDeniedError("This access token may only be used to reset a password")
    return token


def require_scope(scope: str):
    """Return a dependency that requires a token carrying `scope`."""

    async def dependency(token: Optional[AccessToken] = Depends(get_access_token)) -> AccessToken:
        if token is None:
            raise authorization_required()
        if not token.has_scope(scope):
            raise AccessDeniedError(f"Access token lacks the {scope!r} scope")
        return token

    return dependency


async def get_current_user(request: Request, token: AccessToken = Depends(require_access_token)) -> User:
    """Load the user owning the request's token. 401 USER_NOT_FOUND if it no longer exists."""
    service: AuthService = request.app.state.auth_service
    user = await service.get_user(token.user_id, {"remote": True, "access_token": token})
    if user is None:
        raise user_not_found(token.user_id)
    return user
