"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The auth gate resolves a request to a User in a fixed order:
  1. Token from "Authorization: Bearer <token>", else the "accessToken" cookie.
     Neither present -> 401 unauthenticated.
  2. Verify signature, issuer/audience, expiry and type against the access
     secret. Expired -> 401 token_expired; anything else -> 401 invalid_token.
  3. Load the user by the identity key claim. Missing -> 401.
  4. Inactive account -> 401.
  5. password_changed_at later than the token's iat -> 401. A password change
     invalidates every access token issued before it.
  6. Attach the user to request.state.user and return it.

try_get_current_user() is the soft variant (returns None on any failure) for
endpoints that only personalize their output.
require_capability() wraps get_current_user() and raises 403 when the role
lacks the capability.

Dependencies are plain `def`, so FastAPI runs them in its threadpool and the
blocking store calls never stall the event loop.

Layer rule: may import from fastapi, core/ and auth/. No imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from fastapi import Request

from auth.models import Capability, User
from auth.store import UserStore
from auth.tokens import ACCESS_COOKIE, TokenIssuer
from core.errors import AppError, AuthenticationError, AuthorizationError


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(ACCESS_COOKIE) or None


def password_changed_after(user: User, issued_at: float) -> bool:
    """True when the user's password changed after the token was issued."""
    if not user.password_changed_at:
        return False
    return datetime.fromisoformat(user.password_changed_at).timestamp() > float(issued_at)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises an AuthenticationError subclass (401).

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    token = _extract_token(request)
    if token is None:
        raise AuthenticationError("Authentication required. Please sign in.")

    issuer: TokenIssuer = request.app.state.token_issuer
    user_store: UserStore = request.app.state.user_store

    claims = issuer.verify_access_token(token)

    user = user_store.get_by_identity_key(claims["id"])
    if user is None:
        raise AuthenticationError("The user for this token no longer exists.")
    if not user.is_active:
        raise AuthenticationError("Account is not active.")
    if password_changed_after(user, claims.get("iat", 0)):
        raise AuthenticationError("Password changed recently. Please sign in again.")

    request.state.user = user
    return user


def try_get_current_user(request: Request) -> User | None:
    """Same checks as get_current_user(), but returns None instead of raising."""
    try:
        return get_current_user(request)
    except AppError:
        return None


def require_capability(capability: Capability) -> Callable[[Request], User]:
    """Build a dependency that requires an authenticated user with `capability`.

    Use as a FastAPI dependency:
        @router.get("/users")
        def route(user: User = Depends(require_capability(Capability.MANAGE_USERS))): ...
    """

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if not user.role.can(capability):
            raise AuthorizationError()
        return user

    return dependency
