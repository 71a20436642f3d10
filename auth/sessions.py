"""
auth/sessions.py -- Refresh-session registry: device labels, client IPs, and
the login / rotate / revoke operations built on UserStore.

A session is one row per signed-in device holding that device's current
refresh token. The registry keeps at most MAX_SESSIONS (default 5) per user;
signing in on a sixth device silently evicts the oldest one. Evicted devices
are not notified -- their next refresh simply fails.

Refresh rotation: a refresh token is single-use. Presenting it returns a new
access/refresh pair and replaces the session row. A token that verifies
cryptographically but is no longer in the registry (rotated, logged out,
evicted) is rejected as invalid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from user_agents import parse as parse_user_agent

from auth.models import RefreshSession, User
from auth.store import UserStore
from auth.tokens import IssuedToken, TokenIssuer
from core.db import to_iso
from core.errors import InvalidTokenError

logger = logging.getLogger("immobilier.auth.sessions")

UNKNOWN_DEVICE = "Unknown Device"

# ---------------------------------------------------------------------------
# Request metadata
# ---------------------------------------------------------------------------


def describe_device(user_agent: str | None) -> str:
    """Turn a User-Agent header into "<Browser> on <OS> (<class>)", e.g.
    "Chrome on Windows (Desktop)" or "Mobile Safari on iOS (Mobile)".
    """
    if not user_agent:
        return UNKNOWN_DEVICE
    ua = parse_user_agent(user_agent)
    if ua.is_bot:
        device_class = "Bot"
    elif ua.is_tablet:
        device_class = "Tablet"
    elif ua.is_mobile:
        device_class = "Mobile"
    else:
        device_class = "Desktop"
    return f"{ua.browser.family} on {ua.os.family} ({device_class})"


def client_ip(request: Request) -> str | None:
    """First non-empty of X-Forwarded-For (first hop), X-Real-IP, peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Registry operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken


def record_session(
    store: UserStore,
    user: User,
    refresh: IssuedToken,
    device: str,
    ip: str | None,
    max_sessions: int = 5,
) -> None:
    """Store the refresh token for this device, evicting beyond max_sessions."""
    store.add_session(
        RefreshSession(
            user_id=user.id,
            token=refresh.token,
            jti=refresh.jti,
            expires_at=to_iso(refresh.expires_at),
            device=device,
            ip=ip,
        ),
        max_sessions=max_sessions,
    )


def open_session(
    store: UserStore,
    issuer: TokenIssuer,
    user: User,
    request: Request,
    max_sessions: int = 5,
) -> TokenPair:
    """Issue a fresh access/refresh pair and register the refresh token."""
    pair = TokenPair(
        access=issuer.issue_access_token(user.identity_key),
        refresh=issuer.issue_refresh_token(user.identity_key),
    )
    device = describe_device(request.headers.get("user-agent"))
    record_session(store, user, pair.refresh, device, client_ip(request), max_sessions)
    logger.info("Session opened for %s on %s", user.identity_key, device)
    return pair


def rotate_session(
    store: UserStore,
    issuer: TokenIssuer,
    refresh_token: str,
    request: Request,
    max_sessions: int = 5,
) -> tuple[User, TokenPair]:
    """Exchange a registered refresh token for a new pair.

    Raises TokenExpiredError / InvalidTokenError from verification, and
    InvalidTokenError when the token is not (or no longer) registered or the
    owning account is gone or inactive.
    """
    claims = issuer.verify_refresh_token(refresh_token)
    user = store.get_by_identity_key(claims["id"])
    if user is None or not user.is_active:
        raise InvalidTokenError()
    if store.find_session(user.id, refresh_token) is None:
        logger.warning("Refresh token for %s not in session registry (revoked or reused)", user.identity_key)
        raise InvalidTokenError("Refresh token revoked.")
    store.delete_session(user.id, refresh_token)
    return user, open_session(store, issuer, user, request, max_sessions)


def revoke_session(store: UserStore, user: User, refresh_token: str | None) -> None:
    """Drop one device's session (logout). Missing tokens are a no-op."""
    if refresh_token:
        store.delete_session(user.id, refresh_token)


def revoke_all_sessions(store: UserStore, user: User) -> int:
    count = store.delete_sessions(user.id)
    logger.info("Revoked %d session(s) for %s", count, user.identity_key)
    return count
