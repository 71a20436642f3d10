"""
auth/activation.py -- Email verification and password reset token flows.

Activation tokens are 32 random bytes (64 hex chars) stored as-is with a
24-hour expiry. A successful verification clears the expiry but keeps the
token, so a second click on the same link reports the account as already
activated instead of unknown. Resending mints a new token. The error order on verification matters and is part of the API
contract:

  unknown token      -> InvalidActivationTokenError  (401 INVALID_TOKEN)
  already active     -> AlreadyActivatedError        (401 ALREADY_ACTIVATED, email echoed)
  past expiry        -> ActivationExpiredError       (410 TOKEN_EXPIRED, email echoed)

Password reset tokens are also 32 random bytes, but only their SHA-256 digest
is stored. A database leak therefore does not hand out working reset links.

This module never sends email itself. Callers receive the raw token and
schedule the message (api/routes/v1/users.py uses BackgroundTasks), so a mail
outage can never fail registration or activation.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone

from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password
from core.db import now_iso, to_iso
from core.errors import (
    ActivationExpiredError,
    AlreadyActivatedError,
    InvalidActivationTokenError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger("immobilier.auth.activation")


def new_verification_token(ttl_seconds: int) -> tuple[str, str]:
    """Return (token, expires_at_iso) for a fresh activation link."""
    expires = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    return secrets.token_hex(32), to_iso(expires)


def _is_past(iso_value: str | None) -> bool:
    if not iso_value:
        return True
    return datetime.fromisoformat(iso_value) <= datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


def verify_email(store: UserStore, token: str) -> User:
    """Activate the account holding `token` and return the updated user."""
    user = store.get_by_verification_token(token) if token else None
    if user is None:
        raise InvalidActivationTokenError()
    if user.is_active:
        raise AlreadyActivatedError(user.email)
    if _is_past(user.verification_token_expires):
        raise ActivationExpiredError(user.email)

    store.update_user(
        user.id,
        is_active=True,
        email_verified=True,
        verification_token_expires=None,
    )
    logger.info("Account activated: %s", user.identity_key)
    return store.get_by_id(user.id)


def resend_activation(store: UserStore, email: str | None, ttl_seconds: int) -> tuple[User, str]:
    """Mint a new activation token for an inactive account.

    Returns (user, raw_token). The caller sends the email.
    """
    if not email or not email.strip():
        raise ValidationError("Email is required.")
    user = store.get_by_email(email)
    if user is None:
        raise NotFoundError("No account found for this email.")
    if user.is_active:
        raise AlreadyActivatedError(user.email)

    token, expires = new_verification_token(ttl_seconds)
    store.update_user(user.id, verification_token=token, verification_token_expires=expires)
    return user, token


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def request_password_reset(store: UserStore, email: str, ttl_seconds: int) -> tuple[User, str] | None:
    """Store a reset token digest and return (user, raw_token).

    Returns None for unknown emails; the route answers identically either way
    so the endpoint cannot be used to enumerate accounts.
    """
    user = store.get_by_email(email)
    if user is None:
        return None
    token = secrets.token_hex(32)
    expires = to_iso(datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds))
    store.update_user(user.id, reset_password_token=hash_reset_token(token), reset_password_expires=expires)
    return user, token


def reset_password(store: UserStore, token: str, new_password: str, rounds: int = 12) -> User:
    """Replace the password for the account holding a live reset token.

    Stamps password_changed_at and drops every refresh session, so all
    existing access and refresh tokens stop working.
    """
    user = store.get_by_reset_token(hash_reset_token(token))
    if user is None or _is_past(user.reset_password_expires):
        raise ValidationError("Reset link is invalid or has expired.")

    store.update_user(
        user.id,
        hashed_password=hash_password(new_password, rounds),
        password_changed_at=now_iso(),
        reset_password_token=None,
        reset_password_expires=None,
    )
    store.delete_sessions(user.id)
    logger.info("Password reset for %s", user.identity_key)
    return store.get_by_id(user.id)
