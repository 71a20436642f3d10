"""
auth/tokens.py -- JWT issuance/verification, password hashing, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       DIFFERENT secrets (JWT_ACCESS_SECRET / JWT_REFRESH_SECRET) and carry a
       "type" discriminator claim. Either control alone stops a refresh token
       from being replayed as an access token; together they make cross-use
       impossible without both secrets leaking.

       Verification raises, rather than returning None, because the caller
       must distinguish three outcomes: expired (client should refresh),
       invalid (client must sign in again) and wrong type. Each is a distinct
       exception class in core.errors.

       iat is emitted as a float (time.time()) so the auth gate can compare it
       strictly against password_changed_at. Whole-second iat would let a token
       issued in the same second as a password change survive it.

  Passwords: bcrypt used directly, with a tunable cost factor (BCRYPT_ROUNDS).
       authenticate_user() always runs bcrypt, against a dummy hash when the
       account does not exist, so response time does not reveal whether an
       email is registered [C1].

Layer rule: no imports from api/, catalog/, ged/, or mail/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from core.config import Settings
from core.errors import InvalidTokenError, TokenExpiredError, TokenTypeError

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("immobilier.auth")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer
    caps password length at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    # Timing equalization dummy hash [C1], one per cost factor so the decoy
    # check costs exactly what a real one would.
    return hash_password("immobilier_timing_dummy", rounds)


def authenticate_user(store: UserStore, email: str, password: str, rounds: int = 12) -> User | None:
    """Check an email/password pair with timing equalization [C1].

    Returns the User when the credentials match, None otherwise. Account
    state (active / verified) is NOT checked here -- the login route reports
    an inactive account with its own message once the password is proven.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _dummy_hash(rounds))
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# JWT issue / verify
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str | None
    expires_at: datetime


class TokenIssuer:
    """Signs and verifies access and refresh tokens for one Settings instance."""

    def __init__(self, settings: Settings) -> None:
        self._access_secret = settings.jwt_access_secret
        self._refresh_secret = settings.jwt_refresh_secret
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self.access_ttl = settings.access_token_expire_seconds
        self.refresh_ttl = settings.refresh_token_expire_seconds

    def _encode(self, identity_key: str, token_type: str, ttl: int, secret: str, jti: str | None) -> IssuedToken:
        now = time.time()
        expires_at = datetime.fromtimestamp(now, timezone.utc) + timedelta(seconds=ttl)
        payload = {
            "id": identity_key,
            "type": token_type,
            "iat": now,
            "exp": expires_at,
            "iss": self._issuer,
            "aud": self._audience,
        }
        if jti is not None:
            payload["jti"] = jti
        return IssuedToken(
            token=jwt.encode(payload, secret, algorithm=_ALGORITHM),
            jti=jti,
            expires_at=expires_at,
        )

    def issue_access_token(self, identity_key: str) -> IssuedToken:
        return self._encode(identity_key, ACCESS, self.access_ttl, self._access_secret, None)

    def issue_refresh_token(self, identity_key: str) -> IssuedToken:
        """Issue a refresh token with a unique 128-bit jti.

        The jti makes two refresh tokens minted in the same instant for the
        same user distinct, which the session table relies on.
        """
        return self._encode(identity_key, REFRESH, self.refresh_ttl, self._refresh_secret, secrets.token_hex(16))

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise InvalidTokenError() from exc
        if payload.get("type") != expected_type:
            raise TokenTypeError()
        if not isinstance(payload.get("id"), str):
            raise InvalidTokenError()
        return payload

    def verify_access_token(self, token: str) -> dict:
        """Return the claims of a valid access token.

        Raises TokenExpiredError, InvalidTokenError or TokenTypeError.
        """
        return self._decode(token, self._access_secret, ACCESS)

    def verify_refresh_token(self, token: str) -> dict:
        return self._decode(token, self._refresh_secret, REFRESH)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_token_cookies(response, access: IssuedToken, refresh: IssuedToken, settings: Settings) -> None:
    """Write both tokens as httpOnly, SameSite=strict cookies.

    max_age matches each JWT expiry so cookie and token expire together.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=access.token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.access_token_expire_seconds,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=refresh.token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
    )


def clear_token_cookies(response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, httponly=True, samesite="strict", secure=settings.secure_cookies)
