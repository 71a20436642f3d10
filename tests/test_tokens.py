"""Unit tests for auth/tokens.py -- bcrypt hashing and JWT issue/verify.

Covers:
  - hash never equals plaintext; verify only accepts the original
  - access/refresh round trip of identity key and type
  - cross-use rejection (access as refresh and the reverse)
  - expired, foreign-secret and wrong-audience tokens
  - authenticate_user() for unknown email, wrong and right password
  - cookie helpers set httpOnly/SameSite=strict cookies
"""

import time

import pytest
from fastapi.responses import JSONResponse
from jose import jwt

from auth.models import Role
from auth.store import UserStore
from auth.tokens import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    TokenIssuer,
    authenticate_user,
    clear_token_cookies,
    hash_password,
    set_token_cookies,
    verify_password,
)
from core.errors import InvalidTokenError, TokenExpiredError, TokenTypeError
from tests.conftest import PASSWORD, make_settings, make_user

KEY = "5b0c0e9e-4c1f-4a57-9f4b-1f6f3c0d2a11"


@pytest.fixture
def issuer():
    return TokenIssuer(make_settings())


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


class TestPasswordHashing:
    def test_hash_is_not_plaintext(self):
        hashed = hash_password("hunter22", rounds=4)
        assert hashed != "hunter22"
        assert hashed.startswith("$2")

    def test_verify_accepts_only_original(self):
        hashed = hash_password("hunter22", rounds=4)
        assert verify_password("hunter22", hashed)
        assert not verify_password("hunter23", hashed)

    def test_verify_garbage_hash_is_false(self):
        assert not verify_password("hunter22", "not-a-bcrypt-hash")

    def test_same_password_hashes_differ(self):
        assert hash_password("hunter22", rounds=4) != hash_password("hunter22", rounds=4)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------


class TestTokenIssuer:
    def test_access_round_trip(self, issuer):
        claims = issuer.verify_access_token(issuer.issue_access_token(KEY).token)
        assert claims["id"] == KEY
        assert claims["type"] == "access"
        assert claims["iss"] == "immobilier-api"
        assert claims["aud"] == "immobilier-client"
        assert isinstance(claims["iat"], float)

    def test_refresh_round_trip_has_jti(self, issuer):
        issued = issuer.issue_refresh_token(KEY)
        claims = issuer.verify_refresh_token(issued.token)
        assert claims["id"] == KEY
        assert claims["type"] == "refresh"
        assert claims["jti"] == issued.jti
        assert len(issued.jti) == 32

    def test_refresh_tokens_are_unique(self, issuer):
        assert issuer.issue_refresh_token(KEY).token != issuer.issue_refresh_token(KEY).token

    def test_access_token_rejected_as_refresh(self, issuer):
        # Signed with the access secret, so the refresh secret fails first.
        with pytest.raises(InvalidTokenError):
            issuer.verify_refresh_token(issuer.issue_access_token(KEY).token)

    def test_refresh_token_rejected_as_access(self, issuer):
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(issuer.issue_refresh_token(KEY).token)

    def test_type_claim_checked_even_with_right_secret(self, issuer):
        settings = make_settings()
        forged = jwt.encode(
            {
                "id": KEY,
                "type": "refresh",
                "iat": time.time(),
                "exp": int(time.time()) + 60,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
            },
            settings.jwt_access_secret,
            algorithm="HS256",
        )
        with pytest.raises(TokenTypeError):
            issuer.verify_access_token(forged)

    def test_expired_token(self):
        expired_issuer = TokenIssuer(make_settings(access_token_expire_seconds=-10))
        token = expired_issuer.issue_access_token(KEY).token
        with pytest.raises(TokenExpiredError):
            expired_issuer.verify_access_token(token)

    def test_expired_is_not_invalid(self):
        # Clients branch on the code: expired means "refresh", invalid means "sign in".
        assert not issubclass(TokenExpiredError, InvalidTokenError)

    def test_foreign_secret_rejected(self, issuer):
        other = TokenIssuer(
            make_settings(
                jwt_access_secret="another-access-secret-0123456789abcdef",
                jwt_refresh_secret="another-refresh-secret-0123456789abcde",
            )
        )
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(other.issue_access_token(KEY).token)

    def test_wrong_audience_rejected(self, issuer):
        other = TokenIssuer(make_settings(jwt_audience="someone-else"))
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(other.issue_access_token(KEY).token)

    def test_malformed_token(self, issuer):
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token("not.a.jwt")


# ---------------------------------------------------------------------------
# authenticate_user
# ---------------------------------------------------------------------------


class TestAuthenticateUser:
    @pytest.fixture
    def store(self):
        s = UserStore("sqlite:///:memory:")
        yield s
        s.close()

    def test_unknown_email(self, store):
        assert authenticate_user(store, "nobody@example.com", PASSWORD, rounds=4) is None

    def test_wrong_password(self, store):
        make_user(store, email="alice@example.com")
        assert authenticate_user(store, "alice@example.com", "wrong-password", rounds=4) is None

    def test_right_password_case_insensitive_email(self, store):
        user = make_user(store, email="alice@example.com", role=Role.CLIENT)
        found = authenticate_user(store, "Alice@Example.com", PASSWORD, rounds=4)
        assert found is not None
        assert found.identity_key == user.identity_key

    def test_inactive_user_still_authenticates(self, store):
        make_user(store, email="bob@example.com", active=False)
        found = authenticate_user(store, "bob@example.com", PASSWORD, rounds=4)
        assert found is not None and not found.is_active


# ---------------------------------------------------------------------------
# Cookies
# ---------------------------------------------------------------------------


def _set_cookie_headers(response) -> list[str]:
    return [v.decode() for k, v in response.raw_headers if k == b"set-cookie"]


def test_set_token_cookies(issuer):
    settings = make_settings()
    response = JSONResponse({})
    set_token_cookies(response, issuer.issue_access_token(KEY), issuer.issue_refresh_token(KEY), settings)
    cookies = _set_cookie_headers(response)
    access = next(c for c in cookies if c.startswith(f"{ACCESS_COOKIE}="))
    refresh = next(c for c in cookies if c.startswith(f"{REFRESH_COOKIE}="))
    for cookie in (access, refresh):
        assert "HttpOnly" in cookie
        assert "SameSite=strict" in cookie
    assert "Max-Age=900" in access
    assert f"Max-Age={7 * 24 * 3600}" in refresh


def test_clear_token_cookies():
    response = JSONResponse({})
    clear_token_cookies(response, make_settings())
    cookies = _set_cookie_headers(response)
    assert any(c.startswith(f"{ACCESS_COOKIE}=") and "Max-Age=0" in c for c in cookies)
    assert any(c.startswith(f"{REFRESH_COOKIE}=") and "Max-Age=0" in c for c in cookies)
