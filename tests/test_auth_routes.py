"""
tests/test_auth_routes.py -- Integration tests for the account endpoints.

Covers:
  - register: JSON and multipart, company + logo, GED logo failure, conflicts,
    self-service roles only, invalid bodies
  - login: inactive accounts, tokens in body and cookies, device label,
    throttling after five attempts
  - refresh-token rotation from body and cookie, reuse rejection
  - logout / logout-all
  - profile read, update and delete
  - change-password invalidates earlier access tokens
  - verify-email, resend-activation, forgot/reset password

Mail goes through the mocked Mailer; assertions read its call args.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from api.limiter import configure_limits, limiter
from auth.models import Role
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE
from catalog.models import Company
from core.db import to_iso
from ged.client import GedError
from tests.conftest import DESKTOP_UA, PASSWORD, auth_headers, make_user

REGISTER = "/api/v1/users/register"
LOGIN = "/api/v1/users/login"
REFRESH = "/api/v1/users/refresh-token"
PROFILE = "/api/v1/users/profile"

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}@example.com"


def _login(env, email: str, password: str = PASSWORD, **headers):
    return env.client.post(LOGIN, json={"email": email, "password": password}, headers=headers)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_json_registration_creates_inactive_account(self, env):
        email = _email("alice")
        resp = env.client.post(REGISTER, json={"name": "Alice Martin", "email": email, "password": PASSWORD})
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        user = body["data"]["user"]
        assert user["email"] == email
        assert user["role"] == "user"
        assert user["isActive"] is False
        assert user["emailVerified"] is False
        assert "hashedPassword" not in user
        assert body["data"]["company"] is None

        stored = env.users.get_by_email(email)
        assert stored.verification_token
        env.mailer.send_verification.assert_called_once_with(email, "Alice Martin", stored.verification_token)

    def test_company_registration_with_logo(self, env):
        env.ged.upload_logo.return_value = {"id": "logo-1", "url": "http://ged.test/files/logo-1"}
        email = _email("agency")
        resp = env.client.post(
            REGISTER,
            data={
                "name": "Agence Soleil",
                "email": email,
                "password": PASSWORD,
                "role": "entreprise",
                "corporateName": "Agence Soleil SARL",
                "phone": "+225 01 02 03 04",
            },
            files={"corporateLogo": ("logo.png", PNG, "image/png")},
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["user"]["role"] == "entreprise"
        company = data["company"]
        assert company["corporateName"] == "Agence Soleil SARL"
        assert company["responsibleKey"] == data["user"]["identityKey"]
        assert company["logo"]["id"] == "logo-1"

        upload, corporate_name = env.ged.upload_logo.call_args.args
        assert upload.filename == "logo.png"
        assert upload.content == PNG
        assert corporate_name == "Agence Soleil SARL"

    def test_logo_upload_failure_does_not_block_registration(self, env):
        env.ged.upload_logo.side_effect = GedError("Logo upload failed.")
        resp = env.client.post(
            REGISTER,
            data={
                "name": "Agence Lune",
                "email": _email("lune"),
                "password": PASSWORD,
                "role": "entreprise",
                "corporateName": "Agence Lune",
            },
            files={"corporateLogo": ("logo.png", PNG, "image/png")},
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["company"]["logo"] is None

    def test_logo_must_be_an_image(self, env):
        resp = env.client.post(
            REGISTER,
            data={
                "name": "Agence Texte",
                "email": _email("texte"),
                "password": PASSWORD,
                "role": "entreprise",
                "corporateName": "Agence Texte",
            },
            files={"corporateLogo": ("logo.txt", b"hello", "text/plain")},
        )
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["type"] == "file_type"
        env.ged.upload_logo.assert_not_called()

    def test_company_requires_corporate_name(self, env):
        resp = env.client.post(
            REGISTER,
            json={"name": "No Name Co", "email": _email(), "password": PASSWORD, "role": "entreprise"},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    def test_duplicate_email_is_409(self, env):
        user = make_user(env.users)
        resp = env.client.post(REGISTER, json={"name": "Copy Cat", "email": user.email.upper(), "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["code"] == "conflict"
        env.mailer.send_verification.assert_not_called()

    def test_duplicate_corporate_name_is_409(self, env):
        owner = make_user(env.users)
        env.catalog.create_company(Company(corporate_name="Immo Prestige", responsible_key=owner.identity_key))
        email = _email()
        resp = env.client.post(
            REGISTER,
            json={
                "name": "Second Prestige",
                "email": email,
                "password": PASSWORD,
                "role": "entreprise",
                "corporateName": "IMMO PRESTIGE",
            },
        )
        assert resp.status_code == 409
        assert env.users.get_by_email(email) is None

    def test_admin_role_cannot_be_self_assigned(self, env):
        resp = env.client.post(
            REGISTER,
            json={"name": "Sneaky", "email": _email(), "password": PASSWORD, "role": "admin"},
        )
        assert resp.status_code == 400
        assert [e["field"] for e in resp.json()["errors"]] == ["role"]

    def test_short_password(self, env):
        resp = env.client.post(REGISTER, json={"name": "Shorty", "email": _email(), "password": "abc"})
        assert resp.status_code == 400
        assert resp.json()["errors"][0]["field"] == "password"

    def test_invalid_json_body(self, env):
        resp = env.client.post(REGISTER, content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Request body must be valid JSON."

    def test_json_array_body(self, env):
        resp = env.client.post(REGISTER, json=[1, 2])
        assert resp.status_code == 400
        assert resp.json()["message"] == "Request body must be a JSON object."


# ---------------------------------------------------------------------------
# Login, refresh, logout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_returns_tokens_and_cookies(self, env):
        user = make_user(env.users)
        resp = _login(env, user.email, **{"User-Agent": DESKTOP_UA})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()["data"]
        tokens = data["tokens"]
        assert tokens["tokenType"] == "Bearer"
        assert tokens["expiresIn"] == 900
        assert data["user"]["identityKey"] == user.identity_key
        assert data["user"]["lastLogin"] is not None
        assert resp.cookies[ACCESS_COOKIE] == tokens["accessToken"]
        assert resp.cookies[REFRESH_COOKIE] == tokens["refreshToken"]

        session = env.users.find_session(user.id, tokens["refreshToken"])
        assert session.device == "Chrome on Windows (Desktop)"

    def test_wrong_password_and_unknown_email_look_the_same(self, env):
        user = make_user(env.users)
        wrong = _login(env, user.email, "not-the-password")
        unknown = _login(env, _email("ghost"))
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["message"] == unknown.json()["message"] == "Invalid email or password."

    def test_inactive_account(self, env):
        user = make_user(env.users, active=False)
        resp = _login(env, user.email)
        assert resp.status_code == 401
        assert "not activated" in resp.json()["message"]
        assert env.users.get_sessions(user.id) == []

    def test_missing_password_is_validation_error(self, env):
        resp = env.client.post(LOGIN, json={"email": _email()})
        assert resp.status_code == 400
        assert resp.json()["errors"] == [{"field": "password", "message": "Field required", "type": "missing"}]


@pytest.fixture
def rate_limited(env):
    configure_limits(env.settings)
    limiter.reset()
    limiter.enabled = True
    try:
        yield env
    finally:
        limiter.enabled = False
        limiter.reset()


def test_sixth_login_attempt_is_throttled(rate_limited):
    user = make_user(rate_limited.users)
    statuses = [_login(rate_limited, user.email, "not-the-password").status_code for _ in range(5)]
    assert statuses == [401] * 5

    resp = _login(rate_limited, user.email)
    assert resp.status_code == 429
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "rate_limited"
    assert 0 < int(resp.headers["Retry-After"]) <= 15 * 60


class TestRefresh:
    def test_rotation_from_body(self, env):
        user = make_user(env.users)
        first = _login(env, user.email).json()["data"]["tokens"]
        env.client.cookies.clear()

        resp = env.client.post(REFRESH, json={"refreshToken": first["refreshToken"]})
        assert resp.status_code == 200
        second = resp.json()["data"]["tokens"]
        assert second["refreshToken"] != first["refreshToken"]
        assert env.users.find_session(user.id, first["refreshToken"]) is None

    def test_rotated_token_cannot_be_replayed(self, env):
        user = make_user(env.users)
        first = _login(env, user.email).json()["data"]["tokens"]
        env.client.cookies.clear()
        env.client.post(REFRESH, json={"refreshToken": first["refreshToken"]})
        env.client.cookies.clear()

        replay = env.client.post(REFRESH, json={"refreshToken": first["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["code"] == "invalid_token"

    def test_rotation_from_cookie(self, env):
        user = make_user(env.users)
        _login(env, user.email)
        resp = env.client.post(REFRESH)
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["email"] == user.email

    def test_missing_token(self, env):
        resp = env.client.post(REFRESH, json={})
        assert resp.status_code == 401
        assert resp.json()["message"] == "Refresh token required."

    def test_access_token_is_not_a_refresh_token(self, env):
        user = make_user(env.users)
        access = _login(env, user.email).json()["data"]["tokens"]["accessToken"]
        env.client.cookies.clear()
        resp = env.client.post(REFRESH, json={"refreshToken": access})
        assert resp.status_code == 401


class TestLogout:
    def test_logout_revokes_this_device(self, env):
        user = make_user(env.users)
        tokens = _login(env, user.email).json()["data"]["tokens"]
        env.client.cookies.clear()
        headers = {"Authorization": f"Bearer {tokens['accessToken']}"}

        resp = env.client.post("/api/v1/users/logout", json={"refreshToken": tokens["refreshToken"]}, headers=headers)
        assert resp.status_code == 200
        assert env.users.find_session(user.id, tokens["refreshToken"]) is None
        assert env.client.post(REFRESH, json={"refreshToken": tokens["refreshToken"]}).status_code == 401

    def test_logout_all(self, env):
        user = make_user(env.users)
        _login(env, user.email)
        _login(env, user.email)
        env.client.cookies.clear()

        resp = env.client.post("/api/v1/users/logout-all", headers=auth_headers(env.issuer, user))
        assert resp.status_code == 200
        assert resp.json()["data"] == {"revokedSessions": 2}
        assert env.users.get_sessions(user.id) == []

    def test_logout_requires_authentication(self, env):
        assert env.client.post("/api/v1/users/logout").status_code == 401


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class TestProfile:
    def test_get_profile_with_company(self, env):
        user = make_user(env.users, role=Role.COMPANY)
        env.catalog.create_company(Company(corporate_name=f"Agence {user.id}", responsible_key=user.identity_key))
        resp = env.client.get(PROFILE, headers=auth_headers(env.issuer, user))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user"]["email"] == user.email
        assert data["company"]["corporateName"] == f"Agence {user.id}"

    def test_update_name(self, env):
        user = make_user(env.users)
        resp = env.client.put(PROFILE, json={"name": "Renamed User"}, headers=auth_headers(env.issuer, user))
        assert resp.status_code == 200
        assert resp.json()["data"]["name"] == "Renamed User"

    def test_update_to_taken_email(self, env):
        user = make_user(env.users)
        other = make_user(env.users)
        resp = env.client.put(PROFILE, json={"email": other.email}, headers=auth_headers(env.issuer, user))
        assert resp.status_code == 409

    def test_empty_update_rejected(self, env):
        user = make_user(env.users)
        resp = env.client.put(PROFILE, json={}, headers=auth_headers(env.issuer, user))
        assert resp.status_code == 400

    def test_delete_profile_removes_company_and_logo(self, env):
        user = make_user(env.users, role=Role.COMPANY)
        env.catalog.create_company(
            Company(
                corporate_name=f"Agence Close {user.id}",
                responsible_key=user.identity_key,
                logo={"id": "logo-9"},
            )
        )
        resp = env.client.delete(PROFILE, headers=auth_headers(env.issuer, user))
        assert resp.status_code == 200
        assert env.users.get_by_id(user.id) is None
        assert env.catalog.get_company_for(user.identity_key) is None
        env.ged.delete_file.assert_called_once_with("logo-9")


class TestChangePassword:
    URL = "/api/v1/users/change-password"

    def _body(self, current=PASSWORD, new="newsecret456", confirm=None):
        return {"currentPassword": current, "newPassword": new, "confirmPassword": confirm or new}

    def test_change_invalidates_existing_tokens(self, env):
        user = make_user(env.users)
        _login(env, user.email)
        env.client.cookies.clear()
        headers = auth_headers(env.issuer, user)

        resp = env.client.put(self.URL, json=self._body(), headers=headers)
        assert resp.status_code == 200
        assert env.users.get_sessions(user.id) == []

        stale = env.client.get(PROFILE, headers=headers)
        assert stale.status_code == 401
        assert "Password changed" in stale.json()["message"]

        assert _login(env, user.email).status_code == 401
        fresh = _login(env, user.email, "newsecret456")
        assert fresh.status_code == 200
        token = fresh.json()["data"]["tokens"]["accessToken"]
        env.client.cookies.clear()
        assert env.client.get(PROFILE, headers={"Authorization": f"Bearer {token}"}).status_code == 200

    def test_wrong_current_password(self, env):
        user = make_user(env.users)
        resp = env.client.put(self.URL, json=self._body(current="wrong-one"), headers=auth_headers(env.issuer, user))
        assert resp.status_code == 400
        assert resp.json()["message"] == "Current password is incorrect."

    def test_new_password_must_differ(self, env):
        user = make_user(env.users)
        resp = env.client.put(self.URL, json=self._body(new=PASSWORD), headers=auth_headers(env.issuer, user))
        assert resp.status_code == 400

    def test_confirmation_must_match(self, env):
        user = make_user(env.users)
        resp = env.client.put(
            self.URL, json=self._body(confirm="something-else"), headers=auth_headers(env.issuer, user)
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"


# ---------------------------------------------------------------------------
# Activation and password reset
# ---------------------------------------------------------------------------


class TestActivationRoutes:
    def _register(self, env) -> str:
        email = _email("pending")
        env.client.post(REGISTER, json={"name": "Pending User", "email": email, "password": PASSWORD})
        return email

    def test_verify_then_login(self, env):
        email = self._register(env)
        token = env.users.get_by_email(email).verification_token

        resp = env.client.get(f"/api/v1/users/verify-email/{token}")
        assert resp.status_code == 200
        assert resp.json()["data"]["isActive"] is True
        env.mailer.send_welcome.assert_called_once_with(email, "Pending User")
        assert _login(env, email).status_code == 200

    def test_second_click_reports_already_activated(self, env):
        email = self._register(env)
        token = env.users.get_by_email(email).verification_token
        assert env.client.get(f"/api/v1/users/verify-email/{token}").status_code == 200

        resp = env.client.get(f"/api/v1/users/verify-email/{token}")
        assert resp.status_code == 401
        body = resp.json()
        assert body["code"] == "ALREADY_ACTIVATED"
        assert body["data"] == {"email": email}

    def test_unknown_token(self, env):
        resp = env.client.get(f"/api/v1/users/verify-email/{'0' * 64}")
        assert resp.status_code == 401
        assert resp.json()["code"] == "INVALID_TOKEN"

    def test_expired_token_echoes_email(self, env):
        email = self._register(env)
        user = env.users.get_by_email(email)
        past = to_iso(datetime.now(timezone.utc) - timedelta(minutes=5))
        env.users.update_user(user.id, verification_token_expires=past)

        resp = env.client.get(f"/api/v1/users/verify-email/{user.verification_token}")
        assert resp.status_code == 410
        body = resp.json()
        assert body["code"] == "TOKEN_EXPIRED"
        assert body["data"] == {"email": email}

    def test_resend_activation(self, env):
        email = self._register(env)
        old_token = env.users.get_by_email(email).verification_token
        env.mailer.reset_mock()

        resp = env.client.post("/api/v1/users/resend-activation", json={"email": email})
        assert resp.status_code == 200
        new_token = env.users.get_by_email(email).verification_token
        assert new_token != old_token
        env.mailer.send_verification.assert_called_once_with(email, "Pending User", new_token)

    def test_resend_requires_email(self, env):
        resp = env.client.post("/api/v1/users/resend-activation", json={})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Email is required."

    def test_resend_for_active_account(self, env):
        user = make_user(env.users)
        resp = env.client.post("/api/v1/users/resend-activation", json={"email": user.email})
        assert resp.status_code == 401
        assert resp.json()["code"] == "ALREADY_ACTIVATED"

    def test_resend_for_unknown_account(self, env):
        resp = env.client.post("/api/v1/users/resend-activation", json={"email": _email("nobody")})
        assert resp.status_code == 404


class TestPasswordResetRoutes:
    def test_unknown_email_still_200(self, env):
        resp = env.client.post("/api/v1/users/forgot-password", json={"email": _email("nobody")})
        assert resp.status_code == 200
        env.mailer.send_password_reset.assert_not_called()

    def test_full_reset_flow(self, env):
        user = make_user(env.users, name="Forgetful")
        resp = env.client.post("/api/v1/users/forgot-password", json={"email": user.email})
        assert resp.status_code == 200
        to_email, name, token = env.mailer.send_password_reset.call_args.args
        assert (to_email, name) == (user.email, "Forgetful")

        reset = env.client.post(
            f"/api/v1/users/reset-password/{token}",
            json={"password": "fresh-pass-1", "confirmPassword": "fresh-pass-1"},
        )
        assert reset.status_code == 200
        assert _login(env, user.email, "fresh-pass-1").status_code == 200

        again = env.client.post(
            f"/api/v1/users/reset-password/{token}",
            json={"password": "fresh-pass-2", "confirmPassword": "fresh-pass-2"},
        )
        assert again.status_code == 400

    @pytest.mark.parametrize("password,confirm", [("short", "short"), ("long-enough", "different")])
    def test_reset_body_validation(self, env, password, confirm):
        resp = env.client.post(
            f"/api/v1/users/reset-password/{'a' * 64}",
            json={"password": password, "confirmPassword": confirm},
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"
