"""
api/routes/v1/users.py -- Account, session and user administration endpoints.

Routes (prefix /api/v1/users):
  POST   /register                 -- create an inactive account (+ company for role entreprise)
  POST   /login                    -- password login; tokens in body and cookies
  POST   /refresh-token            -- rotate a refresh token into a new pair
  POST   /logout                   -- revoke this device's refresh token
  POST   /logout-all               -- revoke every session of the account
  GET    /profile                  -- current user (+ company)
  PUT    /profile                  -- update name / email
  PUT    /change-password          -- new password; all sessions dropped
  DELETE /profile                  -- delete own account
  GET    /verify-email/{token}     -- activate an account
  POST   /resend-activation        -- mint and email a new activation link
  POST   /forgot-password          -- email a reset link (always 200)
  POST   /reset-password/{token}   -- set a new password from a reset link
  GET    ""                        -- admin: paginated user list
  GET    /stats                    -- admin: account counters
  GET    /{identity_key}           -- admin: one user
  PUT    /{identity_key}           -- admin: update a user
  DELETE /{identity_key}           -- admin: delete a user
  PATCH  /{identity_key}/toggle-status
  PATCH  /{identity_key}/role

Security:
  Login, register, resend-activation and forgot-password share the strict
  auth rate limit. authenticate_user() provides timing equalization; never
  inline get_by_email() + verify_password().
  Cache-Control: no-store on every response carrying tokens.
  Admins cannot deactivate, demote or delete their own account.

Email is scheduled with BackgroundTasks through mail.mailer.send_safely, so a
mail outage never fails the request that triggered it.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.forms import (
    IMAGE_TYPES,
    Page,
    form_fields,
    form_files,
    is_multipart,
    page_params,
    read_json_object,
    read_upload,
)
from api.limiter import auth_limit, limiter
from api.models import (
    AdminUserUpdate,
    ChangePasswordRequest,
    CompanyOut,
    ForgotPasswordRequest,
    LoginRequest,
    Pagination,
    ProfileUpdate,
    RefreshRequest,
    RegisterRequest,
    ResendActivationRequest,
    ResetPasswordRequest,
    RoleUpdate,
    TokensOut,
    UserOut,
)
from api.responses import created, ok
from auth.activation import (
    new_verification_token,
    request_password_reset,
    resend_activation,
    reset_password,
    verify_email,
)
from auth.dependencies import get_current_user, require_capability
from auth.models import Capability, Role, User
from auth.sessions import TokenPair, open_session, revoke_all_sessions, revoke_session, rotate_session
from auth.store import UserStore
from auth.tokens import (
    REFRESH_COOKIE,
    authenticate_user,
    clear_token_cookies,
    hash_password,
    set_token_cookies,
    verify_password,
)
from catalog.models import Company
from catalog.store import CatalogStore
from core.config import Settings
from core.db import now_iso
from core.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from ged.client import GedClient, GedError, MediaUpload
from mail.mailer import Mailer, send_safely

logger = logging.getLogger("immobilier.api.users")

# Auth policy:
# - register, login, refresh-token, verify-email, resend-activation,
#   forgot-password, reset-password: public
# - logout, logout-all, profile, change-password: get_current_user
# - "", stats, /{identity_key}...: require_capability(MANAGE_USERS)
router = APIRouter(prefix="/users")

_require_admin = require_capability(Capability.MANAGE_USERS)


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _users(request: Request) -> UserStore:
    return request.app.state.user_store


def _catalog(request: Request) -> CatalogStore:
    return request.app.state.catalog_store


def _mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"
    return response


def _session_response(request: Request, user: User, pair: TokenPair, message: str) -> JSONResponse:
    """Build the login/refresh response: tokens in the body and as cookies."""
    settings = _settings(request)
    tokens = TokensOut(
        access_token=pair.access.token,
        refresh_token=pair.refresh.token,
        expires_in=settings.access_token_expire_seconds,
    )
    response = ok({"user": UserOut.from_user(user), "tokens": tokens}, message)
    set_token_cookies(response, pair.access, pair.refresh, settings)
    return _no_store(response)


def _delete_account(request: Request, user: User) -> None:
    """Remove a user, its sessions, its companies and their GED logos."""
    catalog = _catalog(request)
    company = catalog.get_company_for(user.identity_key)
    if company is not None and company.logo and company.logo.get("id"):
        ged: GedClient = request.app.state.ged
        ged.delete_file(company.logo["id"])
    catalog.delete_companies_for(user.identity_key)
    _users(request).delete_user(user.id)
    logger.info("Account deleted: %s", user.identity_key)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@dataclass
class Registration:
    body: RegisterRequest
    logo: Optional[MediaUpload] = None


async def read_registration(request: Request) -> Registration:
    """Parse a registration sent as JSON or as multipart with a corporateLogo file."""
    if not is_multipart(request):
        return Registration(body=RegisterRequest.model_validate(await read_json_object(request)))

    form = await request.form(max_files=1)
    body = RegisterRequest.model_validate(form_fields(form))
    logo = None
    files = form_files(form, "corporateLogo")
    if files:
        logo = await read_upload(files[0], IMAGE_TYPES, _settings(request).max_upload_bytes)
    return Registration(body=body, logo=logo)


@router.post("/register", status_code=201)
@limiter.limit(auth_limit)
def register(
    request: Request,
    background_tasks: BackgroundTasks,
    registration: Registration = Depends(read_registration),
) -> JSONResponse:
    """Create an inactive account and email its activation link.

    For role "entreprise" a company profile is created too. A logo that fails
    to upload does not fail registration; the company is created without it.
    """
    settings = _settings(request)
    store = _users(request)
    catalog = _catalog(request)
    body = registration.body

    if store.email_taken(body.email):
        raise ConflictError("An account with this email already exists.")
    if body.role == Role.COMPANY and catalog.corporate_name_taken(body.corporate_name):
        raise ConflictError("A company with this name already exists.")

    token, expires = new_verification_token(settings.activation_token_ttl_seconds)
    user = User(
        identity_key=str(uuid.uuid4()),
        name=body.name,
        email=body.email,
        role=body.role,
        hashed_password=hash_password(body.password, settings.bcrypt_rounds),
        is_active=False,
        email_verified=False,
        verification_token=token,
        verification_token_expires=expires,
    )
    user = store.get_by_id(store.create_user(user))

    company = None
    if body.role == Role.COMPANY:
        logo = None
        if registration.logo is not None:
            try:
                logo = request.app.state.ged.upload_logo(registration.logo, body.corporate_name)
            except GedError as exc:
                logger.warning("Registering %s without logo: %s", body.corporate_name, exc.message)
        try:
            company = catalog.create_company(
                Company(
                    corporate_name=body.corporate_name,
                    responsible_key=user.identity_key,
                    rccm=body.rccm,
                    description=body.description,
                    address=body.address,
                    phone=body.phone,
                    other_phone=body.other_phone,
                    logo=logo,
                )
            )
        except ConflictError:
            # Lost a race on the corporate name: undo the account.
            store.delete_user(user.id)
            if logo and logo.get("id"):
                request.app.state.ged.delete_file(logo["id"])
            raise

    background_tasks.add_task(send_safely, _mailer(request).send_verification, user.email, user.name, token)
    logger.info("Registered %s (%s)", user.identity_key, user.role.value)
    return created(
        {"user": UserOut.from_user(user), "company": CompanyOut.from_company(company) if company else None},
        "Registration successful. Check your email to activate your account.",
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/login")
@limiter.limit(auth_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; open a session for this device.

    Wrong email and wrong password get the same message so the endpoint does
    not reveal which accounts exist. The inactive-account message is only
    given once the password has been proven.
    """
    settings = _settings(request)
    store = _users(request)
    user = authenticate_user(store, body.email, body.password, settings.bcrypt_rounds)
    if user is None:
        raise AuthenticationError("Invalid email or password.")
    if not user.is_active:
        raise AuthenticationError("Account is not activated. Check your email for the activation link.")

    pair = open_session(store, request.app.state.token_issuer, user, request, settings.max_sessions)
    store.update_last_login(user.id)
    return _session_response(request, store.get_by_id(user.id), pair, "Login successful.")


@router.post("/refresh-token")
def refresh_token(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token (body or cookie) for a new access/refresh pair."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise AuthenticationError("Refresh token required.")
    settings = _settings(request)
    user, pair = rotate_session(
        _users(request), request.app.state.token_issuer, token, request, settings.max_sessions
    )
    return _session_response(request, user, pair, "Token refreshed.")


@router.post("/logout")
def logout(
    request: Request,
    body: Optional[RefreshRequest] = None,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Revoke this device's refresh token and clear the cookies."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    revoke_session(_users(request), current_user, token)
    response = ok(message="Logged out.")
    clear_token_cookies(response, _settings(request))
    return response


@router.post("/logout-all")
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    count = revoke_all_sessions(_users(request), current_user)
    response = ok({"revokedSessions": count}, "Logged out from all devices.")
    clear_token_cookies(response, _settings(request))
    return response


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@router.get("/profile")
def get_profile(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    company = _catalog(request).get_company_for(current_user.identity_key)
    return ok(
        {"user": UserOut.from_user(current_user), "company": CompanyOut.from_company(company) if company else None},
        "Profile retrieved.",
    )


@router.put("/profile")
def update_profile(
    request: Request,
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    store = _users(request)
    fields = body.model_dump(exclude_none=True)
    if "email" in fields and store.email_taken(fields["email"], exclude_user_id=current_user.id):
        raise ConflictError("An account with this email already exists.")
    store.update_user(current_user.id, **fields)
    return ok(UserOut.from_user(store.get_by_id(current_user.id)), "Profile updated.")


@router.put("/change-password")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Replace the password, then drop every session and clear the cookies.

    password_changed_at makes the gate reject all access tokens issued before
    this call, including the one used to make it.
    """
    settings = _settings(request)
    store = _users(request)
    if not verify_password(body.current_password, current_user.hashed_password or ""):
        raise ValidationError("Current password is incorrect.")
    if body.new_password == body.current_password:
        raise ValidationError("New password must be different from the current password.")

    store.update_user(
        current_user.id,
        hashed_password=hash_password(body.new_password, settings.bcrypt_rounds),
        password_changed_at=now_iso(),
    )
    revoke_all_sessions(store, current_user)
    response = ok(message="Password changed. Please sign in again.")
    clear_token_cookies(response, settings)
    return response


@router.delete("/profile")
def delete_profile(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    _delete_account(request, current_user)
    response = ok(message="Account deleted.")
    clear_token_cookies(response, _settings(request))
    return response


# ---------------------------------------------------------------------------
# Activation and password reset
# ---------------------------------------------------------------------------


@router.get("/verify-email/{token}")
def verify_email_route(request: Request, token: str, background_tasks: BackgroundTasks) -> JSONResponse:
    user = verify_email(_users(request), token)
    background_tasks.add_task(send_safely, _mailer(request).send_welcome, user.email, user.name)
    return ok(UserOut.from_user(user), "Account activated. You can now sign in.")


@router.post("/resend-activation")
@limiter.limit(auth_limit)
def resend_activation_route(
    request: Request,
    body: ResendActivationRequest,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    settings = _settings(request)
    user, token = resend_activation(_users(request), body.email, settings.activation_token_ttl_seconds)
    background_tasks.add_task(send_safely, _mailer(request).send_verification, user.email, user.name, token)
    return ok({"email": user.email}, "A new activation link has been sent.")


@router.post("/forgot-password")
@limiter.limit(auth_limit)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    """Email a reset link. Answers the same way whether or not the account exists."""
    settings = _settings(request)
    issued = request_password_reset(_users(request), body.email, settings.reset_token_ttl_seconds)
    if issued is not None:
        user, token = issued
        background_tasks.add_task(send_safely, _mailer(request).send_password_reset, user.email, user.name, token)
    return ok(message="If an account exists for this email, a reset link has been sent.")


@router.post("/reset-password/{token}")
def reset_password_route(request: Request, token: str, body: ResetPasswordRequest) -> JSONResponse:
    reset_password(_users(request), token, body.password, _settings(request).bcrypt_rounds)
    return ok(message="Password reset. You can now sign in with your new password.")


# ---------------------------------------------------------------------------
# Administration (MANAGE_USERS)
#
# Declared last: "/{identity_key}" would otherwise shadow "/profile".
# ---------------------------------------------------------------------------


def _get_user_or_404(store: UserStore, identity_key: str) -> User:
    user = store.get_by_identity_key(identity_key)
    if user is None:
        raise NotFoundError("User not found.")
    return user


@router.get("")
def list_users(
    request: Request,
    paging: Page = Depends(page_params),
    role: Optional[Role] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    search: Optional[str] = Query(None, max_length=100),
    admin: User = Depends(_require_admin),
) -> JSONResponse:
    users, total = _users(request).list_users(
        page=paging.page, limit=paging.limit, role=role, is_active=is_active, search=search
    )
    return ok(
        [UserOut.from_user(u) for u in users],
        "Users retrieved.",
        pagination=Pagination.build(total, paging.page, paging.limit),
    )


@router.get("/stats")
def user_stats(request: Request, admin: User = Depends(_require_admin)) -> JSONResponse:
    stats = _users(request).stats()
    return ok(
        {
            "total": stats["total"],
            "active": stats["active"],
            "inactive": stats["inactive"],
            "verified": stats["verified"],
            "byRole": stats["by_role"],
        },
        "User statistics retrieved.",
    )


@router.get("/{identity_key}")
def get_user(request: Request, identity_key: str, admin: User = Depends(_require_admin)) -> JSONResponse:
    return ok(UserOut.from_user(_get_user_or_404(_users(request), identity_key)), "User retrieved.")


@router.put("/{identity_key}")
def update_user(
    request: Request,
    identity_key: str,
    body: AdminUserUpdate,
    admin: User = Depends(_require_admin),
) -> JSONResponse:
    store = _users(request)
    user = _get_user_or_404(store, identity_key)
    fields = body.model_dump(exclude_none=True)
    if not fields:
        raise ValidationError("Nothing to update.")
    if user.id == admin.id and (fields.get("is_active") is False or fields.get("role", Role.ADMIN) != Role.ADMIN):
        raise ValidationError("You cannot deactivate or demote your own account.")
    if "email" in fields and store.email_taken(fields["email"], exclude_user_id=user.id):
        raise ConflictError("An account with this email already exists.")

    store.update_user(user.id, **fields)
    if fields.get("is_active") is False:
        revoke_all_sessions(store, user)
    logger.info("Admin %s updated %s: %s", admin.identity_key, identity_key, sorted(fields))
    return ok(UserOut.from_user(store.get_by_id(user.id)), "User updated.")


@router.delete("/{identity_key}")
def delete_user(request: Request, identity_key: str, admin: User = Depends(_require_admin)) -> JSONResponse:
    user = _get_user_or_404(_users(request), identity_key)
    if user.id == admin.id:
        raise ValidationError("You cannot delete your own account from the admin API.")
    _delete_account(request, user)
    return ok(message="User deleted.")


@router.patch("/{identity_key}/toggle-status")
def toggle_status(request: Request, identity_key: str, admin: User = Depends(_require_admin)) -> JSONResponse:
    store = _users(request)
    user = _get_user_or_404(store, identity_key)
    if user.id == admin.id:
        raise ValidationError("You cannot deactivate your own account.")
    store.update_user(user.id, is_active=not user.is_active)
    if user.is_active:
        revoke_all_sessions(store, user)
    updated = store.get_by_id(user.id)
    return ok(UserOut.from_user(updated), "User activated." if updated.is_active else "User deactivated.")


@router.patch("/{identity_key}/role")
def change_role(
    request: Request,
    identity_key: str,
    body: RoleUpdate,
    admin: User = Depends(_require_admin),
) -> JSONResponse:
    store = _users(request)
    user = _get_user_or_404(store, identity_key)
    if user.id == admin.id and body.role != Role.ADMIN:
        raise ValidationError("You cannot demote your own account.")
    store.update_user(user.id, role=body.role)
    return ok(UserOut.from_user(store.get_by_id(user.id)), "Role updated.")
