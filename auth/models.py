"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container). Mirrors the approach in
catalog/models.py -- dataclasses own domain shape; stores and routes do the
work. The only behaviour here is the role -> capability mapping, which is
data expressed as code.

Layer rule: no imports from api/, catalog/, ged/, or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Capability(str, Enum):
    """Fine-grained permissions checked by auth.dependencies.require_capability()."""

    MANAGE_PROFILE = "manage_profile"
    CREATE_LISTING = "create_listing"
    MANAGE_ANY_LISTING = "manage_any_listing"
    MANAGE_USERS = "manage_users"


class Role(str, Enum):
    USER = "user"
    CLIENT = "client"
    COMPANY = "entreprise"
    ADMIN = "admin"

    @property
    def capabilities(self) -> frozenset[Capability]:
        return _ROLE_CAPABILITIES[self]

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


_BASE = frozenset({Capability.MANAGE_PROFILE, Capability.CREATE_LISTING})

_ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.USER: _BASE,
    Role.CLIENT: _BASE,
    Role.COMPANY: _BASE,
    Role.ADMIN: frozenset(Capability),
}

# Roles a visitor may pick on the public registration form. Admins are
# promoted by another admin through PATCH /users/{key}/role.
SELF_SERVICE_ROLES = (Role.USER, Role.CLIENT, Role.COMPANY)


@dataclass
class User:
    """A registered account.

    identity_key is the public, immutable identifier (uuid4). It is the value
    carried in token claims and used in admin URLs. The integer id is the
    storage primary key and never leaves the process.

    password_changed_at is compared against the access token's iat claim by
    the auth gate: any token issued before the last password change is stale.
    """

    identity_key: str
    name: str
    email: str
    role: Role = Role.USER
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = False
    email_verified: bool = False
    last_login: str | None = None
    password_changed_at: str | None = None
    verification_token: str | None = None
    verification_token_expires: str | None = None
    reset_password_token: str | None = None  # sha256 of the emailed token
    reset_password_expires: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class RefreshSession:
    """One signed-in device: a refresh token plus where it was issued.

    The list of sessions per user is capped (MAX_SESSIONS, default 5). When a
    new session would exceed the cap, the oldest by created_at are evicted.
    """

    user_id: int
    token: str
    jti: str
    expires_at: str
    device: str = "Unknown Device"
    ip: str | None = None
    id: int | None = None
    created_at: str | None = None
