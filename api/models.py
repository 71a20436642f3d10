"""
API request and response models for the Immobilier REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
catalog/models.py, which own the internal domain representation. Route
handlers map between the two with the from_* factory methods below.

Wire format: camelCase keys (identityKey, isActive, corporateName). Every
model derives from ApiModel, which generates camelCase aliases, accepts both
spellings on input, and is dumped with by_alias=True by api/responses.py.

Listing creation has its own module (api/payloads.py) because of its
JSON-or-string parsing rules.
"""

from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from auth.models import SELF_SERVICE_ROLES, Role, User
from catalog.models import Company, Listing

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


_Password = Annotated[str, Field(min_length=6, max_length=128)]


# ---------------------------------------------------------------------------
# Auth / account request models
# ---------------------------------------------------------------------------


class RegisterRequest(ApiModel):
    """Request body for POST /api/v1/users/register.

    corporate_* fields are only read when role is "entreprise", in which case
    corporate_name is required. The logo arrives as a separate multipart file
    part named corporateLogo, not through this model.
    """

    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: _Password
    role: Role = Role.USER
    corporate_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    rccm: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    address: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=30)
    other_phone: Optional[str] = Field(default=None, max_length=30)

    @field_validator("role")
    @classmethod
    def self_service_only(cls, value: Role) -> Role:
        if value not in SELF_SERVICE_ROLES:
            raise ValueError("role must be one of: " + ", ".join(r.value for r in SELF_SERVICE_ROLES))
        return value

    @model_validator(mode="after")
    def company_needs_name(self) -> "RegisterRequest":
        if self.role == Role.COMPANY and not self.corporate_name:
            raise ValueError("corporateName is required for the entreprise role")
        return self


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(ApiModel):
    # Optional in the body: the refreshToken cookie is used when absent.
    refresh_token: Optional[str] = None


class ProfileUpdate(ApiModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None

    @model_validator(mode="after")
    def at_least_one(self) -> "ProfileUpdate":
        if self.name is None and self.email is None:
            raise ValueError("provide at least one of name, email")
        return self


class ChangePasswordRequest(ApiModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: _Password
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("confirmPassword must match newPassword")
        return self


class ResendActivationRequest(ApiModel):
    # Presence is checked by auth.activation.resend_activation() so a missing
    # email gets the same "Email is required." message as a blank one.
    email: Optional[str] = None


class ForgotPasswordRequest(ApiModel):
    email: EmailStr


class ResetPasswordRequest(ApiModel):
    password: _Password
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.password != self.confirm_password:
            raise ValueError("confirmPassword must match password")
        return self


# ---------------------------------------------------------------------------
# Admin request models
# ---------------------------------------------------------------------------


class AdminUserUpdate(ApiModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    is_active: Optional[bool] = None
    role: Optional[Role] = None


class RoleUpdate(ApiModel):
    role: Role


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(ApiModel):
    """Public view of a user. Never carries the hash, tokens or sessions."""

    identity_key: str
    name: str
    email: str
    role: Role
    is_active: bool
    email_verified: bool
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            identity_key=user.identity_key,
            name=user.name,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
            email_verified=user.email_verified,
            last_login=user.last_login or None,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class CompanyOut(ApiModel):
    key: str
    corporate_name: str
    responsible_key: str
    rccm: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    other_phone: Optional[str] = None
    logo: Optional[dict[str, Any]] = None
    is_blocked: bool = False
    created_at: Optional[str] = None

    @classmethod
    def from_company(cls, company: Company) -> "CompanyOut":
        return cls(
            key=company.key,
            corporate_name=company.corporate_name,
            responsible_key=company.responsible_key,
            rccm=company.rccm,
            description=company.description,
            address=company.address,
            phone=company.phone,
            other_phone=company.other_phone,
            logo=company.logo,
            is_blocked=company.is_blocked,
            created_at=company.created_at,
        )


class TokensOut(ApiModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class ListingOut(BaseModel):
    """Listing as returned to clients.

    Nested sections are stored in wire form already (French keys, see
    api/payloads.py) and passed through unchanged; top-level keys are set
    explicitly so the JSON matches the listing API's field names.
    """

    model_config = ConfigDict(populate_by_name=True)

    key: str
    reference: str
    status: str
    owner_key: str = Field(serialization_alias="ownerKey")
    title: str
    description: Optional[str] = None
    property_type: str = Field(serialization_alias="type")
    contact: dict[str, Any]
    location: dict[str, Any] = Field(serialization_alias="localisation")
    composition: dict[str, Any]
    transaction: dict[str, Any]
    building: dict[str, Any] = Field(serialization_alias="batiment")
    interior_amenities: list[str] = Field(serialization_alias="equipementsInterieurs")
    exterior_amenities: list[str] = Field(serialization_alias="equipementsExterieurs")
    visibility: dict[str, Any] = Field(serialization_alias="visibilite")
    media: list[dict[str, Any]] = Field(serialization_alias="medias")
    created_at: str = Field(serialization_alias="createdAt")
    updated_at: str = Field(serialization_alias="updatedAt")

    @classmethod
    def from_listing(cls, listing: Listing) -> "ListingOut":
        return cls(
            key=listing.key,
            reference=listing.reference,
            status=listing.status,
            owner_key=listing.owner_key,
            title=listing.title,
            description=listing.description,
            property_type=listing.property_type,
            contact=listing.contact,
            location=listing.location,
            composition=listing.composition,
            transaction=listing.transaction,
            building=listing.building,
            interior_amenities=listing.interior_amenities,
            exterior_amenities=listing.exterior_amenities,
            visibility=listing.visibility,
            media=listing.media,
            created_at=listing.created_at,
            updated_at=listing.updated_at,
        )


class FailedUpload(ApiModel):
    filename: str
    code: str
    message: str


class Pagination(ApiModel):
    total: int
    page: int
    limit: int
    pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, total: int, page: int, limit: int) -> "Pagination":
        pages = (total + limit - 1) // limit if limit else 0
        return cls(total=total, page=page, limit=limit, pages=pages, has_next=page < pages, has_prev=page > 1)


class HealthResponse(ApiModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
