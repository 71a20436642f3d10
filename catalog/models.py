"""
catalog/models.py -- Domain dataclasses for companies and property listings.

These are pure data containers. Business rules (status transitions, reference
uniqueness) live in catalog/store.py and catalog/reference.py.

The nested listing sections (contact, location, composition, transaction,
building, visibility) are kept as plain dicts here: they are validated by the
API models on the way in and stored as JSON columns, so a second set of
dataclasses would only duplicate api/payloads.py.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ListingStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    FINISHED = "finished"
    WITHDRAWN = "withdrawn"


class PropertyType(str, Enum):
    APARTMENT = "appartement"
    VILLA = "villa"
    STUDIO = "studio"
    OFFICE = "bureau"


@dataclass
class Company:
    """An agency profile owned by the user who registered it.

    logo is the descriptor returned by the GED logo upload (original name,
    filename, size, MIME type, path, url), or None when no logo was sent or
    the upload failed.
    """

    corporate_name: str
    responsible_key: str  # identity_key of the owning user
    key: str = ""
    rccm: Optional[str] = None  # trade register number
    description: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    other_phone: Optional[str] = None
    logo: Optional[dict[str, Any]] = None
    is_blocked: bool = False
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Listing:
    """A property advert ("annonce").

    reference is the public, human-readable identifier (REF-<ts>-<suffix>).
    media holds the GED descriptors of every file that uploaded successfully.
    """

    title: str
    property_type: str
    owner_key: str
    reference: str = ""
    key: str = ""
    status: str = ListingStatus.DRAFT.value
    description: Optional[str] = None
    contact: dict[str, Any] = field(default_factory=dict)
    location: dict[str, Any] = field(default_factory=dict)
    composition: dict[str, Any] = field(default_factory=dict)
    transaction: dict[str, Any] = field(default_factory=dict)
    building: dict[str, Any] = field(default_factory=dict)
    interior_amenities: list[str] = field(default_factory=list)
    exterior_amenities: list[str] = field(default_factory=list)
    visibility: dict[str, Any] = field(default_factory=dict)
    media: list[dict[str, Any]] = field(default_factory=list)
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
