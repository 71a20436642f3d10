"""
api/payloads.py -- Request model for listing creation (POST /annonces/add-annonce).

The endpoint accepts either a JSON body or multipart/form-data (when media
files are attached). Multipart can only carry strings, so every nested
section may arrive either as a native object/array or as a JSON-encoded
string. That is handled by ONE pre-validation step, _parse_json_string,
attached to each nested field via BeforeValidator. After it runs, the value
is validated against a single schema regardless of how it was encoded.

Scalars inside the sections ("3" for a room count, "true" for a flag) are
coerced by pydantic's lax mode, which covers the form-encoded case without
per-field code.

Wire names are the public French field names of the listing API (nom,
telephone, nombreChambres, ...); Python attributes are English. Models are
populated by alias and dumped by alias.
"""

from __future__ import annotations

import json
import re
from datetime import date
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, field_validator, model_validator

from catalog.models import PropertyType

_PHONE_PATTERN = r"^[0-9+\s\-()]+$"


def _parse_json_string(value: Any) -> Any:
    """Decode a JSON string into its value; pass everything else through.

    An empty string means "not provided" and becomes None so field defaults
    apply. Malformed JSON raises ValueError, which pydantic reports as a
    normal validation error on that field.
    """
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise ValueError("must be valid JSON") from exc
    return value


JsonOr = BeforeValidator(_parse_json_string)


class _Section(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)


class Contact(_Section):
    name: str = Field(alias="nom", min_length=2, max_length=100)
    phone: str = Field(alias="telephone", min_length=8, max_length=30, pattern=_PHONE_PATTERN)
    email: EmailStr
    whatsapp: Optional[str] = Field(default=None, max_length=30)

    @field_validator("whatsapp")
    @classmethod
    def check_whatsapp(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        if not re.fullmatch(_PHONE_PATTERN, value):
            raise ValueError("invalid WhatsApp number")
        return value


class Location(_Section):
    city: Optional[str] = Field(default=None, alias="ville", max_length=100)
    district: Optional[str] = Field(default=None, alias="commune", max_length=100)
    address: Optional[str] = Field(default=None, alias="adresse", max_length=200)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class Composition(_Section):
    bedrooms: int = Field(alias="nombreChambres", ge=0)
    living_rooms: int = Field(alias="nombreSalons", ge=0)
    bathrooms: int = Field(alias="nombreSallesBain", ge=0)
    kitchens: int = Field(alias="nombreCuisine", ge=0)
    guest_toilet: bool = Field(default=False, alias="toilettesVisiteurs")
    # Derived: bedrooms + living rooms. Any client-sent value is overwritten.
    rooms: int = Field(default=0, alias="nombrePieces", ge=0)

    @model_validator(mode="after")
    def derive_rooms(self) -> "Composition":
        self.rooms = self.bedrooms + self.living_rooms
        return self


class Transaction(_Section):
    kind: Literal["vente", "location"] = Field(alias="transactionType")
    price: float = Field(alias="prix", gt=0)
    rent_period: Optional[Literal["MOIS", "ANNUEL"]] = Field(default=None, alias="periodeLoyer")
    currency: str = Field(default="FCFA", alias="devise", max_length=10)
    negotiable: bool = Field(default=False, alias="prixNegociable")
    deposit: int = Field(default=0, alias="caution", ge=0)
    advance: int = Field(default=0, alias="avance", ge=0)

    @field_validator("rent_period", mode="before")
    @classmethod
    def normalize_rent_period(cls, value: Any) -> Any:
        if value in (None, ""):
            return None
        return str(value).upper()

    @field_validator("deposit", "advance", mode="before")
    @classmethod
    def blank_is_zero(cls, value: Any) -> Any:
        return 0 if value in (None, "") else value

    @model_validator(mode="after")
    def rent_needs_period(self) -> "Transaction":
        if self.kind == "location" and self.rent_period is None:
            raise ValueError("periodeLoyer is required for a rental (MOIS or ANNUEL)")
        return self


class Building(_Section):
    year_built: Optional[int] = Field(default=None, alias="anneeConstruction", ge=1900)
    condition: Optional[Literal["neuf", "bon", "renove", "a-renover", "en-construction"]] = Field(
        default=None, alias="etatConstruction"
    )
    construction_type: Optional[Literal["traditionnel", "semi-moderne", "moderne"]] = Field(
        default=None, alias="typeConstruction"
    )

    @field_validator("condition", "construction_type", mode="before")
    @classmethod
    def blank_is_none(cls, value: Any) -> Any:
        return None if value == "" else value

    @field_validator("year_built")
    @classmethod
    def not_in_future(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value > date.today().year:
            raise ValueError("anneeConstruction cannot be in the future")
        return value


class Visibility(_Section):
    level: Literal["normal", "exclusif"] = Field(default="normal", alias="niveau")
    featured: bool = Field(default=False, alias="enVedette")
    promoted: bool = Field(default=False, alias="promouvoir")


_Amenity = Annotated[str, Field(min_length=1, max_length=100)]


class ListingCreate(BaseModel):
    """Validated body of POST /annonces/add-annonce."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    title: str = Field(min_length=10, max_length=200)
    description: str = Field(min_length=1, max_length=2500)
    property_type: PropertyType = Field(alias="type")
    contact: Annotated[Contact, JsonOr]
    composition: Annotated[Composition, JsonOr]
    transaction: Annotated[Transaction, JsonOr]
    location: Annotated[Optional[Location], JsonOr] = Field(default=None, alias="localisation")
    building: Annotated[Optional[Building], JsonOr] = Field(default=None, alias="batiment")
    interior_amenities: Annotated[Optional[list[_Amenity]], JsonOr] = Field(
        default=None, alias="equipementsInterieurs", max_length=100
    )
    exterior_amenities: Annotated[Optional[list[_Amenity]], JsonOr] = Field(
        default=None, alias="equipementsExterieurs", max_length=100
    )
    visibility: Annotated[Optional[Visibility], JsonOr] = Field(default=None, alias="visibilite")

    @model_validator(mode="after")
    def fill_defaults(self) -> "ListingCreate":
        # None after the JSON step means "absent or blank": use empty sections.
        if self.location is None:
            self.location = Location()
        if self.building is None:
            self.building = Building()
        if self.visibility is None:
            self.visibility = Visibility()
        if self.interior_amenities is None:
            self.interior_amenities = []
        if self.exterior_amenities is None:
            self.exterior_amenities = []
        return self

    def sections(self) -> dict[str, Any]:
        """Return the nested sections in wire form, ready for JSON storage."""
        return {
            "contact": self.contact.model_dump(by_alias=True),
            "location": self.location.model_dump(by_alias=True),
            "composition": self.composition.model_dump(by_alias=True),
            "transaction": self.transaction.model_dump(by_alias=True),
            "building": self.building.model_dump(by_alias=True),
            "visibility": self.visibility.model_dump(by_alias=True),
            "interior_amenities": list(self.interior_amenities),
            "exterior_amenities": list(self.exterior_amenities),
        }


class ListingStatusUpdate(BaseModel):
    status: Literal["draft", "active", "finished", "withdrawn"]
