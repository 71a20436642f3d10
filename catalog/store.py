"""
catalog/store.py -- SQLAlchemy Core persistence for companies and listings.

Pattern: Repository + Data Mapper (same as auth/store.py).
CatalogStore is the repository; _row_to_company / _row_to_listing are the
mappers. Nested listing sections are JSON-encoded TEXT columns.

Business rules that live here:
  - Reference uniqueness: UNIQUE index on listings.reference. A collision is
    raised as ConflictError so the route can clean up GED uploads.
  - Corporate name uniqueness: UNIQUE index, raised as ConflictError.
  - Status transitions: _STATUS_TRANSITIONS is the single source of truth.

Layer rule: no imports from api/, auth/, ged/, or mail/.
"""

from __future__ import annotations

import json
import uuid
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from catalog.models import Company, Listing, ListingStatus
from core.db import make_engine, now_iso
from core.errors import ConflictError, ValidationError

metadata = MetaData()

_companies = Table(
    "companies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key", String(36), nullable=False, unique=True),
    Column("corporate_name", String(100), nullable=False, unique=True),
    Column("responsible_key", String(36), nullable=False, index=True),
    Column("rccm", String(100)),
    Column("description", Text),
    Column("address", Text),
    Column("phone", String(30)),
    Column("other_phone", String(30)),
    Column("logo", Text),  # JSON descriptor from GED
    Column("is_blocked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_listings = Table(
    "listings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key", String(36), nullable=False, unique=True),
    Column("reference", String(40), nullable=False, unique=True),
    Column("owner_key", String(36), nullable=False, index=True),
    Column("status", String(20), nullable=False, server_default="draft"),
    Column("title", String(200), nullable=False),
    Column("description", Text),
    Column("property_type", String(20), nullable=False),
    Column("contact", Text, nullable=False),
    Column("location", Text, nullable=False),
    Column("composition", Text, nullable=False),
    Column("transaction", Text, nullable=False),
    Column("building", Text, nullable=False),
    Column("interior_amenities", Text, nullable=False),
    Column("exterior_amenities", Text, nullable=False),
    Column("visibility", Text, nullable=False),
    Column("media", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_JSON_COLUMNS = (
    "contact",
    "location",
    "composition",
    "transaction",
    "building",
    "interior_amenities",
    "exterior_amenities",
    "visibility",
    "media",
)

# from_status -> allowed to_status values
_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    ListingStatus.DRAFT.value: frozenset({ListingStatus.ACTIVE.value, ListingStatus.WITHDRAWN.value}),
    ListingStatus.ACTIVE.value: frozenset({ListingStatus.FINISHED.value, ListingStatus.WITHDRAWN.value}),
    ListingStatus.WITHDRAWN.value: frozenset({ListingStatus.ACTIVE.value}),
    ListingStatus.FINISHED.value: frozenset(),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in _STATUS_TRANSITIONS.get(from_status, frozenset())


class CatalogStore:
    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    def corporate_name_taken(self, corporate_name: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_companies)
                .where(func.lower(_companies.c.corporate_name) == corporate_name.strip().lower())
            ).scalar()
        return (count or 0) > 0

    def create_company(self, company: Company) -> Company:
        """Insert a company and return it with key, id and timestamps filled in.

        Raises ConflictError when the corporate name is already registered.
        """
        now = now_iso()
        key = company.key or str(uuid.uuid4())
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _companies.insert().values(
                        key=key,
                        corporate_name=company.corporate_name.strip(),
                        responsible_key=company.responsible_key,
                        rccm=company.rccm,
                        description=company.description,
                        address=company.address,
                        phone=company.phone,
                        other_phone=company.other_phone,
                        logo=json.dumps(company.logo) if company.logo else None,
                        is_blocked=1 if company.is_blocked else 0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise ConflictError("A company with this name already exists.") from exc
        return self.get_company(result.inserted_primary_key[0])

    def get_company(self, company_id: int) -> Optional[Company]:
        with self.engine.connect() as conn:
            row = conn.execute(_companies.select().where(_companies.c.id == company_id)).fetchone()
        return _row_to_company(row) if row is not None else None

    def get_company_for(self, responsible_key: str) -> Optional[Company]:
        """Return the (first) company owned by a user, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _companies.select().where(_companies.c.responsible_key == responsible_key).order_by(_companies.c.id)
            ).fetchone()
        return _row_to_company(row) if row is not None else None

    def delete_companies_for(self, responsible_key: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_companies.delete().where(_companies.c.responsible_key == responsible_key))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def create_listing(self, listing: Listing) -> Listing:
        """Insert a listing and return the stored record.

        listing.reference must already be set. Raises ConflictError if it
        collides with an existing reference.
        """
        if not listing.reference:
            raise ValueError("listing.reference must be set before insert")
        now = now_iso()
        values = {col: json.dumps(getattr(listing, col)) for col in _JSON_COLUMNS}
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _listings.insert().values(
                        key=listing.key or str(uuid.uuid4()),
                        reference=listing.reference,
                        owner_key=listing.owner_key,
                        status=ListingStatus(listing.status).value,
                        title=listing.title,
                        description=listing.description,
                        property_type=listing.property_type,
                        created_at=now,
                        updated_at=now,
                        **values,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise ConflictError("A listing with this reference already exists. Please retry.") from exc
        return self.get_listing_by_id(result.inserted_primary_key[0])

    def get_listing_by_id(self, listing_id: int) -> Optional[Listing]:
        with self.engine.connect() as conn:
            row = conn.execute(_listings.select().where(_listings.c.id == listing_id)).fetchone()
        return _row_to_listing(row) if row is not None else None

    def get_listing(self, reference: str) -> Optional[Listing]:
        with self.engine.connect() as conn:
            row = conn.execute(_listings.select().where(_listings.c.reference == reference)).fetchone()
        return _row_to_listing(row) if row is not None else None

    def list_listings(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = ListingStatus.ACTIVE.value,
        property_type: Optional[str] = None,
        transaction_type: Optional[str] = None,
        owner_key: Optional[str] = None,
    ) -> tuple[list[Listing], int]:
        """Return one page of listings (newest first) and the total match count.

        Transaction type lives inside the JSON transaction column and is
        matched with SQLite's json_extract.
        """
        conditions = []
        if status is not None:
            conditions.append(_listings.c.status == status)
        if property_type is not None:
            conditions.append(_listings.c.property_type == property_type)
        if transaction_type is not None:
            conditions.append(func.json_extract(_listings.c.transaction, "$.transactionType") == transaction_type)
        if owner_key is not None:
            conditions.append(_listings.c.owner_key == owner_key)
        query = _listings.select().where(*conditions).order_by(_listings.c.created_at.desc(), _listings.c.id.desc())
        count = select(func.count()).select_from(_listings).where(*conditions)
        with self.engine.connect() as conn:
            total = conn.execute(count).scalar() or 0
            rows = conn.execute(query.limit(limit).offset((page - 1) * limit)).fetchall()
        return [_row_to_listing(r) for r in rows], total

    def update_status(self, reference: str, to_status: str) -> Listing:
        """Move a listing to a new status, enforcing _STATUS_TRANSITIONS.

        Raises ValidationError for a disallowed transition. The caller is
        responsible for the not-found and ownership checks.
        """
        listing = self.get_listing(reference)
        if listing is None:
            raise ValueError(f"unknown listing {reference!r}")
        if not can_transition(listing.status, to_status):
            raise ValidationError(f"Cannot change status from '{listing.status}' to '{to_status}'.")
        with self.engine.connect() as conn:
            conn.execute(
                _listings.update()
                .where(_listings.c.reference == reference)
                .values(status=to_status, updated_at=now_iso())
            )
            conn.commit()
        return self.get_listing(reference)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_company(row) -> Company:
    return Company(
        id=row.id,
        key=row.key,
        corporate_name=row.corporate_name,
        responsible_key=row.responsible_key,
        rccm=row.rccm,
        description=row.description,
        address=row.address,
        phone=row.phone,
        other_phone=row.other_phone,
        logo=json.loads(row.logo) if row.logo else None,
        is_blocked=bool(row.is_blocked),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_listing(row) -> Listing:
    return Listing(
        id=row.id,
        key=row.key,
        reference=row.reference,
        owner_key=row.owner_key,
        status=row.status,
        title=row.title,
        description=row.description,
        property_type=row.property_type,
        created_at=row.created_at,
        updated_at=row.updated_at,
        **{col: json.loads(getattr(row, col)) for col in _JSON_COLUMNS},
    )
