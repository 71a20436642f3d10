"""
api/routes/v1/listings.py -- Property listing ("annonce") endpoints.

Routes (prefix /api/v1/annonces):
  POST  /add-annonce            -- create a listing, media forwarded to the GED
  GET   ""                      -- paginated listings (public: active only)
  GET   /{reference}            -- one listing (drafts visible to owner/admin)
  PATCH /{reference}/status     -- status transition (owner or admin)

Creation pipeline, in order:
  1. Auth gate (CREATE_LISTING).
  2. Body parsing. Multipart is read with max_files=MAX_MEDIA_FILES, so a
     21st file is rejected by the form parser itself with 400, before any
     validation or upload.
  3. Field validation (api/payloads.ListingCreate), then per-file type and
     size checks.
  4. One batched GED upload. Partial success is kept: the listing stores the
     descriptors that uploaded and the response lists the failures.
  5. Insert with a fresh reference. On a reference collision the files just
     uploaded are deleted from the GED and 409 is returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.forms import (
    MEDIA_TYPES,
    Page,
    form_fields,
    form_files,
    is_multipart,
    page_params,
    read_json_object,
    read_upload,
)
from api.limiter import limiter, upload_limit
from api.models import FailedUpload, ListingOut, Pagination
from api.payloads import ListingCreate, ListingStatusUpdate
from api.responses import created, ok
from auth.dependencies import get_current_user, require_capability, try_get_current_user
from auth.models import Capability, User
from catalog.models import Listing, ListingStatus, PropertyType
from catalog.reference import generate_reference
from catalog.store import CatalogStore
from core.config import Settings
from core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ged.client import MEDIA_DOCUMENT_TYPE, GedClient, MediaUpload

logger = logging.getLogger("immobilier.api.listings")

# Auth policy:
# - POST  /add-annonce:          require_capability(CREATE_LISTING)
# - GET   "", /{reference}:      public; non-active listings need owner or MANAGE_ANY_LISTING
# - PATCH /{reference}/status:   get_current_user + owner or MANAGE_ANY_LISTING
router = APIRouter(prefix="/annonces")

MEDIA_FIELD = "medias"


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _catalog(request: Request) -> CatalogStore:
    return request.app.state.catalog_store


def _can_manage(user: Optional[User], listing: Listing) -> bool:
    if user is None:
        return False
    return listing.owner_key == user.identity_key or user.role.can(Capability.MANAGE_ANY_LISTING)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


@dataclass
class ListingSubmission:
    body: ListingCreate
    files: list[MediaUpload] = field(default_factory=list)


async def read_listing_submission(request: Request) -> ListingSubmission:
    """Parse a listing sent as JSON or as multipart with `medias` files."""
    settings = _settings(request)
    if not is_multipart(request):
        return ListingSubmission(body=ListingCreate.model_validate(await read_json_object(request)))

    form = await request.form(max_files=settings.max_media_files)
    uploads = form_files(form, MEDIA_FIELD)
    if len(uploads) > settings.max_media_files:
        raise ValidationError(f"Too many files. Maximum is {settings.max_media_files}.")
    body = ListingCreate.model_validate(form_fields(form))
    files = [await read_upload(u, MEDIA_TYPES, settings.max_upload_bytes) for u in uploads]
    return ListingSubmission(body=body, files=files)


def _file_id(descriptor: dict) -> Optional[str]:
    value = descriptor.get("id") or descriptor.get("_id")
    return str(value) if value else None


@router.post("/add-annonce", status_code=201)
@limiter.limit(upload_limit)
def add_listing(
    request: Request,
    current_user: User = Depends(require_capability(Capability.CREATE_LISTING)),
    submission: ListingSubmission = Depends(read_listing_submission),
) -> JSONResponse:
    """Create a listing in draft status and attach whatever media uploaded."""
    catalog = _catalog(request)
    ged: GedClient = request.app.state.ged
    body = submission.body

    reference = generate_reference()
    result = ged.upload_files(
        submission.files,
        {"documentType": MEDIA_DOCUMENT_TYPE, "reference": reference, "ownerKey": current_user.identity_key},
    )

    listing = Listing(
        title=body.title,
        description=body.description,
        property_type=body.property_type.value,
        owner_key=current_user.identity_key,
        reference=reference,
        media=result.uploaded,
        **body.sections(),
    )
    try:
        stored = catalog.create_listing(listing)
    except ConflictError:
        for descriptor in result.uploaded:
            file_id = _file_id(descriptor)
            if file_id:
                ged.delete_file(file_id)
        raise

    failed = [FailedUpload(filename=f.filename, code=f.code, message=f.message) for f in result.failed]
    if result.partial:
        message = f"Listing created. {len(failed)} of {len(submission.files)} file(s) failed to upload."
    elif failed:
        message = "Listing created without media: every file failed to upload."
    else:
        message = "Listing created."
    logger.info(
        "Listing %s created by %s (%d media, %d failed)",
        stored.reference,
        current_user.identity_key,
        len(result.uploaded),
        len(failed),
    )
    return created({"annonce": ListingOut.from_listing(stored), "failedUploads": failed}, message)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("")
def list_listings(
    request: Request,
    paging: Page = Depends(page_params),
    status: ListingStatus = ListingStatus.ACTIVE,
    property_type: Optional[PropertyType] = Query(None, alias="type"),
    transaction_type: Optional[Literal["vente", "location"]] = Query(None, alias="transactionType"),
    current_user: Optional[User] = Depends(try_get_current_user),
) -> JSONResponse:
    """Paginated listings, newest first.

    Anyone may read active listings. Other statuses are limited to the
    caller's own listings, or to everyone's for MANAGE_ANY_LISTING.
    """
    owner_key = None
    if status != ListingStatus.ACTIVE:
        if current_user is None:
            raise AuthorizationError("Sign in to see listings that are not active.")
        if not current_user.role.can(Capability.MANAGE_ANY_LISTING):
            owner_key = current_user.identity_key

    listings, total = _catalog(request).list_listings(
        page=paging.page,
        limit=paging.limit,
        status=status.value,
        property_type=property_type.value if property_type else None,
        transaction_type=transaction_type,
        owner_key=owner_key,
    )
    return ok(
        [ListingOut.from_listing(item) for item in listings],
        "Listings retrieved.",
        pagination=Pagination.build(total, paging.page, paging.limit),
    )


@router.get("/{reference}")
def get_listing(
    request: Request,
    reference: str,
    current_user: Optional[User] = Depends(try_get_current_user),
) -> JSONResponse:
    listing = _catalog(request).get_listing(reference)
    # Unpublished listings look missing to anyone who cannot manage them.
    if listing is None or (listing.status != ListingStatus.ACTIVE.value and not _can_manage(current_user, listing)):
        raise NotFoundError("Listing not found.")
    return ok(ListingOut.from_listing(listing), "Listing retrieved.")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


@router.patch("/{reference}/status")
def update_listing_status(
    request: Request,
    reference: str,
    body: ListingStatusUpdate,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    catalog = _catalog(request)
    listing = catalog.get_listing(reference)
    if listing is None:
        raise NotFoundError("Listing not found.")
    if not _can_manage(current_user, listing):
        raise AuthorizationError("Only the owner or an administrator can change this listing.")
    updated = catalog.update_status(reference, body.status)
    logger.info("Listing %s: %s -> %s by %s", reference, listing.status, updated.status, current_user.identity_key)
    return ok(ListingOut.from_listing(updated), "Listing status updated.")
