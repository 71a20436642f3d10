"""
api/forms.py -- Reading request bodies that may be JSON or multipart/form-data.

Registration and listing creation accept both encodings, so they cannot use
FastAPI's declarative Body()/Form() parameters. Their dependencies call the
helpers here and then validate the resulting dict with one pydantic model.

Uploaded files are read fully into memory (max MAX_UPLOAD_BYTES each) and
returned as ged.client.MediaUpload, which is what the GED client forwards.

page_params() is the shared dependency for paginated list endpoints.
"""

from __future__ import annotations

from typing import Any, NamedTuple, Optional

from fastapi import Query, Request
from starlette.datastructures import FormData, UploadFile

from core.errors import ValidationError
from ged.client import MediaUpload

IMAGE_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"})
VIDEO_TYPES = frozenset({"video/mp4", "video/webm", "video/x-msvideo", "video/avi"})
MEDIA_TYPES = IMAGE_TYPES | VIDEO_TYPES


def is_multipart(request: Request) -> bool:
    return request.headers.get("content-type", "").startswith("multipart/form-data")


async def read_json_object(request: Request) -> dict[str, Any]:
    """Return the JSON body, which must be an object. Empty body -> {}."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        data = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON.") from exc
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def form_fields(form: FormData) -> dict[str, Any]:
    """Collect the text parts of a form.

    A key sent once maps to its string; a key sent several times maps to the
    list of its values. Blank values are dropped so model defaults apply.
    """
    fields: dict[str, Any] = {}
    for key in form.keys():
        values = [v for v in form.getlist(key) if isinstance(v, str) and v.strip() != ""]
        if not values:
            continue
        fields[key] = values[0] if len(values) == 1 else values
    return fields


def form_files(form: FormData, key: str) -> list[UploadFile]:
    return [v for v in form.getlist(key) if isinstance(v, UploadFile)]


async def read_upload(upload: UploadFile, allowed_types: frozenset[str], max_bytes: int) -> MediaUpload:
    """Check type and size of one uploaded file and return its content."""
    filename = upload.filename or "upload"
    content_type = (upload.content_type or "").lower()
    if content_type not in allowed_types:
        raise ValidationError(
            f"Unsupported file type for {filename}.",
            errors=[{"field": filename, "message": f"type {content_type or 'unknown'} is not allowed", "type": "file_type"}],
        )
    content = await upload.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise ValidationError(
            f"{filename} is too large.",
            errors=[{"field": filename, "message": f"max size is {max_bytes // (1024 * 1024)} MB", "type": "file_size"}],
        )
    return MediaUpload(filename=filename, content_type=content_type, content=content)


class Page(NamedTuple):
    page: int
    limit: int


def page_params(
    request: Request,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
) -> Page:
    """Pagination query parameters, sized by DEFAULT_PAGE_SIZE / MAX_PAGE_SIZE."""
    settings = request.app.state.settings
    if limit is None:
        return Page(page, settings.default_page_size)
    if limit > settings.max_page_size:
        raise ValidationError(
            "Validation failed.",
            errors=[
                {
                    "field": "limit",
                    "message": f"Input should be less than or equal to {settings.max_page_size}",
                    "type": "less_than_equal",
                }
            ],
        )
    return Page(page, limit)
