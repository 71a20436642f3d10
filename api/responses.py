"""
api/responses.py -- The uniform JSON response envelope.

Every response body, success or error, has the same top-level shape:

    {"success": bool, "message": str, "data"?: any, "errors"?: [...],
     "pagination"?: {...}, "code"?: str, "timestamp": ISO 8601}

"code" is present on errors only (machine-readable, from core.errors).
Route handlers build successes with ok()/created(); the exception handlers
in api/main.py build errors with fail(). Pydantic models inside data are
dumped with by_alias=True, so the wire format is camelCase.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.models import Pagination


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_wire(value: Any) -> Any:
    """Recursively dump pydantic models (by alias) inside dicts and lists."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return {k: to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    return value


def envelope(
    success: bool,
    message: str,
    *,
    data: Any = None,
    errors: list[Any] | None = None,
    pagination: Pagination | None = None,
    code: str | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        body["data"] = to_wire(data)
    if errors:
        body["errors"] = to_wire(errors)
    if pagination is not None:
        body["pagination"] = to_wire(pagination)
    if code is not None:
        body["code"] = code
    body["timestamp"] = _timestamp()
    return body


def ok(
    data: Any = None,
    message: str = "Success",
    *,
    status_code: int = 200,
    pagination: Pagination | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=envelope(True, message, data=data, pagination=pagination),
    )


def created(data: Any = None, message: str = "Resource created") -> JSONResponse:
    return ok(data, message, status_code=201)


def fail(
    status_code: int,
    message: str,
    code: str,
    *,
    errors: list[Any] | None = None,
    data: Any = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=envelope(False, message, data=data, errors=errors, code=code),
    )


def validation_errors(raw_errors: list[dict]) -> list[dict[str, str]]:
    """Flatten pydantic error dicts into [{field, message, type}].

    The location prefix FastAPI adds ("body", "query", "path") is dropped so
    the field reads as the client sent it, e.g. "contact.telephone".
    """
    formatted = []
    for err in raw_errors:
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header", "cookie"):
            loc = loc[1:]
        formatted.append(
            {
                "field": ".".join(loc) or "body",
                "message": str(err.get("msg", "Invalid value")),
                "type": str(err.get("type", "value_error")),
            }
        )
    return formatted
