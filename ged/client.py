"""
ged/client.py -- HTTP client for the external document store (GED).

The GED is the service of record for every binary file: listing photos and
videos, company logos. This module only speaks its upload/delete contract:

  POST   {GED_API_URL}/api/upload        multipart files[] + metadata (batch)
  POST   {GED_API_URL}/api/upload-logo   multipart file + corporateName, documentType
  DELETE {GED_API_URL}/api/files/{id}

All calls carry "Authorization: Bearer <GED_API_KEY>".

Batch responses look like:
  {"success": true, "data": {"uploaded_files": [ {...descriptor...} ],
                             "errors": [ {"filename", "code", "message"} ]}}

Failure policy:
  upload_files() never raises. A transport error or an unparseable response
  marks every file as failed, so the caller can keep a listing with zero
  media and report the failures back (partial success).
  upload_logo() raises GedError; registration catches it and continues
  without a logo.
  delete_file() never raises; cleanup failures are logged.

Each GedClient owns one requests.Session so uploads reuse pooled connections.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from core.config import Settings
from core.errors import AppError

logger = logging.getLogger("immobilier.ged")

MEDIA_DOCUMENT_TYPE = "annonce_media"
LOGO_DOCUMENT_TYPE = "corporateLogo"


class GedError(AppError):
    status_code = 502
    code = "ged_unavailable"
    default_message = "Document storage service unavailable."


@dataclass(frozen=True)
class MediaUpload:
    """One file read from the multipart request, ready to forward."""

    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class UploadFailure:
    filename: str
    code: str
    message: str


@dataclass
class BatchUploadResult:
    uploaded: list[dict[str, Any]] = field(default_factory=list)
    failed: list[UploadFailure] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.uploaded) and bool(self.failed)


def _uploaded_files(body: dict) -> list[dict[str, Any]]:
    data = body.get("data")
    if isinstance(data, dict) and isinstance(data.get("uploaded_files"), list):
        return data["uploaded_files"]
    if isinstance(body.get("uploaded_files"), list):
        return body["uploaded_files"]
    return []


def _file_errors(body: dict) -> list[UploadFailure]:
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    raw = data.get("errors") or body.get("errors") or []
    failures = []
    for item in raw:
        if isinstance(item, dict):
            failures.append(
                UploadFailure(
                    filename=str(item.get("filename") or item.get("original_name") or ""),
                    code=str(item.get("code") or "GED_UPLOAD_FAILED"),
                    message=str(item.get("message") or "Upload failed."),
                )
            )
        else:
            failures.append(UploadFailure(filename="", code="GED_UPLOAD_FAILED", message=str(item)))
    return failures


class GedClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {api_key}", "Accept": "application/json"})

    @classmethod
    def from_settings(cls, settings: Settings) -> GedClient:
        return cls(settings.ged_api_url, settings.ged_api_key, settings.ged_timeout_seconds)

    # ------------------------------------------------------------------
    # Batch media upload
    # ------------------------------------------------------------------

    def upload_files(self, files: list[MediaUpload], metadata: dict[str, str]) -> BatchUploadResult:
        """Upload several files in one request and return per-file outcomes."""
        if not files:
            return BatchUploadResult()

        def all_failed(code: str, message: str) -> BatchUploadResult:
            return BatchUploadResult(failed=[UploadFailure(f.filename, code, message) for f in files])

        multipart = [("files[]", (f.filename, f.content, f.content_type)) for f in files]
        try:
            resp = self._session.post(
                f"{self.base_url}/api/upload",
                files=multipart,
                data=metadata,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("GED batch upload failed: %s", exc)
            return all_failed("GED_UNAVAILABLE", "Document storage service unavailable.")

        try:
            body = resp.json()
        except ValueError:
            logger.error("GED batch upload returned non-JSON (HTTP %d)", resp.status_code)
            return all_failed(f"GED_HTTP_{resp.status_code}", "Unexpected response from document storage.")
        if not isinstance(body, dict):
            return all_failed(f"GED_HTTP_{resp.status_code}", "Unexpected response from document storage.")

        result = BatchUploadResult(uploaded=_uploaded_files(body), failed=_file_errors(body))
        if not result.uploaded and not result.failed and not resp.ok:
            message = str(body.get("message") or "Upload rejected by document storage.")
            return all_failed(f"GED_HTTP_{resp.status_code}", message)
        if result.failed:
            logger.warning(
                "GED batch upload: %d uploaded, %d failed (%s)",
                len(result.uploaded),
                len(result.failed),
                ", ".join(f"{f.filename}:{f.code}" for f in result.failed),
            )
        return result

    # ------------------------------------------------------------------
    # Company logo
    # ------------------------------------------------------------------

    def upload_logo(self, file: MediaUpload, corporate_name: str) -> dict[str, Any]:
        """Upload a company logo and return its file descriptor.

        Raises GedError when the call fails or returns no descriptor.
        """
        try:
            resp = self._session.post(
                f"{self.base_url}/api/upload-logo",
                files={"file": (file.filename, file.content, file.content_type)},
                data={"corporateName": corporate_name, "documentType": LOGO_DOCUMENT_TYPE},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("GED logo upload failed for %r: %s", corporate_name, exc)
            raise GedError("Logo upload failed.") from exc

        uploaded = _uploaded_files(body) if isinstance(body, dict) else []
        if not uploaded:
            raise GedError("Logo upload returned no file.")
        return uploaded[0]

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete_file(self, file_id: str | int) -> bool:
        """Delete one file. Returns False (and logs) on any failure."""
        try:
            resp = self._session.delete(f"{self.base_url}/api/files/{file_id}", timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.error("GED delete failed for file %s: %s", file_id, exc)
            return False
        return True

    def close(self) -> None:
        self._session.close()
