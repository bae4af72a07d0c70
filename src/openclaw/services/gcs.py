"""Helpers for interacting with Google Cloud Storage."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from google.cloud import storage
from google.oauth2 import service_account

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

_client: storage.Client | None = None
_bucket: storage.Bucket | None = None


def _load_credentials(settings: Settings) -> service_account.Credentials | None:
    credentials_path: Path | None = settings.google_application_credentials
    if credentials_path is None:
        return None

    try:
        resolved_path = Path(credentials_path).expanduser().resolve()
        if not resolved_path.exists():
            return None
        return service_account.Credentials.from_service_account_file(str(resolved_path))
    except OSError as exc:
        logger.debug(
            "Could not load GCS credentials from %s: %s", credentials_path, exc
        )
        return None


def get_client() -> storage.Client:
    """Return a cached Storage client."""

    global _client
    if _client is None:
        settings = get_settings()
        credentials = _load_credentials(settings)
        if credentials is None:
            raise RuntimeError(
                "GCS credentials not found. Please configure GOOGLE_APPLICATION_CREDENTIALS "
                "with a valid service account JSON file."
            )
        _client = storage.Client(
            project=settings.gcp_project_id or credentials.project_id,
            credentials=credentials,
        )
    return _client


def get_bucket() -> storage.Bucket:
    """Return the configured GCS bucket."""

    global _bucket
    if _bucket is None:
        _bucket = get_client().bucket(get_settings().gcs_bucket_name)
    return _bucket


def upload_bytes(blob_name: str, data: bytes, *, content_type: str) -> None:
    """Upload raw bytes to the configured bucket."""

    blob = get_bucket().blob(blob_name)
    # Atomic create: prevent overwriting an existing object
    blob.upload_from_string(
        data,
        content_type=content_type,
        if_generation_match=0,
    )


def download_text(blob_name: str) -> str:
    """Return a blob's contents decoded as UTF-8 text."""

    blob = get_bucket().blob(blob_name)
    return blob.download_as_text(encoding="utf-8")


def delete_blob(blob_name: str) -> None:
    """Delete a blob if it exists."""

    blob = get_bucket().blob(blob_name)
    blob.delete(if_generation_match=None)


def sign_get_url(blob_name: str, *, expires_delta: timedelta) -> str:
    """Generate a signed GET URL for the given blob."""

    blob = get_bucket().blob(blob_name)
    return blob.generate_signed_url(
        version="v4",
        expiration=expires_delta,
        method="GET",
    )


__all__ = [
    "delete_blob",
    "download_text",
    "get_bucket",
    "get_client",
    "sign_get_url",
    "upload_bytes",
]
