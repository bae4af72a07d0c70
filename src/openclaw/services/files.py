"""Attachment blob storage used by the chat pipeline and upload routes."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import timedelta
from pathlib import PurePosixPath
from typing import Protocol
from uuid import uuid4

from . import gcs

logger = logging.getLogger(__name__)


ALLOWED_ATTACHMENT_MIME_TYPES: frozenset[str] = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/svg+xml",
        "application/pdf",
        "text/plain",
        "text/csv",
        "text/markdown",
        "application/json",
    }
)

_extension_pattern = re.compile(r"[^A-Za-z0-9]+")


class AttachmentError(RuntimeError):
    """Base error raised for attachment failures."""


class UnsupportedAttachmentType(AttachmentError):
    """Raised when an unsupported file type is uploaded."""


class AttachmentTooLarge(AttachmentError):
    """Raised when an uploaded file exceeds the configured limit."""


def is_allowed_mime_type(mime_type: str) -> bool:
    return mime_type in ALLOWED_ATTACHMENT_MIME_TYPES or mime_type.startswith("image/")


def is_image(mime_type: str) -> bool:
    return mime_type.lower().startswith("image/")


def make_storage_key(user_id: str, task_id: str, file_id: str, file_name: str) -> str:
    """Return the blob name for an attachment scoped by user and task."""

    _, _, suffix = file_name.rpartition(".")
    extension = _extension_pattern.sub("", suffix) if "." in file_name else ""
    return str(
        PurePosixPath("attachments")
        / user_id
        / task_id
        / f"{file_id}.{extension or 'bin'}"
    )


def is_owned_storage_key(
    storage_key: str, user_id: str, task_id: str | None = None
) -> bool:
    """Return whether ``storage_key`` was issued to ``user_id`` (and ``task_id``)."""

    parts = PurePosixPath(storage_key).parts
    if len(parts) != 4 or ".." in parts:
        return False
    if parts[0] != "attachments" or parts[1] != user_id:
        return False
    return task_id is None or parts[2] == task_id


class FileStore(Protocol):
    async def get_text_content(self, storage_key: str) -> str:
        ...

    async def get_signed_url(self, storage_key: str) -> str:
        ...


class GcsFileStore:
    """Async facade over the blocking Google Cloud Storage client."""

    def __init__(self, *, signed_url_ttl: timedelta, max_size_bytes: int) -> None:
        self._ttl = signed_url_ttl
        self._max_size_bytes = max_size_bytes

    async def get_text_content(self, storage_key: str) -> str:
        return await asyncio.to_thread(gcs.download_text, storage_key)

    async def get_signed_url(self, storage_key: str) -> str:
        return await asyncio.to_thread(
            gcs.sign_get_url, storage_key, expires_delta=self._ttl
        )

    async def upload(
        self,
        *,
        user_id: str,
        task_id: str,
        file_name: str,
        mime_type: str,
        data: bytes,
    ) -> str:
        """Validate and store an upload; return its storage key."""

        if not is_allowed_mime_type(mime_type):
            raise UnsupportedAttachmentType(mime_type or "unknown")
        if not data:
            raise AttachmentError("Uploaded file was empty")
        if len(data) > self._max_size_bytes:
            raise AttachmentTooLarge(
                f"File must be {self._max_size_bytes // (1024 * 1024)}MB or less"
            )

        storage_key = make_storage_key(user_id, task_id, str(uuid4()), file_name)
        await asyncio.to_thread(
            gcs.upload_bytes, storage_key, data, content_type=mime_type
        )
        logger.info(
            "Stored attachment %s (%s, %d bytes) for task %s",
            storage_key,
            mime_type,
            len(data),
            task_id,
        )
        return storage_key

    async def delete_many(self, storage_keys: list[str]) -> None:
        """Delete blobs, logging rather than raising on individual failures."""

        for storage_key in storage_keys:
            try:
                await asyncio.to_thread(gcs.delete_blob, storage_key)
            except Exception:  # pragma: no cover - best-effort cleanup
                logger.warning(
                    "Failed to remove attachment blob %s", storage_key, exc_info=True
                )


__all__ = [
    "ALLOWED_ATTACHMENT_MIME_TYPES",
    "AttachmentError",
    "AttachmentTooLarge",
    "FileStore",
    "GcsFileStore",
    "UnsupportedAttachmentType",
    "is_allowed_mime_type",
    "is_image",
    "is_owned_storage_key",
    "make_storage_key",
]
