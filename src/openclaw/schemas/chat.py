"""Pydantic models for chat turn requests."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

MESSAGE_CHAR_LIMIT = 10_000
MAX_ATTACHMENTS = 5
FILE_SIZE_LIMIT = 10 * 1024 * 1024
TITLE_CHAR_LIMIT = 500
DERIVED_TITLE_CHARS = 100


class AttachmentInput(BaseModel):
    """An already-uploaded file referenced by a chat turn."""

    file_name: str = Field(
        min_length=1, validation_alias=AliasChoices("fileName", "file_name")
    )
    file_type: str = Field(
        min_length=1, validation_alias=AliasChoices("fileType", "file_type")
    )
    file_size: int = Field(
        gt=0,
        le=FILE_SIZE_LIMIT,
        validation_alias=AliasChoices("fileSize", "file_size"),
    )
    storage_key: str = Field(
        min_length=1,
        validation_alias=AliasChoices("storageKey", "storage_key", "s3Key"),
    )

    model_config = ConfigDict(populate_by_name=True)

    def as_record(self) -> Dict[str, Any]:
        return {
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "storage_key": self.storage_key,
        }


def _check_message(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("message is required")
    if len(value) > MESSAGE_CHAR_LIMIT:
        raise ValueError(f"Message must be {MESSAGE_CHAR_LIMIT} characters or less")
    return value


class _ChatTurnRequest(BaseModel):
    message: str
    model: Optional[str] = None
    attachments: List[AttachmentInput] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("message", mode="before")
    @classmethod
    def _validate_message(cls, value: Any) -> str:
        return _check_message(value)

    @field_validator("model", mode="before")
    @classmethod
    def _blank_model_is_default(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def attachment_records(self) -> List[Dict[str, Any]]:
        return [attachment.as_record() for attachment in self.attachments]


class ChatStartRequest(_ChatTurnRequest):
    """First turn of a new task. Extra or malformed attachments are dropped."""

    title: Optional[str] = None

    @field_validator("attachments", mode="before")
    @classmethod
    def _clamp_attachments(cls, value: Any) -> List[AttachmentInput]:
        if value is None:
            return []
        if not isinstance(value, list):
            return []
        accepted: List[AttachmentInput] = []
        for item in value[:MAX_ATTACHMENTS]:
            try:
                accepted.append(AttachmentInput.model_validate(item))
            except ValidationError:
                continue
        return accepted

    def resolved_title(self) -> str:
        title = (self.title or "").strip()
        if title:
            return title[:TITLE_CHAR_LIMIT]
        return self.message[:DERIVED_TITLE_CHARS]


class ChatSendRequest(_ChatTurnRequest):
    """A follow-up turn on an existing task."""

    task_id: str = Field(
        min_length=1, validation_alias=AliasChoices("taskId", "task_id")
    )

    @field_validator("attachments", mode="before")
    @classmethod
    def _reject_too_many(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list) and len(value) > MAX_ATTACHMENTS:
            raise ValueError(f"Maximum {MAX_ATTACHMENTS} attachments allowed")
        return value


def first_error_message(exc: ValidationError) -> str:
    """Return a client-facing message for the first validation failure."""

    errors = exc.errors()
    if not errors:
        return "Invalid request"
    error = errors[0]
    context = error.get("ctx") or {}
    if error.get("type") == "value_error" and "error" in context:
        return str(context["error"])
    location = ".".join(str(part) for part in error.get("loc", ()))
    if error.get("type") == "missing":
        return f"{location} is required" if location else "Invalid request"
    message = error.get("msg") or "Invalid request"
    return f"{location}: {message}" if location else message


__all__ = [
    "AttachmentInput",
    "ChatSendRequest",
    "ChatStartRequest",
    "DERIVED_TITLE_CHARS",
    "FILE_SIZE_LIMIT",
    "MAX_ATTACHMENTS",
    "MESSAGE_CHAR_LIMIT",
    "TITLE_CHAR_LIMIT",
    "first_error_message",
]
