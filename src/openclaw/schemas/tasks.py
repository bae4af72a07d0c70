"""Pydantic models for task, message, and credential resources."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .chat import TITLE_CHAR_LIMIT


class TaskResource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    status: str
    createdAt: str = Field(alias="created_at")
    updatedAt: str = Field(alias="updated_at")
    lastMessage: Optional[str] = Field(default=None, alias="last_message")
    messageCount: Optional[int] = Field(default=None, alias="message_count")


class AttachmentResource(BaseModel):
    """Attachment metadata plus a freshly signed URL, when one could be made."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    fileName: str = Field(alias="file_name")
    fileType: str = Field(alias="file_type")
    fileSize: int = Field(alias="file_size")
    storageKey: str = Field(alias="storage_key")
    url: Optional[str] = None
    createdAt: Optional[str] = Field(default=None, alias="created_at")


class MessageResource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    taskId: str = Field(alias="task_id")
    role: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    createdAt: str = Field(alias="created_at")
    attachments: List[AttachmentResource] = Field(default_factory=list)


class TaskListResponse(BaseModel):
    tasks: List[TaskResource]


class TaskMessagesResponse(BaseModel):
    task: TaskResource
    messages: List[MessageResource]


class TaskCreateRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=TITLE_CHAR_LIMIT)


class TaskUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=TITLE_CHAR_LIMIT)
    status: Optional[str] = None


class CredentialResource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    createdAt: str = Field(alias="created_at")


class CredentialListResponse(BaseModel):
    providers: List[CredentialResource]


class CredentialUpsertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    api_key: str = Field(min_length=1, max_length=500, alias="apiKey")


__all__ = [
    "AttachmentResource",
    "CredentialListResponse",
    "CredentialResource",
    "CredentialUpsertRequest",
    "MessageResource",
    "TaskCreateRequest",
    "TaskListResponse",
    "TaskMessagesResponse",
    "TaskResource",
    "TaskUpdateRequest",
]
