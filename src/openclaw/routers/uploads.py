"""Routes for uploading chat attachments ahead of a turn."""

from __future__ import annotations

from pathlib import PurePath

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, ConfigDict

from ..config import Settings, get_settings
from ..dependencies import get_current_user_id, get_file_store, get_repository
from ..errors import (
    PayloadTooLarge,
    RequestValidationFailed,
    TaskNotFound,
    UnsupportedMediaType,
)
from ..repository import TaskRepository
from ..services.files import (
    AttachmentError,
    AttachmentTooLarge,
    GcsFileStore,
    UnsupportedAttachmentType,
)

router = APIRouter(prefix="/api/attachments", tags=["attachments"])


class UploadedAttachment(BaseModel):
    """The attachment reference a client passes back in a chat turn."""

    model_config = ConfigDict(populate_by_name=True)

    fileName: str
    fileType: str
    fileSize: int
    storageKey: str
    url: str | None = None


def _clean_file_name(raw: str | None) -> str:
    name = PurePath(raw or "").name.strip()
    return name or "upload"


@router.post("/upload", response_model=UploadedAttachment, status_code=201)
async def upload_attachment(
    file: UploadFile = File(...),
    task_id: str = Form(..., alias="taskId"),
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
    file_store: GcsFileStore = Depends(get_file_store),
    settings: Settings = Depends(get_settings),
) -> UploadedAttachment:
    task = await repository.get_task(task_id, user_id=user_id)
    if task is None:
        raise TaskNotFound()

    file_name = _clean_file_name(file.filename)
    mime_type = (file.content_type or "").lower()
    # Read one byte past the limit so oversize files are caught without
    # buffering the whole body.
    data = await file.read(settings.attachments_max_size_bytes + 1)

    try:
        storage_key = await file_store.upload(
            user_id=user_id,
            task_id=task["id"],
            file_name=file_name,
            mime_type=mime_type,
            data=data,
        )
    except UnsupportedAttachmentType as exc:
        raise UnsupportedMediaType(f"Unsupported attachment type: {exc}") from exc
    except AttachmentTooLarge as exc:
        raise PayloadTooLarge(str(exc)) from exc
    except AttachmentError as exc:
        raise RequestValidationFailed(str(exc)) from exc

    try:
        url: str | None = await file_store.get_signed_url(storage_key)
    except Exception:
        url = None

    return UploadedAttachment(
        fileName=file_name,
        fileType=mime_type,
        fileSize=len(data),
        storageKey=storage_key,
        url=url,
    )


__all__ = ["router"]
