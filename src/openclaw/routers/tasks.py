"""Routes for listing and managing a user's tasks."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from ..dependencies import (
    get_current_user_id,
    get_file_store,
    get_repository,
)
from ..errors import RequestValidationFailed, TaskNotFound
from ..repository import TASK_STATUSES, TaskRecord, TaskRepository
from ..schemas.tasks import (
    AttachmentResource,
    MessageResource,
    TaskCreateRequest,
    TaskListResponse,
    TaskMessagesResponse,
    TaskResource,
    TaskUpdateRequest,
)
from ..services.files import GcsFileStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

DEFAULT_TASK_TITLE = "New Task"


async def _owned_task(
    repository: TaskRepository, task_id: str, user_id: str
) -> TaskRecord:
    task = await repository.get_task(task_id, user_id=user_id)
    if task is None:
        raise TaskNotFound()
    return task


async def _attachment_resource(
    record: dict[str, Any], file_store: GcsFileStore
) -> AttachmentResource:
    try:
        url: str | None = await file_store.get_signed_url(record["storage_key"])
    except Exception:
        logger.warning(
            "Could not sign URL for attachment %s", record["storage_key"], exc_info=True
        )
        url = None
    return AttachmentResource(**record, url=url)


@router.get("", response_model=TaskListResponse, response_model_by_alias=False)
async def list_tasks(
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
) -> TaskListResponse:
    records = await repository.list_tasks(user_id)
    return TaskListResponse(tasks=[TaskResource(**record) for record in records])


@router.post(
    "",
    response_model=TaskResource,
    status_code=201,
    response_model_by_alias=False,
)
async def create_task(
    payload: TaskCreateRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
) -> TaskResource:
    title = ((payload.title if payload else None) or "").strip() or DEFAULT_TASK_TITLE
    record = await repository.create_task(user_id, title)
    return TaskResource(**record)


@router.get("/{task_id}", response_model=TaskResource, response_model_by_alias=False)
async def get_task(
    task_id: str,
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
) -> TaskResource:
    return TaskResource(**await _owned_task(repository, task_id, user_id))


@router.patch(
    "/{task_id}", response_model=TaskResource, response_model_by_alias=False
)
async def update_task(
    task_id: str,
    payload: TaskUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
) -> TaskResource:
    await _owned_task(repository, task_id, user_id)
    if payload.status is not None and payload.status not in TASK_STATUSES:
        raise RequestValidationFailed(
            f"status must be one of: {', '.join(sorted(TASK_STATUSES))}"
        )
    record = await repository.update_task(
        task_id, title=payload.title, status=payload.status
    )
    if record is None:
        raise TaskNotFound()
    return TaskResource(**record)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
    file_store: GcsFileStore = Depends(get_file_store),
) -> dict[str, bool]:
    await _owned_task(repository, task_id, user_id)
    storage_keys = await repository.delete_task(task_id)
    await file_store.delete_many(storage_keys)
    logger.info(
        "Deleted task %s with %d attachment blob(s)", task_id, len(storage_keys)
    )
    return {"success": True}


@router.get(
    "/{task_id}/messages",
    response_model=TaskMessagesResponse,
    response_model_by_alias=False,
)
async def list_messages(
    task_id: str,
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
    file_store: GcsFileStore = Depends(get_file_store),
) -> TaskMessagesResponse:
    task = await _owned_task(repository, task_id, user_id)
    messages: list[MessageResource] = []
    for record in await repository.get_messages(task_id):
        attachments = [
            await _attachment_resource(attachment, file_store)
            for attachment in record.get("attachments", [])
        ]
        fields = {key: value for key, value in record.items() if key != "attachments"}
        messages.append(MessageResource(**fields, attachments=attachments))
    return TaskMessagesResponse(task=TaskResource(**task), messages=messages)


__all__ = ["router"]
