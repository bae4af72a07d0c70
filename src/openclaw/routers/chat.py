"""Chat streaming API routes."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ValidationError
from sse_starlette.sse import EventSourceResponse

from ..chat.relay import ClientEvent
from ..chat.service import ChatService, PreparedTurn
from ..dependencies import get_chat_service, get_current_user_id
from ..errors import RequestValidationFailed
from ..schemas.chat import ChatSendRequest, ChatStartRequest, first_error_message

router = APIRouter(prefix="/api", tags=["chat"])


async def _parse_body(request: Request, model: type[BaseModel]) -> Any:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RequestValidationFailed("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise RequestValidationFailed("Invalid JSON body")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        raise RequestValidationFailed(first_error_message(exc)) from exc


async def _publish(events: AsyncIterator[ClientEvent]) -> AsyncIterator[dict[str, str]]:
    async for event in events:
        yield {"data": json.dumps(event)}


def _stream(turn: PreparedTurn) -> EventSourceResponse:
    return EventSourceResponse(
        _publish(turn.events()),
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/chat/start", response_model=None, status_code=200)
async def start_chat(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
) -> EventSourceResponse:
    """Create a task from the first message and stream the assistant reply."""

    payload: ChatStartRequest = await _parse_body(request, ChatStartRequest)
    turn = await service.start_turn(user_id, payload)
    return _stream(turn)


@router.post("/chat/send", response_model=None, status_code=200)
async def send_chat(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service),
) -> EventSourceResponse:
    """Continue an existing task and stream the assistant reply."""

    payload: ChatSendRequest = await _parse_body(request, ChatSendRequest)
    turn = await service.send_turn(user_id, payload)
    return _stream(turn)


__all__ = ["router"]
