"""Chat turn orchestration: validate, store, assemble, and open the stream."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping, Sequence

import anyio

from ..config import Settings
from ..errors import RequestValidationFailed, TaskNotFound
from ..repository import TaskRecord, TaskRepository
from ..schemas.chat import ChatSendRequest, ChatStartRequest
from ..services.credentials import CredentialResolver, ResolvedModel
from ..services.files import FileStore, is_owned_storage_key
from ..upstream import CompletionClient, UpstreamStream
from .context import Turn, assemble, history_to_turns
from .relay import ClientEvent, StreamRelay

logger = logging.getLogger(__name__)


@dataclass
class PreparedTurn:
    """A turn whose upstream stream is open and ready to relay."""

    task: TaskRecord
    relay: StreamRelay
    upstream: UpstreamStream
    announce_task: bool = False

    def task_event(self) -> ClientEvent:
        return {
            "taskId": self.task["id"],
            "title": self.task["title"],
            "createdAt": self.task["created_at"],
            "updatedAt": self.task["updated_at"],
        }

    async def events(self) -> AsyncIterator[ClientEvent]:
        """Yield every client event for this turn, then release the upstream."""

        relay_events = self.relay.relay(self.upstream.iter_bytes())
        try:
            if self.announce_task:
                yield self.task_event()
            async for event in relay_events:
                yield event
        finally:
            # Closing the relay first lets it persist a partial reply. Both closes
            # must complete even when the surrounding scope is already cancelled.
            with anyio.CancelScope(shield=True):
                await relay_events.aclose()
                await self.upstream.aclose()


class ChatService:
    """Run the pre-stream half of a chat turn."""

    def __init__(
        self,
        settings: Settings,
        repository: TaskRepository,
        resolver: CredentialResolver,
        client: CompletionClient,
        file_store: FileStore,
    ) -> None:
        self._settings = settings
        self._repo = repository
        self._resolver = resolver
        self._client = client
        self._file_store = file_store

    async def _resolve(self, model: str | None, user_id: str) -> ResolvedModel:
        model_id = model or self._settings.default_model
        return await self._resolver.resolve(model_id, user_id)

    async def _store_attachments(
        self, message_id: str, attachments: Sequence[Mapping[str, Any]]
    ) -> None:
        if not attachments:
            return
        try:
            await self._repo.add_attachments(message_id, attachments)
        except Exception:
            logger.exception(
                "Failed to record %d attachment(s) for message %s",
                len(attachments),
                message_id,
            )

    async def _open(
        self,
        resolved: ResolvedModel,
        task: TaskRecord,
        turns: list[Turn],
        *,
        announce_task: bool,
    ) -> PreparedTurn:
        logger.info(
            "Opening %s stream for task %s via %s (%d turns)",
            resolved.upstream_model_id,
            task["id"],
            resolved.auth_source,
            len(turns),
        )
        upstream = await self._client.open_stream(
            resolved.upstream_model_id, turns, api_key=resolved.api_key
        )
        relay = StreamRelay(
            self._repo,
            task["id"],
            persist_attempts=self._settings.persist_attempts,
        )
        return PreparedTurn(
            task=task, relay=relay, upstream=upstream, announce_task=announce_task
        )

    async def start_turn(self, user_id: str, request: ChatStartRequest) -> PreparedTurn:
        """Create a task with its first message and open the reply stream."""

        resolved = await self._resolve(request.model, user_id)

        attachments: list[dict[str, Any]] = []
        for record in request.attachment_records():
            if is_owned_storage_key(record["storage_key"], user_id):
                attachments.append(record)
            else:
                logger.warning(
                    "Dropping attachment %s not owned by user %s",
                    record["storage_key"],
                    user_id,
                )
        metadata = {"hasAttachments": True} if attachments else None
        task, user_message = await self._repo.create_task_with_message(
            user_id,
            request.resolved_title(),
            request.message,
            metadata=metadata,
        )
        await self._store_attachments(user_message["id"], attachments)

        turns = await assemble(
            self._settings.system_prompt,
            [],
            request.message,
            attachments,
            self._file_store,
        )
        return await self._open(resolved, task, turns, announce_task=True)

    async def send_turn(self, user_id: str, request: ChatSendRequest) -> PreparedTurn:
        """Append a user message to an owned task and open the reply stream."""

        task = await self._repo.get_task(request.task_id, user_id=user_id)
        if task is None:
            raise TaskNotFound()

        attachments = request.attachment_records()
        for record in attachments:
            if not is_owned_storage_key(record["storage_key"], user_id, task["id"]):
                logger.warning(
                    "Rejecting attachment %s for task %s of user %s",
                    record["storage_key"],
                    task["id"],
                    user_id,
                )
                raise RequestValidationFailed("Invalid attachment")

        resolved = await self._resolve(request.model, user_id)

        metadata = {"hasAttachments": True} if attachments else None
        user_message = await self._repo.create_message(
            task["id"],
            "user",
            request.message,
            metadata=metadata,
            touch_task=True,
        )
        await self._store_attachments(user_message["id"], attachments)

        recent = await self._repo.load_recent_messages(
            task["id"], self._settings.history_limit
        )
        history = history_to_turns(recent, current_message_id=user_message["id"])
        turns = await assemble(
            self._settings.system_prompt,
            history,
            request.message,
            attachments,
            self._file_store,
        )
        return await self._open(resolved, task, turns, announce_task=False)


__all__ = ["ChatService", "PreparedTurn"]
