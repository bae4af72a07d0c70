"""Relay an upstream token stream to the client and persist the reply once.

Each chat turn owns one :class:`StreamRelay`. It moves through
``STREAMING -> (COMPLETING | INTERRUPTED) -> DONE`` and emits exactly one
terminal event (``done`` or ``error``) after any number of ``content`` events.
The assistant message is written at most once, whichever way the stream ends.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Mapping, Protocol

logger = logging.getLogger(__name__)

ClientEvent = dict[str, Any]

STREAM_INTERRUPTED = "Stream interrupted"
_DATA_PREFIX = "data:"
_SENTINEL = "[DONE]"

# Strong references to in-flight writes whose relay may already be gone.
_pending_writes: set[asyncio.Future[Any]] = set()


async def drain_pending_writes(timeout: float) -> None:
    """Wait for in-flight assistant writes, e.g. before the database closes."""

    pending = list(_pending_writes)
    if not pending:
        return
    _, still_running = await asyncio.wait(pending, timeout=timeout)
    if still_running:
        logger.warning(
            "%d assistant write(s) still running after %.0fs",
            len(still_running),
            timeout,
        )


class RelayState(str, Enum):
    STREAMING = "streaming"
    COMPLETING = "completing"
    INTERRUPTED = "interrupted"
    DONE = "done"


class LineKind(str, Enum):
    IGNORE = "ignore"
    SENTINEL = "sentinel"
    DELTA = "delta"


@dataclass(frozen=True)
class LineDecision:
    kind: LineKind
    text: str = ""


IGNORE = LineDecision(LineKind.IGNORE)
SENTINEL = LineDecision(LineKind.SENTINEL)


def parse_line(line: str) -> LineDecision:
    """Classify one upstream SSE line; malformed input is ignored, never raised."""

    stripped = line.strip()
    if not stripped.startswith(_DATA_PREFIX):
        return IGNORE
    data = stripped[len(_DATA_PREFIX) :].lstrip()
    if data == _SENTINEL:
        return SENTINEL
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed upstream chunk: %r", data[:200])
        return IGNORE
    if not isinstance(chunk, dict):
        return IGNORE
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return IGNORE
    first = choices[0]
    if not isinstance(first, dict):
        return IGNORE
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return IGNORE
    content = delta.get("content")
    if not isinstance(content, str) or not content:
        return IGNORE
    return LineDecision(LineKind.DELTA, content)


class LineBuffer:
    """Split a byte stream into lines, holding partial lines across reads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return lines

    def flush(self) -> list[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [tail] if tail else []


class MessageWriter(Protocol):
    async def create_message(
        self,
        task_id: str,
        role: str,
        content: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        touch_task: bool = True,
    ) -> Mapping[str, Any]:
        ...


class StreamRelay:
    """Per-turn coordinator between the upstream stream, the client, and storage."""

    def __init__(
        self,
        store: MessageWriter,
        task_id: str,
        *,
        persist_attempts: int = 2,
    ) -> None:
        self._store = store
        self._task_id = task_id
        self._persist_attempts = max(1, persist_attempts)
        self._parts: list[str] = []
        self._persist_task: asyncio.Future[str | None] | None = None
        self._persist_failed = False
        self.state = RelayState.STREAMING

    @property
    def content(self) -> str:
        """The accumulated assistant reply so far."""

        return "".join(self._parts)

    @staticmethod
    def _take(lines: Iterable[str]) -> tuple[list[str], bool]:
        deltas: list[str] = []
        for line in lines:
            decision = parse_line(line)
            if decision.kind is LineKind.SENTINEL:
                return deltas, True
            if decision.kind is LineKind.DELTA:
                deltas.append(decision.text)
        return deltas, False

    async def relay(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[ClientEvent]:
        """Yield client events for the upstream byte stream."""

        if self.state is not RelayState.STREAMING:
            raise RuntimeError("StreamRelay instances are single-use")

        buffer = LineBuffer()
        try:
            finished = False
            async for chunk in chunks:
                deltas, finished = self._take(buffer.feed(chunk))
                for delta in deltas:
                    self._parts.append(delta)
                    yield {"content": delta}
                if finished:
                    break
            if not finished:
                deltas, _ = self._take(buffer.flush())
                for delta in deltas:
                    self._parts.append(delta)
                    yield {"content": delta}
        except (asyncio.CancelledError, GeneratorExit):
            # Client is gone: keep its partial reply, but there is nobody to tell.
            self.state = RelayState.INTERRUPTED
            logger.info(
                "Client disconnected from task %s after %d chars",
                self._task_id,
                len(self.content),
            )
            try:
                await self._finalize(error=True)
            finally:
                self.state = RelayState.DONE
            raise
        except Exception:
            logger.exception("Stream processing error for task %s", self._task_id)
            self.state = RelayState.INTERRUPTED
            await self._finalize(error=True)
            terminal: ClientEvent = {"error": STREAM_INTERRUPTED}
        else:
            self.state = RelayState.COMPLETING
            message_id = await self._finalize(error=False)
            if self._persist_failed:
                terminal = {"error": STREAM_INTERRUPTED}
            elif message_id is None:
                terminal = {"done": True}
            else:
                terminal = {"done": True, "id": message_id}

        self.state = RelayState.DONE
        yield terminal

    def _finalize(self, *, error: bool) -> asyncio.Future[str | None]:
        """Start the one-and-only persistence write and wait on it.

        The write runs in its own task and is shielded, so a client disconnect
        cannot abort it half way. Later callers share the first call's result.
        """

        if self._persist_task is None:
            self._persist_task = asyncio.ensure_future(self._persist(error=error))
            _pending_writes.add(self._persist_task)
            self._persist_task.add_done_callback(_pending_writes.discard)
        return asyncio.shield(self._persist_task)

    async def _persist(self, *, error: bool) -> str | None:
        content = self.content
        if not content:
            return None

        metadata = {"error": True} if error else {}
        for attempt in range(1, self._persist_attempts + 1):
            try:
                record = await self._store.create_message(
                    self._task_id,
                    "assistant",
                    content,
                    metadata=metadata,
                    touch_task=True,
                )
            except Exception:
                logger.warning(
                    "Persisting assistant message for task %s failed (attempt %d/%d)",
                    self._task_id,
                    attempt,
                    self._persist_attempts,
                    exc_info=True,
                )
                continue
            logger.info(
                "Saved assistant message %s for task %s (%d chars%s)",
                record["id"],
                self._task_id,
                len(content),
                ", errored" if error else "",
            )
            return str(record["id"])

        self._persist_failed = True
        logger.error(
            "Giving up on assistant message for task %s; %d chars not saved",
            self._task_id,
            len(content),
        )
        return None


__all__ = [
    "ClientEvent",
    "LineBuffer",
    "LineDecision",
    "LineKind",
    "RelayState",
    "STREAM_INTERRUPTED",
    "StreamRelay",
    "drain_pending_writes",
    "parse_line",
]
