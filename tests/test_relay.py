from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Iterable, Mapping

import httpx
import pytest

from conftest import sse_line
from openclaw.chat.relay import (
    LineBuffer,
    LineKind,
    RelayState,
    StreamRelay,
    parse_line,
)


class RecordingStore:
    """Collects assistant writes; can be told to fail the first N attempts."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = 0
        self.saved: list[dict[str, Any]] = []

    async def create_message(
        self,
        task_id: str,
        role: str,
        content: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        touch_task: bool = True,
    ) -> dict[str, Any]:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise RuntimeError("database is locked")
        record = {
            "id": f"msg-{len(self.saved) + 1}",
            "task_id": task_id,
            "role": role,
            "content": content,
            "metadata": dict(metadata or {}),
            "touch_task": touch_task,
        }
        self.saved.append(record)
        return record


async def chunks_of(parts: Iterable[bytes | str], error: Exception | None = None) -> AsyncIterator[bytes]:
    for part in parts:
        yield part.encode() if isinstance(part, str) else part
    if error is not None:
        raise error


async def collect(relay: StreamRelay, source: AsyncIterator[bytes]) -> list[dict]:
    return [event async for event in relay.relay(source)]


class TestParseLine:
    def test_delta(self):
        decision = parse_line(sse_line("Hi"))

        assert decision.kind is LineKind.DELTA
        assert decision.text == "Hi"

    def test_sentinel(self):
        assert parse_line("data: [DONE]").kind is LineKind.SENTINEL

    @pytest.mark.parametrize(
        "line",
        [
            "",
            ": keep-alive",
            "event: ping",
            "data: {not json",
            "data: []",
            'data: {"choices": []}',
            'data: {"choices": [{"delta": {}}]}',
            'data: {"choices": [{"delta": {"content": ""}}]}',
            'data: {"choices": [{"delta": {"content": 7}}]}',
        ],
    )
    def test_everything_else_is_ignored(self, line):
        assert parse_line(line).kind is LineKind.IGNORE


class TestLineBuffer:
    def test_holds_partial_lines_between_reads(self):
        buffer = LineBuffer()

        assert buffer.feed(b"data: one\ndata: t") == ["data: one"]
        assert buffer.feed(b"wo\n") == ["data: two"]
        assert buffer.flush() == []

    def test_multibyte_character_split_across_reads(self):
        buffer = LineBuffer()
        encoded = "café\n".encode()

        assert buffer.feed(encoded[:4]) == []
        assert buffer.feed(encoded[4:]) == ["café"]

    def test_flush_returns_unterminated_tail(self):
        buffer = LineBuffer()
        buffer.feed(b"data: [DONE]")

        assert buffer.flush() == ["data: [DONE]"]


class TestStreamRelay:
    @pytest.mark.anyio
    async def test_deltas_then_sentinel_saves_once(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")

        events = await collect(
            relay,
            chunks_of([sse_line("Hel"), sse_line("lo"), sse_line("!"), "data: [DONE]\n"]),
        )

        assert events == [
            {"content": "Hel"},
            {"content": "lo"},
            {"content": "!"},
            {"done": True, "id": "msg-1"},
        ]
        assert len(store.saved) == 1
        saved = store.saved[0]
        assert saved["role"] == "assistant"
        assert saved["content"] == "Hello!"
        assert saved["metadata"] == {}
        assert saved["touch_task"] is True
        assert relay.state is RelayState.DONE

    @pytest.mark.anyio
    async def test_connection_drop_saves_partial_reply_flagged(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")

        events = await collect(
            relay,
            chunks_of(
                [sse_line("par"), sse_line("tial")],
                error=httpx.ReadError("connection reset"),
            ),
        )

        assert events == [
            {"content": "par"},
            {"content": "tial"},
            {"error": "Stream interrupted"},
        ]
        assert [(m["content"], m["metadata"]) for m in store.saved] == [
            ("partial", {"error": True})
        ]

    @pytest.mark.anyio
    async def test_line_split_across_reads(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")
        line = sse_line("whole")

        events = await collect(relay, chunks_of([line[:17], line[17:], "data: [DONE]\n"]))

        assert events[0] == {"content": "whole"}
        assert store.saved[0]["content"] == "whole"

    @pytest.mark.anyio
    async def test_natural_eof_completes(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")

        events = await collect(relay, chunks_of([sse_line("no sentinel")]))

        assert events[-1] == {"done": True, "id": "msg-1"}
        assert store.saved[0]["content"] == "no sentinel"

    @pytest.mark.anyio
    async def test_data_after_sentinel_is_ignored(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")

        events = await collect(
            relay,
            chunks_of([sse_line("a") + "data: [DONE]\n" + sse_line("late")]),
        )

        assert events == [{"content": "a"}, {"done": True, "id": "msg-1"}]
        assert len(store.saved) == 1

    @pytest.mark.anyio
    async def test_malformed_chunks_are_skipped(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")

        events = await collect(
            relay,
            chunks_of(
                [
                    ": keep-alive\n",
                    "data: {broken\n",
                    sse_line("ok"),
                    "\n",
                    "data: [DONE]\n",
                ]
            ),
        )

        assert events == [{"content": "ok"}, {"done": True, "id": "msg-1"}]

    @pytest.mark.anyio
    async def test_empty_reply_ends_with_done_and_no_write(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")

        events = await collect(relay, chunks_of(["data: [DONE]\n"]))

        assert events == [{"done": True}]
        assert store.attempts == 0

    @pytest.mark.anyio
    async def test_empty_reply_interrupted_reports_error_without_write(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")

        events = await collect(relay, chunks_of([], error=httpx.ReadTimeout("slow")))

        assert events == [{"error": "Stream interrupted"}]
        assert store.attempts == 0

    @pytest.mark.anyio
    async def test_persist_is_retried(self):
        store = RecordingStore(failures=1)
        relay = StreamRelay(store, "task-1", persist_attempts=2)

        events = await collect(relay, chunks_of([sse_line("x"), "data: [DONE]\n"]))

        assert events[-1] == {"done": True, "id": "msg-1"}
        assert store.attempts == 2

    @pytest.mark.anyio
    async def test_persist_failure_becomes_error_event(self):
        store = RecordingStore(failures=5)
        relay = StreamRelay(store, "task-1", persist_attempts=2)

        events = await collect(relay, chunks_of([sse_line("x"), "data: [DONE]\n"]))

        assert events == [{"content": "x"}, {"error": "Stream interrupted"}]
        assert store.attempts == 2
        assert relay.state is RelayState.DONE

    @pytest.mark.anyio
    async def test_client_close_persists_partial_reply(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")
        events = relay.relay(
            chunks_of([sse_line("first"), sse_line("second"), "data: [DONE]\n"])
        )

        assert await events.__anext__() == {"content": "first"}
        await events.aclose()

        assert [(m["content"], m["metadata"]) for m in store.saved] == [
            ("first", {"error": True})
        ]
        assert relay.state is RelayState.DONE

    @pytest.mark.anyio
    async def test_cancellation_persists_partial_reply(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")
        received: list[dict] = []
        waiting = asyncio.Event()

        async def stalled() -> AsyncIterator[bytes]:
            yield sse_line("only").encode()
            waiting.set()
            await asyncio.Event().wait()

        async def consume() -> None:
            async for event in relay.relay(stalled()):
                received.append(event)

        task = asyncio.create_task(consume())
        await waiting.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert received == [{"content": "only"}]
        assert [(m["content"], m["metadata"]) for m in store.saved] == [
            ("only", {"error": True})
        ]

    @pytest.mark.anyio
    async def test_finalize_runs_at_most_once(self):
        store = RecordingStore()
        relay = StreamRelay(store, "task-1")
        relay._parts.append("text")  # type: ignore[attr-defined]

        first, second = await asyncio.gather(
            relay._finalize(error=False),  # type: ignore[attr-defined]
            relay._finalize(error=True),  # type: ignore[attr-defined]
        )

        assert first == second == "msg-1"
        assert len(store.saved) == 1
        assert store.saved[0]["metadata"] == {}

    @pytest.mark.anyio
    async def test_relay_is_single_use(self):
        relay = StreamRelay(RecordingStore(), "task-1")
        await collect(relay, chunks_of(["data: [DONE]\n"]))

        with pytest.raises(RuntimeError):
            await collect(relay, chunks_of([]))
