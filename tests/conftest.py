import json
import pathlib
import sys
from typing import Any, AsyncIterator, Iterable

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from openclaw.config import Settings  # noqa: E402

TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff" * 2


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "openrouter_api_key": "platform-key",
        "openrouter_base_url": "https://upstream.test/api/v1",
        "encryption_key": TEST_ENCRYPTION_KEY,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # pyright: ignore[reportCallIssue]


def sse_line(content: str) -> str:
    payload = {"choices": [{"delta": {"content": content}}]}
    return f"data: {json.dumps(payload)}\n"


class FakeFileStore:
    """In-memory stand-in for blob storage."""

    def __init__(
        self,
        texts: dict[str, str] | None = None,
        *,
        unreadable: Iterable[str] = (),
        unsignable: Iterable[str] = (),
    ) -> None:
        self.texts = dict(texts or {})
        self.unreadable = set(unreadable)
        self.unsignable = set(unsignable)
        self.deleted: list[str] = []

    async def get_text_content(self, storage_key: str) -> str:
        if storage_key in self.unreadable or storage_key not in self.texts:
            raise FileNotFoundError(storage_key)
        return self.texts[storage_key]

    async def get_signed_url(self, storage_key: str) -> str:
        if storage_key in self.unsignable:
            raise RuntimeError("signing failed")
        return f"https://storage.test/{storage_key}?sig=1"

    async def delete_many(self, storage_keys: list[str]) -> None:
        self.deleted.extend(storage_keys)


class FakeUpstream:
    """Byte source that replays fixed chunks, optionally failing part way."""

    def __init__(self, chunks: Iterable[bytes], *, error: Exception | None = None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


class FakeCompletionClient:
    """Records ``open_stream`` calls and hands back a prepared stream."""

    def __init__(self, upstream: FakeUpstream | None = None, *, error: Exception | None = None):
        self.upstream = upstream or FakeUpstream([])
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def open_stream(self, model: str, messages: list[dict[str, Any]], *, api_key: str):
        self.calls.append({"model": model, "messages": messages, "api_key": api_key})
        if self.error is not None:
            raise self.error
        return self.upstream


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
