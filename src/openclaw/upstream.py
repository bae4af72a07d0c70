"""Streaming client for the upstream chat completion API."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from .config import Settings
from .errors import UpstreamEmptyBody, UpstreamError

logger = logging.getLogger(__name__)


class UpstreamStream:
    """An open upstream response whose body is consumed as raw byte chunks."""

    def __init__(
        self,
        response: httpx.Response,
        first_chunk: bytes,
        chunks: AsyncIterator[bytes],
    ) -> None:
        self._response = response
        self._first_chunk = first_chunk
        self._chunks = chunks

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        yield self._first_chunk
        async for chunk in self._chunks:
            if chunk:
                yield chunk

    async def aclose(self) -> None:
        await self._response.aclose()


class CompletionClient:
    """Open one streaming chat completion request per turn."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._transport = transport
        self._own_client: httpx.AsyncClient | None = None

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self._settings.request_timeout, connect=10.0)

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._transport is not None:
            if self._own_client is None:
                self._own_client = httpx.AsyncClient(
                    timeout=self._timeout(), transport=self._transport
                )
            return self._own_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=self._timeout(),
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _base_url(self) -> str:
        """Return the API base URL without a trailing slash."""

        return str(self._settings.openrouter_base_url).rstrip("/")

    def _headers(self, api_key: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._settings.openrouter_app_url:
            headers["HTTP-Referer"] = str(self._settings.openrouter_app_url)
        if self._settings.openrouter_app_name:
            headers["X-Title"] = self._settings.openrouter_app_name
        return headers

    async def open_stream(
        self,
        model: str,
        messages: Sequence[dict[str, Any]],
        *,
        api_key: str,
    ) -> UpstreamStream:
        """Send the completion request and return once the body has started.

        Raises ``UpstreamError`` for transport failures and non-2xx responses and
        ``UpstreamEmptyBody`` when a successful response carries no bytes.
        """

        url = f"{self._base_url}/chat/completions"
        payload = {"model": model, "messages": list(messages), "stream": True}

        client = await self._get_http_client()
        request = client.build_request(
            "POST", url, headers=self._headers(api_key), json=payload
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            logger.error("Upstream request to %s failed: %s", url, exc)
            raise UpstreamError(502, str(exc)) from exc

        if not response.is_success:
            try:
                body = await response.aread()
            except httpx.HTTPError:
                body = b""
            finally:
                await response.aclose()
            detail = self._extract_error_detail(body)
            logger.error(
                "Upstream error for model %s: %s %s",
                model,
                response.status_code,
                detail,
            )
            raise UpstreamError(response.status_code, detail)

        chunks = response.aiter_bytes()
        try:
            first_chunk = b""
            while not first_chunk:
                first_chunk = await chunks.__anext__()
        except StopAsyncIteration:
            await response.aclose()
            logger.error("Upstream returned %s without a body", response.status_code)
            raise UpstreamEmptyBody() from None
        except httpx.HTTPError as exc:
            await response.aclose()
            logger.error("Upstream body failed before first byte: %s", exc)
            raise UpstreamError(502, str(exc)) from exc

        return UpstreamStream(response, first_chunk, chunks)

    async def aclose(self) -> None:
        if self._own_client is not None:
            await self._own_client.aclose()
            self._own_client = None
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Error closing pooled HTTP client", exc_info=True)

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Upstream returned an empty error response."
        text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = ["CompletionClient", "UpstreamStream"]
