"""Errors that are returned to API clients as JSON bodies."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Base class for errors that are safe to return to the client verbatim."""

    status_code: int = 400
    code: str | None = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        payload = {"error": self.message}
        if self.code:
            payload["code"] = self.code
        return payload


class AuthError(ChatError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class RequestValidationFailed(ChatError):
    """Bad input shape or a size/length limit was exceeded."""


class TaskNotFound(ChatError):
    status_code = 404

    def __init__(self, message: str = "Task not found"):
        super().__init__(message)


class PlatformUnavailable(ChatError):
    status_code = 503
    code = "PLATFORM_UNAVAILABLE"

    def __init__(self) -> None:
        super().__init__(
            "Platform models are not available yet. Please add your own API key in settings."
        )


class MissingCredential(ChatError):
    code = "BYOK_KEY_MISSING"

    def __init__(self, provider: str):
        super().__init__(f"No API key configured for {provider}. Add one in settings.")
        self.provider = provider


class InvalidModel(ChatError):
    def __init__(self, model_id: str):
        super().__init__("Invalid model selection")
        self.model_id = model_id


class UpstreamError(ChatError):
    """The completion provider rejected the request; detail stays server-side."""

    status_code = 502

    def __init__(self, upstream_status: int, detail: Any):
        super().__init__("Failed to get response from AI model")
        self.upstream_status = upstream_status
        self.detail = detail


class UpstreamEmptyBody(ChatError):
    status_code = 502

    def __init__(self) -> None:
        super().__init__("No response body from AI model")


class PayloadTooLarge(ChatError):
    status_code = 413


class UnsupportedMediaType(ChatError):
    status_code = 415


class ServiceMisconfigured(ChatError):
    status_code = 503


async def _chat_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ChatError)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def _request_validation_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return JSONResponse(status_code=400, content={"error": message})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error for %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def register_error_handlers(app: FastAPI) -> None:
    """Translate domain errors into ``{"error": ..., "code"?: ...}`` responses."""

    app.add_exception_handler(ChatError, _chat_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)


__all__ = [
    "AuthError",
    "ChatError",
    "PayloadTooLarge",
    "ServiceMisconfigured",
    "UnsupportedMediaType",
    "register_error_handlers",
    "InvalidModel",
    "MissingCredential",
    "PlatformUnavailable",
    "RequestValidationFailed",
    "TaskNotFound",
    "UpstreamEmptyBody",
    "UpstreamError",
]
