"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Depends, Request

from .chat.service import ChatService
from .config import Settings, get_settings
from .errors import AuthError, ServiceMisconfigured
from .repository import TaskRepository
from .services.credentials import CredentialVault
from .services.files import GcsFileStore


def get_current_user_id(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    """Return the caller's user id as forwarded by the authenticating proxy."""

    user_id = request.headers.get(settings.auth_user_header, "").strip()
    if not user_id:
        raise AuthError()
    return user_id


def get_repository(request: Request) -> TaskRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise ServiceMisconfigured("Repository unavailable")
    return repository


def get_chat_service(request: Request) -> ChatService:
    service = getattr(request.app.state, "chat_service", None)
    if service is None:
        raise ServiceMisconfigured("Chat service unavailable")
    return service


def get_file_store(request: Request) -> GcsFileStore:
    file_store = getattr(request.app.state, "file_store", None)
    if file_store is None:
        raise ServiceMisconfigured("File storage unavailable")
    return file_store


def get_vault(request: Request) -> CredentialVault | None:
    return getattr(request.app.state, "vault", None)


__all__ = [
    "get_chat_service",
    "get_current_user_id",
    "get_file_store",
    "get_repository",
    "get_vault",
]
