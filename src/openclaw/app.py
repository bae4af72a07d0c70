"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat.relay import drain_pending_writes
from .chat.service import ChatService
from .config import PROJECT_ROOT, get_settings
from .errors import register_error_handlers
from .repository import TaskRepository
from .routers.chat import router as chat_router
from .routers.keys import router as keys_router
from .routers.tasks import router as tasks_router
from .routers.uploads import router as uploads_router
from .services.credentials import CredentialResolver, CredentialVault
from .services.files import GcsFileStore
from .upstream import CompletionClient


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("openclaw").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # httpx logs every request line at INFO
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _resolve_under(base: Path, p: Path) -> Path:
    # Allow absolute paths as-is (useful for tests and external mounts).
    if p.is_absolute():
        return p.resolve()
    resolved = (base / p).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"Configured path {resolved} escapes project root {base}")
    return resolved


def create_app() -> FastAPI:
    # Configure logging first thing
    _configure_logging()

    settings = get_settings()

    repository = TaskRepository(_resolve_under(PROJECT_ROOT, settings.chat_database_path))

    vault: CredentialVault | None = None
    if settings.encryption_key is not None:
        vault = CredentialVault(settings.encryption_key.get_secret_value())
    else:
        logging.warning("ENCRYPTION_KEY is not set; BYOK keys cannot be stored or used")
    if not settings.platform_available:
        logging.warning("OPENROUTER_API_KEY is not set; platform models are disabled")

    resolver = CredentialResolver(settings, repository, vault)
    completion_client = CompletionClient(settings)
    file_store = GcsFileStore(
        signed_url_ttl=settings.signed_url_ttl,
        max_size_bytes=settings.attachments_max_size_bytes,
    )
    chat_service = ChatService(
        settings, repository, resolver, completion_client, file_store
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await repository.initialize()
        try:
            yield
        finally:
            try:
                await asyncio.wait_for(completion_client.aclose(), timeout=10.0)
            except asyncio.TimeoutError:
                logging.warning("Closing upstream HTTP clients timed out after 10s")
            await drain_pending_writes(timeout=10.0)
            await repository.close()

    app = FastAPI(
        title="OpenClaw Chat Backend",
        version="0.1.0",
        description="Task-based streaming chat relay for the OpenClaw Platform.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.repository = repository
    app.state.vault = vault
    app.state.file_store = file_store
    app.state.chat_service = chat_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(chat_router)
    app.include_router(tasks_router)
    app.include_router(uploads_router)
    app.include_router(keys_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | bool]:
        return {
            "status": "ok",
            "default_model": settings.default_model,
            "platform_available": settings.platform_available,
        }

    return app


__all__ = ["create_app"]
