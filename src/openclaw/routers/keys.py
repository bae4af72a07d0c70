"""Routes for managing a user's own provider API keys."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ..dependencies import get_current_user_id, get_repository, get_vault
from ..errors import RequestValidationFailed, ServiceMisconfigured
from ..models import BYOK_PROVIDERS, is_byok_provider
from ..repository import TaskRepository
from ..schemas.tasks import (
    CredentialListResponse,
    CredentialResource,
    CredentialUpsertRequest,
)
from ..services.credentials import CredentialVault

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/config/keys", tags=["keys"])

GEMINI_KEY_PREFIX = "AIza"


def _check_provider(provider: str) -> None:
    if not is_byok_provider(provider):
        raise RequestValidationFailed(
            f"provider must be one of: {', '.join(BYOK_PROVIDERS)}"
        )


@router.get("", response_model=CredentialListResponse, response_model_by_alias=False)
async def list_keys(
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
) -> CredentialListResponse:
    records = await repository.list_credentials(user_id)
    return CredentialListResponse(
        providers=[CredentialResource(**record) for record in records]
    )


@router.put("")
async def save_key(
    payload: CredentialUpsertRequest,
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
    vault: CredentialVault | None = Depends(get_vault),
) -> dict[str, object]:
    _check_provider(payload.provider)
    api_key = payload.api_key.strip()
    if payload.provider == "gemini" and not api_key.startswith(GEMINI_KEY_PREFIX):
        raise RequestValidationFailed("Invalid Gemini API key format")
    if vault is None:
        raise ServiceMisconfigured("Encryption is not configured")

    await repository.upsert_credential(user_id, payload.provider, vault.encrypt(api_key))
    logger.info("Stored %s key for user %s", payload.provider, user_id)
    return {"success": True, "provider": payload.provider}


@router.delete("/{provider}")
async def delete_key(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    repository: TaskRepository = Depends(get_repository),
) -> dict[str, object]:
    _check_provider(provider)
    deleted = await repository.delete_credential(user_id, provider)
    return {"success": deleted, "provider": provider}


__all__ = ["router"]
