"""Model routing between platform-funded models and user-held provider keys."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Literal, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import Settings
from ..errors import InvalidModel, MissingCredential, PlatformUnavailable
from ..models import get_platform_model, is_byok_provider

logger = logging.getLogger(__name__)

_IV_LENGTH = 16
_TAG_LENGTH = 16

AuthSource = Literal["platform", "byok"]


class CredentialDecryptError(ValueError):
    """Raised when a stored credential cannot be decrypted."""


class CredentialVault:
    """AES-256-GCM encryption for provider keys at rest.

    Ciphertexts are stored as ``iv:tag:ciphertext`` with each part hex-encoded.
    """

    def __init__(self, key_hex: str):
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise ValueError("ENCRYPTION_KEY must be hex encoded") from exc
        if len(key) != 32:
            raise ValueError(
                "ENCRYPTION_KEY must be 64 hex characters (32 bytes for AES-256)"
            )
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str) -> str:
        parts = encrypted.split(":")
        if len(parts) != 3:
            raise CredentialDecryptError("Invalid encrypted text format")
        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except (ValueError, InvalidTag) as exc:
            raise CredentialDecryptError("Stored credential could not be decrypted") from exc
        return plaintext.decode("utf-8")


class CredentialStore(Protocol):
    async def get_credential(self, user_id: str, provider: str) -> str | None:
        ...


@dataclass(frozen=True)
class ResolvedModel:
    """Where a turn is sent and which credential pays for it."""

    upstream_model_id: str
    auth_source: AuthSource
    api_key: str = field(repr=False)


class CredentialResolver:
    """Decide whether a model selection is platform-funded or BYOK."""

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        vault: CredentialVault | None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._vault = vault

    def check_model(self, model_id: str) -> None:
        """Fail fast on selections that cannot succeed for any user."""

        if get_platform_model(model_id) is not None:
            if not self._settings.platform_available:
                raise PlatformUnavailable()
            return
        if not is_byok_provider(model_id):
            raise InvalidModel(model_id)

    async def resolve(self, model_id: str, user_id: str) -> ResolvedModel:
        self.check_model(model_id)

        platform_model = get_platform_model(model_id)
        if platform_model is not None:
            platform_key = self._settings.openrouter_api_key
            if platform_key is None:
                raise PlatformUnavailable()
            return ResolvedModel(
                upstream_model_id=platform_model.upstream_id,
                auth_source="platform",
                api_key=platform_key.get_secret_value(),
            )

        encrypted = await self._store.get_credential(user_id, model_id)
        if encrypted is None:
            raise MissingCredential(model_id)
        if self._vault is None:
            logger.error("ENCRYPTION_KEY is not configured; cannot use %s key", model_id)
            raise MissingCredential(model_id)
        try:
            api_key = self._vault.decrypt(encrypted)
        except CredentialDecryptError:
            logger.warning(
                "Stored %s credential for user %s failed to decrypt", model_id, user_id
            )
            raise MissingCredential(model_id) from None

        return ResolvedModel(
            upstream_model_id=model_id,
            auth_source="byok",
            api_key=api_key,
        )


__all__ = [
    "CredentialDecryptError",
    "CredentialResolver",
    "CredentialStore",
    "CredentialVault",
    "ResolvedModel",
]
