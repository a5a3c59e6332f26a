"""OS keychain access for the vault passphrase.

All ``keyring`` calls are blocking and are run with ``asyncio.to_thread()``.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import keyring
import structlog
from keyring.errors import KeyringError

from .errors import VaultError

logger = structlog.get_logger()


class SecretStore(Protocol):
    """Minimal keychain interface used by :class:`~mailsync.vault.CredentialVault`."""

    async def get(self, service: str, account: str) -> str | None: ...

    async def set(self, service: str, account: str, secret: str) -> None: ...


class KeyringSecretStore:
    """System keyring backend.

    Backend failures raise :class:`VaultError` instead of reading as a
    missing entry, so an unavailable keychain never triggers a second
    passphrase adoption.
    """

    async def get(self, service: str, account: str) -> str | None:
        try:
            return await asyncio.to_thread(keyring.get_password, service, account)
        except KeyringError as exc:
            raise VaultError(f"Keyring lookup failed for {service}/{account}: {exc}") from exc

    async def set(self, service: str, account: str, secret: str) -> None:
        try:
            await asyncio.to_thread(keyring.set_password, service, account, secret)
        except KeyringError as exc:
            raise VaultError(f"Keyring write failed for {service}/{account}: {exc}") from exc
        logger.info("secret_stored", service=service, entry=account)
