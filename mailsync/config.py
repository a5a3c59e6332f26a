"""Sync engine configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Per-account server settings live in the account registry, not here.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class StorageConfig(BaseSettings):
    """Where the registry, metadata databases and body blobs are kept."""

    model_config = {"env_prefix": "MAILSYNC_STORAGE_"}

    data_dir: Path = Field(
        default=Path("mailsync-data"),
        description="Root directory for databases and message bodies",
    )
    registry_filename: str = Field(
        default="accounts.db",
        description="SQLite file (under data_dir/db) holding the account registry",
    )

    @property
    def db_dir(self) -> Path:
        return self.data_dir / "db"

    @property
    def mail_dir(self) -> Path:
        return self.data_dir / "mail"

    @property
    def registry_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_dir / self.registry_filename}"


class VaultConfig(BaseSettings):
    """Credential vault settings (secret store entry and scrypt parameters)."""

    model_config = {"env_prefix": "MAILSYNC_VAULT_"}

    service_name: str = Field(default="mailsync", description="Secret store service name")
    passphrase_entry: str = Field(
        default="accountPasswordHash",
        description="Secret store entry holding the vault passphrase",
    )
    salt: str = Field(
        default="FrcHay/J2isc0HcPPYyWAn==",
        description="Application-wide scrypt salt",
    )
    scrypt_n: int = Field(default=32768, description="scrypt CPU/memory cost")
    scrypt_r: int = Field(default=8, description="scrypt block size")
    scrypt_p: int = Field(default=1, description="scrypt parallelization")
    key_length: int = Field(default=32, description="Derived key length in bytes")


class SyncConfig(BaseSettings):
    """Sync pass scheduling, timeouts and the health server port."""

    model_config = {"env_prefix": "MAILSYNC_SYNC_"}

    poll_interval_seconds: float = Field(
        default=300.0,
        description="Seconds between sync passes in service mode",
    )
    fetch_timeout_seconds: float | None = Field(
        default=120.0,
        description="Upper bound for a single fetch batch (None disables)",
    )
    connect_timeout_seconds: float = Field(
        default=30.0,
        description="Socket timeout used when connecting to the server",
    )
    max_parallel_accounts: int = Field(
        default=4,
        description="Accounts synchronized concurrently",
    )
    body_batch_size: int = Field(
        default=50,
        description="Bodies retrieved per retrieve_missing_bodies call",
    )
    health_port: int = Field(default=8080, description="Port for the health endpoints")


class MailSyncConfig(BaseSettings):
    """Root configuration.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "MAILSYNC_"}

    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Emit JSON log lines")

    storage: StorageConfig = Field(default_factory=StorageConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
