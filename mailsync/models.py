"""Data models shared across the sync engine."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class ImapServer(BaseModel):
    """Connection parameters stored with an account (no credentials)."""

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    tls: bool = Field(default=True, description="Use implicit TLS")


class ImapSettings(ImapServer):
    """Everything needed to log in: server parameters plus the decrypted login."""

    username: str = Field(description="IMAP login username")
    password: SecretStr = Field(description="IMAP login password")


class Account(BaseModel):
    """Registry record for one mail account.

    ``password`` is always ciphertext produced by the credential vault.
    ``folders`` is the persisted folder tree (see :mod:`mailsync.folders`).
    """

    user: str = Field(description="Login identifier (email address)")
    password: str = Field(description="Encrypted login password")
    imap: ImapServer
    folders: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FolderSegment(BaseModel):
    """One component of a folder path."""

    model_config = ConfigDict(frozen=True)

    name: str
    delimiter: str | None = None


class MailboxStatus(BaseModel):
    """Server-reported state of a selected folder."""

    path: str
    read_only: bool = True
    total: int = 0
    recent: int = 0
    uidvalidity: int | None = None
    uidnext: int | None = None
    flags: list[str] = Field(default_factory=list)
    permanent_flags: list[str] = Field(default_factory=list)


class Address(BaseModel):
    name: str = ""
    address: str


class Envelope(BaseModel):
    """Structured header summary of a message."""

    model_config = ConfigDict(populate_by_name=True)

    subject: str = ""
    from_: list[Address] = Field(default_factory=list, alias="from")
    reply_to: list[Address] = Field(default_factory=list)
    to: list[Address] = Field(default_factory=list)
    cc: list[Address] = Field(default_factory=list)
    bcc: list[Address] = Field(default_factory=list)
    date: datetime | None = None
    message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)


class MessageAttributes(BaseModel):
    """Attributes the server returns alongside a fetched message."""

    uid: int | None = None
    flags: list[str] = Field(default_factory=list)
    internal_date: datetime | None = None
    size: int | None = None


class FetchedMessage(BaseModel):
    """A message as delivered by the fetch driver to its callback."""

    seqno: int
    envelope: Envelope
    attributes: MessageAttributes
    raw: bytes = b""


class MessageRecord(BaseModel):
    """One entry of the per-account metadata store."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    user: str
    folder: str
    seqno: int
    uid: int | None = None
    uidvalidity: int | None = None
    envelope: Envelope = Field(default_factory=Envelope)
    flags: list[str] = Field(default_factory=list)
    date: datetime | None = None
    size: int | None = None
    retrieved: bool = False
    thread_msg: list[str] | None = None
    is_thread_child: str | None = None

    @classmethod
    def from_fetched(
        cls,
        message: FetchedMessage,
        *,
        user: str,
        folder: str,
        uidvalidity: int | None = None,
    ) -> MessageRecord:
        return cls(
            key=message_key(folder, message.seqno),
            user=user,
            folder=folder,
            seqno=message.seqno,
            uid=message.attributes.uid,
            uidvalidity=uidvalidity,
            envelope=message.envelope,
            flags=message.attributes.flags,
            date=message.attributes.internal_date or message.envelope.date,
            size=message.attributes.size,
        )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def message_key(folder: str, seqno: int) -> str:
    """Synthetic record key: compiled folder path followed by the sequence number."""
    return f"{folder}{seqno}"


class FolderSyncResult(BaseModel):
    """Outcome of syncing one folder in a pass."""

    folder: str
    previous_highest: int
    highest: int
    fetched: int = 0
    new_messages: int = 0
    parse_failures: list[int] = Field(default_factory=list)
    reset: bool = False
    removed: int = 0
    flags_updated: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncReport(BaseModel):
    """Outcome of one sync pass for one account."""

    account: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    folders: list[FolderSyncResult] = Field(default_factory=list)
    default_folder: str | None = None
    threads: int = 0
    error: str | None = None

    @property
    def failed_folders(self) -> list[str]:
        return [f.folder for f in self.folders if not f.ok]

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed_folders


class ServiceStatus(str, Enum):
    """Runtime status of the sync service."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    service_name: str
    status: ServiceStatus
    uptime_seconds: float
    details: dict[str, Any] = Field(default_factory=dict)
