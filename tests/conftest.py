"""Shared test fixtures for the mailsync test suite."""

from __future__ import annotations

import imaplib
from dataclasses import dataclass, field
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import pytest

from mailsync.config import MailSyncConfig, StorageConfig, SyncConfig, VaultConfig
from mailsync.errors import MailConnectionError
from mailsync.models import ImapServer, ImapSettings, MailboxStatus, MessageAttributes
from mailsync.orchestrator import SyncOrchestrator
from mailsync.registry import AccountRegistry
from mailsync.session import SessionManager
from mailsync.store import LocalMailStore, MailStoreRegistry
from mailsync.transport import BodyChunk, MessageEnd, build_folder_hierarchy
from mailsync.vault import CredentialVault

USER = "alice@example.com"
PASSWORD = "s3cret-pass"


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Test Subject",
    from_addr: str = "sender@example.com",
    to_addr: str = "recipient@example.com",
    body: str = "Hello, World!",
    message_id: str | None = "<test-001@example.com>",
    in_reply_to: str | None = None,
    references: str | None = None,
    date: str = "Sun, 01 Jun 2025 12:00:00 +0000",
    cc: str | None = None,
    bcc: str | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    if message_id:
        msg["Message-ID"] = message_id
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    msg["Date"] = date
    if cc:
        msg["Cc"] = cc
    if bcc:
        msg["Bcc"] = bcc
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with text, HTML, and optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "sender@example.com"
    msg["To"] = "recipient@example.com"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


def _numbered_email(n: int, **kwargs) -> bytes:
    kwargs.setdefault("subject", f"Message {n}")
    kwargs.setdefault("message_id", f"<msg-{n}@example.com>")
    kwargs.setdefault("date", f"Sun, {n:02d} Jun 2025 12:00:00 +0000")
    return _build_plain_email(**kwargs)


def _header_block(raw: bytes) -> bytes:
    for separator in (b"\r\n\r\n", b"\n\n"):
        head, found, _ = raw.partition(separator)
        if found:
            return head + separator
    return raw


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(
        attachments=[
            ("report.pdf", "application/pdf", b"%PDF-1.4 fake pdf content"),
            ("data.csv", "text/csv", b"col1,col2\na,b\n"),
        ],
    )


# ------------------------------------------------------------------
# In-memory mail server
# ------------------------------------------------------------------


@dataclass
class FakeMessage:
    raw: bytes
    uid: int
    flags: list[str] = field(default_factory=list)


@dataclass
class FakeFolder:
    uidvalidity: int = 1
    attribs: list[str] = field(default_factory=lambda: ["\\HasNoChildren"])
    messages: list[FakeMessage] = field(default_factory=list)
    next_uid: int = 1

    def append(self, raw: bytes, flags: list[str] | None = None) -> FakeMessage:
        message = FakeMessage(raw=raw, uid=self.next_uid, flags=flags or [])
        self.next_uid += 1
        self.messages.append(message)
        return message


class FakeMailServer:
    """Mail server double handed to sessions through :class:`FakeTransport`."""

    def __init__(self, password: str = PASSWORD, delimiter: str = "/") -> None:
        self.password = password
        self.delimiter = delimiter
        self.folders: dict[str, FakeFolder] = {}
        # folder -> first sequence number whose fetch aborts the connection
        self.fail_fetch_at: dict[str, int] = {}
        self.fetch_log: list[tuple[str, str]] = []
        self.selects: list[tuple[str, bool]] = []
        self.logins = 0
        self.logouts = 0
        self.aborts = 0
        self.uid_searches = 0

    def add_folder(self, name: str, **kwargs) -> FakeFolder:
        folder = FakeFolder(**kwargs)
        self.folders[name] = folder
        return folder

    def transport(self, settings: ImapSettings) -> FakeTransport:
        return FakeTransport(self, settings)

    def session_factory(self, settings: ImapSettings) -> SessionManager:
        return SessionManager(settings, transport=self.transport(settings), fetch_timeout=5)


class FakeTransport:
    """Implements the transport interface over a :class:`FakeMailServer`."""

    def __init__(self, server: FakeMailServer, settings: ImapSettings) -> None:
        self._server = server
        self._settings = settings
        self._connected = False
        self._selected: str | None = None

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._settings.password.get_secret_value() != self._server.password:
            raise MailConnectionError("Could not log in: [AUTHENTICATIONFAILED] Invalid credentials")
        self._connected = True
        self._server.logins += 1

    async def logout(self) -> None:
        self._connected = False
        self._selected = None
        self._server.logouts += 1

    async def abort(self) -> None:
        self._connected = False
        self._selected = None
        self._server.aborts += 1

    async def list_folders(self) -> dict:
        entries = [(f.attribs, self._server.delimiter, name) for name, f in self._server.folders.items()]
        return build_folder_hierarchy(entries)

    async def open_folder(self, path: str, read_only: bool) -> MailboxStatus:
        self._server.selects.append((path, read_only))
        folder = self._server.folders.get(path)
        if folder is None:
            raise imaplib.IMAP4.error(f"SELECT {path} failed: [NONEXISTENT] Unknown Mailbox")
        self._selected = path
        return MailboxStatus(
            path=path,
            read_only=read_only,
            total=len(folder.messages),
            uidvalidity=folder.uidvalidity,
            uidnext=folder.next_uid,
            flags=["\\Seen", "\\Answered"],
        )

    async def search_uids(self) -> list[int]:
        assert self._selected is not None
        self._server.uid_searches += 1
        return [message.uid for message in self._server.folders[self._selected].messages]

    async def fetch(self, range_spec: str, items: str, on_event) -> None:
        assert self._selected is not None
        self._server.fetch_log.append((self._selected, range_spec))
        folder = self._server.folders[self._selected]
        total = len(folder.messages)
        if ":" in range_spec:
            low, high = range_spec.split(":")
            stop = total if high == "*" else int(high)
            # IMAP answers n:* with the last message when n is past the end
            start = min(int(low), total)
        else:
            start = stop = int(range_spec)
        header_only = "HEADER.FIELDS" in items
        with_body = "BODY" in items
        fail_at = self._server.fail_fetch_at.get(self._selected)

        for seqno in range(start, stop + 1):
            if fail_at is not None and seqno >= fail_at:
                raise imaplib.IMAP4.abort("socket error: connection reset by peer")
            message = folder.messages[seqno - 1]
            if with_body:
                data = _header_block(message.raw) if header_only else message.raw
                half = len(data) // 2
                on_event(BodyChunk(seqno=seqno, section="BODY[]", data=data[:half]))
                on_event(BodyChunk(seqno=seqno, section="BODY[]", data=data[half:]))
            on_event(
                MessageEnd(
                    seqno=seqno,
                    attributes=MessageAttributes(uid=message.uid, flags=list(message.flags), size=len(message.raw)),
                )
            )


class FakeSecretStore:
    """Dict-backed secret store."""

    def __init__(self, initial: dict[tuple[str, str], str] | None = None) -> None:
        self.secrets: dict[tuple[str, str], str] = dict(initial or {})
        self.writes = 0

    async def get(self, service: str, account: str) -> str | None:
        return self.secrets.get((service, account))

    async def set(self, service: str, account: str, secret: str) -> None:
        self.writes += 1
        self.secrets[(service, account)] = secret


# ------------------------------------------------------------------
# Config and component fixtures
# ------------------------------------------------------------------


@pytest.fixture
def storage_config(tmp_path: Path) -> StorageConfig:
    return StorageConfig(data_dir=tmp_path / "data")


@pytest.fixture
def vault_config() -> VaultConfig:
    # Small cost factor keeps key derivation fast in tests
    return VaultConfig(scrypt_n=1024)


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        poll_interval_seconds=0.05,
        fetch_timeout_seconds=5,
        max_parallel_accounts=2,
        health_port=18080,
    )


@pytest.fixture
def mailsync_config(
    storage_config: StorageConfig,
    vault_config: VaultConfig,
    sync_config: SyncConfig,
) -> MailSyncConfig:
    return MailSyncConfig(
        log_json=False,
        storage=storage_config,
        vault=vault_config,
        sync=sync_config,
    )


@pytest.fixture
def imap_server() -> ImapServer:
    return ImapServer(host="imap.test.com", port=993)


@pytest.fixture
def imap_settings(imap_server: ImapServer) -> ImapSettings:
    return ImapSettings(**imap_server.model_dump(), username=USER, password=PASSWORD)


@pytest.fixture
def secret_store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture
def vault(vault_config: VaultConfig, secret_store: FakeSecretStore) -> CredentialVault:
    return CredentialVault(vault_config, secret_store)


@pytest.fixture
def mail_server() -> FakeMailServer:
    server = FakeMailServer()
    server.add_folder("INBOX")
    return server


@pytest.fixture
async def registry(storage_config: StorageConfig):
    reg = AccountRegistry(storage_config)
    await reg.init()
    yield reg
    await reg.close()


@pytest.fixture
async def stores(storage_config: StorageConfig):
    factory = MailStoreRegistry(storage_config)
    yield factory
    await factory.close_all()


@pytest.fixture
async def store(stores: MailStoreRegistry) -> LocalMailStore:
    return await stores.open_store(USER)


@pytest.fixture
def orchestrator(
    mailsync_config: MailSyncConfig,
    registry: AccountRegistry,
    stores: MailStoreRegistry,
    vault: CredentialVault,
    mail_server: FakeMailServer,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        mailsync_config,
        registry=registry,
        stores=stores,
        vault=vault,
        session_factory=mail_server.session_factory,
    )
