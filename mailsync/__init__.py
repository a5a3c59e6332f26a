"""Incremental IMAP mailbox sync and conversation threading.

Public API re-exported here for convenience::

    from mailsync import MailSyncService, SyncOrchestrator, build_thread_map
"""

from .config import MailSyncConfig, StorageConfig, SyncConfig, VaultConfig
from .errors import (
    AccountExistsError,
    AccountNotFoundError,
    DecryptionError,
    FetchError,
    MailConnectionError,
    MailSyncError,
    ParseError,
    SessionClosedError,
    VaultError,
)
from .fetch import DeltaFetchDriver, FetchBatchResult
from .models import (
    Account,
    Envelope,
    FetchedMessage,
    FolderSegment,
    FolderSyncResult,
    ImapServer,
    ImapSettings,
    MessageRecord,
    SyncReport,
)
from .orchestrator import SyncOrchestrator
from .registry import AccountRegistry
from .service import MailSyncService
from .session import OpenFolder, SessionManager, SessionState
from .store import LocalMailStore, MailStoreRegistry
from .threads import build_thread_map
from .vault import CredentialVault

__all__ = [
    "Account",
    "AccountExistsError",
    "AccountNotFoundError",
    "AccountRegistry",
    "CredentialVault",
    "DecryptionError",
    "DeltaFetchDriver",
    "Envelope",
    "FetchBatchResult",
    "FetchError",
    "FetchedMessage",
    "FolderSegment",
    "FolderSyncResult",
    "ImapServer",
    "ImapSettings",
    "LocalMailStore",
    "MailConnectionError",
    "MailStoreRegistry",
    "MailSyncConfig",
    "MailSyncError",
    "MailSyncService",
    "MessageRecord",
    "OpenFolder",
    "ParseError",
    "SessionClosedError",
    "SessionManager",
    "SessionState",
    "StorageConfig",
    "SyncConfig",
    "SyncOrchestrator",
    "SyncReport",
    "VaultConfig",
    "VaultError",
    "build_thread_map",
]
