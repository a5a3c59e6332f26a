"""Exception hierarchy for the sync engine."""

from __future__ import annotations


class MailSyncError(Exception):
    """Base class for every error raised by ``mailsync``."""


class MailConnectionError(MailSyncError):
    """The mail server is unreachable or rejected the login.

    Fatal to the current sync pass and never retried silently.
    """


class SessionClosedError(MailConnectionError):
    """A session in the ``error`` or ``disconnected`` state was reused."""


class FetchError(MailSyncError):
    """A transport failure interrupted a fetch batch.

    The folder's watermark is not advanced.
    """

    def __init__(self, message: str, *, folder: str | None = None) -> None:
        super().__init__(message)
        self.folder = folder


class ParseError(MailSyncError):
    """A single fetched message could not be parsed."""

    def __init__(self, message: str, *, seqno: int | None = None) -> None:
        super().__init__(message)
        self.seqno = seqno


class DecryptionError(MailSyncError):
    """Ciphertext could not be decrypted (wrong key or corrupted data)."""


class VaultError(MailSyncError):
    """No passphrase could be obtained for key derivation."""


class AccountNotFoundError(MailSyncError):
    """The account registry has no record for the requested user."""


class AccountExistsError(MailSyncError):
    """An account with the same user is already registered."""
