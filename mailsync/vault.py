"""Credential vault: derives the application key and protects stored secrets.

The key is derived with scrypt from a passphrase kept in the OS keychain
and a fixed application salt.  On the very first run there is no
passphrase yet; the account's login password is bcrypt-hashed and the hash
is adopted as the passphrase for every later run.

Ciphertexts follow the OpenSSL ``Salted__`` layout (AES-256-CBC, PKCS7,
key and IV expanded with a SHA-256 EVP_BytesToKey schedule) with an
HMAC-SHA256 tag appended, so tampering is detected before unpadding.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import os
from typing import Any

import structlog
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from passlib.context import CryptContext

from .config import VaultConfig
from .errors import DecryptionError, VaultError
from .secret_store import SecretStore

logger = structlog.get_logger()

_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

_MAGIC = b"Salted__"
_SALT_LEN = 8
_KEY_LEN = 32
_IV_LEN = 16
_TAG_LEN = 32
_BLOCK_BITS = 128


class CredentialVault:
    """Owns the derived application key for one installation.

    Key derivation is deliberately slow; :meth:`unlock` runs it on a worker
    thread once and caches the result.
    """

    def __init__(self, config: VaultConfig, secret_store: SecretStore) -> None:
        self._config = config
        self._secret_store = secret_store
        self._key: bytes | None = None
        self._adopt_lock = asyncio.Lock()
        self._unlock_lock = asyncio.Lock()

    @property
    def unlocked(self) -> bool:
        return self._key is not None

    # ------------------------------------------------------------------
    # Passphrase and key derivation
    # ------------------------------------------------------------------

    async def resolve_passphrase(self, login_password: str | None = None) -> str:
        """Return the vault passphrase, adopting *login_password* on first use."""
        service = self._config.service_name
        entry = self._config.passphrase_entry

        passphrase = await self._secret_store.get(service, entry)
        if passphrase:
            return passphrase

        async with self._adopt_lock:
            # Another account may have adopted while we waited
            passphrase = await self._secret_store.get(service, entry)
            if passphrase:
                return passphrase
            if not login_password:
                raise VaultError("No vault passphrase in the secret store and no password to adopt")

            passphrase = await asyncio.to_thread(_ctx.hash, login_password)
            await self._secret_store.set(service, entry, passphrase)
            logger.info("vault_passphrase_adopted", service=service)
            return passphrase

    def derive_key(self, passphrase: str) -> bytes:
        """Run scrypt over *passphrase* and the application salt (blocking)."""
        kdf = Scrypt(
            salt=self._config.salt.encode("utf-8"),
            length=self._config.key_length,
            n=self._config.scrypt_n,
            r=self._config.scrypt_r,
            p=self._config.scrypt_p,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    async def derive_key_async(self, passphrase: str) -> bytes:
        return await asyncio.to_thread(self.derive_key, passphrase)

    async def unlock(self, login_password: str | None = None) -> bytes:
        """Return the application key, deriving it on first call."""
        async with self._unlock_lock:
            if self._key is None:
                passphrase = await self.resolve_passphrase(login_password)
                self._key = await self.derive_key_async(passphrase)
                logger.debug("vault_unlocked")
            return self._key

    def lock(self) -> None:
        self._key = None

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    async def encrypt(self, plaintext: Any) -> str:
        return encrypt(await self.unlock(), plaintext)

    async def decrypt(self, ciphertext: str) -> Any:
        return decrypt(await self.unlock(), ciphertext)


# ----------------------------------------------------------------------
# Pure cipher functions
# ----------------------------------------------------------------------


def encrypt(key: bytes, plaintext: Any) -> str:
    """Encrypt any JSON-serializable value into a self-contained string."""
    data = json.dumps(plaintext).encode("utf-8")
    salt = os.urandom(_SALT_LEN)
    enc_key, iv, mac_key = _expand(key, salt)

    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    body = _MAGIC + salt + encryptor.update(padded) + encryptor.finalize()

    return base64.b64encode(body + _sign(mac_key, body)).decode("ascii")


def decrypt(key: bytes, ciphertext: str) -> Any:
    """Inverse of :func:`encrypt`.

    Raises :class:`DecryptionError` for a wrong key or any corruption.
    """
    try:
        blob = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("Ciphertext is not valid base64") from exc

    header_len = len(_MAGIC) + _SALT_LEN
    if not blob.startswith(_MAGIC) or len(blob) < header_len + _IV_LEN + _TAG_LEN:
        raise DecryptionError("Ciphertext has an invalid header or length")

    body, tag = blob[:-_TAG_LEN], blob[-_TAG_LEN:]
    salt, encrypted = body[len(_MAGIC) : header_len], body[header_len:]
    if len(encrypted) % (_BLOCK_BITS // 8):
        raise DecryptionError("Ciphertext is not block aligned")

    enc_key, iv, mac_key = _expand(key, salt)
    verifier = hmac.HMAC(mac_key, hashes.SHA256())
    verifier.update(body)
    try:
        verifier.verify(tag)
    except InvalidSignature as exc:
        raise DecryptionError("Ciphertext authentication failed (wrong key or corrupted)") from exc

    decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(encrypted) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
    try:
        data = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise DecryptionError("Invalid padding") from exc

    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecryptionError("Decrypted payload is not valid JSON") from exc


def _expand(key: bytes, salt: bytes) -> tuple[bytes, bytes, bytes]:
    """EVP_BytesToKey (SHA-256, one round) yielding cipher key, IV and MAC key."""
    password = key.hex().encode("ascii")
    needed = _KEY_LEN + _IV_LEN + _TAG_LEN
    material = b""
    block = b""
    while len(material) < needed:
        digest = hashes.Hash(hashes.SHA256())
        digest.update(block + password + salt)
        block = digest.finalize()
        material += block
    return (
        material[:_KEY_LEN],
        material[_KEY_LEN : _KEY_LEN + _IV_LEN],
        material[_KEY_LEN + _IV_LEN : needed],
    )


def _sign(mac_key: bytes, body: bytes) -> bytes:
    signer = hmac.HMAC(mac_key, hashes.SHA256())
    signer.update(body)
    return signer.finalize()
