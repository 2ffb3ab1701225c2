"""Master key lifecycle, authenticated encryption and audit signing.

The master key is a Fernet key held in the platform keychain via
:mod:`keyring`.  Ciphertexts are Fernet tokens (versioned, timestamped,
AES-CBC with an HMAC-SHA256 tag) wrapped in standard base64 so they can be
stored as plain JSON strings.  Audit entries are signed with HMAC-SHA256 keyed
by the same master key.

Never log key material or plaintext values.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from typing import Any, Optional

import keyring
import structlog
from cryptography.fernet import Fernet, InvalidToken
from keyring.errors import KeyringError, PasswordDeleteError

from akm.errors import CryptoNotInitializedError, IntegrityError, MasterKeyError
from akm.rwlock import ReadWriteLock

SERVICE_NAME = "apikey-manager"
MASTER_KEY_ACCOUNT = "master_key"

logger = structlog.get_logger(__name__)


def _canonical_b64decode(text: str, *, urlsafe: bool) -> bytes:
    """Decode base64 and reject any non-canonical spelling of the same bytes.

    Base64 padding leaves unused low bits in the final character; a flipped
    bit there would otherwise decode to identical bytes.
    """

    raw = text.encode("ascii")
    if urlsafe:
        decoded = base64.urlsafe_b64decode(raw)
        reencoded = base64.urlsafe_b64encode(decoded)
    else:
        decoded = base64.b64decode(raw, validate=True)
        reencoded = base64.b64encode(decoded)
    if reencoded != raw:
        raise ValueError("non-canonical base64")
    return decoded


class KeyEncryption:
    """Own the master key and expose encrypt/decrypt/sign primitives.

    Encryption, decryption and signing hold the read side of the lock so they
    run concurrently; :meth:`initialize`, :meth:`import_master_key` and
    :meth:`reset_master_key` take the write side.
    """

    def __init__(
        self,
        *,
        backend: Any = None,
        service_name: str = SERVICE_NAME,
        account: str = MASTER_KEY_ACCOUNT,
    ) -> None:
        self._backend = backend if backend is not None else keyring
        self._service_name = service_name
        self._account = account
        self._key_text: Optional[bytes] = None
        self._fernet: Optional[Fernet] = None
        self._lock = ReadWriteLock()

    @property
    def is_initialized(self) -> bool:
        with self._lock.read_locked():
            return self._fernet is not None

    # ------------------------------------------------------------------
    # Master key lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Load the master key from the keychain, generating it on first run."""

        with self._lock.write_locked():
            try:
                stored = self._backend.get_password(self._service_name, self._account)
            except KeyringError as exc:
                raise MasterKeyError(f"failed to read master key from keychain: {exc}") from exc

            if stored:
                try:
                    key_text = base64.b64decode(stored.encode("ascii"), validate=True)
                    fernet = Fernet(key_text)
                except (ValueError, binascii.Error) as exc:
                    raise MasterKeyError(f"failed to parse master key: {exc}") from exc
                self._install(key_text, fernet)
                logger.debug("crypto.master_key_loaded", service=self._service_name)
                return

            key_text = Fernet.generate_key()
            self._store(key_text)
            self._install(key_text, Fernet(key_text))
            logger.info("crypto.master_key_generated", service=self._service_name)

    def export_master_key(self) -> str:
        """Return the master key text.

        Whoever holds the exported value can decrypt every stored secret.
        """

        with self._lock.read_locked():
            self._require_key()
            assert self._key_text is not None
            return self._key_text.decode("ascii")

    def import_master_key(self, value: str) -> None:
        """Replace the keychain entry with ``value`` and start using it."""

        try:
            key_text = (value or "").strip().encode("ascii")
            fernet = Fernet(key_text)
        except (ValueError, binascii.Error) as exc:
            raise MasterKeyError(f"invalid master key: {exc}") from exc
        with self._lock.write_locked():
            self._store(key_text)
            self._install(key_text, fernet)
        logger.warning("crypto.master_key_imported", service=self._service_name)

    def reset_master_key(self) -> None:
        """Delete the master key; existing ciphertext becomes undecryptable."""

        with self._lock.write_locked():
            try:
                self._backend.delete_password(self._service_name, self._account)
            except PasswordDeleteError:
                logger.info("crypto.master_key_absent", service=self._service_name)
            except KeyringError as exc:
                raise MasterKeyError(f"failed to delete master key: {exc}") from exc
            self._key_text = None
            self._fernet = None
        logger.warning("crypto.master_key_reset", service=self._service_name)

    def _store(self, key_text: bytes) -> None:
        encoded = base64.b64encode(key_text).decode("ascii")
        try:
            self._backend.set_password(self._service_name, self._account, encoded)
        except KeyringError as exc:
            raise MasterKeyError(f"failed to store master key in keychain: {exc}") from exc

    def _install(self, key_text: bytes, fernet: Fernet) -> None:
        self._key_text = key_text
        self._fernet = fernet

    def _require_key(self) -> Fernet:
        if self._fernet is None:
            raise CryptoNotInitializedError("encryption system not initialized")
        return self._fernet

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` and return base64 text."""

        with self._lock.read_locked():
            token = self._require_key().encrypt(plaintext.encode("utf-8"))
        return base64.b64encode(token).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt base64 text produced by :meth:`encrypt`.

        Raises:
            IntegrityError: On malformed input, a wrong key or a failed tag.
        """

        with self._lock.read_locked():
            fernet = self._require_key()
            try:
                token = _canonical_b64decode(ciphertext.strip(), urlsafe=False)
                _canonical_b64decode(token.decode("ascii"), urlsafe=True)
                plaintext = fernet.decrypt(token)
            except (InvalidToken, ValueError, binascii.Error, UnicodeError) as exc:
                raise IntegrityError("decryption failed: invalid token or key") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IntegrityError("decrypted value is not valid UTF-8") from exc

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, message: str) -> str:
        """Return the hex HMAC-SHA256 of ``message``."""

        with self._lock.read_locked():
            self._require_key()
            assert self._key_text is not None
            digest = hmac.new(self._key_text, message.encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()

    def verify(self, message: str, signature: str) -> bool:
        expected = self.sign(message)
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


__all__ = ["KeyEncryption", "MASTER_KEY_ACCOUNT", "SERVICE_NAME"]
