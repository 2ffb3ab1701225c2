"""Encrypted key store persisted as a single blob with atomic replace.

Every mutation is applied in memory, the whole map is serialised and
encrypted, the blob is written to a temp file and renamed over
``keys.json``, and finally one signed audit entry is appended.  When the
write fails the in-memory change is undone and :class:`PersistenceError`
propagates.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from akm.audit import AuditLog
from akm.crypto import KeyEncryption
from akm.errors import (
    CryptoNotInitializedError,
    IntegrityError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from akm.fileio import atomic_write, copy_private, ensure_private_dir
from akm.models import (
    KEYS_FILE_VERSION,
    APIKeyRecord,
    AuditAction,
    AuditVerification,
    KeyOptions,
    KeysFile,
    KeyUpdate,
    validate_key_name,
)
from akm.rwlock import ReadWriteLock
from akm.time_utils import ensure_utc, isoformat, utc_now

logger = structlog.get_logger(__name__)

KEYS_FILENAME = "keys.json"
AUDIT_FILENAME = "audit.jsonl"

SYSTEM_PROJECT = "system"
PROXY_PROJECT = "proxy"


def escape_dotenv_value(value: str) -> str:
    """Escape ``value`` for a double-quoted ``.env`` assignment."""

    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\r", "\\r")
        .replace("\n", "\\n")
    )


def format_dotenv(values: Mapping[str, str]) -> str:
    lines = [f'{name}="{escape_dotenv_value(value)}"' for name, value in values.items()]
    return "\n".join(lines) + ("\n" if lines else "")


class KeyStorage:
    """Own the record map, its encrypted file and the audit log."""

    def __init__(
        self,
        data_dir: Path,
        crypto: KeyEncryption,
        *,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.data_dir = ensure_private_dir(data_dir)
        self.keys_file = self.data_dir / KEYS_FILENAME
        self.audit_file = self.data_dir / AUDIT_FILENAME
        self._crypto = crypto
        self._audit = audit or AuditLog(self.audit_file, crypto)
        self._keys: Dict[str, APIKeyRecord] = {}
        self._lock = ReadWriteLock()
        self._load_failed = False
        self._needs_reencrypt = False
        self._load()

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    @property
    def load_failed(self) -> bool:
        return self._load_failed

    @property
    def needs_reencrypt(self) -> bool:
        return self._needs_reencrypt

    @property
    def audit_errors(self) -> int:
        return self._audit.failures

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._keys)

    def _load(self) -> None:
        try:
            raw = self.keys_file.read_bytes()
        except FileNotFoundError:
            return
        except OSError as exc:
            self._mark_load_failed(f"failed to read keys file: {exc}")
            return

        legacy = self._parse_legacy(raw)
        if legacy is not None:
            self._keys = {record.name: record for record in legacy.keys}
            self._needs_reencrypt = True
            logger.warning("keys.legacy_format", keys=len(self._keys))
            return
        if self._load_failed:
            return

        try:
            plaintext = self._crypto.decrypt(raw.decode("ascii"))
            payload = KeysFile.model_validate_json(plaintext)
        except CryptoNotInitializedError:
            raise
        except (IntegrityError, UnicodeDecodeError, PydanticValidationError) as exc:
            self._mark_load_failed(f"failed to decrypt keys file: {exc}")
            return
        self._keys = {record.name: record for record in payload.keys}
        logger.info("keys.loaded", keys=len(self._keys))

    def _parse_legacy(self, raw: bytes) -> Optional[KeysFile]:
        """Return the plaintext keys file, or ``None`` when ``raw`` is not one."""

        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        if not isinstance(document, dict) or not document.get("version"):
            return None
        try:
            return KeysFile.model_validate(document)
        except PydanticValidationError as exc:
            self._mark_load_failed(f"failed to parse legacy keys file: {exc}")
            return None

    def _mark_load_failed(self, reason: str) -> None:
        self._load_failed = True
        self._keys = {}
        logger.error("keys.load_failed", path=str(self.keys_file), reason=reason)

    def clear_load_failure(self) -> None:
        """Allow saves again after a failed load.

        The next save overwrites ``keys.json`` with whatever is in memory, so
        call this only once the unreadable file has been dealt with.
        """

        with self._lock.write_locked():
            self._load_failed = False
        logger.warning("keys.load_failure_cleared", path=str(self.keys_file))

    def _save(self) -> None:
        """Persist the map; the caller holds the write lock."""

        if self._load_failed:
            raise PersistenceError(
                "refusing to save: keys file failed to load, saving may cause data loss"
            )
        document = {
            "version": KEYS_FILE_VERSION,
            "updated_at": isoformat(utc_now()),
            "keys": [self._keys[name].to_file_dict() for name in sorted(self._keys)],
        }
        encrypted = self._crypto.encrypt(json.dumps(document, indent=2, ensure_ascii=False))
        try:
            atomic_write(self.keys_file, encrypted.encode("ascii"))
        except OSError as exc:
            logger.error("keys.save_failed", path=str(self.keys_file), error=str(exc))
            raise PersistenceError(f"failed to write keys file: {exc}") from exc
        if self._needs_reencrypt:
            self._needs_reencrypt = False
            logger.info("keys.reencrypted", keys=len(self._keys))

    def _commit(self, name: str, record: Optional[APIKeyRecord]) -> None:
        """Install ``record`` (or remove ``name``) and save, undoing on failure."""

        previous = self._keys.get(name)
        if record is None:
            self._keys.pop(name, None)
        else:
            self._keys[name] = record
        try:
            self._save()
        except Exception:
            if previous is None:
                self._keys.pop(name, None)
            else:
                self._keys[name] = previous
            raise

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_key(
        self,
        name: str,
        value: str,
        provider: str,
        options: Optional[KeyOptions] = None,
    ) -> APIKeyRecord:
        """Encrypt and store a key, replacing any existing key of that name."""

        if not validate_key_name(name):
            raise ValidationError(
                f"invalid key name '{name}': must start with a letter or underscore, "
                "contain only letters, digits and underscores, max 256 characters"
            )
        if not value:
            raise ValidationError("key value must not be empty")
        provider = (provider or "").strip()
        if not provider:
            raise ValidationError("provider must not be empty")

        opts = options or KeyOptions()
        now = utc_now()
        record = APIKeyRecord(
            name=name,
            value_encrypted=self._crypto.encrypt(value),
            provider=provider,
            description=opts.description,
            source_project=opts.source_project,
            tags=list(opts.tags),
            created_at=now,
            updated_at=now,
            expires_at=opts.expires_at,
            is_active=opts.is_active,
            model_version=opts.model_version,
            model_name=opts.model_name,
            model_capabilities=list(opts.model_capabilities),
        )
        with self._lock.write_locked():
            self._commit(name, record)
        logger.info("keys.added", key_name=name, provider=provider)
        self._audit.append(name, AuditAction.ADD.value, SYSTEM_PROJECT)
        return record

    def update_key(self, name: str, update: KeyUpdate) -> APIKeyRecord:
        """Apply the fields present in ``update`` to the metadata of ``name``."""

        changes = update.present_fields()
        if "provider" in changes:
            provider = (changes["provider"] or "").strip()
            if not provider:
                raise ValidationError("provider must not be empty")
            changes["provider"] = provider
        if "is_active" in changes and changes["is_active"] is None:
            raise ValidationError("is_active must be true or false")
        if "tags" in changes and changes["tags"] is None:
            changes["tags"] = []
        if changes.get("expires_at") is not None:
            changes["expires_at"] = ensure_utc(changes["expires_at"])

        with self._lock.write_locked():
            existing = self._keys.get(name)
            if existing is None:
                raise NotFoundError(f"key '{name}' not found")
            changes["updated_at"] = utc_now()
            record = existing.model_copy(update=changes)
            self._commit(name, record)
        logger.info("keys.updated", key_name=name, fields=sorted(update.model_fields_set))
        self._audit.append(name, AuditAction.UPDATE.value, SYSTEM_PROJECT)
        return record

    def set_key_value(self, name: str, value: str) -> APIKeyRecord:
        """Replace the secret of an existing key, keeping its metadata."""

        if not value:
            raise ValidationError("key value must not be empty")
        encrypted = self._crypto.encrypt(value)
        with self._lock.write_locked():
            existing = self._keys.get(name)
            if existing is None:
                raise NotFoundError(f"key '{name}' not found")
            record = existing.model_copy(
                update={"value_encrypted": encrypted, "updated_at": utc_now()}
            )
            self._commit(name, record)
        logger.info("keys.value_replaced", key_name=name)
        self._audit.append(name, AuditAction.UPDATE.value, SYSTEM_PROJECT)
        return record

    def delete_key(self, name: str) -> None:
        with self._lock.write_locked():
            if name not in self._keys:
                raise NotFoundError(f"key '{name}' not found")
            self._commit(name, None)
        logger.info("keys.deleted", key_name=name)
        self._audit.append(name, AuditAction.DELETE.value, SYSTEM_PROJECT)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_key(self, name: str) -> Optional[APIKeyRecord]:
        with self._lock.read_locked():
            return self._keys.get(name)

    def get_key_value(self, name: str, project: str = "unknown") -> str:
        """Decrypt the value of ``name`` and record a ``read`` audit entry."""

        record = self.get_key(name)
        if record is None:
            raise NotFoundError(f"key '{name}' not found")
        value = self._decrypt_record(record)
        self._audit.append(name, AuditAction.READ.value, project)
        return value

    def decrypt_record(self, record: APIKeyRecord) -> str:
        """Decrypt ``record`` without writing an audit entry.

        Callers log their own action, e.g. :meth:`record_proxy_use`.
        """

        return self._decrypt_record(record)

    def _decrypt_record(self, record: APIKeyRecord) -> str:
        try:
            return self._crypto.decrypt(record.value_encrypted)
        except CryptoNotInitializedError:
            raise
        except IntegrityError as exc:
            raise IntegrityError(f"failed to decrypt key '{record.name}': {exc}") from exc

    def list_keys(self, provider: Optional[str] = None) -> List[APIKeyRecord]:
        with self._lock.read_locked():
            records = [
                record
                for name, record in sorted(self._keys.items())
                if not provider or record.provider == provider
            ]
        return records

    def search_keys(self, query: str) -> List[APIKeyRecord]:
        """Case-insensitive substring match on name, provider, description and project."""

        needle = (query or "").lower()
        results: List[APIKeyRecord] = []
        with self._lock.read_locked():
            for name, record in sorted(self._keys.items()):
                haystacks = (
                    record.name,
                    record.provider,
                    record.description or "",
                    record.source_project or "",
                )
                if any(needle in text.lower() for text in haystacks):
                    results.append(record)
        return results

    def get_keys_for_injection(
        self,
        project: str,
        provider: Optional[str] = None,
        names: Optional[Iterable[str]] = None,
    ) -> Dict[str, str]:
        return self._get_keys_batch(project, provider, names, AuditAction.INJECT)

    def get_keys_for_export(
        self,
        project: str,
        provider: Optional[str] = None,
        names: Optional[Iterable[str]] = None,
    ) -> Dict[str, str]:
        return self._get_keys_batch(project, provider, names, AuditAction.EXPORT)

    def _get_keys_batch(
        self,
        project: str,
        provider: Optional[str],
        names: Optional[Iterable[str]],
        action: AuditAction,
    ) -> Dict[str, str]:
        allowed = set(names or ())
        with self._lock.read_locked():
            selected = [
                record
                for name, record in sorted(self._keys.items())
                if (not provider or record.provider == provider)
                and (not allowed or name in allowed)
            ]

        result: Dict[str, str] = {}
        for record in selected:
            result[record.name] = self._decrypt_record(record)
            self._audit.append(record.name, action.value, project)
        return result

    # ------------------------------------------------------------------
    # Audit and backup
    # ------------------------------------------------------------------

    def record_proxy_use(self, name: str) -> None:
        self._audit.append(name, AuditAction.PROXY.value, PROXY_PROJECT)

    def verify_audit_logs(self) -> AuditVerification:
        return self._audit.verify()

    def backup(self, directory: Path) -> Path:
        """Copy the keys file and the audit log into ``directory``."""

        target = Path(directory).expanduser()
        try:
            ensure_private_dir(target)
            with self._lock.read_locked():
                copy_private(self.keys_file, target / KEYS_FILENAME)
            copy_private(self.audit_file, target / AUDIT_FILENAME)
        except OSError as exc:
            logger.error("keys.backup_failed", target=str(target), error=str(exc))
            raise PersistenceError(f"backup failed: {exc}") from exc
        logger.info("keys.backup_written", target=str(target))
        self._audit.append("*", AuditAction.BACKUP.value, SYSTEM_PROJECT)
        return target


__all__ = [
    "KeyStorage",
    "PROXY_PROJECT",
    "SYSTEM_PROJECT",
    "escape_dotenv_value",
    "format_dotenv",
]
