"""Append-only, HMAC-signed audit log stored as newline-delimited JSON."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from akm.crypto import KeyEncryption
from akm.errors import AKMError
from akm.models import AuditEntry, AuditVerification
from akm.observability import AUDIT_WRITE_FAILURES
from akm.time_utils import isoformat, utc_now

logger = structlog.get_logger(__name__)


class AuditLog:
    """Write and verify signed audit entries.

    A failed append never fails the operation that triggered it; the failure
    is counted, logged and exported as a metric instead.
    """

    def __init__(self, path: Path, crypto: KeyEncryption) -> None:
        self.path = Path(path)
        self._crypto = crypto
        self._lock = threading.Lock()
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    def append(self, key_name: str, action: str, project: str) -> None:
        entry = AuditEntry(
            key_name=key_name,
            project=project,
            action=action,
            timestamp=isoformat(utc_now()),
        )
        try:
            entry.signature = self._crypto.sign(entry.signing_message())
        except AKMError as exc:
            self._record_failure(entry, exc)
            return

        line = (entry.to_line() + "\n").encode("utf-8")
        try:
            with self._lock:
                fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
                try:
                    os.write(fd, line)
                finally:
                    os.close(fd)
        except OSError as exc:
            self._record_failure(entry, exc)

    def _record_failure(self, entry: AuditEntry, exc: Exception) -> None:
        with self._lock:
            self._failures += 1
            failures = self._failures
        AUDIT_WRITE_FAILURES.inc()
        logger.warning(
            "audit.write_failed",
            key_name=entry.key_name,
            action=entry.action,
            failures=failures,
            error=str(exc),
        )

    def verify(self) -> AuditVerification:
        """Classify every line as verified, unsigned or tampered."""

        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return AuditVerification()

        total = verified = unsigned = tampered = 0
        for raw_line in data.split(b"\n"):
            if not raw_line.strip():
                continue
            total += 1
            try:
                payload = json.loads(raw_line.decode("utf-8"))
                entry = AuditEntry.model_validate(payload)
            except (UnicodeDecodeError, ValueError, TypeError, PydanticValidationError):
                tampered += 1
                continue
            if not entry.signature:
                unsigned += 1
                continue
            if self._crypto.verify(entry.signing_message(), entry.signature):
                verified += 1
            else:
                tampered += 1

        return AuditVerification(
            total=total, verified=verified, unsigned=unsigned, tampered=tampered
        )


__all__ = ["AuditLog"]
