"""Data models for stored keys, audit entries and the keys file."""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from akm.time_utils import isoformat, parse_timestamp, utc_now

KEYS_FILE_VERSION = "2.0"

KEY_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,255}$")


def validate_key_name(name: str) -> bool:
    """Return ``True`` when ``name`` is usable as an environment variable name."""

    return bool(name) and KEY_NAME_PATTERN.fullmatch(name) is not None


class AuditAction(str, Enum):
    READ = "read"
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    INJECT = "inject"
    EXPORT = "export"
    BACKUP = "backup"
    PROXY = "proxy"


def _coerce_timestamp(value: Any) -> Any:
    if isinstance(value, (str, datetime)) or value is None:
        return parse_timestamp(value)
    return value


class APIKeyRecord(BaseModel):
    """An encrypted API key and its metadata."""

    model_config = ConfigDict(extra="ignore")

    name: str
    value_encrypted: str
    provider: str
    description: Optional[str] = None
    source_project: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    is_active: bool = True

    model_version: Optional[str] = None
    model_name: Optional[str] = None
    model_capabilities: List[str] = Field(default_factory=list)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_required_time(cls, value: Any) -> Any:
        parsed = _coerce_timestamp(value)
        return utc_now() if parsed is None else parsed

    @field_validator("expires_at", mode="before")
    @classmethod
    def _parse_optional_time(cls, value: Any) -> Any:
        return _coerce_timestamp(value)

    @field_validator("tags", "model_capabilities", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    def to_file_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        data["created_at"] = isoformat(self.created_at)
        data["updated_at"] = isoformat(self.updated_at)
        if self.expires_at is not None:
            data["expires_at"] = isoformat(self.expires_at)
        return data

    def public_dict(self) -> Dict[str, Any]:
        """Metadata without the ciphertext, for API responses."""

        data = self.to_file_dict()
        data.pop("value_encrypted", None)
        return data


class KeyOptions(BaseModel):
    """Optional attributes supplied when a key is added."""

    description: Optional[str] = None
    source_project: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    model_version: Optional[str] = None
    model_name: Optional[str] = None
    model_capabilities: List[str] = Field(default_factory=list)


class KeyUpdate(BaseModel):
    """Partial update of key metadata.

    Only fields explicitly provided are applied; ``model_fields_set`` tells
    an omitted field apart from one set to ``None``.
    """

    model_config = ConfigDict(extra="forbid")

    provider: Optional[str] = None
    description: Optional[str] = None
    source_project: Optional[str] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None

    def present_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class KeysFile(BaseModel):
    """Shape of ``keys.json`` (legacy plaintext) and of the decrypted blob."""

    model_config = ConfigDict(extra="ignore")

    version: str = ""
    updated_at: str = ""
    keys: List[APIKeyRecord] = Field(default_factory=list)

    @field_validator("keys", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


class AuditEntry(BaseModel):
    """One signed line of the audit log."""

    model_config = ConfigDict(extra="forbid")

    key_name: str
    project: str
    action: str
    timestamp: str
    signature: Optional[str] = None

    def signing_message(self) -> str:
        return json.dumps(
            {
                "key_name": self.key_name,
                "project": self.project,
                "action": self.action,
                "timestamp": self.timestamp,
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def to_line(self) -> str:
        return json.dumps(
            self.model_dump(exclude_none=True), separators=(",", ":"), ensure_ascii=False
        )


@dataclass(frozen=True)
class AuditVerification:
    total: int = 0
    verified: int = 0
    unsigned: int = 0
    tampered: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


__all__ = [
    "APIKeyRecord",
    "AuditAction",
    "AuditEntry",
    "AuditVerification",
    "KEYS_FILE_VERSION",
    "KEY_NAME_PATTERN",
    "KeyOptions",
    "KeyUpdate",
    "KeysFile",
    "validate_key_name",
]
