"""Error taxonomy shared by the key store, budget tracker and proxy."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AKMError(Exception):
    """Base error for key manager failures."""

    error_type = "server_error"
    status_code = 500


class ValidationError(AKMError):
    """Raised when input is rejected before any state change."""

    error_type = "invalid_request_error"
    status_code = 400


class NotFoundError(AKMError):
    """Raised when a key or provider is unknown."""

    error_type = "not_found"
    status_code = 404


class IntegrityError(AKMError):
    """Raised when a ciphertext or signature fails authentication."""

    error_type = "integrity_error"


class CryptoNotInitializedError(IntegrityError):
    """Raised when the master key has not been loaded or was reset."""


class MasterKeyError(AKMError):
    """Raised when the secure credential store cannot be read or written."""

    error_type = "master_key_error"


class PersistenceError(AKMError):
    """Raised when a file write or rename fails; in-memory state is rolled back."""

    error_type = "persistence_error"


class BudgetExceededError(AKMError):
    """Raised when a provider has used up its daily or monthly allowance."""

    error_type = "budget_exceeded"
    status_code = 429

    def __init__(self, provider: str, period: str, count: int, limit: int) -> None:
        self.provider = provider
        self.period = period
        self.count = count
        self.limit = limit
        super().__init__(
            f"provider '{provider}' {period} limit exceeded ({count}/{limit})"
        )

    def usage(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "period": self.period,
            "count": self.count,
            "limit": self.limit,
        }


class UpstreamError(AKMError):
    """Raised when the provider cannot be reached."""

    error_type = "upstream_error"
    status_code = 502

    def __init__(self, message: str, *, provider: Optional[str] = None) -> None:
        self.provider = provider
        super().__init__(message)


class KeySelectionError(AKMError):
    """Raised when the proxy cannot find a usable key for a provider."""

    error_type = "key_error"
    status_code = 502


class DataDirLockedError(AKMError):
    """Raised when another live process owns the data directory."""

    error_type = "data_dir_locked"
    status_code = 503


__all__ = [
    "AKMError",
    "BudgetExceededError",
    "CryptoNotInitializedError",
    "DataDirLockedError",
    "IntegrityError",
    "KeySelectionError",
    "MasterKeyError",
    "NotFoundError",
    "PersistenceError",
    "UpstreamError",
    "ValidationError",
]
