"""Runtime configuration derived from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from platformdirs import user_data_dir

APP_NAME = "akm"

DEFAULT_CORS_ORIGINS: Tuple[str, ...] = (
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
)

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


@dataclass(frozen=True)
class Settings:
    """Resolved settings for the key manager service."""

    data_dir: Path
    host: str = "127.0.0.1"
    port: int = 8765
    api_key: Optional[str] = None
    require_api_key: bool = False
    cors_origins: Tuple[str, ...] = field(default=DEFAULT_CORS_ORIGINS)
    upstream_timeout: float = 120.0
    verify_timeout: float = 10.0
    verify_workers: int = 5
    log_level: str = "INFO"
    enable_lock: bool = True

    @property
    def keys_file(self) -> Path:
        return self.data_dir / "keys.json"

    @property
    def audit_file(self) -> Path:
        return self.data_dir / "audit.jsonl"

    @property
    def budget_file(self) -> Path:
        return self.data_dir / "budget.json"

    @property
    def lock_file(self) -> Path:
        return self.data_dir / "akm.lock"

    @property
    def auth_required(self) -> bool:
        return self.require_api_key or bool(self.api_key)


def default_data_dir() -> Path:
    return Path(user_data_dir(APP_NAME, appauthor=False)) / "data"


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def _cors_origins() -> Tuple[str, ...]:
    raw = (os.getenv("AKM_CORS_ORIGINS") or "").strip()
    if not raw:
        return DEFAULT_CORS_ORIGINS
    items = tuple(item.strip() for item in raw.split(",") if item.strip())
    return items or ("*",)


def load_settings() -> Settings:
    """Build :class:`Settings` from ``AKM_*`` environment variables."""

    data_dir_override = os.getenv("AKM_DATA_DIR")
    data_dir = Path(data_dir_override).expanduser() if data_dir_override else default_data_dir()
    log_level = os.getenv("AKM_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO"
    return Settings(
        data_dir=data_dir,
        host=os.getenv("AKM_HOST", "127.0.0.1"),
        port=_get_int_env("AKM_PORT", 8765),
        api_key=os.getenv("AKM_API_KEY") or None,
        require_api_key=_get_bool_env("AKM_REQUIRE_API_KEY", False),
        cors_origins=_cors_origins(),
        upstream_timeout=_get_float_env("AKM_UPSTREAM_TIMEOUT", 120.0),
        verify_timeout=_get_float_env("AKM_VERIFY_TIMEOUT", 10.0),
        verify_workers=max(1, _get_int_env("AKM_VERIFY_WORKERS", 5)),
        log_level=log_level.upper(),
        enable_lock=_get_bool_env("AKM_LOCK", True),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, loading ``.env`` first when present."""

    from dotenv import load_dotenv

    load_dotenv()
    return load_settings()


__all__ = ["APP_NAME", "Settings", "default_data_dir", "get_settings", "load_settings"]
