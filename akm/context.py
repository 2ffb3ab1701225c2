"""Process-wide service instances, built once and passed to every consumer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import requests
import structlog

from akm.budget import BudgetTracker
from akm.config import Settings
from akm.crypto import KeyEncryption
from akm.fileio import ensure_private_dir
from akm.lockfile import DataDirLock
from akm.storage import KeyStorage

logger = structlog.get_logger(__name__)


@dataclass
class AppContext:
    settings: Settings
    crypto: KeyEncryption
    storage: KeyStorage
    budget: BudgetTracker
    http: Any = field(default_factory=requests.Session)
    lock: Optional[DataDirLock] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        keyring_backend: Any = None,
        http: Any = None,
    ) -> "AppContext":
        """Take the data-dir lock, load the master key and open the stores."""

        ensure_private_dir(settings.data_dir)
        lock: Optional[DataDirLock] = None
        if settings.enable_lock:
            lock = DataDirLock(settings.lock_file)
            lock.acquire()
        try:
            crypto = KeyEncryption(backend=keyring_backend)
            crypto.initialize()
            storage = KeyStorage(settings.data_dir, crypto)
            budget = BudgetTracker(settings.budget_file)
        except Exception:
            if lock is not None:
                lock.release()
            raise
        logger.info(
            "context.ready",
            data_dir=str(settings.data_dir),
            keys=len(storage),
            load_failed=storage.load_failed,
        )
        return cls(
            settings=settings,
            crypto=crypto,
            storage=storage,
            budget=budget,
            http=http if http is not None else requests.Session(),
            lock=lock,
        )

    def close(self) -> None:
        self.budget.close()
        close_http = getattr(self.http, "close", None)
        if callable(close_http):
            close_http()
        if self.lock is not None:
            self.lock.release()
        logger.info("context.closed")


__all__ = ["AppContext"]
