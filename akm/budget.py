"""Per-provider daily and monthly request budgets.

Counters are keyed by the local calendar day (``YYYY-MM-DD``) and month
(``YYYY-MM``).  A counter whose period has passed reads as zero and is only
rewritten by the next :meth:`BudgetTracker.record`.
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from akm.errors import BudgetExceededError, PersistenceError, ValidationError
from akm.fileio import atomic_write
from akm.observability import BUDGET_PERSIST_FAILURES
from akm.rwlock import ReadWriteLock

logger = structlog.get_logger(__name__)

DAY_FORMAT = "%Y-%m-%d"
MONTH_FORMAT = "%Y-%m"


@dataclass
class BudgetConfig:
    daily_limit: int = 0
    monthly_limit: int = 0


@dataclass
class _Counter:
    daily_count: int = 0
    monthly_count: int = 0
    daily_date: str = ""
    monthly_date: str = ""


@dataclass(frozen=True)
class ProviderStats:
    provider: str
    daily_count: int = 0
    daily_limit: int = 0
    monthly_count: int = 0
    monthly_limit: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _local_now() -> datetime:
    return datetime.now()


class BudgetTracker:
    """Check and record provider usage against configured caps.

    ``record`` saves in the background on a single worker so the request path
    never waits on disk.  A burst of records shares one pending write, and
    failed saves are counted in :attr:`persist_failures`.
    Limit changes and resets are saved synchronously.
    """

    def __init__(
        self,
        path: Path,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.path = Path(path)
        self._clock = clock or _local_now
        self._config: Dict[str, BudgetConfig] = {}
        self._counters: Dict[str, _Counter] = {}
        self._lock = ReadWriteLock()
        self._persist_failures = 0
        self._save_pending = False
        self._pending_lock = threading.Lock()
        self._load()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="akm-budget")

    @property
    def persist_failures(self) -> int:
        return self._persist_failures

    def _periods(self) -> Tuple[str, str]:
        now = self._clock()
        return now.strftime(DAY_FORMAT), now.strftime(MONTH_FORMAT)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as exc:
            raise PersistenceError(f"failed to read budget data: {exc}") from exc
        try:
            document = json.loads(raw)
            config = {
                provider: BudgetConfig(
                    daily_limit=int(item.get("daily_limit", 0)),
                    monthly_limit=int(item.get("monthly_limit", 0)),
                )
                for provider, item in (document.get("config") or {}).items()
            }
            counters = {
                provider: _Counter(
                    daily_count=int(item.get("daily_count", 0)),
                    monthly_count=int(item.get("monthly_count", 0)),
                    daily_date=str(item.get("daily_date", "")),
                    monthly_date=str(item.get("monthly_date", "")),
                )
                for provider, item in (document.get("counters") or {}).items()
            }
        except (ValueError, TypeError, AttributeError) as exc:
            raise PersistenceError(f"failed to parse budget data: {exc}") from exc
        self._config = config
        self._counters = counters

    def _serialize(self) -> bytes:
        document = {
            "config": {provider: asdict(cfg) for provider, cfg in sorted(self._config.items())},
            "counters": {
                provider: asdict(counter) for provider, counter in sorted(self._counters.items())
            },
        }
        return json.dumps(document, indent=2).encode("utf-8")

    def _save(self) -> None:
        """Write the current state; the caller holds either side of the lock."""

        atomic_write(self.path, self._serialize())

    def _schedule_save(self) -> None:
        # At most one queued save; it writes whatever state is current when it runs.
        with self._pending_lock:
            if self._save_pending:
                return
            self._save_pending = True
        self._executor.submit(self._save_in_background)

    def _save_in_background(self) -> None:
        with self._pending_lock:
            self._save_pending = False
        try:
            with self._lock.read_locked():
                self._save()
        except OSError as exc:
            self._persist_failures += 1
            BUDGET_PERSIST_FAILURES.inc()
            logger.warning(
                "budget.persist_failed",
                path=str(self.path),
                failures=self._persist_failures,
                error=str(exc),
            )

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every save scheduled so far has finished."""

        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def check(self, provider: str) -> None:
        """Raise :class:`BudgetExceededError` when ``provider`` is at a cap."""

        today, month = self._periods()
        with self._lock.read_locked():
            cfg = self._config.get(provider)
            if cfg is None:
                return
            counter = self._counters.get(provider) or _Counter()
            daily = counter.daily_count if counter.daily_date == today else 0
            monthly = counter.monthly_count if counter.monthly_date == month else 0

        if cfg.daily_limit > 0 and daily >= cfg.daily_limit:
            raise BudgetExceededError(provider, "daily", daily, cfg.daily_limit)
        if cfg.monthly_limit > 0 and monthly >= cfg.monthly_limit:
            raise BudgetExceededError(provider, "monthly", monthly, cfg.monthly_limit)

    def record(self, provider: str) -> None:
        """Count one request for ``provider`` and schedule a save."""

        today, month = self._periods()
        with self._lock.write_locked():
            counter = self._counters.setdefault(provider, _Counter())
            if counter.daily_date != today:
                counter.daily_count = 0
                counter.daily_date = today
            if counter.monthly_date != month:
                counter.monthly_count = 0
                counter.monthly_date = month
            counter.daily_count += 1
            counter.monthly_count += 1
        self._schedule_save()

    def set_config(self, provider: str, daily: int, monthly: int) -> BudgetConfig:
        if daily < 0 or monthly < 0:
            raise ValidationError("budget limits must be zero (unlimited) or positive")
        cfg = BudgetConfig(daily_limit=daily, monthly_limit=monthly)
        with self._lock.write_locked():
            previous = self._config.get(provider)
            self._config[provider] = cfg
            try:
                self._save()
            except OSError as exc:
                if previous is None:
                    del self._config[provider]
                else:
                    self._config[provider] = previous
                raise PersistenceError(f"failed to save budget data: {exc}") from exc
        logger.info("budget.config_set", provider=provider, daily=daily, monthly=monthly)
        return cfg

    def get_config(self, provider: str) -> Optional[BudgetConfig]:
        with self._lock.read_locked():
            cfg = self._config.get(provider)
            return BudgetConfig(cfg.daily_limit, cfg.monthly_limit) if cfg else None

    def reset_counter(self, provider: str) -> None:
        with self._lock.write_locked():
            previous = self._counters.pop(provider, None)
            try:
                self._save()
            except OSError as exc:
                if previous is not None:
                    self._counters[provider] = previous
                raise PersistenceError(f"failed to save budget data: {exc}") from exc
        logger.info("budget.counter_reset", provider=provider)

    def get_all_stats(self) -> List[ProviderStats]:
        today, month = self._periods()
        stats: List[ProviderStats] = []
        with self._lock.read_locked():
            for provider in sorted(set(self._config) | set(self._counters)):
                cfg = self._config.get(provider) or BudgetConfig()
                counter = self._counters.get(provider) or _Counter()
                stats.append(
                    ProviderStats(
                        provider=provider,
                        daily_count=counter.daily_count if counter.daily_date == today else 0,
                        daily_limit=cfg.daily_limit,
                        monthly_count=(
                            counter.monthly_count if counter.monthly_date == month else 0
                        ),
                        monthly_limit=cfg.monthly_limit,
                    )
                )
        return stats


__all__ = ["BudgetConfig", "BudgetTracker", "ProviderStats"]
