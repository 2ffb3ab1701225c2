"""Single-writer lock on the data directory."""

from __future__ import annotations

import errno
import os
from pathlib import Path
from typing import Optional

import structlog

from akm.errors import DataDirLockedError

logger = structlog.get_logger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    except OSError:
        return False
    return True


class DataDirLock:
    """Exclusive pid file created with ``O_CREAT | O_EXCL``.

    A lock left behind by a process that no longer exists is taken over.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def owner(self) -> Optional[int]:
        try:
            text = self.path.read_text(encoding="ascii").strip()
        except (FileNotFoundError, UnicodeDecodeError):
            return None
        try:
            return int(text)
        except ValueError:
            return None

    def acquire(self) -> None:
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except OSError as exc:
                if exc.errno != errno.EEXIST:
                    raise
                pid = self.owner()
                if pid == os.getpid():
                    self._held = True
                    return
                if pid is not None and _pid_alive(pid):
                    raise DataDirLockedError(
                        f"data directory is in use by process {pid} ({self.path})"
                    ) from exc
                logger.warning("lock.stale_removed", path=str(self.path), pid=pid)
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w", encoding="ascii") as handle:
                handle.write(str(os.getpid()))
            self._held = True
            logger.debug("lock.acquired", path=str(self.path))
            return
        raise DataDirLockedError(f"could not acquire data directory lock ({self.path})")

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self.owner() == os.getpid():
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        logger.debug("lock.released", path=str(self.path))

    def __enter__(self) -> "DataDirLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


__all__ = ["DataDirLock"]
