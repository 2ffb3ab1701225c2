"""Private-directory and atomic-replace helpers for the data directory."""

from __future__ import annotations

import os
import stat
import tempfile
from pathlib import Path
from typing import Union

PathLike = Union[str, "os.PathLike[str]"]

_DIR_MODE = stat.S_IRWXU
_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR


def ensure_private_dir(path: PathLike) -> Path:
    """Create ``path`` (and parents) readable only by the current user."""

    directory = Path(path).expanduser()
    directory.mkdir(parents=True, exist_ok=True, mode=_DIR_MODE)
    if os.name != "nt":
        os.chmod(directory, _DIR_MODE)
    return directory


def atomic_write(path: PathLike, data: bytes) -> None:
    """Write ``data`` to a sibling temp file and rename it over ``path``.

    A crash before the rename leaves the previous file untouched.  The temp
    file is removed when either step fails and the original ``OSError`` is
    re-raised.
    """

    target = Path(path)
    fd, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, _FILE_MODE)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def copy_private(source: PathLike, destination: PathLike) -> bool:
    """Copy ``source`` to ``destination`` with 0600 permissions.

    Returns ``False`` when the source does not exist.
    """

    src = Path(source)
    if not src.exists():
        return False
    atomic_write(destination, src.read_bytes())
    return True


__all__ = ["atomic_write", "copy_private", "ensure_private_dir"]
