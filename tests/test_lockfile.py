import os

import pytest

import akm.lockfile as lockfile
from akm.config import Settings
from akm.context import AppContext
from akm.errors import DataDirLockedError
from akm.lockfile import DataDirLock


def test_acquire_and_release(tmp_path):
    lock = DataDirLock(tmp_path / "akm.lock")
    lock.acquire()
    assert lock.held
    assert lock.owner() == os.getpid()

    lock.release()
    assert not lock.held
    assert not (tmp_path / "akm.lock").exists()


def test_live_foreign_owner_blocks(tmp_path, monkeypatch):
    path = tmp_path / "akm.lock"
    path.write_text("424242")
    monkeypatch.setattr(lockfile, "_pid_alive", lambda pid: True)

    with pytest.raises(DataDirLockedError):
        DataDirLock(path).acquire()
    assert path.read_text() == "424242"


def test_stale_lock_is_taken_over(tmp_path, monkeypatch):
    path = tmp_path / "akm.lock"
    path.write_text("424242")
    monkeypatch.setattr(lockfile, "_pid_alive", lambda pid: False)

    with DataDirLock(path) as lock:
        assert lock.owner() == os.getpid()
    assert not path.exists()


def test_garbage_lock_is_treated_as_stale(tmp_path):
    path = tmp_path / "akm.lock"
    path.write_text("not a pid")
    with DataDirLock(path):
        assert path.read_text() == str(os.getpid())


def test_context_holds_lock_until_closed(tmp_path, keyring_backend):
    settings = Settings(data_dir=tmp_path / "data", enable_lock=True)
    context = AppContext.build(settings, keyring_backend=keyring_backend)
    try:
        assert settings.lock_file.read_text() == str(os.getpid())
    finally:
        context.close()
    assert not settings.lock_file.exists()


def test_context_refuses_locked_data_dir(tmp_path, keyring_backend, monkeypatch):
    settings = Settings(data_dir=tmp_path / "data", enable_lock=True)
    settings.data_dir.mkdir()
    settings.lock_file.write_text("424242")
    monkeypatch.setattr(lockfile, "_pid_alive", lambda pid: True)

    with pytest.raises(DataDirLockedError):
        AppContext.build(settings, keyring_backend=keyring_backend)
    assert settings.lock_file.read_text() == "424242"
    assert not settings.keys_file.exists()
