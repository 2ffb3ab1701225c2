import json
import os
import stat
from datetime import datetime, timezone

import pytest

import akm.fileio as fileio
from akm.errors import IntegrityError, NotFoundError, PersistenceError, ValidationError
from akm.models import KeyOptions, KeyUpdate, validate_key_name
from akm.storage import KeyStorage, escape_dotenv_value, format_dotenv


def _audit_lines(storage):
    if not storage.audit_file.exists():
        return []
    return [json.loads(line) for line in storage.audit_file.read_text().splitlines() if line]


@pytest.mark.parametrize("name", ["OPENAI_KEY", "_X9", "a", "_", "A" * 256])
def test_valid_key_names(name):
    assert validate_key_name(name)


@pytest.mark.parametrize("name", ["1KEY", "", "has space", "A" * 257, "dash-name", "ÄKEY"])
def test_invalid_key_names(name):
    assert not validate_key_name(name)


def test_add_and_read_key(storage):
    record = storage.add_key(
        "OPENAI_KEY",
        "sk-test-123",
        "openai",
        KeyOptions(description="main key", source_project="demo", tags=["prod"]),
    )

    assert record.value_encrypted != "sk-test-123"
    assert record.is_active
    assert storage.get_key("OPENAI_KEY").description == "main key"
    assert storage.get_key_value("OPENAI_KEY", "my-project") == "sk-test-123"
    assert "sk-test-123" not in storage.keys_file.read_text()

    entries = _audit_lines(storage)
    assert [(e["key_name"], e["action"], e["project"]) for e in entries] == [
        ("OPENAI_KEY", "add", "system"),
        ("OPENAI_KEY", "read", "my-project"),
    ]
    assert all(e["signature"] for e in entries)


def test_add_rejects_bad_input_without_state_change(storage):
    with pytest.raises(ValidationError):
        storage.add_key("1KEY", "value", "openai")
    with pytest.raises(ValidationError):
        storage.add_key("GOOD", "", "openai")
    assert storage.list_keys() == []
    assert not storage.keys_file.exists()
    assert _audit_lines(storage) == []


def test_add_existing_name_replaces(storage):
    storage.add_key("KEY", "one", "openai")
    storage.add_key("KEY", "two", "anthropic")
    assert len(storage.list_keys()) == 1
    assert storage.get_key("KEY").provider == "anthropic"
    assert storage.get_key_value("KEY") == "two"


def test_persisted_store_reloads(storage, crypto, data_dir):
    storage.add_key("B_KEY", "bee", "openai")
    storage.add_key("A_KEY", "ay", "anthropic", KeyOptions(tags=["x"]))

    reloaded = KeyStorage(data_dir, crypto)
    assert [record.name for record in reloaded.list_keys()] == ["A_KEY", "B_KEY"]
    assert reloaded.get_key_value("A_KEY") == "ay"
    assert reloaded.get_key("A_KEY").tags == ["x"]
    assert not reloaded.load_failed


def test_file_permissions(storage, data_dir):
    storage.add_key("KEY", "value", "openai")
    if os.name == "nt":  # pragma: no cover
        pytest.skip("POSIX permissions only")
    assert stat.S_IMODE(data_dir.stat().st_mode) == 0o700
    assert stat.S_IMODE(storage.keys_file.stat().st_mode) == 0o600
    assert stat.S_IMODE(storage.audit_file.stat().st_mode) == 0o600


def test_list_and_search(storage):
    storage.add_key("OPENAI_KEY", "v1", "openai", KeyOptions(description="Production"))
    storage.add_key("CLAUDE_KEY", "v2", "anthropic", KeyOptions(source_project="Website"))
    storage.add_key("DEEP_KEY", "v3", "deepseek")

    assert [r.name for r in storage.list_keys()] == ["CLAUDE_KEY", "DEEP_KEY", "OPENAI_KEY"]
    assert [r.name for r in storage.list_keys("openai")] == ["OPENAI_KEY"]
    assert [r.name for r in storage.search_keys("production")] == ["OPENAI_KEY"]
    assert [r.name for r in storage.search_keys("WEBSITE")] == ["CLAUDE_KEY"]
    assert [r.name for r in storage.search_keys("seek")] == ["DEEP_KEY"]
    assert storage.search_keys("nothing") == []


def test_update_key_applies_only_present_fields(storage):
    storage.add_key("KEY", "v", "openai", KeyOptions(description="desc", tags=["a"]))
    before = storage.get_key("KEY")

    updated = storage.update_key("KEY", KeyUpdate(is_active=False))
    assert not updated.is_active
    assert updated.description == "desc"
    assert updated.tags == ["a"]
    assert updated.updated_at >= before.updated_at

    cleared = storage.update_key("KEY", KeyUpdate.model_validate({"description": None}))
    assert cleared.description is None
    assert storage.get_key_value("KEY") == "v"
    assert _audit_lines(storage)[-2]["action"] == "update"


def test_update_and_delete_unknown_key(storage):
    with pytest.raises(NotFoundError):
        storage.update_key("MISSING", KeyUpdate(description="x"))
    with pytest.raises(NotFoundError):
        storage.delete_key("MISSING")
    with pytest.raises(NotFoundError):
        storage.get_key_value("MISSING")


def test_set_key_value(storage):
    storage.add_key("KEY", "old", "openai", KeyOptions(description="keep"))
    storage.set_key_value("KEY", "new")
    assert storage.get_key_value("KEY") == "new"
    assert storage.get_key("KEY").description == "keep"


def test_delete_key(storage, crypto, data_dir):
    storage.add_key("KEY", "v", "openai")
    storage.delete_key("KEY")
    assert storage.get_key("KEY") is None
    assert KeyStorage(data_dir, crypto).list_keys() == []
    assert _audit_lines(storage)[-1]["action"] == "delete"


def test_failed_write_rolls_back_every_mutation(storage, monkeypatch):
    storage.add_key("KEY", "v", "openai", KeyOptions(description="original"))

    def fail(path, data):
        raise OSError("disk full")

    monkeypatch.setattr("akm.storage.atomic_write", fail)

    with pytest.raises(PersistenceError):
        storage.add_key("OTHER", "v", "openai")
    assert storage.get_key("OTHER") is None

    with pytest.raises(PersistenceError):
        storage.add_key("KEY", "replacement", "anthropic")
    assert storage.get_key("KEY").provider == "openai"

    with pytest.raises(PersistenceError):
        storage.update_key("KEY", KeyUpdate(description="changed"))
    assert storage.get_key("KEY").description == "original"

    with pytest.raises(PersistenceError):
        storage.delete_key("KEY")
    assert storage.get_key("KEY") is not None
    assert storage.get_key_value("KEY") == "v"


def test_crash_before_rename_keeps_committed_file(storage, monkeypatch):
    storage.add_key("KEY", "v", "openai")
    committed = storage.keys_file.read_bytes()

    def crash(src, dst):
        raise OSError("power loss")

    monkeypatch.setattr(fileio.os, "replace", crash)
    with pytest.raises(PersistenceError):
        storage.add_key("OTHER", "v", "openai")

    assert storage.keys_file.read_bytes() == committed
    leftovers = [p.name for p in storage.data_dir.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


def test_legacy_plaintext_file_is_imported_and_reencrypted(crypto, data_dir):
    data_dir.mkdir(parents=True)
    legacy = {
        "version": "1.0",
        "updated_at": "2024-01-01T00:00:00",
        "keys": [
            {
                "name": "LEGACY_KEY",
                "value_encrypted": crypto.encrypt("legacy-secret"),
                "provider": "openai",
                "tags": None,
                "created_at": "2024-01-01 10:00:00.123456",
                "updated_at": "2024-01-02T10:00:00.123456789Z",
                "expires_at": None,
                "is_active": True,
            }
        ],
    }
    (data_dir / "keys.json").write_text(json.dumps(legacy))

    storage = KeyStorage(data_dir, crypto)
    assert storage.needs_reencrypt
    record = storage.get_key("LEGACY_KEY")
    assert record.tags == []
    assert record.created_at == datetime(2024, 1, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
    assert storage.get_key_value("LEGACY_KEY") == "legacy-secret"

    storage.add_key("NEW_KEY", "v", "openai")
    assert not storage.needs_reencrypt
    raw = (data_dir / "keys.json").read_text()
    with pytest.raises(ValueError):
        json.loads(raw)
    assert [r.name for r in KeyStorage(data_dir, crypto).list_keys()] == ["LEGACY_KEY", "NEW_KEY"]


def test_undecryptable_file_disables_saves(crypto, data_dir, keyring_backend):
    storage = KeyStorage(data_dir, crypto)
    storage.add_key("KEY", "v", "openai")
    original = storage.keys_file.read_bytes()

    crypto.reset_master_key()
    crypto.initialize()

    broken = KeyStorage(data_dir, crypto)
    assert broken.load_failed
    assert broken.list_keys() == []
    with pytest.raises(PersistenceError):
        broken.add_key("NEW", "v", "openai")
    assert broken.keys_file.read_bytes() == original

    broken.clear_load_failure()
    broken.add_key("NEW", "v", "openai")
    assert [r.name for r in KeyStorage(data_dir, crypto).list_keys()] == ["NEW"]


def test_batch_injection_and_export(storage):
    storage.add_key("A_KEY", "a", "openai")
    storage.add_key("B_KEY", "b", "openai")
    storage.add_key("C_KEY", "c", "anthropic")

    assert storage.get_keys_for_injection("proj") == {"A_KEY": "a", "B_KEY": "b", "C_KEY": "c"}
    assert storage.get_keys_for_export("proj", provider="openai") == {"A_KEY": "a", "B_KEY": "b"}
    assert storage.get_keys_for_export("proj", names=["C_KEY", "ZZZ"]) == {"C_KEY": "c"}
    assert storage.get_keys_for_export("proj", provider="anthropic", names=["A_KEY"]) == {}

    actions = [(e["key_name"], e["action"]) for e in _audit_lines(storage)[3:]]
    assert actions == [
        ("A_KEY", "inject"),
        ("B_KEY", "inject"),
        ("C_KEY", "inject"),
        ("A_KEY", "export"),
        ("B_KEY", "export"),
        ("C_KEY", "export"),
    ]


def test_batch_names_the_key_that_fails_to_decrypt(storage, crypto, data_dir):
    storage.add_key("GOOD", "v", "openai")
    document = {
        "version": "1.0",
        "updated_at": "",
        "keys": [
            storage.get_key("GOOD").to_file_dict(),
            {"name": "BAD", "value_encrypted": "garbage", "provider": "openai"},
        ],
    }
    storage.keys_file.write_text(json.dumps(document))
    reloaded = KeyStorage(data_dir, crypto)

    with pytest.raises(IntegrityError, match="BAD"):
        reloaded.get_keys_for_export("proj")


def test_backup_copies_files(storage, tmp_path):
    storage.add_key("KEY", "v", "openai")
    target = storage.backup(tmp_path / "backup")

    assert (target / "keys.json").read_bytes() == storage.keys_file.read_bytes()
    assert (target / "audit.jsonl").exists()
    if os.name != "nt":
        assert stat.S_IMODE(target.stat().st_mode) == 0o700
        assert stat.S_IMODE((target / "keys.json").stat().st_mode) == 0o600
    last = _audit_lines(storage)[-1]
    assert (last["key_name"], last["action"], last["project"]) == ("*", "backup", "system")


def test_audit_failure_does_not_fail_operation(storage, monkeypatch):
    storage.add_key("KEY", "v", "openai")

    monkeypatch.setattr(storage._audit, "path", storage.data_dir / "missing" / "audit.jsonl")
    assert storage.get_key_value("KEY") == "v"
    assert storage.audit_errors == 1


def test_dotenv_formatting():
    assert escape_dotenv_value('a"b\\c\nd\re') == 'a\\"b\\\\c\\nd\\re'
    assert format_dotenv({"A": "1", "B": 'x"y'}) == 'A="1"\nB="x\\"y"\n'
    assert format_dotenv({}) == ""
