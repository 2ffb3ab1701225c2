import json
import threading
import time

import requests

from akm.models import KeyOptions
from akm.storage import KeyStorage
from akm.verifier import verify_all, verify_key

from conftest import FakeResponse, FakeSession


def test_status_mapping():
    session = FakeSession()
    for status, expected in [(200, "valid"), (401, "invalid"), (403, "invalid"), (500, "error")]:
        session.response = FakeResponse(status_code=status)
        result = verify_key("KEY", "openai", "sk", session=session)
        assert result.status == expected
        assert session.response.closed

    call = session.calls[0]
    assert call["url"] == "https://api.openai.com/v1/models"
    assert call["headers"] == {"Authorization": "Bearer sk"}
    assert call["timeout"] == 10.0


def test_anthropic_verification_headers():
    session = FakeSession()
    verify_key("KEY", "anthropic", "ant", session=session)
    assert session.calls[0]["url"] == "https://api.anthropic.com/v1/models"
    assert session.calls[0]["headers"] == {"x-api-key": "ant", "anthropic-version": "2023-06-01"}


def test_alias_and_unsupported_providers():
    session = FakeSession()
    assert verify_key("KEY", "google", "g", session=session).status == "valid"
    assert session.calls[0]["url"] == "https://generativelanguage.googleapis.com/v1beta/models"

    result = verify_key("KEY", "mistral", "m", session=session)
    assert result.status == "unsupported"
    assert len(session.calls) == 1


def test_network_error_is_error_result():
    def fail(method, url, **kwargs):
        raise requests.exceptions.Timeout("timed out")

    result = verify_key("KEY", "deepseek", "d", session=FakeSession(handler=fail))
    assert result.status == "error"
    assert "timed out" in result.message


def test_verify_all_runs_concurrently_and_keeps_order(storage):
    for name in ["E_KEY", "A_KEY", "C_KEY", "B_KEY", "D_KEY"]:
        storage.add_key(name, f"value-{name}", "openai")
    storage.add_key("Z_KEY", "z", "unknownprovider")

    active = 0
    peak = 0
    lock = threading.Lock()

    def handler(method, url, **kwargs):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        token = kwargs["headers"]["Authorization"]
        return FakeResponse(status_code=401 if token.endswith("C_KEY") else 200)

    results = verify_all(storage, session=FakeSession(handler=handler))

    assert [r.name for r in results] == ["A_KEY", "B_KEY", "C_KEY", "D_KEY", "E_KEY", "Z_KEY"]
    assert [r.status for r in results] == ["valid", "valid", "invalid", "valid", "valid", "unsupported"]
    assert 1 < peak <= 5


def test_verify_all_filters_and_reports_decrypt_failure(storage, crypto, data_dir):
    storage.add_key("GOOD", "g", "openai", KeyOptions())
    storage.add_key("OTHER", "o", "anthropic")
    assert [r.name for r in verify_all(storage, provider="anthropic", session=FakeSession())] == ["OTHER"]
    assert [r.name for r in verify_all(storage, name="GOOD", session=FakeSession())] == ["GOOD"]
    assert verify_all(storage, name="MISSING", session=FakeSession()) == []

    document = {
        "version": "1.0",
        "keys": [{"name": "BROKEN", "value_encrypted": "garbage", "provider": "openai"}],
    }
    storage.keys_file.write_text(json.dumps(document))
    [result] = verify_all(KeyStorage(data_dir, crypto), session=FakeSession())
    assert result.status == "error"
    assert "BROKEN" in result.message
