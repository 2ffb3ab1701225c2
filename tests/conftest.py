import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient
from keyring.errors import PasswordDeleteError

# Ensure the repository root is on sys.path so tests can import the akm package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from akm.config import Settings  # noqa: E402
from akm.context import AppContext  # noqa: E402
from akm.crypto import KeyEncryption  # noqa: E402
from akm.server import create_app  # noqa: E402
from akm.storage import KeyStorage  # noqa: E402


class InMemoryKeyring:
    """Stand-in for the platform keychain exposing the keyring API."""

    def __init__(self) -> None:
        self.passwords: Dict[tuple, str] = {}

    def get_password(self, service: str, account: str) -> Optional[str]:
        return self.passwords.get((service, account))

    def set_password(self, service: str, account: str, value: str) -> None:
        self.passwords[(service, account)] = value

    def delete_password(self, service: str, account: str) -> None:
        try:
            del self.passwords[(service, account)]
        except KeyError:
            raise PasswordDeleteError("not found")


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b'{"ok": true}',
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.headers = headers if headers is not None else {"Content-Type": "application/json"}
        self.closed = False

    def iter_content(self, chunk_size=None) -> Iterator[bytes]:
        yield self.body

    def close(self) -> None:
        self.closed = True


@dataclass
class FakeSession:
    """Records outbound requests and answers from ``handler`` or a fixed response."""

    response: FakeResponse = field(default_factory=FakeResponse)
    handler: Optional[Callable[..., Any]] = None
    calls: List[Dict[str, Any]] = field(default_factory=list)
    closed: bool = False

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        call = {"method": method, "url": url, **kwargs}
        self.calls.append(call)
        if self.handler is not None:
            return self.handler(method, url, **kwargs)
        return self.response

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def keyring_backend() -> InMemoryKeyring:
    return InMemoryKeyring()


@pytest.fixture
def crypto(keyring_backend) -> KeyEncryption:
    engine = KeyEncryption(backend=keyring_backend)
    engine.initialize()
    return engine


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def storage(data_dir, crypto) -> KeyStorage:
    return KeyStorage(data_dir, crypto)


@pytest.fixture
def fake_http() -> FakeSession:
    return FakeSession()


@pytest.fixture
def settings(data_dir) -> Settings:
    return Settings(data_dir=data_dir, enable_lock=False)


@pytest.fixture
def app_context(settings, keyring_backend, fake_http):
    context = AppContext.build(settings, keyring_backend=keyring_backend, http=fake_http)
    yield context
    context.close()


@pytest.fixture
def client(app_context) -> TestClient:
    return TestClient(create_app(app_context))
