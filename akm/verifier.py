"""Concurrent validity probes against each provider's model listing endpoint."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import requests
import structlog

from akm.egress import secure_get
from akm.errors import AKMError
from akm.models import APIKeyRecord
from akm.observability import VERIFY_RESULTS
from akm.providers import get_route
from akm.storage import KeyStorage

logger = structlog.get_logger(__name__)

VERIFY_PROJECT = "verify"
DEFAULT_TIMEOUT = 10.0
DEFAULT_WORKERS = 5

STATUS_VALID = "valid"
STATUS_INVALID = "invalid"
STATUS_ERROR = "error"
STATUS_UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class VerifyResult:
    name: str
    provider: str
    status: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _result(name: str, provider: str, status: str, message: str) -> VerifyResult:
    VERIFY_RESULTS.labels(provider=provider or "unknown", status=status).inc()
    return VerifyResult(name=name, provider=provider, status=status, message=message)


def verify_key(
    name: str,
    provider: str,
    value: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    session: Optional[Any] = None,
) -> VerifyResult:
    """Probe the provider with ``value`` and classify the response."""

    route = get_route(provider)
    if route is None or route.verify_url is None:
        return _result(
            name, provider, STATUS_UNSUPPORTED, f"provider '{provider}' does not support verification"
        )

    try:
        response = secure_get(
            route.verify_url,
            session=session,
            headers=route.auth_headers(value),
            timeout=timeout,
        )
    except (requests.exceptions.RequestException, AKMError) as exc:
        logger.info("verify.request_failed", key_name=name, provider=provider, error=str(exc))
        return _result(name, provider, STATUS_ERROR, f"request failed: {exc}")

    try:
        status_code = response.status_code
    finally:
        response.close()

    if status_code == 200:
        return _result(name, provider, STATUS_VALID, "key is valid")
    if status_code in (401, 403):
        return _result(name, provider, STATUS_INVALID, f"key rejected (HTTP {status_code})")
    return _result(name, provider, STATUS_ERROR, f"unexpected HTTP {status_code}")


def _verify_record(
    storage: KeyStorage,
    record: APIKeyRecord,
    timeout: float,
    session: Optional[Any],
) -> VerifyResult:
    try:
        value = storage.get_key_value(record.name, VERIFY_PROJECT)
    except AKMError as exc:
        return _result(record.name, record.provider, STATUS_ERROR, f"decryption failed: {exc}")
    return verify_key(record.name, record.provider, value, timeout=timeout, session=session)


def verify_all(
    storage: KeyStorage,
    provider: Optional[str] = None,
    name: Optional[str] = None,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_workers: int = DEFAULT_WORKERS,
    session: Optional[Any] = None,
) -> List[VerifyResult]:
    """Verify every matching key; results follow the order of :meth:`KeyStorage.list_keys`."""

    records = storage.list_keys(provider)
    if name:
        records = [record for record in records if record.name == name][:1]
    if not records:
        return []

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="akm-verify") as pool:
        results = list(
            pool.map(lambda record: _verify_record(storage, record, timeout, session), records)
        )
    logger.info(
        "verify.completed",
        total=len(results),
        valid=sum(1 for result in results if result.status == STATUS_VALID),
    )
    return results


__all__ = [
    "STATUS_ERROR",
    "STATUS_INVALID",
    "STATUS_UNSUPPORTED",
    "STATUS_VALID",
    "VerifyResult",
    "verify_all",
    "verify_key",
]
