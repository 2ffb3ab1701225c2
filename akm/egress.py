"""Outbound HTTP helpers restricted to the known provider hosts."""

from __future__ import annotations

import os
from typing import Any, FrozenSet, Optional
from urllib.parse import urlparse

import requests

from akm.errors import UpstreamError
from akm.observability import EGRESS_FAILURES
from akm.providers import allowed_hosts as provider_hosts


def _allowed_hosts() -> FrozenSet[str]:
    hosts = set(provider_hosts())
    raw = os.getenv("AKM_ALLOWED_EGRESS_HOSTS")
    if raw:
        hosts.update(host.strip().lower() for host in raw.split(",") if host.strip())
    return frozenset(hosts)


def _verify_host(url: str) -> None:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if parsed.scheme != "https" and host not in {"localhost", "127.0.0.1"}:
        EGRESS_FAILURES.labels(reason="insecure_scheme").inc()
        raise UpstreamError(f"Egress over '{parsed.scheme}' is not permitted")
    if host not in _allowed_hosts():
        EGRESS_FAILURES.labels(reason="disallowed_host").inc()
        raise UpstreamError(f"Egress to host '{host}' is not permitted")


def secure_request(
    method: str,
    url: str,
    *,
    session: Optional[Any] = None,
    **kwargs: Any,
) -> requests.Response:
    """Dispatch a request to an allowed host with TLS verification.

    Unlike a typical client call the response is returned for any status
    code; callers relay or classify it themselves.  ``session`` may be a
    :class:`requests.Session` or anything with the same ``request`` method.
    """

    _verify_host(url)
    kwargs.setdefault("timeout", 10)
    kwargs.setdefault("verify", True)
    client = session if session is not None else requests
    try:
        return client.request(method=method, url=url, **kwargs)
    except requests.exceptions.SSLError:
        EGRESS_FAILURES.labels(reason="tls_failure").inc()
        raise
    except requests.exceptions.Timeout:
        EGRESS_FAILURES.labels(reason="timeout").inc()
        raise
    except requests.exceptions.RequestException:
        EGRESS_FAILURES.labels(reason="network_failure").inc()
        raise


def secure_get(url: str, **kwargs: Any) -> requests.Response:
    return secure_request("GET", url, **kwargs)


__all__ = ["secure_get", "secure_request"]
