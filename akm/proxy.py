"""Reverse proxy that injects a stored provider key into ``/v1`` requests.

For each request the provider is resolved, the budget is checked, a key is
selected and the request is forwarded with the provider's authentication.
Usage is recorded only once the upstream has answered.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional, Tuple

import requests
import structlog
from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from requests.structures import CaseInsensitiveDict
from starlette.background import BackgroundTask

from akm.egress import secure_request
from akm.errors import AKMError, IntegrityError, KeySelectionError, UpstreamError
from akm.observability import PROXY_REQUESTS
from akm.providers import ProviderRoute, get_route, normalize_provider, resolve_provider
from akm.storage import KeyStorage

if TYPE_CHECKING:  # pragma: no cover
    from akm.context import AppContext

logger = structlog.get_logger(__name__)

PROVIDER_HEADER = "X-AKM-Provider"
KEY_HEADER = "X-AKM-Key"

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Never forwarded upstream: routing hints and the local service's own API key.
_STRIPPED_REQUEST_HEADERS = frozenset(
    {"host", "content-length", "x-akm-provider", "x-akm-key", "x-api-key", "api-key"}
)

# The body is re-framed (and decompressed by requests) before relaying.
_STRIPPED_RESPONSE_HEADERS = frozenset({"content-length", "content-encoding"})

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

router = APIRouter()


def select_key(storage: KeyStorage, provider: str, key_name: Optional[str]) -> Tuple[str, str]:
    """Return ``(name, value)`` of the key to inject.

    An explicit ``key_name`` must exist and decrypt.  Otherwise the first
    active key bound to ``provider`` (by name order) that decrypts is used.
    """

    if key_name:
        record = storage.get_key(key_name)
        if record is None:
            raise KeySelectionError(f"key '{key_name}' not found")
        try:
            value = storage.decrypt_record(record)
        except IntegrityError as exc:
            raise KeySelectionError(f"key '{key_name}' could not be decrypted: {exc}") from exc
        storage.record_proxy_use(record.name)
        return record.name, value

    for record in storage.list_keys():
        if not record.is_active or normalize_provider(record.provider) != provider:
            continue
        try:
            value = storage.decrypt_record(record)
        except IntegrityError:
            logger.warning("proxy.key_skipped", key_name=record.name, provider=provider)
            continue
        storage.record_proxy_use(record.name)
        return record.name, value
    raise KeySelectionError(f"no active key found for provider '{provider}'")


def build_upstream_headers(
    inbound: Mapping[str, str], route: ProviderRoute, api_key: str
) -> CaseInsensitiveDict:
    headers: CaseInsensitiveDict = CaseInsensitiveDict()
    keep_authorization = route.auth_header.lower() == "authorization"
    for name, value in inbound.items():
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered in _STRIPPED_REQUEST_HEADERS:
            continue
        if lowered == "authorization" and not keep_authorization:
            continue
        headers[name] = value
    headers.update(route.auth_headers(api_key))
    return headers


def _relay_headers(upstream: Any) -> dict:
    return {
        name: value
        for name, value in upstream.headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS
        and name.lower() not in _STRIPPED_RESPONSE_HEADERS
    }


def forward(
    context: "AppContext",
    method: str,
    path: str,
    query: str,
    headers: Mapping[str, str],
    body: bytes,
) -> Tuple[str, Any]:
    """Resolve, authorise and forward one request; return ``(provider, response)``."""

    provider = "unknown"
    try:
        provider = resolve_provider(headers.get(PROVIDER_HEADER), body)
        route = get_route(provider)
        if route is None:  # pragma: no cover - resolve_provider only yields routed names
            raise KeySelectionError(f"unsupported provider: {provider}")

        context.budget.check(provider)
        key_name, api_key = select_key(context.storage, provider, headers.get(KEY_HEADER))

        url = route.upstream_url(path, query)
        logger.info("proxy.forward", provider=provider, key_name=key_name, method=method, path=path)
        try:
            upstream = secure_request(
                method,
                url,
                session=context.http,
                headers=dict(build_upstream_headers(headers, route, api_key)),
                data=body or None,
                timeout=context.settings.upstream_timeout,
                stream=True,
                allow_redirects=False,
            )
        except requests.exceptions.RequestException as exc:
            logger.warning("proxy.upstream_failed", provider=provider, error=str(exc))
            raise UpstreamError(f"upstream request failed: {exc}", provider=provider) from exc

        context.budget.record(provider)
    except AKMError as exc:
        PROXY_REQUESTS.labels(provider=provider, outcome=exc.error_type).inc()
        raise
    PROXY_REQUESTS.labels(provider=provider, outcome="forwarded").inc()
    return provider, upstream


def _raw_path(request: Request) -> str:
    """Return the path exactly as received, keeping escapes such as ``%2F``."""

    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.split(b"?", 1)[0].decode("latin-1")


def _iter_upstream(upstream: Any) -> Iterator[bytes]:
    for chunk in upstream.iter_content(chunk_size=None):
        if chunk:
            yield chunk


@router.api_route("/v1/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_request(path: str, request: Request) -> StreamingResponse:
    context = request.app.state.context
    body = await request.body()
    _, upstream = await asyncio.to_thread(
        forward,
        context,
        request.method,
        _raw_path(request),
        request.url.query,
        request.headers,
        body,
    )
    return StreamingResponse(
        _iter_upstream(upstream),
        status_code=upstream.status_code,
        headers=_relay_headers(upstream),
        background=BackgroundTask(upstream.close),
    )


__all__ = [
    "HOP_BY_HOP_HEADERS",
    "KEY_HEADER",
    "PROVIDER_HEADER",
    "build_upstream_headers",
    "forward",
    "router",
    "select_key",
]
