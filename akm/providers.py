"""Static routing data for the supported upstream providers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from akm.errors import ValidationError

ANTHROPIC_VERSION = "2023-06-01"


@dataclass(frozen=True)
class ProviderRoute:
    """How to reach a provider and authenticate against it."""

    name: str
    base_url: str
    auth_header: str
    auth_prefix: str = ""
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    verify_path: Optional[str] = None

    @property
    def host(self) -> str:
        return (urlparse(self.base_url).hostname or "").lower()

    @property
    def origin(self) -> str:
        parsed = urlparse(self.base_url)
        return f"{parsed.scheme}://{parsed.netloc}"

    def auth_headers(self, api_key: str) -> Dict[str, str]:
        headers = {self.auth_header: f"{self.auth_prefix}{api_key}"}
        headers.update(self.extra_headers)
        return headers

    def upstream_url(self, path: str, query: str = "") -> str:
        """Join the base URL (including any base path) with ``path``."""

        url = self.base_url.rstrip("/") + "/" + path.lstrip("/")
        return f"{url}?{query}" if query else url

    @property
    def verify_url(self) -> Optional[str]:
        if self.verify_path is None:
            return None
        return self.origin + self.verify_path


ROUTES: Dict[str, ProviderRoute] = {
    "openai": ProviderRoute(
        name="openai",
        base_url="https://api.openai.com",
        auth_header="Authorization",
        auth_prefix="Bearer ",
        verify_path="/v1/models",
    ),
    "anthropic": ProviderRoute(
        name="anthropic",
        base_url="https://api.anthropic.com",
        auth_header="x-api-key",
        extra_headers={"anthropic-version": ANTHROPIC_VERSION},
        verify_path="/v1/models",
    ),
    "deepseek": ProviderRoute(
        name="deepseek",
        base_url="https://api.deepseek.com",
        auth_header="Authorization",
        auth_prefix="Bearer ",
        verify_path="/models",
    ),
    "gemini": ProviderRoute(
        name="gemini",
        base_url="https://generativelanguage.googleapis.com",
        auth_header="x-goog-api-key",
        verify_path="/v1beta/models",
    ),
    "zhipu": ProviderRoute(
        name="zhipu",
        base_url="https://open.bigmodel.cn/api/paas",
        auth_header="Authorization",
        auth_prefix="Bearer ",
        verify_path="/api/paas/v4/models",
    ),
}

# Checked in order; the first matching prefix wins.
MODEL_PREFIXES: Tuple[Tuple[str, str], ...] = (
    ("gpt-", "openai"),
    ("o1-", "openai"),
    ("o3-", "openai"),
    ("o4-", "openai"),
    ("claude-", "anthropic"),
    ("deepseek-", "deepseek"),
    ("gemini-", "gemini"),
    ("glm-", "zhipu"),
)

PROVIDER_ALIASES: Dict[str, str] = {"google": "gemini"}


def normalize_provider(name: Optional[str]) -> str:
    """Lower-case ``name`` and map aliases to their canonical provider."""

    value = (name or "").strip().lower()
    return PROVIDER_ALIASES.get(value, value)


def get_route(provider: str) -> Optional[ProviderRoute]:
    return ROUTES.get(normalize_provider(provider))


def provider_for_model(model: str) -> Optional[str]:
    lowered = model.lower()
    for prefix, provider in MODEL_PREFIXES:
        if lowered.startswith(prefix):
            return provider
    return None


def resolve_provider(header: Optional[str], body: bytes) -> str:
    """Pick the provider from the ``X-AKM-Provider`` header or the body's model.

    Raises:
        ValidationError: When the header names an unknown provider or no
            provider can be inferred.
    """

    if header and header.strip():
        provider = normalize_provider(header)
        if provider not in ROUTES:
            raise ValidationError(f"unknown provider: {header.strip()}")
        return provider

    model = _model_from_body(body)
    if model:
        provider = provider_for_model(model)
        if provider is not None:
            return provider
    raise ValidationError(
        "cannot determine provider: set X-AKM-Provider header or use a recognizable model name"
    )


def _model_from_body(body: bytes) -> Optional[str]:
    if not body:
        return None
    try:
        document = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(document, dict):
        return None
    model = document.get("model")
    return model if isinstance(model, str) and model else None


def allowed_hosts() -> frozenset:
    return frozenset(route.host for route in ROUTES.values())


__all__ = [
    "ANTHROPIC_VERSION",
    "MODEL_PREFIXES",
    "PROVIDER_ALIASES",
    "ProviderRoute",
    "ROUTES",
    "allowed_hosts",
    "get_route",
    "normalize_provider",
    "provider_for_model",
    "resolve_provider",
]
