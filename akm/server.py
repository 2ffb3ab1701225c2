"""FastAPI application: key-management API, metrics and the ``/v1`` proxy."""

from __future__ import annotations

import hmac
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from structlog.contextvars import bind_contextvars, unbind_contextvars

from akm.config import Settings, get_settings
from akm.context import AppContext
from akm.errors import AKMError, BudgetExceededError, IntegrityError, NotFoundError
from akm.models import APIKeyRecord, KeyOptions, KeyUpdate
from akm.observability import configure_logging
from akm.providers import normalize_provider
from akm.proxy import router as proxy_router
from akm.storage import format_dotenv
from akm.verifier import verify_all

logger = structlog.get_logger(__name__)

# Reachable without the local API key.
_OPEN_PATHS = frozenset({"/api/health", "/metrics"})

# Audit project for values revealed in key listings.
LIST_PROJECT = "api-list"


class AddKeyRequest(KeyOptions):
    name: str
    value: str
    provider: str


class SetValueRequest(BaseModel):
    value: str


class ExportRequest(BaseModel):
    project: str = "api"
    provider: Optional[str] = None
    names: List[str] = Field(default_factory=list)


class BudgetLimits(BaseModel):
    daily_limit: int = 0
    monthly_limit: int = 0


class VerifyRequest(BaseModel):
    provider: Optional[str] = None
    name: Optional[str] = None


def mask_value(value: str) -> str:
    if len(value) <= 12:
        return "*" * 8
    return f"{value[:4]}...{value[-4:]}"


def _error_body(message: str, error_type: str, **extra: Any) -> Dict[str, Any]:
    error: Dict[str, Any] = {"message": message, "type": error_type}
    error.update(extra)
    return {"error": error}


def _extract_bearer(header: Optional[str]) -> str:
    if not header:
        return ""
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return ""


def _presented_api_key(request: Request) -> str:
    # On /v1 the Authorization header belongs to the upstream provider.
    token = ""
    if not request.url.path.startswith("/v1/"):
        token = _extract_bearer(request.headers.get("authorization"))
    return token or request.headers.get("x-api-key") or request.headers.get("api-key") or ""


def _ctx(request: Request) -> AppContext:
    return request.app.state.context


def create_app(context: Optional[AppContext] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the application.

    With an explicit ``context`` the caller owns its lifecycle; otherwise one
    is built from ``settings`` at startup and closed at shutdown.
    """

    settings = context.settings if context is not None else (settings or get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "context", None) is None:
            owned = AppContext.build(settings)
            app.state.context = owned
        logger.info("lifespan_startup", host=settings.host, port=settings.port)
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
                app.state.context = None
            logger.info("lifespan_shutdown_complete")

    app = FastAPI(title="akm", lifespan=lifespan)
    app.state.context = context

    @app.middleware("http")
    async def require_api_key(request: Request, call_next):
        """Reject requests without the configured local API key."""

        if (
            not settings.auth_required
            or request.method == "OPTIONS"
            or request.url.path in _OPEN_PATHS
        ):
            return await call_next(request)
        if not settings.api_key:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=_error_body("AKM_API_KEY not configured", "server_error"),
            )
        presented = _presented_api_key(request)
        if not presented or not hmac.compare_digest(
            presented.encode("utf-8"), settings.api_key.encode("utf-8")
        ):
            logger.info("auth.rejected", path=request.url.path)
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content=_error_body("unauthorized", "authentication_error"),
            )
        return await call_next(request)

    @app.middleware("http")
    async def inject_trace_id(request: Request, call_next):
        """Attach or propagate a trace identifier for each request."""

        trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
        bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
        request.state.trace_id = trace_id
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception("request_failed", path=request.url.path, method=request.method)
            raise
        finally:
            if response is not None:
                response.headers["X-Trace-Id"] = trace_id
            unbind_contextvars("trace_id", "path", "method")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Trace-Id"],
        max_age=12 * 3600,
    )

    @app.exception_handler(AKMError)
    async def akm_error_handler(request: Request, exc: AKMError) -> JSONResponse:
        extra: Dict[str, Any] = {}
        if isinstance(exc, BudgetExceededError):
            extra["usage"] = exc.usage()
        if exc.status_code >= 500:
            logger.warning("request_error", error_type=exc.error_type, error=str(exc))
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(str(exc), exc.error_type, **extra),
        )

    _register_routes(app)
    app.include_router(proxy_router)
    return app


def _record_payload(ctx: AppContext, record: APIKeyRecord, show_value: bool) -> Dict[str, Any]:
    data = record.public_dict()
    if not show_value:
        return data
    # Goes through get_key_value so each revealed prefix is audited.
    try:
        data["value_masked"] = mask_value(ctx.storage.get_key_value(record.name, LIST_PROJECT))
    except IntegrityError:
        data["value_masked"] = None
    return data


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    def health(request: Request) -> Dict[str, Any]:
        ctx = _ctx(request)
        return {
            "status": "degraded" if ctx.storage.load_failed else "ok",
            "time": datetime.now().astimezone().isoformat(),
            "keys": len(ctx.storage),
            "crypto_initialized": ctx.crypto.is_initialized,
            "load_failed": ctx.storage.load_failed,
            "needs_reencrypt": ctx.storage.needs_reencrypt,
            "audit_errors": ctx.storage.audit_errors,
            "budget_persist_failures": ctx.budget.persist_failures,
        }

    @app.get("/metrics", response_model=None)
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/api/keys")
    def list_keys(
        request: Request, provider: Optional[str] = None, show_value: bool = False
    ) -> Dict[str, Any]:
        ctx = _ctx(request)
        records = ctx.storage.list_keys(provider or None)
        return {"keys": [_record_payload(ctx, record, show_value) for record in records]}

    @app.post("/api/keys", status_code=status.HTTP_201_CREATED)
    def add_key(request: Request, payload: AddKeyRequest) -> Dict[str, Any]:
        ctx = _ctx(request)
        options = KeyOptions(**payload.model_dump(exclude={"name", "value", "provider"}))
        record = ctx.storage.add_key(payload.name, payload.value, payload.provider, options)
        return record.public_dict()

    @app.get("/api/keys/search")
    def search_keys(request: Request, q: str = "", show_value: bool = False) -> Dict[str, Any]:
        ctx = _ctx(request)
        records = ctx.storage.search_keys(q)
        return {"keys": [_record_payload(ctx, record, show_value) for record in records]}

    @app.get("/api/keys/{name}")
    def get_key(
        request: Request, name: str, reveal: bool = False, project: str = "api"
    ) -> Dict[str, Any]:
        ctx = _ctx(request)
        record = ctx.storage.get_key(name)
        if record is None:
            raise NotFoundError(f"key '{name}' not found")
        data = record.public_dict()
        if reveal:
            data["value"] = ctx.storage.get_key_value(name, project)
        return data

    @app.patch("/api/keys/{name}")
    def update_key(request: Request, name: str, payload: KeyUpdate) -> Dict[str, Any]:
        return _ctx(request).storage.update_key(name, payload).public_dict()

    @app.put("/api/keys/{name}/value")
    def set_key_value(request: Request, name: str, payload: SetValueRequest) -> Dict[str, Any]:
        return _ctx(request).storage.set_key_value(name, payload.value).public_dict()

    @app.delete("/api/keys/{name}")
    def delete_key(request: Request, name: str) -> Dict[str, Any]:
        _ctx(request).storage.delete_key(name)
        return {"deleted": name}

    @app.post("/api/export/env", response_class=PlainTextResponse)
    def export_env(request: Request, payload: ExportRequest) -> PlainTextResponse:
        values = _ctx(request).storage.get_keys_for_export(
            payload.project, payload.provider or None, payload.names
        )
        return PlainTextResponse(format_dotenv(values))

    @app.get("/api/audit/verify")
    def verify_audit(request: Request) -> Dict[str, int]:
        return _ctx(request).storage.verify_audit_logs().to_dict()

    @app.get("/api/budget")
    def budget_stats(request: Request) -> Dict[str, Any]:
        stats = _ctx(request).budget.get_all_stats()
        return {"providers": [item.to_dict() for item in stats]}

    @app.put("/api/budget/{provider}")
    def set_budget(request: Request, provider: str, payload: BudgetLimits) -> Dict[str, Any]:
        name = normalize_provider(provider)
        cfg = _ctx(request).budget.set_config(name, payload.daily_limit, payload.monthly_limit)
        return {"provider": name, "daily_limit": cfg.daily_limit, "monthly_limit": cfg.monthly_limit}

    @app.delete("/api/budget/{provider}")
    def reset_budget(request: Request, provider: str) -> Dict[str, Any]:
        name = normalize_provider(provider)
        _ctx(request).budget.reset_counter(name)
        return {"provider": name, "reset": True}

    @app.post("/api/verify")
    def verify_keys(request: Request, payload: VerifyRequest) -> Dict[str, Any]:
        ctx = _ctx(request)
        results = verify_all(
            ctx.storage,
            payload.provider or None,
            payload.name or None,
            timeout=ctx.settings.verify_timeout,
            max_workers=ctx.settings.verify_workers,
            session=ctx.http,
        )
        return {"results": [result.to_dict() for result in results]}


def main() -> None:  # pragma: no cover - process entry point
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


__all__ = ["create_app", "main", "mask_value"]
