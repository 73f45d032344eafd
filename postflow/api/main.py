"""FastAPI application entrypoint for Postflow."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from postflow.admin.router import router as admin_router
from postflow.api.errors import postflow_error_handler
from postflow.auth.middleware import AUTH_CONTEXT_KEY, resolve_request_auth_context
from postflow.automation.router import router as automation_router
from postflow.connections.router import router as connections_router
from postflow.core.config import Settings, get_settings
from postflow.core.errors import PostflowError
from postflow.core.logger import bind_request_context, clear_request_context, get_logger
from postflow.core.metrics import MetricsRegistry
from postflow.core.observability import init_sentry, sentry_scope
from postflow.core.rate_limit import RateLimitDecision, build_ip_rate_limiter
from postflow.core.state_store import InMemoryStateStore, PeriodicSweeper, RedisStateStore
from postflow.generation.router import router as generation_router
from postflow.jobs.router import router as jobs_router
from postflow.notifications.router import router as notifications_router
from postflow.posts.router import router as posts_router
from postflow.storage.db import check_database, load_models
from postflow.storage.redis_client import check_redis
from postflow.storage.redis_client import get_client as get_redis_client
from postflow.tiers.router import router as limits_router


settings = get_settings()
logger = get_logger("postflow.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.add_exception_handler(PostflowError, postflow_error_handler)


def _is_production(current: Settings) -> bool:
    return current.env.lower() in {"prod", "production"}


def configure_app_state(target: FastAPI, current: Settings) -> None:
    """Create the process-wide stores; Redis-backed in production, in-memory elsewhere."""

    redis_client = get_redis_client() if _is_production(current) else None
    target.state.metrics = MetricsRegistry()
    target.state.rate_limiter = build_ip_rate_limiter(current, redis_client=redis_client)
    target.state.state_store = RedisStateStore(redis_client) if redis_client is not None else InMemoryStateStore()
    target.state.sweeper = PeriodicSweeper(
        [target.state.state_store, target.state.rate_limiter],
        interval_seconds=current.state_store_sweep_interval_seconds,
    )


def reset_app_state(target: FastAPI) -> None:
    target.state.sweeper.stop()
    target.state.state_store.clear()
    target.state.rate_limiter.clear()
    target.state.metrics.clear()


configure_app_state(app, settings)


def _resolve_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    response.headers["x-rate-limit-limit"] = str(decision.limit)
    response.headers["x-rate-limit-remaining"] = str(decision.remaining)
    response.headers["x-rate-limit-reset"] = str(decision.reset_seconds)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)

    user_id = auth_context.user_id if auth_context is not None else None
    bind_request_context(request_id=request_id, user_id=user_id)
    metrics: MetricsRegistry = request.app.state.metrics

    response = None
    decision = None
    status_code = 500

    try:
        with sentry_scope(user_id=user_id, request_id=request_id):
            if settings.ip_rate_limit_enabled and _is_production(settings):
                decision = request.app.state.rate_limiter.check(ip=_resolve_client_ip(request))
                if not decision.allowed:
                    metrics.record_rate_limit_block(kind="ip")
                    response = JSONResponse(
                        status_code=429,
                        content={
                            "detail": "Rate limit exceeded",
                            "limit": decision.limit,
                            "remaining": decision.remaining,
                            "reset_seconds": decision.reset_seconds,
                        },
                    )
                else:
                    response = await call_next(request)
            else:
                response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            metrics.record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    if decision is not None:
        _apply_rate_limit_headers(response, decision)
    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    app.state.sweeper.start()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
        ip_rate_limit_enabled=settings.ip_rate_limit_enabled,
    )


@app.on_event("shutdown")
def on_shutdown() -> None:
    reset_app_state(app)
    logger.info("application_shutdown")


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = check_database()
    redis_ok, redis_error = check_redis()

    healthy = db_ok and redis_ok
    status = "ok" if healthy else "degraded"

    payload = {
        "status": status,
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
    }

    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = app.state.metrics.render_prometheus(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(posts_router)
app.include_router(limits_router)
app.include_router(generation_router)
app.include_router(automation_router)
app.include_router(connections_router)
app.include_router(notifications_router)
app.include_router(admin_router)
app.include_router(jobs_router)
