from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from framegate.api.error_handling import _error_response, register_exception_handlers
from framegate.api.routes import ACCESS_COOKIE, client_ip, router
from framegate.config import Settings
from framegate.logging import get_logger, set_correlation_id
from framegate.service.errors import AuthenticationError
from framegate.service.tokens import extract_bearer

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from framegate.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.cleanup_interval_seconds > 0:
        _cleanup_task = asyncio.create_task(
            _run_token_cleanup(runtime.settings.cleanup_interval_seconds)
        )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="FrameGate Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Refresh-Token"],
    expose_headers=[
        "X-Request-ID",
        "X-Token-Expiring",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def enforce_general_rate_limit(request: Request, call_next):
    """Count every /v1 request against the caller's general quota.

    Authenticated callers are counted per user with their role's multiplier;
    everyone else per IP.
    """
    if not request.url.path.startswith("/v1/"):
        return await call_next(request)
    from framegate.service.runtime import get_runtime

    runtime = get_runtime()
    ip = client_ip(request)
    user_id = role = None
    token = extract_bearer(request.headers.get("Authorization")) or request.cookies.get(
        ACCESS_COOKIE
    )
    if token:
        try:
            payload = runtime.tokens.verify(token)
            user_id, role = payload.user_id, payload.role
        except AuthenticationError:
            # route dependencies report bad tokens
            pass

    slow = await runtime.rate_limiter.slow_down(ip)
    if slow.delay_seconds:
        logger.info("request_slowed", ip=ip, delay_seconds=slow.delay_seconds)
        await asyncio.sleep(slow.delay_seconds)

    decision = await runtime.rate_limiter.check_general(ip, user_id=user_id, role=role)
    if not decision.allowed:
        logger.warning(
            "rate_limited", layer="general", ip=ip, user_id=user_id, limit=decision.limit
        )
        response = _error_response(
            429,
            "too many requests",
            {"retry_after": max(1, decision.reset_seconds), "limit": decision.limit},
            code="rate_limited",
        )
        decision.apply_headers(response)
        return response
    response = await call_next(request)
    # route-level limits already set their own headers
    if "X-RateLimit-Limit" not in response.headers:
        decision.apply_headers(response)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request's log lines with X-Request-ID (or a fresh uuid) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Probe the account store, the session store and Redis."""
    from framegate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    for label, backend in (("store", runtime.store), ("sessions", runtime.sessions)):
        if label == "sessions" and backend is runtime.store:
            continue
        probe = getattr(backend, "ping", None)
        if probe is None:
            checks[label] = {"status": "healthy", "type": "memory"}
            continue
        ok = await _run_bounded(label, probe)
        checks[label] = {"status": "healthy" if ok else "unhealthy"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = all(check["status"] != "unhealthy" for check in checks.values())
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_token_cleanup(interval_seconds: int) -> None:
    """Purge expired refresh and one-time tokens every ``interval_seconds``."""
    from framegate.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await asyncio.to_thread(get_runtime().auth.cleanup_expired)
            except Exception as exc:
                logger.warning("token_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("token_cleanup_task_cancelled")


def create_app() -> FastAPI:
    return app
