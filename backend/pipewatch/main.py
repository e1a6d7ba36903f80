import logging
import time
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pipewatch import __version__
from pipewatch.config import Settings, settings
from pipewatch.exceptions import (
    AlertNotFound,
    InvalidTrigger,
    RunAlreadyTerminal,
    RunNotFound,
    StoreError,
    WebhookNotFound,
)
from pipewatch.middleware.logging_config import configure_logging
from pipewatch.schemas.schemas import HealthResponse
from pipewatch.startup import MonitoringSystem
from pipewatch.timeutil import utcnow

configure_logging(settings.log_level, settings.log_json)

from pipewatch.api.dashboard import router as dashboard_router  # noqa: E402
from pipewatch.api.live import router as live_router  # noqa: E402
from pipewatch.api.metrics import router as metrics_router  # noqa: E402
from pipewatch.api.webhooks import router as webhooks_router  # noqa: E402
from pipewatch.middleware.metrics import PrometheusMiddleware  # noqa: E402
from pipewatch.middleware.request_context import RequestContextMiddleware  # noqa: E402

logger = logging.getLogger("pipewatch")

HEALTH_CACHE_TTL = 10.0  # seconds


def create_app(config: Settings | None = None) -> FastAPI:
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: refuse to run without CI credentials and the relay secret
        config.require_secrets()
        system = MonitoringSystem(config)
        await system.start()
        app.state.system = system
        yield
        # Shutdown
        await system.stop()
        app.state.system = None

    app = FastAPI(
        title="Pipewatch",
        description="Deployment pipeline monitoring: triggers, webhooks, CI workflows and performance",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.system = None
    app.state.health_cache = (0.0, None)

    # ── CORS ─────────────────────────────────────────────────────────────────
    origins = [o.strip() for o in config.allowed_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    # ── Request context middleware (request ID + timing) ─────────────────────
    app.add_middleware(RequestContextMiddleware)

    # ── Prometheus metrics middleware ────────────────────────────────────────
    app.add_middleware(PrometheusMiddleware)

    _register_exception_handlers(app, config)

    app.include_router(dashboard_router)
    app.include_router(webhooks_router)
    app.include_router(live_router)
    app.include_router(metrics_router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health_check(request: Request):
        now = time.time()
        cached_at, cached = request.app.state.health_cache
        if cached is not None and (now - cached_at) < HEALTH_CACHE_TTL:
            return cached

        system: MonitoringSystem | None = request.app.state.system
        components: dict = {}

        if system is None:
            components["monitoring"] = {"status": "stopped"}
        else:
            try:
                await system.store.ping()
                components["database"] = {"status": "connected"}
            except StoreError as exc:
                components["database"] = {"status": "disconnected", "error": str(exc)}

            jobs = system.scheduler.jobs
            components["monitors"] = {
                "git": "trigger-git" in jobs,
                "markers": "trigger-markers" in jobs,
                "ci": "ci-poll" in jobs,
                "maintenance": "maintenance" in jobs,
            }

            if system.ci_client is None:
                components["ci"] = {"status": "not_configured"}
            else:
                rate_limit = system.ci_client.rate_limit
                components["ci"] = {
                    "status": "rate_limited" if rate_limit and rate_limit.is_limited else "ok",
                    "rate_limit": rate_limit.to_dict() if rate_limit else None,
                }

        db_ok = components.get("database", {}).get("status") == "connected"
        ci_ok = components.get("ci", {}).get("status") in ("ok", "not_configured")
        if db_ok and ci_ok:
            overall = "healthy"
        elif not db_ok:
            overall = "unhealthy"
        else:
            overall = "degraded"

        result = {
            "status": overall,
            "environment": config.environment,
            "version": __version__,
            "components": components,
            "timestamp": utcnow().isoformat(),
        }
        request.app.state.health_cache = (now, result)
        return result

    return app


def _register_exception_handlers(app: FastAPI, config: Settings) -> None:
    @app.exception_handler(RunNotFound)
    @app.exception_handler(AlertNotFound)
    @app.exception_handler(WebhookNotFound)
    async def not_found_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTrigger)
    async def invalid_trigger_handler(request: Request, exc: InvalidTrigger):
        return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(RunAlreadyTerminal)
    async def terminal_run_handler(request: Request, exc: RunAlreadyTerminal):
        return JSONResponse(status_code=409, content={"detail": str(exc), "status": exc.status})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Return detailed error info in development mode so 500s are debuggable."""
        tb = traceback.format_exc()
        logger.error(
            "Unhandled %s on %s %s: %s\n%s",
            type(exc).__name__, request.method, request.url.path, exc, tb,
        )
        detail = f"{type(exc).__name__}: {exc}"
        if config.environment == "development":
            return JSONResponse(
                status_code=500,
                content={"detail": detail, "traceback": tb.splitlines()[-5:]},
            )
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app = create_app()
