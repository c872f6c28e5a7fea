# studentapi/main.py
"""
Student API: FastAPI application entrypoint

Responsibilities:
 - build the FastAPI app (CORS, request-context logging, HTTP metrics)
 - wire the database collaborator and the fault harness onto app.state at startup
 - include the alert-testing router under the API prefix
 - health endpoints (liveness / readiness) and the Prometheus scrape endpoint
 - uvicorn CLI entrypoint
"""

from __future__ import annotations

import os
import logging
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CollectorRegistry

from studentapi.api.alerts import router as alerts_router
from studentapi.config import Settings, get_settings
from studentapi.db import Database
from studentapi.faults.background import BackgroundTaskManager
from studentapi.faults.catalog import DEFAULT_CATALOG, FaultMode
from studentapi.faults.db_probe import DatabaseFaultProbe
from studentapi.faults.executor import FaultExecutor
from studentapi.faults.lifecycle import ProcessTerminator
from studentapi.faults.simulators import LEAK_REGISTRY, LeakRegistry
from studentapi.metrics import (
    CONTENT_TYPE_LATEST,
    DbMetrics,
    HttpMetrics,
    HttpMetricsMiddleware,
    PrometheusEmitter,
    build_registry,
    render_latest,
)
from studentapi.utils.logger import RequestContextMiddleware, configure_logging

LOG = logging.getLogger("studentapi.main")

APP_TITLE = "Student API"
APP_VERSION = "1.0.0"
APP_DESC = "Student directory REST API with an alert-testing fault harness"


def create_app(settings: Optional[Settings] = None,
               exit_fn: Optional[Callable[[int], None]] = None,
               registry: Optional[CollectorRegistry] = None,
               leak_registry: Optional[LeakRegistry] = None,
               oom_allocator: Optional[Callable[[int], Any]] = None) -> FastAPI:
    """
    Build an application instance. Everything process-affecting (exit function,
    metrics registry, leak registry, OOM allocator) is injectable so tests can
    run several isolated apps in one interpreter.
    """
    settings = settings or get_settings()
    configure_logging(app_name=settings.app_name, level=settings.log_level, json=settings.log_json)

    app = FastAPI(title=APP_TITLE, version=APP_VERSION, description=APP_DESC, docs_url="/docs", redoc_url="/redoc")
    app.state.settings = settings

    # -------------------------
    # Metrics
    # -------------------------
    registry = registry or build_registry()
    app.state.metrics_registry = registry
    http_metrics = HttpMetrics(registry)
    emitter = PrometheusEmitter(DbMetrics(registry), application=settings.app_name)
    app.state.metrics_emitter = emitter

    # -------------------------
    # Middleware (last added runs first)
    # -------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("STUDENTAPI_CORS_ALLOW_ORIGINS", "*").split(","),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(HttpMetricsMiddleware, metrics=http_metrics)
    app.add_middleware(RequestContextMiddleware)

    # -------------------------
    # Exception handlers
    # -------------------------
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        LOG.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "internal_server_error"})

    # -------------------------
    # Health / metrics endpoints
    # -------------------------
    @app.get("/health/live", tags=["health"])
    async def liveness_probe():
        return PlainTextResponse("OK", status_code=200)

    @app.get("/health/ready", tags=["health"])
    async def readiness_probe():
        checks: Dict[str, Any] = {"app": "ok"}
        database: Optional[Database] = getattr(app.state, "database", None)
        db_ok = database is not None and await database.ping()
        checks["database"] = "ok" if db_ok else "unreachable"
        checks["fault_harness"] = "ok" if getattr(app.state, "fault_executor", None) is not None else "missing"
        ok = db_ok and checks["fault_harness"] == "ok"
        return JSONResponse(status_code=200 if ok else 503, content={"ready": ok, "checks": checks})

    @app.get("/metrics", tags=["metrics"])
    async def prometheus_scrape():
        return Response(content=render_latest(registry), media_type=CONTENT_TYPE_LATEST)

    app.include_router(alerts_router, prefix=settings.api_prefix)

    # -------------------------
    # Startup / Shutdown events
    # -------------------------
    @app.on_event("startup")
    async def _startup_event():
        LOG.info("Starting %s (version=%s, db=%s)", settings.app_name, APP_VERSION, settings.database_url.split("@")[-1])
        database = Database(settings.database_url, pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow,
                            pool_timeout=settings.db_pool_timeout, echo=settings.db_echo)
        try:
            await database.connect()
        except Exception:
            # the harness still comes up; database modes then report the failure per request
            LOG.exception("Database initialization failed")
        app.state.database = database

        catalog = DEFAULT_CATALOG.with_default(FaultMode.CONNECTION_EXHAUSTION, "connections", settings.connection_probe_count)

        app.state.fault_executor = FaultExecutor(
            probe=DatabaseFaultProbe(database, emitter),
            background=BackgroundTaskManager(),
            terminator=ProcessTerminator(exit_fn=exit_fn or os._exit),
            catalog=catalog,
            leak_registry=leak_registry or LEAK_REGISTRY,
            crash_grace_ms=settings.crash_grace_ms,
            leak_pause_ms=settings.leak_pause_ms,
            oom_chunk_bytes=settings.oom_chunk_bytes,
            oom_allocator=oom_allocator,
        )
        LOG.info("Fault harness ready: %d modes under %s/trigger-alerts", len(catalog.modes()), settings.api_prefix)

    @app.on_event("shutdown")
    async def _shutdown_event():
        LOG.info("Shutting down %s", settings.app_name)
        database = getattr(app.state, "database", None)
        if database is not None:
            await database.dispose()

    return app


app = create_app()


# -------------------------
# Uvicorn runner / CLI
# -------------------------
def run_uvicorn(host: str = "0.0.0.0", port: int = 3000, reload: bool = False, workers: int = 1, log_level: str = "info"):
    uvicorn.run("studentapi.main:app", host=host, port=int(port), reload=reload, workers=workers, log_level=log_level)


def main():
    import argparse
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="studentapi")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--workers", type=int, default=int(os.getenv("STUDENTAPI_UVICORN_WORKERS", "1")))
    args = parser.parse_args()
    run_uvicorn(args.host, args.port, reload=args.reload, workers=args.workers, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
