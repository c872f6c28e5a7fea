# studentapi/metrics.py
"""
Student API metrics
-------------------

 - Prometheus registry factory (one registry per application instance)
 - HTTP request metrics middleware (request counter + latency histogram)
 - Database metrics (error counter + query duration histogram)
 - MetricsSideEffectEmitter: the narrow interface the fault harness records
   observed fault outcomes through, and its Prometheus implementation

The alerting rules under test (HighHTTPErrorRate, HighLatency, DatabaseErrors,
SlowDatabaseQueries) are evaluated against these series.
"""

from __future__ import annotations

import time
import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

LOG = logging.getLogger("studentapi.metrics")

HTTP_LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30)
DB_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10)
UNMATCHED_ROUTE = "unmatched"


def build_registry() -> CollectorRegistry:
    return CollectorRegistry(auto_describe=True)


# -----------------------------------------------------------------------------
# HTTP metrics
# -----------------------------------------------------------------------------
class HttpMetrics:
    def __init__(self, registry: CollectorRegistry):
        self.requests = Counter("http_requests_total", "Total HTTP requests", ["method", "route", "status_code"], registry=registry)
        self.duration = Histogram("http_request_duration_seconds", "HTTP request latency seconds", ["method", "route", "status_code"], buckets=HTTP_LATENCY_BUCKETS, registry=registry)

    def observe(self, method: str, route: str, status_code: int, seconds: float):
        labels = {"method": method, "route": route, "status_code": str(status_code)}
        self.requests.labels(**labels).inc()
        self.duration.labels(**labels).observe(seconds)


class HttpMetricsMiddleware:
    """
    Pure ASGI middleware recording every HTTP response. The route label is the
    matched route template when routing succeeded, else UNMATCHED_ROUTE so
    unrouted paths (404s) share a single series.
    """
    def __init__(self, app, metrics: HttpMetrics, skip_paths=("/metrics",)):
        self.app = app
        self.metrics = metrics
        self.skip_paths = set(skip_paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope.get("path") in self.skip_paths:
            await self.app(scope, receive, send)
            return
        start = time.perf_counter()
        state = {"status": 500, "recorded": False}

        def _record():
            if state["recorded"]:
                return
            state["recorded"] = True
            route = getattr(scope.get("route"), "path", None) or UNMATCHED_ROUTE
            self.metrics.observe(scope.get("method", "GET"), route, state["status"], time.perf_counter() - start)

        async def _send(message):
            if message["type"] == "http.response.start":
                state["status"] = message["status"]
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                _record()
            await send(message)

        try:
            await self.app(scope, receive, _send)
        finally:
            _record()


# -----------------------------------------------------------------------------
# Database metrics
# -----------------------------------------------------------------------------
class DbMetrics:
    def __init__(self, registry: CollectorRegistry):
        self.error_count = Counter("db_errors_total", "Total database errors", ["operation", "error_type", "application"], registry=registry)
        self.query_duration = Histogram("db_query_duration_seconds", "Database query duration seconds", ["query_type", "table", "operation", "application"], buckets=DB_LATENCY_BUCKETS, registry=registry)


class MetricsSideEffectEmitter:
    """
    Interface the fault executor and database probe call into when a fault
    produces a directly observable metric. CPU and memory modes never call it.
    """

    def record_db_error(self, operation: str, error_type: str):
        raise NotImplementedError

    def observe_query_duration(self, seconds: float, query_type: str, table: str, operation: str):
        raise NotImplementedError


class PrometheusEmitter(MetricsSideEffectEmitter):
    def __init__(self, db_metrics: DbMetrics, application: str = "student-api"):
        self.db_metrics = db_metrics
        self.application = application

    def record_db_error(self, operation: str, error_type: str):
        self.db_metrics.error_count.labels(operation=operation, error_type=error_type, application=self.application).inc()

    def observe_query_duration(self, seconds: float, query_type: str, table: str, operation: str):
        self.db_metrics.query_duration.labels(query_type=query_type, table=table, operation=operation, application=self.application).observe(seconds)


def render_latest(registry: Optional[CollectorRegistry]) -> bytes:
    if registry is None:
        return b""
    return generate_latest(registry)


__all__ = [
    "CONTENT_TYPE_LATEST",
    "build_registry",
    "HttpMetrics",
    "HttpMetricsMiddleware",
    "DbMetrics",
    "MetricsSideEffectEmitter",
    "PrometheusEmitter",
    "render_latest",
]
