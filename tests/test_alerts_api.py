# tests/test_alerts_api.py
"""
Alert-testing API: Integration Test Suite
-----------------------------------------

This suite validates, through FastAPI TestClient:
 - validation failures (400 + full catalog)
 - synchronous mode responses and their observable metrics
 - detached modes start only after the response is delivered
 - crash / crash-loop deliver their response before the (fake) exit
 - health, metrics and introspection endpoints
"""

import time
import pytest

from studentapi.faults.catalog import DEFAULT_CATALOG

from conftest import wait_until

PREFIX = "/api/v1"


def _get(client, path, **params):
    return client.get(f"{PREFIX}{path}", params=params)


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------
@pytest.mark.parametrize("alert_type", ["bogus", "HIGH-LATENCY", "drop-tables"])
def test_unknown_alert_type_lists_catalog(client, alert_type):
    r = _get(client, "/trigger-alerts", alertType=alert_type)
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Invalid alert type"
    assert body["availableTypes"] == DEFAULT_CATALOG.list_modes()
    assert len(body["availableTypes"]) == 14


def test_missing_alert_type(client):
    r = _get(client, "/trigger-alerts")
    assert r.status_code == 400
    assert r.json()["availableTypes"] == DEFAULT_CATALOG.list_modes()


def test_malformed_parameter_has_no_side_effect(client, leak_registry):
    r = _get(client, "/trigger-alerts", alertType="memory-leak", size="big")
    assert r.status_code == 400
    assert r.json()["parameter"] == "size"
    assert leak_registry.chunk_count == 0


# -----------------------------------------------------------------------------
# Synchronous modes
# -----------------------------------------------------------------------------
def test_high_error_rate(client):
    r = _get(client, "/trigger-alerts", alertType="high-error-rate")
    assert r.status_code == 500
    assert r.json()["alert"] == "HighHTTPErrorRate"


def test_high_latency_waits_and_echoes_delay(client):
    start = time.monotonic()
    r = _get(client, "/trigger-alerts", alertType="high-latency", delay=500)
    elapsed = time.monotonic() - start
    assert r.status_code == 200
    assert elapsed >= 0.5
    assert r.json() == {"message": "High latency response", "delay": 500, "alert": "HighLatency"}


def test_cpu_intensive_completes(client):
    r = _get(client, "/trigger-alerts", alertType="cpu-intensive", iterations=1000)
    assert r.status_code == 200
    assert isinstance(r.json()["result"], float)


def test_memory_intensive_array_size(client):
    r = _get(client, "/trigger-alerts", alertType="memory-intensive", size=100)
    assert r.status_code == 200
    assert r.json()["arraySize"] == 100


def test_database_error_records_metric(client, app):
    r = _get(client, "/trigger-alerts", alertType="database-error")
    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "Database error triggered"
    assert body["errorType"] == "OperationalError"
    value = app.state.metrics_registry.get_sample_value(
        "db_errors_total", {"operation": "select", "error_type": "OperationalError", "application": "student-api"})
    assert value == 1.0


def test_slow_db_query_records_duration(client, app):
    r = _get(client, "/trigger-alerts", alertType="slow-db-query", delay=100)
    assert r.status_code == 200
    body = r.json()
    assert body["strategy"] == "fallback"
    assert body["duration"] >= 0.1
    count = app.state.metrics_registry.get_sample_value(
        "db_query_duration_seconds_count",
        {"query_type": "SELECT", "table": "Students", "operation": "select", "application": "student-api"})
    assert count == 1.0


def test_high_db_connections_uses_configured_default(client):
    r = _get(client, "/trigger-alerts", alertType="high-db-connections")
    assert r.status_code == 200
    body = r.json()
    assert body["connections"] == 5
    assert body["failed"] == 0


def test_trigger_errors(client):
    r = _get(client, "/trigger-errors", count=3, status=503)
    assert r.status_code == 503
    assert r.json() == {"error": "Intentional error", "count": 3, "alert": "HighHTTPErrorRate"}


def test_trigger_errors_rejects_bad_status(client):
    r = _get(client, "/trigger-errors", status=42)
    assert r.status_code == 400
    assert r.json()["parameter"] == "status"


def test_trigger_slow_requests(client):
    r = _get(client, "/trigger-slow-requests", delay=10)
    assert r.status_code == 200
    assert r.json() == {"message": "Slow request completed", "delay": 10, "alert": "HighLatency"}


@pytest.mark.parametrize("params", [
    {"alertType": "high-error-rate"},
    {"alertType": "high-latency", "delay": 1},
    {"alertType": "cpu-intensive", "iterations": 10},
    {"alertType": "memory-intensive", "size": 3},
    {"alertType": "error-burst", "status": 502},
])
def test_repeated_calls_have_identical_shape(client, params):
    a = _get(client, "/trigger-alerts", **params)
    b = _get(client, "/trigger-alerts", **params)
    assert a.status_code == b.status_code
    assert sorted(a.json()) == sorted(b.json())


# -----------------------------------------------------------------------------
# Detached / terminating modes
# -----------------------------------------------------------------------------
def test_memory_leak_grows_registry(client, leak_registry):
    r = _get(client, "/trigger-alerts", alertType="memory-leak", size=128, count=4)
    assert r.status_code == 200
    assert r.json()["leakCount"] == 4
    assert wait_until(lambda: leak_registry.chunk_count == 4)
    first = leak_registry.total_bytes

    _get(client, "/trigger-alerts", alertType="memory-leak", size=128, count=1)
    assert wait_until(lambda: leak_registry.chunk_count == 5)
    assert leak_registry.total_bytes > first


def test_oom_is_acknowledged_and_contained(client, leak_registry):
    r = _get(client, "/trigger-alerts", alertType="oom")
    assert r.status_code == 200
    assert r.json()["alert"] == "OOMKilled"
    # injected allocator fails after 3 chunks of oom_chunk_bytes (1024)
    assert wait_until(lambda: leak_registry.total_bytes == 3 * 1024)
    assert _get(client, "/trigger-alerts", alertType="high-error-rate").status_code == 500


def test_cpu_continuous_acknowledged(client):
    r = _get(client, "/trigger-alerts", alertType="cpu-continuous", duration=10)
    assert r.status_code == 200
    assert r.json() == {"message": "Starting continuous CPU load...", "duration": 10, "alert": "HighPodCPUUsage"}


def test_crash_delivers_response_then_exits(client, fake_exit):
    r = _get(client, "/trigger-alerts", alertType="crash")
    assert r.status_code == 200
    assert r.json() == {"message": "About to crash...", "alert": "PodCrashLoopBackOff"}
    assert fake_exit.called.wait(3)
    assert fake_exit.codes == [1]


def test_crash_loop_delivers_response_then_exits(client, fake_exit):
    r = _get(client, "/trigger-alerts", alertType="crash-loop")
    assert r.status_code == 200
    assert r.json()["alert"] == "PodCrashLoopBackOff"
    assert fake_exit.called.wait(3)
    assert fake_exit.codes == [1]


# -----------------------------------------------------------------------------
# Introspection, health, metrics
# -----------------------------------------------------------------------------
def test_modes_endpoint(client):
    r = _get(client, "/trigger-alerts/modes")
    assert r.status_code == 200
    modes = r.json()["modes"]
    assert [m["type"] for m in modes] == DEFAULT_CATALOG.list_modes()
    conn = next(m for m in modes if m["type"] == "high-db-connections")
    assert conn["parameters"][0]["default"] == 5


def test_status_endpoint(client, leak_registry):
    _get(client, "/trigger-alerts", alertType="memory-leak", size=10, count=2)
    assert wait_until(lambda: leak_registry.chunk_count == 2)
    r = _get(client, "/trigger-alerts/status")
    assert r.status_code == 200
    body = r.json()
    assert body["leak"] == {"chunks": 2, "bytes": 20}
    assert body["background"]["launched"] == 1
    assert body["background"]["recent"][0]["mode"] == "memory-leak"
    assert "rss" in body["process"]


def test_health(client):
    assert client.get("/health/live").text == "OK"
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json()["ready"] is True


def test_metrics_exposes_http_series(client):
    _get(client, "/trigger-alerts", alertType="high-error-rate")
    r = client.get("/metrics")
    assert r.status_code == 200
    text = r.text
    assert "http_requests_total" in text
    assert 'route="/api/v1/trigger-alerts"' in text
    assert 'status_code="500"' in text


def test_request_id_is_echoed(client):
    r = client.get("/health/live", headers={"X-Request-ID": "req-123"})
    assert r.headers["x-request-id"] == "req-123"
