# studentapi/utils/logger.py
"""
Student API logging utilities
-----------------------------

Features:
 - JSONFormatter and human-friendly formatter
 - RequestIdFilter that stamps request_id onto every record
 - ASGI request-context middleware (X-Request-ID propagation + one structured
   line per request)
 - configure_logging() helper
 - flush_handlers() for paths that are about to terminate the process

Usage:
    from studentapi.utils.logger import configure_logging
    configure_logging(app_name="student-api", level="INFO")
    log = logging.getLogger("studentapi.faults")
    log.info("hello", extra={"mode": "oom"})
"""

from __future__ import annotations

import os
import sys
import time
import uuid
import socket
import logging
import threading
from typing import Any, Dict, Optional

from studentapi.utils.common import json_dumps, now_iso, set_context, get_context

DEFAULT_LOG_LEVEL = os.getenv("STUDENTAPI_LOG_LEVEL", "INFO").upper()

# attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno", "name", "pathname", "filename", "module",
    "lineno", "funcName", "exc_info", "exc_text", "stack_info", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    "message", "asctime",
))

def _make_request_id() -> str:
    return uuid.uuid4().hex

def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown-host"

# -------------------------
# Formatters
# -------------------------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter that attaches standard fields:
      - ts, level, logger, message, module, line
      - service, hostname, pid
      - request_id when the record was emitted while serving a request
      - any `extra=` fields under "extra"
    """
    def __init__(self, service_name: str = "student-api", extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.service = service_name
        self.extra_fields = extra_fields or {}
        self.hostname = _get_hostname()
        self.pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": now_iso(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "service": self.service,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        extra = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS and k != "request_id"}
        if extra:
            payload["extra"] = extra
        req_id = getattr(record, "request_id", None)
        if req_id:
            payload["request_id"] = req_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(self.extra_fields)
        return json_dumps(payload)

class HumanFormatter(logging.Formatter):
    """
    Human-friendly formatter. Appends req_id when present.
    """
    def __init__(self, service_name: str = "student-api"):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        self.service = service_name

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        req_id = getattr(record, "request_id", None)
        if req_id:
            base = f"{base} | req_id={req_id}"
        return base

class RequestIdFilter(logging.Filter):
    """
    Attach request_id (pulled from get_context()) to log records.
    """
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_context("request_id", None)
        return True

# -------------------------
# ASGI middleware (request context)
# -------------------------
class RequestContextMiddleware:
    """
    Pure ASGI middleware: reuses or creates X-Request-ID, stores it in the
    request context, echoes it on the response and logs one line per request.
    Does not buffer the response, so background work queued by a route runs
    only after the body has been handed to the server.
    """
    def __init__(self, app, header_name: str = "X-Request-ID"):
        self.app = app
        self.header_name = header_name
        self._header_key = header_name.lower().encode("latin-1")
        self._log = logging.getLogger("studentapi.request")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        start = time.perf_counter()
        req_id = None
        for k, v in scope.get("headers") or []:
            if k == self._header_key:
                req_id = v.decode("latin-1")
                break
        req_id = req_id or _make_request_id()
        set_context("request_id", req_id)
        status_holder = {"status": 500}

        async def _send(message):
            if message["type"] == "http.response.start":
                status_holder["status"] = message["status"]
                headers = list(message.get("headers") or [])
                headers.append((self._header_key, req_id.encode("latin-1")))
                message = dict(message, headers=headers)
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                self._log.info("http_request", extra={
                    "method": scope.get("method"),
                    "path": scope.get("path"),
                    "status": status_holder["status"],
                    "duration_sec": round(time.perf_counter() - start, 6),
                })
            await send(message)

        try:
            await self.app(scope, receive, _send)
        finally:
            set_context("request_id", None)

# -------------------------
# Configure logging
# -------------------------
_DEFAULT_CONFIGURED = False
_LOCK = threading.Lock()

def configure_logging(app_name: str = "student-api", level: Optional[str] = None, json: bool = False, force: bool = False):
    """
    Configure root logging once per process.

    Parameters:
      - app_name: service name inserted into JSON logs
      - level: logging level (e.g. "INFO")
      - json: JSONFormatter on stdout when True, HumanFormatter otherwise
      - force: reconfigure even if already configured (tests)
    """
    global _DEFAULT_CONFIGURED
    with _LOCK:
        if _DEFAULT_CONFIGURED and not force:
            return
        level = (level or DEFAULT_LOG_LEVEL).upper()
        root = logging.getLogger()
        root.setLevel(getattr(logging, level, logging.INFO))
        for h in list(root.handlers):
            if getattr(h, "_studentapi", False):
                root.removeHandler(h)
        ch = logging.StreamHandler(stream=sys.stdout)
        ch.setFormatter(JSONFormatter(service_name=app_name) if json else HumanFormatter(service_name=app_name))
        ch.addFilter(RequestIdFilter())
        ch._studentapi = True  # type: ignore[attr-defined]
        root.addHandler(ch)
        _DEFAULT_CONFIGURED = True

def flush_handlers():
    """Flush every handler on the root logger (used before forced process exit)."""
    for h in logging.getLogger().handlers:
        try:
            h.flush()
        except (OSError, ValueError):
            pass

__all__ = [
    "configure_logging",
    "flush_handlers",
    "JSONFormatter",
    "HumanFormatter",
    "RequestContextMiddleware",
    "RequestIdFilter",
]
