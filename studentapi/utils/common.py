# studentapi/utils/common.py
"""
Student API common utilities
----------------------------
Small helpers shared by the API layer and the fault harness:
 - JSON encoding tolerant of datetimes, sets and dataclasses
 - time helpers
 - per-request context (contextvars) used by the logging middleware
 - process resource snapshot (psutil)
"""

from __future__ import annotations

import os
import json
import logging
import datetime
import contextvars
import dataclasses
from typing import Any, Dict, Optional

import psutil

LOG = logging.getLogger("studentapi.common")

# -------------------------
# JSON helpers
# -------------------------
class EnhancedJSONEncoder(json.JSONEncoder):
    def default(self, obj: Any) -> Any:
        if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return dataclasses.asdict(obj)
        if isinstance(obj, (datetime.datetime, datetime.date)):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset)):
            return list(obj)
        if isinstance(obj, bytes):
            return f"<{len(obj)} bytes>"
        return super().default(obj)

def json_dumps(obj: Any, indent: Optional[int] = None) -> str:
    try:
        return json.dumps(obj, cls=EnhancedJSONEncoder, indent=indent)
    except (TypeError, ValueError):
        return json.dumps(str(obj))

# -------------------------
# Time utilities
# -------------------------
def now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")

def ts_to_iso(ts: float) -> str:
    return datetime.datetime.fromtimestamp(ts, datetime.timezone.utc).isoformat().replace("+00:00", "Z")

def bytes_to_human(nbytes: int, precision: int = 2) -> str:
    if nbytes is None:
        return "0B"
    n = float(nbytes)
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if n < 1024.0:
            return f"{n:.{precision}f}{unit}"
        n /= 1024.0
    return f"{n:.{precision}f}EB"

# -------------------------
# Resource monitoring
# -------------------------
def get_resource_usage() -> Dict[str, Any]:
    """
    Returns RSS, VMS, CPU percent and thread count for the current process.
    """
    try:
        p = psutil.Process(os.getpid())
        mem = p.memory_info()
        return {
            "rss": getattr(mem, "rss", None),
            "vms": getattr(mem, "vms", None),
            "cpu_percent": p.cpu_percent(interval=None),
            "num_threads": p.num_threads(),
            "pid": p.pid,
        }
    except psutil.Error:
        LOG.exception("get_resource_usage failed")
        return {}

# -------------------------
# Request context
# -------------------------
_current_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("studentapi_ctx", default={})

def set_context(key: str, value: Any):
    ctx = dict(_current_context.get())
    ctx[key] = value
    _current_context.set(ctx)

def get_context(key: str, default: Any = None) -> Any:
    return _current_context.get().get(key, default)

def clear_context():
    _current_context.set({})
