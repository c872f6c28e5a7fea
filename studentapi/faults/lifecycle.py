# studentapi/faults/lifecycle.py
"""
Process lifecycle actions for the crash and crash-loop modes.

Both end the process with exit status 1 via os._exit: no atexit hooks, no
graceful shutdown, the way a real crash looks to the supervisor. Log handlers
are flushed first so the last lines reach the collector.
"""

from __future__ import annotations

import os
import logging
import threading
from typing import Callable, Optional

from studentapi.utils.logger import flush_handlers

LOG = logging.getLogger("studentapi.faults.lifecycle")

CRASH_EXIT_CODE = 1


class ProcessTerminator:
    def __init__(self, exit_fn: Callable[[int], None] = os._exit, exit_code: int = CRASH_EXIT_CODE):
        self.exit_fn = exit_fn
        self.exit_code = exit_code
        self._timer: Optional[threading.Timer] = None

    def terminate_now(self, reason: str = "crash-loop"):
        LOG.critical("Terminating process now (reason=%s, exit_code=%d)", reason, self.exit_code)
        flush_handlers()
        self.exit_fn(self.exit_code)

    def crash(self, grace_period_ms: int, reason: str = "crash"):
        """
        Schedule termination after the grace period on a daemon timer so the
        in-flight response can be delivered first.
        """
        LOG.critical("Process will exit with status %d in %d ms (reason=%s)", self.exit_code, grace_period_ms, reason)
        t = threading.Timer(grace_period_ms / 1000.0, self.terminate_now, kwargs={"reason": reason})
        t.daemon = True
        t.start()
        self._timer = t

    @property
    def pending(self) -> bool:
        return self._timer is not None and self._timer.is_alive()
