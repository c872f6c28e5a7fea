# studentapi/faults/background.py
"""
Fire-and-forget execution for detached fault modes.

launch() starts a daemon thread and returns nothing: callers get no handle and
there is no cancellation channel. A detached fault runs until it finishes on
its own or the process dies. The manager keeps a bounded history of task
records for the status endpoint only.
"""

from __future__ import annotations

import time
import uuid
import logging
import threading
import collections
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Deque, Dict, List, Optional

from studentapi.utils.common import ts_to_iso

LOG = logging.getLogger("studentapi.faults.background")


@dataclass
class BackgroundTask:
    task_id: str
    mode: str
    started_at: float
    target: Dict[str, int] = field(default_factory=dict)
    progress: int = 0
    finished_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.finished_at is None

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["running"] = self.running
        d["started"] = ts_to_iso(self.started_at)
        return d


TaskWork = Callable[[BackgroundTask], Any]


class BackgroundTaskManager:
    def __init__(self, history: int = 100):
        self._history: Deque[BackgroundTask] = collections.deque(maxlen=history)
        self._launched = 0

    def launch(self, mode: str, work: TaskWork, target: Optional[Dict[str, int]] = None) -> None:
        task = BackgroundTask(task_id=f"bg_{uuid.uuid4().hex[:8]}", mode=mode, started_at=time.time(), target=dict(target or {}))
        self._history.append(task)
        self._launched += 1
        t = threading.Thread(target=self._run, args=(task, work), name=f"fault-{mode}-{task.task_id}", daemon=True)
        t.start()
        LOG.info("Launched detached fault %s (%s) target=%s", mode, task.task_id, task.target)

    def _run(self, task: BackgroundTask, work: TaskWork):
        try:
            work(task)
        except Exception as e:
            # no caller left to propagate to
            task.error = f"{type(e).__name__}: {e}"
            LOG.exception("Detached fault %s (%s) failed", task.mode, task.task_id)
        finally:
            task.finished_at = time.time()
            LOG.info("Detached fault %s (%s) ended after %.2fs", task.mode, task.task_id, task.finished_at - task.started_at)

    @property
    def launched(self) -> int:
        return self._launched

    def running_count(self) -> int:
        return sum(1 for t in list(self._history) if t.running)

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return [t.as_dict() for t in list(self._history)[-limit:]]
