# studentapi/faults/executor.py
"""
Fault executor: validate -> dispatch -> outcome.

Every catalog mode has exactly one handler here (checked at construction).
Synchronous modes finish their fault before the outcome is returned. Detached
and terminating modes return their acknowledgment with an `after_response`
callable; the HTTP layer runs it once the response has been sent (any other
caller runs it itself).

Unexpected exceptions inside a handler become a generic 500 outcome; the only
paths allowed to take the process down are crash and crash-loop.
"""

from __future__ import annotations

import asyncio
import logging
import functools
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from studentapi.faults.background import BackgroundTask, BackgroundTaskManager
from studentapi.faults.catalog import DEFAULT_CATALOG, FaultCatalog, FaultMode, FaultRequest, FaultValidationError
from studentapi.faults.db_probe import DatabaseFaultProbe
from studentapi.faults.lifecycle import ProcessTerminator
from studentapi.faults import simulators
from studentapi.faults.simulators import LEAK_REGISTRY, LeakRegistry

LOG = logging.getLogger("studentapi.faults.executor")


@dataclass(frozen=True)
class FaultOutcome:
    mode: Optional[FaultMode]
    status_code: int
    message: str
    body: Mapping[str, Any] = field(default_factory=dict)
    duration: Optional[float] = None
    metric_labels: Optional[Mapping[str, str]] = None
    after_response: Optional[Callable[[], None]] = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "body", MappingProxyType(dict(self.body)))
        if self.metric_labels is not None:
            object.__setattr__(self, "metric_labels", MappingProxyType(dict(self.metric_labels)))

    @property
    def detached(self) -> bool:
        return self.after_response is not None


Handler = Callable[[FaultRequest], Awaitable[FaultOutcome]]


class FaultExecutor:
    def __init__(self,
                 probe: DatabaseFaultProbe,
                 background: BackgroundTaskManager,
                 terminator: ProcessTerminator,
                 catalog: FaultCatalog = DEFAULT_CATALOG,
                 leak_registry: LeakRegistry = LEAK_REGISTRY,
                 crash_grace_ms: int = 1000,
                 leak_pause_ms: int = 100,
                 oom_chunk_bytes: int = simulators.DEFAULT_OOM_CHUNK_BYTES,
                 oom_allocator: Optional[Callable[[int], Any]] = None):
        self.catalog = catalog
        self.probe = probe
        self.background = background
        self.terminator = terminator
        self.leak_registry = leak_registry
        self.crash_grace_ms = crash_grace_ms
        self.leak_pause_ms = leak_pause_ms
        self.oom_chunk_bytes = oom_chunk_bytes
        self.oom_allocator = oom_allocator or simulators._default_allocator
        self._handlers: Dict[FaultMode, Handler] = {
            FaultMode.ERROR_RATE: self._error_rate,
            FaultMode.LATENCY: self._latency,
            FaultMode.DATABASE_ERROR: self._database_error,
            FaultMode.CONNECTION_EXHAUSTION: self._connection_exhaustion,
            FaultMode.SLOW_QUERY: self._slow_query,
            FaultMode.CPU_BURST: self._cpu_burst,
            FaultMode.CPU_CONTINUOUS: self._cpu_continuous,
            FaultMode.MEMORY_BURST: self._memory_burst,
            FaultMode.MEMORY_LEAK: self._memory_leak,
            FaultMode.OUT_OF_MEMORY: self._out_of_memory,
            FaultMode.CRASH: self._crash,
            FaultMode.CRASH_LOOP: self._crash_loop,
            FaultMode.GENERIC_ERROR_BURST: self._error_burst,
            FaultMode.GENERIC_SLOW_REQUEST: self._slow_request,
        }
        mismatch = set(self.catalog.modes()) ^ set(self._handlers)
        if mismatch:
            raise RuntimeError(f"catalog and dispatch table disagree on: {sorted(m.value for m in mismatch)}")

    # -------------------------
    # Entry points
    # -------------------------
    def validation_failure(self, exc: FaultValidationError) -> FaultOutcome:
        body: Dict[str, Any] = {"error": exc.message, "availableTypes": self.catalog.list_modes()}
        if exc.parameter:
            body["parameter"] = exc.parameter
            body["detail"] = exc.detail
        return FaultOutcome(mode=None, status_code=400, message=exc.message, body=body)

    async def execute_raw(self, identifier: Optional[str], raw_params: Optional[Mapping[str, Any]] = None) -> FaultOutcome:
        try:
            request = self.catalog.build_request(identifier, raw_params)
        except FaultValidationError as e:
            LOG.info("Rejected fault request %r: %s %s", identifier, e.message, e.detail or "")
            return self.validation_failure(e)
        return await self.execute(request)

    async def execute(self, request: FaultRequest) -> FaultOutcome:
        handler = self._handlers.get(request.mode)
        if handler is None or request.mode not in self.catalog:
            return self.validation_failure(FaultValidationError("Invalid alert type"))
        LOG.info("Executing fault %s params=%s", request.mode.value, dict(request.parameters))
        try:
            return await handler(request)
        except Exception as e:
            LOG.exception("Test endpoint error for %s", request.mode.value)
            return FaultOutcome(mode=request.mode, status_code=500, message="Test endpoint failed",
                                body={"error": "Test endpoint failed", "message": str(e)})

    # -------------------------
    # Helpers
    # -------------------------
    def _alert(self, mode: FaultMode) -> str:
        return self.catalog.spec(mode).alert

    def _outcome(self, request: FaultRequest, status_code: int, message: str, key: str = "message",
                 fields: Optional[Mapping[str, Any]] = None, **extra: Any) -> FaultOutcome:
        body: Dict[str, Any] = {key: message}
        body.update(fields or {})
        body["alert"] = self._alert(request.mode)
        return FaultOutcome(mode=request.mode, status_code=status_code, message=message, body=body, **extra)

    def _deferred(self, mode: FaultMode, fn: Callable[[], None]) -> Callable[[], None]:
        def _run():
            try:
                fn()
            except Exception:
                LOG.exception("Post-response action for %s failed", mode.value)
        return _run

    def _detach(self, request: FaultRequest, work: Callable[[BackgroundTask], Any]) -> Callable[[], None]:
        target = dict(request.parameters)
        return self._deferred(request.mode, lambda: self.background.launch(request.mode.value, work, target=target))

    async def _in_thread(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    # -------------------------
    # HTTP-level faults
    # -------------------------
    async def _error_rate(self, request: FaultRequest) -> FaultOutcome:
        return self._outcome(request, 500, "Intentional error for alert testing", key="error")

    async def _latency(self, request: FaultRequest) -> FaultOutcome:
        delay = request.param("delay")
        await asyncio.sleep(delay / 1000.0)
        return self._outcome(request, 200, "High latency response", fields={"delay": delay}, duration=delay / 1000.0)

    async def _error_burst(self, request: FaultRequest) -> FaultOutcome:
        return self._outcome(request, request.param("status"), "Intentional error", key="error",
                             fields={"count": request.param("count")})

    async def _slow_request(self, request: FaultRequest) -> FaultOutcome:
        delay = request.param("delay")
        await asyncio.sleep(delay / 1000.0)
        return self._outcome(request, 200, "Slow request completed", fields={"delay": delay}, duration=delay / 1000.0)

    # -------------------------
    # Database faults
    # -------------------------
    async def _database_error(self, request: FaultRequest) -> FaultOutcome:
        failure = await self.probe.force_query_error()
        return self._outcome(request, 500, "Database error triggered", key="error",
                             fields={"errorType": failure.error_type},
                             metric_labels={"operation": failure.operation, "error_type": failure.error_type})

    async def _connection_exhaustion(self, request: FaultRequest) -> FaultOutcome:
        result = await self.probe.exhaust_connections(request.param("connections"))
        return self._outcome(request, 200, "High connection count triggered",
                             fields={"connections": result.attempted, "failed": result.failed})

    async def _slow_query(self, request: FaultRequest) -> FaultOutcome:
        result = await self.probe.force_slow_query(request.param("delay") / 1000.0)
        fields: Dict[str, Any] = {"duration": round(result.elapsed_seconds, 3), "strategy": result.strategy}
        if result.failure is not None:
            fields["errorType"] = result.failure.error_type
        return self._outcome(request, 200, "Slow query executed", fields=fields,
                             duration=result.elapsed_seconds,
                             metric_labels={"query_type": "SELECT", "table": self.probe.table, "operation": "select"})

    # -------------------------
    # CPU / memory faults
    # -------------------------
    async def _cpu_burst(self, request: FaultRequest) -> FaultOutcome:
        result = await self._in_thread(simulators.cpu_burn, request.param("iterations"))
        return self._outcome(request, 200, "CPU intensive operation completed", fields={"result": result})

    async def _cpu_continuous(self, request: FaultRequest) -> FaultOutcome:
        duration = request.param("duration")

        def work(task: BackgroundTask):
            task.progress = simulators.cpu_burn_for(duration)

        return self._outcome(request, 200, "Starting continuous CPU load...", fields={"duration": duration},
                             after_response=self._detach(request, work))

    async def _memory_burst(self, request: FaultRequest) -> FaultOutcome:
        allocated = await self._in_thread(simulators.memory_burst, request.param("size"))
        return self._outcome(request, 200, "Memory intensive operation completed", fields={"arraySize": allocated})

    async def _memory_leak(self, request: FaultRequest) -> FaultOutcome:
        size, count = request.param("size"), request.param("count")

        def work(task: BackgroundTask):
            simulators.leak_memory(size, count, registry=self.leak_registry, pause_ms=self.leak_pause_ms,
                                   progress=lambda n: setattr(task, "progress", n))

        return self._outcome(request, 200, "Starting memory leak...", fields={"leakSize": size, "leakCount": count},
                             after_response=self._detach(request, work))

    async def _out_of_memory(self, request: FaultRequest) -> FaultOutcome:
        def work(task: BackgroundTask):
            simulators.allocate_until_exhausted(self.leak_registry, self.oom_chunk_bytes, allocator=self.oom_allocator,
                                                progress=lambda n: setattr(task, "progress", n))

        return self._outcome(request, 200, "Triggering OOM...", after_response=self._detach(request, work))

    # -------------------------
    # Process lifecycle faults
    # -------------------------
    async def _crash(self, request: FaultRequest) -> FaultOutcome:
        grace = self.crash_grace_ms
        return self._outcome(request, 200, "About to crash...",
                             after_response=self._deferred(request.mode, lambda: self.terminator.crash(grace)))

    async def _crash_loop(self, request: FaultRequest) -> FaultOutcome:
        def work(task: BackgroundTask):
            self.terminator.terminate_now(reason=request.mode.value)

        return self._outcome(request, 200, "Starting crash loop...", after_response=self._detach(request, work))
