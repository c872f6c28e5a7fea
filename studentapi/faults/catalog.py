# studentapi/faults/catalog.py
"""
Fault catalog: the closed set of failure scenarios the harness can induce,
each with its parameter schema, alert name and execution policy.

Resolution happens here and nowhere else: a FaultRequest is either fully
resolved (mode + coerced integer parameters) or rejected with
FaultValidationError before any mode-specific side effect runs.
"""

from __future__ import annotations

import enum
import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


class FaultMode(str, enum.Enum):
    ERROR_RATE = "high-error-rate"
    LATENCY = "high-latency"
    DATABASE_ERROR = "database-error"
    CONNECTION_EXHAUSTION = "high-db-connections"
    SLOW_QUERY = "slow-db-query"
    CPU_BURST = "cpu-intensive"
    CPU_CONTINUOUS = "cpu-continuous"
    MEMORY_BURST = "memory-intensive"
    MEMORY_LEAK = "memory-leak"
    OUT_OF_MEMORY = "oom"
    CRASH = "crash"
    CRASH_LOOP = "crash-loop"
    GENERIC_ERROR_BURST = "error-burst"
    GENERIC_SLOW_REQUEST = "slow-requests"


class ExecutionPolicy(str, enum.Enum):
    SYNCHRONOUS = "synchronous"    # fault happens before the response
    DETACHED = "detached"          # response first, fault runs in the background
    TERMINATING = "terminating"    # acknowledge, then end the process


class FaultValidationError(ValueError):
    """Unknown mode or malformed parameter. Always reported as 400 with the catalog."""

    def __init__(self, message: str, parameter: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.parameter = parameter
        self.detail = detail


@dataclass(frozen=True)
class ParamSpec:
    name: str
    default: int
    minimum: int = 0
    maximum: Optional[int] = None
    description: str = ""

    def coerce(self, raw: Any) -> int:
        if raw is None or (isinstance(raw, str) and raw.strip() == ""):
            return self.default
        try:
            value = int(str(raw).strip())
        except ValueError:
            raise FaultValidationError("Invalid parameter", parameter=self.name, detail=f"{self.name} must be an integer, got {raw!r}")
        if value < self.minimum or (self.maximum is not None and value > self.maximum):
            bound = f">= {self.minimum}" if self.maximum is None else f"between {self.minimum} and {self.maximum}"
            raise FaultValidationError("Invalid parameter", parameter=self.name, detail=f"{self.name} must be {bound}, got {value}")
        return value


@dataclass(frozen=True)
class FaultSpec:
    mode: FaultMode
    alert: str
    policy: ExecutionPolicy
    params: Tuple[ParamSpec, ...] = ()
    description: str = ""

    def param_names(self) -> List[str]:
        return [p.name for p in self.params]

    def describe(self) -> Dict[str, Any]:
        return {
            "type": self.mode.value,
            "alert": self.alert,
            "policy": self.policy.value,
            "description": self.description,
            "parameters": [{"name": p.name, "default": p.default, "minimum": p.minimum, "maximum": p.maximum, "description": p.description} for p in self.params],
        }


@dataclass(frozen=True)
class FaultRequest:
    mode: FaultMode
    parameters: Mapping[str, int] = field(default_factory=dict)

    def param(self, name: str) -> int:
        return self.parameters[name]


_DELAY_HELP = "milliseconds to hold the response"

_SPECS: Tuple[FaultSpec, ...] = (
    FaultSpec(FaultMode.ERROR_RATE, "HighHTTPErrorRate", ExecutionPolicy.SYNCHRONOUS,
              description="Respond 500 immediately"),
    FaultSpec(FaultMode.LATENCY, "HighLatency", ExecutionPolicy.SYNCHRONOUS,
              (ParamSpec("delay", 6000, description=_DELAY_HELP),),
              description="Sleep, then respond 200"),
    FaultSpec(FaultMode.DATABASE_ERROR, "DatabaseErrors", ExecutionPolicy.SYNCHRONOUS,
              description="Query a missing table and classify the failure"),
    FaultSpec(FaultMode.CONNECTION_EXHAUSTION, "HighDatabaseConnections", ExecutionPolicy.SYNCHRONOUS,
              (ParamSpec("connections", 60, minimum=1, maximum=10000, description="concurrent probe queries"),),
              description="Issue concurrent probe queries against the shared pool"),
    FaultSpec(FaultMode.SLOW_QUERY, "SlowDatabaseQueries", ExecutionPolicy.SYNCHRONOUS,
              (ParamSpec("delay", 2000, description="target query duration in milliseconds"),),
              description="Run a deliberately slow query and record its duration"),
    FaultSpec(FaultMode.CPU_BURST, "HighPodCPUUsage", ExecutionPolicy.SYNCHRONOUS,
              (ParamSpec("iterations", 100_000_000, description="floating point iterations"),),
              description="Burn CPU for a fixed iteration count"),
    FaultSpec(FaultMode.CPU_CONTINUOUS, "HighPodCPUUsage", ExecutionPolicy.DETACHED,
              (ParamSpec("duration", 600_000, description="milliseconds of CPU burn"),),
              description="Burn CPU in the background for a wall-clock duration"),
    FaultSpec(FaultMode.MEMORY_BURST, "HighPodMemoryUsage", ExecutionPolicy.SYNCHRONOUS,
              (ParamSpec("size", 10_000_000, description="records to allocate"),),
              description="Allocate records, hold them until the response"),
    FaultSpec(FaultMode.MEMORY_LEAK, "HighPodMemoryUsage / OOM", ExecutionPolicy.DETACHED,
              (ParamSpec("size", 50_000_000, description="bytes per leaked chunk"),
               ParamSpec("count", 20, description="number of leaked chunks")),
              description="Leak chunks into the process-wide registry"),
    FaultSpec(FaultMode.OUT_OF_MEMORY, "OOMKilled", ExecutionPolicy.DETACHED,
              description="Allocate until the allocator fails"),
    FaultSpec(FaultMode.CRASH, "PodCrashLoopBackOff", ExecutionPolicy.TERMINATING,
              description="Acknowledge, then exit(1) after a short grace period"),
    FaultSpec(FaultMode.CRASH_LOOP, "PodCrashLoopBackOff", ExecutionPolicy.DETACHED,
              description="Acknowledge, then exit(1) immediately"),
    FaultSpec(FaultMode.GENERIC_ERROR_BURST, "HighHTTPErrorRate", ExecutionPolicy.SYNCHRONOUS,
              (ParamSpec("count", 10, description="echoed burst size"),
               ParamSpec("status", 500, minimum=100, maximum=599, description="HTTP status to respond with")),
              description="Respond with the requested status code"),
    FaultSpec(FaultMode.GENERIC_SLOW_REQUEST, "HighLatency", ExecutionPolicy.SYNCHRONOUS,
              (ParamSpec("delay", 3000, description=_DELAY_HELP),),
              description="Sleep, then respond 200"),
)


class FaultCatalog:
    """
    Static registry of FaultSpec entries in a stable order. The order of
    list_modes() is the order reported to callers in validation failures.
    """

    def __init__(self, specs: Iterable[FaultSpec] = _SPECS):
        self._specs: Dict[FaultMode, FaultSpec] = {}
        for spec in specs:
            if spec.mode in self._specs:
                raise ValueError(f"duplicate fault mode {spec.mode.value}")
            self._specs[spec.mode] = spec
        self._by_id = {m.value: m for m in self._specs}

    def __contains__(self, mode: FaultMode) -> bool:
        return mode in self._specs

    def __iter__(self):
        return iter(self._specs.values())

    def modes(self) -> List[FaultMode]:
        return list(self._specs)

    def list_modes(self) -> List[str]:
        return [m.value for m in self._specs]

    def resolve(self, identifier: Optional[str]) -> Optional[FaultMode]:
        if identifier is None:
            return None
        return self._by_id.get(identifier.strip())

    def spec(self, mode: FaultMode) -> FaultSpec:
        return self._specs[mode]

    def with_default(self, mode: FaultMode, param: str, value: int) -> "FaultCatalog":
        """Copy of this catalog with one parameter default replaced (deployment tuning)."""
        spec = self._specs[mode]
        if param not in spec.param_names():
            raise KeyError(f"{mode.value} has no parameter {param!r}")
        new_params = tuple(dataclasses.replace(p, default=value) if p.name == param else p for p in spec.params)
        specs = [dataclasses.replace(s, params=new_params) if s.mode == mode else s for s in self._specs.values()]
        return FaultCatalog(specs)

    def build_request(self, identifier: Optional[str], raw_params: Optional[Mapping[str, Any]] = None) -> FaultRequest:
        """
        Resolve identifier and coerce every declared parameter (defaults for the
        missing ones). Undeclared parameters are ignored.
        """
        mode = self.resolve(identifier)
        if mode is None:
            raise FaultValidationError("Invalid alert type")
        raw_params = raw_params or {}
        spec = self._specs[mode]
        values = {p.name: p.coerce(raw_params.get(p.name)) for p in spec.params}
        return FaultRequest(mode=mode, parameters=values)


DEFAULT_CATALOG = FaultCatalog()
