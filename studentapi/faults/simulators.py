# studentapi/faults/simulators.py
"""
Resource pressure simulators: CPU burn, bounded memory burst, memory leak and
unbounded allocation.

Bounded variants (cpu_burn, memory_burst) have a predictable cost set by the
caller. The leak and OOM variants deliberately have no ceiling; they stop only
when their chunk count runs out or the allocator fails.

LEAK_REGISTRY is the one deliberately process-wide, ever-growing piece of
mutable state in the service. Chunks appended to it stay referenced until the
process exits; nothing clears it.
"""

from __future__ import annotations

import math
import time
import random
import logging
from typing import Any, Callable, Dict, List, Optional

from studentapi.utils.common import bytes_to_human

LOG = logging.getLogger("studentapi.faults.simulators")

RECORD_FILLER = "x" * 1000
DEFAULT_OOM_CHUNK_BYTES = 100_000_000
_YIELD_EVERY = 100_000


# -------------------------
# Leak registry
# -------------------------
class LeakRegistry:
    """
    Append-only store of intentionally retained allocations.

    Single writers per leak task, no lock: list.append is atomic and totals are
    computed from the retained chunks, so the reported size never decreases.
    """

    def __init__(self):
        self._chunks: List[bytes] = []

    def retain(self, chunk: bytes) -> int:
        self._chunks.append(chunk)
        return len(chunk)

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def total_bytes(self) -> int:
        return sum(len(c) for c in list(self._chunks))

    def snapshot(self) -> Dict[str, int]:
        return {"chunks": self.chunk_count, "bytes": self.total_bytes}


LEAK_REGISTRY = LeakRegistry()


# -------------------------
# CPU
# -------------------------
def cpu_burn(iterations: int) -> float:
    """Bounded CPU burn: `iterations` sqrt*random multiply-adds, no suspension points."""
    result = 0.0
    for i in range(iterations):
        result += math.sqrt(i) * random.random()
    return result


def cpu_burn_for(duration_ms: int, clock: Callable[[], float] = time.monotonic) -> int:
    """
    Continuous CPU burn for a wall-clock duration. Yields the interpreter every
    _YIELD_EVERY operations so request threads keep getting scheduled.
    Returns the number of operations performed.
    """
    deadline = clock() + duration_ms / 1000.0
    ops = 0
    while clock() < deadline:
        math.sqrt(random.random() * 1_000_000)
        ops += 1
        if ops % _YIELD_EVERY == 0:
            time.sleep(0)
    LOG.info("Continuous CPU burn finished after %d ops (%d ms)", ops, duration_ms)
    return ops


# -------------------------
# Memory
# -------------------------
def memory_burst(size: int) -> int:
    """
    Allocate `size` records and hold them for the duration of the call.
    Returns the number of records allocated; the container becomes garbage on return.
    """
    now = time.time()
    records = [{"id": i, "data": RECORD_FILLER, "timestamp": now} for i in range(size)]
    return len(records)


def leak_memory(size: int, count: int, registry: Optional[LeakRegistry] = None, pause_ms: int = 100,
                progress: Optional[Callable[[int], None]] = None) -> int:
    """
    Allocate `count` chunks of `size` bytes into the leak registry, pausing
    between chunks to simulate gradual growth. Returns bytes leaked by this call.
    """
    registry = registry or LEAK_REGISTRY
    leaked = 0
    for i in range(count):
        leaked += registry.retain(b"x" * size)
        if progress is not None:
            progress(leaked)
        if pause_ms:
            time.sleep(pause_ms / 1000.0)
    LOG.warning("Leaked %d chunks of %d bytes (registry now %s)", count, size, bytes_to_human(registry.total_bytes))
    return leaked


def _default_allocator(chunk_bytes: int) -> bytes:
    return b"x" * chunk_bytes


def allocate_until_exhausted(registry: Optional[LeakRegistry] = None, chunk_bytes: int = DEFAULT_OOM_CHUNK_BYTES,
                             allocator: Callable[[int], Any] = _default_allocator,
                             progress: Optional[Callable[[int], None]] = None) -> int:
    """
    Unbounded allocation loop. The only exit is allocator failure (MemoryError),
    which is logged, not re-raised. Returns bytes retained before the failure.
    """
    registry = registry or LEAK_REGISTRY
    retained = 0
    try:
        while True:
            retained += registry.retain(allocator(chunk_bytes))
            if progress is not None:
                progress(retained)
    except MemoryError:
        LOG.error("OOM triggered after retaining %s (registry %s)", bytes_to_human(retained), bytes_to_human(registry.total_bytes))
    return retained
