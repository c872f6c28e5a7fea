# tests/test_simulators.py
"""
Resource pressure simulators: unit tests

Unbounded allocation is only exercised with an allocator that fails after a
few chunks; assertions are directional (growth, never shrink).
"""

import itertools

from studentapi.faults.simulators import (
    RECORD_FILLER,
    LeakRegistry,
    allocate_until_exhausted,
    cpu_burn,
    cpu_burn_for,
    leak_memory,
    memory_burst,
)

from conftest import FailingAllocator


def test_cpu_burn_returns_float():
    result = cpu_burn(1000)
    assert isinstance(result, float)
    assert result >= 0.0
    assert cpu_burn(0) == 0.0


def test_cpu_burn_for_stops_at_deadline():
    # fake clock: starts at 0, advances 1ms per reading
    ticks = itertools.count()
    clock = lambda: next(ticks) / 1000.0
    ops = cpu_burn_for(10, clock=clock)
    assert 0 < ops <= 10


def test_cpu_burn_for_zero_duration():
    assert cpu_burn_for(0) == 0


def test_memory_burst_exact_count():
    assert memory_burst(100) == 100
    assert memory_burst(0) == 0
    assert len(RECORD_FILLER) == 1000


def test_leak_registry_is_monotonic():
    reg = LeakRegistry()
    assert reg.snapshot() == {"chunks": 0, "bytes": 0}
    seen = [reg.total_bytes]
    for _ in range(3):
        leak_memory(16, 2, registry=reg, pause_ms=0)
        seen.append(reg.total_bytes)
    assert seen == sorted(seen)
    assert reg.chunk_count == 6
    assert reg.total_bytes == 96


def test_leak_memory_reports_progress():
    reg = LeakRegistry()
    progress = []
    leaked = leak_memory(8, 4, registry=reg, pause_ms=0, progress=progress.append)
    assert leaked == 32
    assert progress == [8, 16, 24, 32]


def test_allocate_until_exhausted_swallows_memory_error():
    reg = LeakRegistry()
    alloc = FailingAllocator(chunks=3)
    retained = allocate_until_exhausted(reg, chunk_bytes=100, allocator=alloc)
    assert retained == 300
    assert reg.total_bytes == 300
    assert alloc.calls == 4


def test_allocate_until_exhausted_grows_registry_across_calls():
    reg = LeakRegistry()
    leak_memory(10, 1, registry=reg, pause_ms=0)
    before = reg.total_bytes
    allocate_until_exhausted(reg, chunk_bytes=50, allocator=FailingAllocator(chunks=2))
    after_first = reg.total_bytes
    allocate_until_exhausted(reg, chunk_bytes=50, allocator=FailingAllocator(chunks=0))
    assert before < after_first <= reg.total_bytes
