# studentapi/faults/db_probe.py
"""
Database fault probe: issues operations against the student database that are
expected to fail or to be slow, classifies what happened and records the
observation through the metrics emitter.

Failures here are the product, not errors: they come back as values.
"""

from __future__ import annotations

import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from studentapi.db import Database
from studentapi.metrics import MetricsSideEffectEmitter

LOG = logging.getLogger("studentapi.faults.db_probe")

MISSING_TABLE_SQL = "SELECT * FROM non_existent_table_xyz_123"
PROBE_SQL = "SELECT 1"
SCAN_ROW_CAP = 1000

# native delay primitives by SQLAlchemy backend name
NATIVE_SLEEP_SQL: Dict[str, str] = {
    "postgresql": "SELECT pg_sleep(:seconds)",
    "mysql": "SELECT SLEEP(:seconds)",
    "mariadb": "SELECT SLEEP(:seconds)",
}


@dataclass(frozen=True)
class DatabaseFailure:
    operation: str
    error_type: str
    message: str
    code: Optional[str] = None


@dataclass(frozen=True)
class SlowQueryResult:
    requested_seconds: float
    elapsed_seconds: float
    strategy: str                   # "native" or "fallback"
    failure: Optional[DatabaseFailure] = None


@dataclass(frozen=True)
class ConnectionProbeResult:
    attempted: int
    succeeded: int
    failures: List[DatabaseFailure]

    @property
    def failed(self) -> int:
        return len(self.failures)


def classify_failure(exc: BaseException, operation: str = "select") -> DatabaseFailure:
    """
    Classify by exception class; the driver's SQLSTATE/pgcode is attached when
    available. Driver-level socket errors (e.g. ConnectionRefusedError from
    asyncpg) and DatabaseNotConnected are classified the same way.
    """
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code is None and isinstance(exc, SQLAlchemyError):
        code = getattr(exc, "code", None)
    message = str(orig) if orig is not None else str(exc)
    return DatabaseFailure(operation=operation, error_type=type(exc).__name__, message=message.splitlines()[0] if message else "", code=code)


class DatabaseFaultProbe:
    def __init__(self, database: Database, emitter: MetricsSideEffectEmitter, table: str = "Students"):
        self.database = database
        self.emitter = emitter
        self.table = table

    async def force_query_error(self) -> DatabaseFailure:
        """
        Query a table that does not exist. The resulting failure is classified and
        counted with operation=select. If the query unexpectedly succeeds, that is
        reported as error_type=UnexpectedSuccess (and still counted).
        """
        try:
            await self.database.execute(MISSING_TABLE_SQL)
        except Exception as exc:
            failure = classify_failure(exc, operation="select")
        else:
            failure = DatabaseFailure(operation="select", error_type="UnexpectedSuccess", message="probe query did not fail")
        self.emitter.record_db_error(operation=failure.operation, error_type=failure.error_type)
        LOG.warning("Forced database error: %s (%s)", failure.error_type, failure.message)
        return failure

    async def _native_sleep(self, seconds: float) -> bool:
        sql = NATIVE_SLEEP_SQL.get(self.database.dialect_name)
        if sql is None:
            return False
        try:
            await self.database.execute(sql, {"seconds": seconds})
            return True
        except Exception as exc:
            LOG.info("Native delay primitive unavailable (%s); using fallback", type(exc).__name__)
            return False

    async def force_slow_query(self, target_seconds: float) -> SlowQueryResult:
        """
        Native delay primitive when the backend has one; otherwise sleep for the
        target and follow with an unfiltered, reverse-ordered scan capped at
        SCAN_ROW_CAP rows. The elapsed time is what gets recorded.
        """
        start = time.perf_counter()
        failure: Optional[DatabaseFailure] = None
        if await self._native_sleep(target_seconds):
            strategy = "native"
        else:
            strategy = "fallback"
            await asyncio.sleep(target_seconds)
            try:
                await self.database.list_students(limit=SCAN_ROW_CAP, newest_first=True)
            except Exception as exc:
                failure = classify_failure(exc, operation="select")
                self.emitter.record_db_error(operation=failure.operation, error_type=failure.error_type)
                LOG.warning("Slow query scan failed: %s (%s)", failure.error_type, failure.message)
        elapsed = time.perf_counter() - start
        self.emitter.observe_query_duration(elapsed, query_type="SELECT", table=self.table, operation="select")
        LOG.info("Slow query finished in %.3fs (requested %.3fs, strategy=%s)", elapsed, target_seconds, strategy)
        return SlowQueryResult(requested_seconds=target_seconds, elapsed_seconds=elapsed, strategy=strategy, failure=failure)

    async def _probe_once(self) -> Optional[DatabaseFailure]:
        try:
            await self.database.execute(PROBE_SQL)
            return None
        except Exception as exc:
            return classify_failure(exc, operation="select")

    async def exhaust_connections(self, connections: int) -> ConnectionProbeResult:
        """
        Issue `connections` probe queries concurrently and wait for all of them.
        Pool limits surface as classified failures (counted, never raised).
        """
        outcomes = await asyncio.gather(*(self._probe_once() for _ in range(connections)))
        failures = [f for f in outcomes if f is not None]
        for f in failures:
            self.emitter.record_db_error(operation=f.operation, error_type=f.error_type)
        if failures:
            LOG.warning("%d/%d connection probes failed (first: %s)", len(failures), connections, failures[0].error_type)
        return ConnectionProbeResult(attempted=connections, succeeded=connections - len(failures), failures=failures)
