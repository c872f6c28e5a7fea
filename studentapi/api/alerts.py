# studentapi/api/alerts.py
"""
Alert-testing API
-----------------

Endpoints (mounted under the API prefix, /api/v1 by default):
 - GET /trigger-alerts?alertType=<mode>&<params>   dispatch one fault mode
 - GET /trigger-alerts/modes                        catalog introspection
 - GET /trigger-alerts/status                       leak registry, detached tasks, process resources
 - GET /trigger-errors?count=&status=               generic error burst
 - GET /trigger-slow-requests?delay=                generic latency injection

Handlers stay thin: all validation and dispatch lives in FaultExecutor. Post-
response actions (detached and terminating modes) are handed to Starlette's
BackgroundTasks so they start only after the response body has been sent.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from studentapi.faults.catalog import FaultMode
from studentapi.faults.executor import FaultExecutor, FaultOutcome
from studentapi.utils.common import get_resource_usage, now_iso

LOG = logging.getLogger("studentapi.api.alerts")

router = APIRouter(tags=["alerts"])


def get_executor(request: Request) -> FaultExecutor:
    executor = getattr(request.app.state, "fault_executor", None)
    if executor is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="fault harness not initialized")
    return executor


def _respond(outcome: FaultOutcome, background_tasks: BackgroundTasks) -> JSONResponse:
    if outcome.after_response is not None:
        background_tasks.add_task(outcome.after_response)
    return JSONResponse(status_code=outcome.status_code, content=dict(outcome.body))


def _query_params(request: Request, exclude: str = "") -> Dict[str, Any]:
    return {k: v for k, v in request.query_params.items() if k != exclude}


@router.get("/trigger-alerts")
async def trigger_alerts(request: Request,
                         background_tasks: BackgroundTasks,
                         alertType: Optional[str] = Query(None, description="fault mode identifier"),
                         executor: FaultExecutor = Depends(get_executor)):
    outcome = await executor.execute_raw(alertType, _query_params(request, exclude="alertType"))
    return _respond(outcome, background_tasks)


@router.get("/trigger-alerts/modes")
async def list_modes(executor: FaultExecutor = Depends(get_executor)):
    return {"modes": [spec.describe() for spec in executor.catalog]}


@router.get("/trigger-alerts/status")
async def harness_status(executor: FaultExecutor = Depends(get_executor)):
    """
    Snapshot of the harness side effects currently alive in this process.
    """
    return {
        "ts": now_iso(),
        "leak": executor.leak_registry.snapshot(),
        "background": {
            "launched": executor.background.launched,
            "running": executor.background.running_count(),
            "recent": executor.background.recent(),
        },
        "crash_pending": executor.terminator.pending,
        "process": get_resource_usage(),
    }


@router.get("/trigger-errors")
async def trigger_errors(request: Request, background_tasks: BackgroundTasks,
                         executor: FaultExecutor = Depends(get_executor)):
    outcome = await executor.execute_raw(FaultMode.GENERIC_ERROR_BURST.value, _query_params(request))
    return _respond(outcome, background_tasks)


@router.get("/trigger-slow-requests")
async def trigger_slow_requests(request: Request, background_tasks: BackgroundTasks,
                                executor: FaultExecutor = Depends(get_executor)):
    outcome = await executor.execute_raw(FaultMode.GENERIC_SLOW_REQUEST.value, _query_params(request))
    return _respond(outcome, background_tasks)
