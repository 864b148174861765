# backend/icm/api/v1/executions.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from icm.api.deps.errors import http_error
from icm.api.deps.tenant import get_orchestrator, get_tenant_id
from icm.core.errors import IcmError, PersistenceError
from icm.schemas.execution import (
    ExecutionLog,
    ExecutionLogSummary,
    ProductionRunDetail,
    RunRequest,
    RunResponse,
    RunState,
)
from icm.services.orchestrator import ExecutionOrchestrator

router = APIRouter(prefix="/executions", tags=["executions"])


@router.post("/run", response_model=RunResponse)
async def run_execution(
    payload: RunRequest,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
):
    """
    Run a scheme in simulation or production mode.

    Failed runs still write an execution log; the error response carries its
    runId so the failure can be looked up.
    """
    try:
        outcome = await orchestrator.run_execution(tenant_id, payload.scheme_id, payload.mode)
    except PersistenceError as exc:
        raise http_error(exc, runId=exc.details.get("run_id"), state=RunState.FAILED.value)

    if not outcome.succeeded:
        error = outcome.exception or IcmError((outcome.error or {}).get("message", "Run failed"))
        raise http_error(
            error,
            runId=outcome.run_id,
            state=outcome.state.value,
            failedIn=(outcome.error or {}).get("state"),
        )

    return RunResponse(
        run_id=outcome.run_id,
        state=outcome.state,
        summary=outcome.summary,
        post_processing_status=outcome.post_processing_status,
    )


@router.get("/logs", response_model=List[ExecutionLogSummary])
async def list_execution_logs(
    scheme_id: Optional[str] = Query(default=None, alias="schemeId"),
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
):
    """Execution log summaries for the tenant, newest first."""
    try:
        return await orchestrator.list_execution_logs(tenant_id, scheme_id)
    except IcmError as exc:
        raise http_error(exc)


@router.get("/logs/{run_id}", response_model=ExecutionLog)
async def get_execution_log(
    run_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.get_execution_log(tenant_id, run_id)
    except IcmError as exc:
        raise http_error(exc, runId=run_id)


@router.get("/production-runs", response_model=List[ExecutionLogSummary])
async def list_production_runs(
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.list_production_runs(tenant_id)
    except IcmError as exc:
        raise http_error(exc)


@router.get("/production-runs/{run_id}", response_model=ProductionRunDetail)
async def get_production_run(
    run_id: str,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: ExecutionOrchestrator = Depends(get_orchestrator),
):
    """Production run log together with the scheme it ran."""
    try:
        return await orchestrator.get_production_run_detail(tenant_id, run_id)
    except IcmError as exc:
        raise http_error(exc, runId=run_id)
