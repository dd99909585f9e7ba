"""
API routes for run inspection and controller input.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from loadtest_operator.api.error_handling import http_exception
from loadtest_operator.core.errors import NotFoundError
from loadtest_operator.core.runtime import runtime
from loadtest_operator.models.cluster import WorkerEvent
from loadtest_operator.models.reconcile import ReconcileRequest
from loadtest_operator.models.run import ObjectMeta, Run, RunSpec, RunStatus

router = APIRouter()


class RunResponse(BaseModel):
    namespace: str
    name: str
    resource_version: str
    spec: RunSpec
    status: RunStatus


class RunActionResponse(BaseModel):
    namespace: str
    name: str
    status: str


class WorkerEventResponse(BaseModel):
    enqueued: int
    dropped: bool


def _to_response(run: Run) -> RunResponse:
    return RunResponse(
        namespace=run.namespace,
        name=run.name,
        resource_version=run.metadata.resource_version,
        spec=run.spec,
        status=run.status,
    )


@router.get("/runs/{namespace}/{name}", response_model=RunResponse)
async def get_run(namespace: str, name: str) -> RunResponse:
    try:
        run = await runtime.cluster.get_run(namespace, name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except Exception as e:
        raise http_exception("get run", e)
    return _to_response(run)


@router.put("/runs/{namespace}/{name}", response_model=RunResponse)
async def put_run(namespace: str, name: str, spec: RunSpec) -> RunResponse:
    """
    Create a run, or replace the spec of an existing one (status is kept).
    """
    try:
        try:
            existing = await runtime.cluster.get_run(namespace, name)
            current_status = existing.status
        except NotFoundError:
            current_status = RunStatus()
        run = Run(
            metadata=ObjectMeta(name=name, namespace=namespace),
            spec=spec,
            status=current_status,
        )
        stored = await runtime.cluster.put_run(run)
    except Exception as e:
        raise http_exception("store run", e)
    return _to_response(stored)


@router.post(
    "/runs/{namespace}/{name}/reconcile",
    response_model=RunActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reconcile_run(namespace: str, name: str) -> RunActionResponse:
    runtime.controller.enqueue(ReconcileRequest(namespace=namespace, name=name))
    return RunActionResponse(namespace=namespace, name=name, status="QUEUED")


@router.post(
    "/events/workers",
    response_model=WorkerEventResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def worker_event(event: WorkerEvent) -> WorkerEventResponse:
    enqueued = runtime.controller.handle_worker_event(event)
    return WorkerEventResponse(enqueued=enqueued, dropped=enqueued == 0)
