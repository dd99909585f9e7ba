"""
Worker-lifecycle polling and control.

Workers are discovered on every call by label selector; nothing about them is
cached between reconciles. Status probes run one after another with a short
timeout each, and any probe that does not come back with a parsable
"stopped" payload counts the worker as still running.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from loadtest_operator.config import settings
from loadtest_operator.core.cluster import ClusterClient
from loadtest_operator.core.errors import (
    NotFoundError,
    WorkerControlError,
    WorkerSweepError,
)
from loadtest_operator.models.cluster import PropagationPolicy, WorkerEndpoint
from loadtest_operator.models.run import Run

logger = logging.getLogger(__name__)


class WorkerStatusAttributes(BaseModel):
    status: Optional[int] = None
    paused: Optional[bool] = None
    vus: Optional[int] = None
    vus_max: Optional[int] = None
    stopped: bool = False
    running: bool = False
    tainted: bool = False


class WorkerStatusData(BaseModel):
    type: str = "status"
    id: str = "default"
    attributes: WorkerStatusAttributes


class WorkerStatusEnvelope(BaseModel):
    """JSON:API document served by a worker's status endpoint."""

    data: WorkerStatusData


def _status_patch_body(**attributes: Any) -> dict[str, Any]:
    return {"data": {"type": "status", "id": "default", "attributes": attributes}}


@dataclass
class SweepResult:
    """Outcome of one bulk job deletion pass."""

    matched: int = 0
    deleted: list[str] = field(default_factory=list)
    errors: dict[str, Exception] = field(default_factory=dict)

    @property
    def all_deleted(self) -> bool:
        return not self.errors and len(self.deleted) == self.matched

    def raise_for_errors(self) -> None:
        if self.errors:
            raise WorkerSweepError(self.errors)


class WorkerPoller:
    def __init__(
        self,
        cluster: ClusterClient,
        *,
        http: Optional[httpx.AsyncClient] = None,
        probe_timeout: Optional[float] = None,
    ) -> None:
        self._cluster = cluster
        self._http = http or httpx.AsyncClient()
        self._owns_http = http is None
        self._probe_timeout = (
            settings.WORKER_PROBE_TIMEOUT_SECONDS
            if probe_timeout is None
            else float(probe_timeout)
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @staticmethod
    def selector(run: Run) -> dict[str, str]:
        return {
            "app": settings.APP_LABEL,
            settings.OWNER_LABEL: run.name,
            settings.RUNNER_LABEL: "true",
        }

    async def list_endpoints(self, run: Run) -> list[WorkerEndpoint]:
        return await self._cluster.list_worker_endpoints(
            run.namespace, self.selector(run)
        )

    async def is_worker_stopped(self, endpoint: WorkerEndpoint) -> bool:
        """Probe one worker. Anything short of a parsed stopped=true means running."""
        try:
            resp = await self._http.get(endpoint.status_url, timeout=self._probe_timeout)
        except httpx.HTTPError as exc:
            logger.error(
                "Could not get status of runner %s: %s: %s",
                endpoint.name,
                type(exc).__name__,
                exc or "(no message)",
            )
            return False

        if resp.status_code >= 400:
            logger.error(
                "Status from runner %s is %d", endpoint.name, resp.status_code
            )
            return False

        try:
            status = WorkerStatusEnvelope.model_validate_json(resp.content)
        except ValidationError as exc:
            logger.error(
                "Error on parsing status of runner %s: %s",
                endpoint.name,
                exc.errors()[:1],
            )
            return False

        return status.data.attributes.stopped

    async def poll_stopped(self, run: Run) -> bool:
        """
        Check whether every runner of the run has stopped execution.

        Returns:
            True iff none of the discovered runners is still running (also
            when no runner is found at all).
        """
        logger.info("Waiting for runners to stop the test run")

        endpoints = await self.list_endpoints(run)

        running = 0
        for endpoint in endpoints:
            if not await self.is_worker_stopped(endpoint):
                running += 1

        total = len(endpoints)
        logger.info(
            "%d/%d runners stopped execution (parallelism %d)",
            total - running,
            total,
            run.spec.parallelism,
        )
        return running == 0

    async def kill_all(self, run: Run) -> SweepResult:
        """
        Delete every runner job of the run with background propagation.

        Failures are logged per job and collected; the sweep always visits
        every matched job. A job that is already gone counts as deleted.

        Raises:
            ClusterError: listing the jobs failed.
        """
        logger.info("Deleting runner jobs")

        jobs = await self._cluster.list_worker_jobs(run.namespace, self.selector(run))
        result = SweepResult(matched=len(jobs))

        for job in jobs:
            try:
                await self._cluster.delete_job(
                    job, propagation=PropagationPolicy.BACKGROUND
                )
            except NotFoundError:
                result.deleted.append(job.name)
            except Exception as exc:
                logger.error("Failed to delete runner job %s: %s", job.name, exc)
                result.errors[job.name] = exc
            else:
                result.deleted.append(job.name)

        logger.info(
            "Deleted %d/%d runner jobs", len(result.deleted), result.matched
        )
        return result

    async def _patch_status(
        self, endpoint: WorkerEndpoint, body: dict[str, Any], action: str
    ) -> None:
        try:
            resp = await self._http.patch(
                endpoint.status_url, json=body, timeout=self._probe_timeout
            )
        except httpx.HTTPError as exc:
            raise WorkerControlError(
                f"could not {action} runner {endpoint.name}: {exc}"
            ) from exc
        if resp.status_code >= 400:
            raise WorkerControlError(
                f"could not {action} runner {endpoint.name}: status {resp.status_code}"
            )

    async def stop_all(self, run: Run) -> int:
        """Ask every runner to stop execution. Returns the number of runners."""
        logger.info("Stopping all runners")
        endpoints = await self.list_endpoints(run)
        for endpoint in endpoints:
            await self._patch_status(endpoint, _status_patch_body(stopped=True), "stop")
        return len(endpoints)

    async def start_all(self, run: Run) -> int:
        """Unpause every runner. Returns the number of runners."""
        logger.info("Starting all runners")
        endpoints = await self.list_endpoints(run)
        for endpoint in endpoints:
            await self._patch_status(endpoint, _status_patch_body(paused=False), "start")
        return len(endpoints)
