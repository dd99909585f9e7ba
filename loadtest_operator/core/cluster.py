"""
Cluster persistence and discovery interface.

`ClusterClient` is everything the controller needs from the cluster
orchestrator: reading and patching runs, discovering worker shards by label,
deleting jobs and reading credentials. `InMemoryCluster` implements it with
resource versions and watch callbacks, for local development and tests.
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Any, Callable

from loadtest_operator.core.errors import ConflictError, NotFoundError
from loadtest_operator.models.cluster import (
    EventType,
    PropagationPolicy,
    Secret,
    WorkerEndpoint,
    WorkerEvent,
    WorkerJob,
)
from loadtest_operator.models.run import Run, RunStatus


def build_merge_patch(before: Any, after: Any) -> Any:
    """
    Compute a JSON merge patch (RFC 7386) turning `before` into `after`.

    Lists are replaced wholesale; removed keys become None.
    """
    if not isinstance(before, dict) or not isinstance(after, dict):
        return copy.deepcopy(after)
    patch: dict[str, Any] = {}
    for key, value in after.items():
        if key not in before:
            patch[key] = copy.deepcopy(value)
        elif before[key] != value:
            if isinstance(before[key], dict) and isinstance(value, dict):
                patch[key] = build_merge_patch(before[key], value)
            else:
                patch[key] = copy.deepcopy(value)
    for key in before:
        if key not in after:
            patch[key] = None
    return patch


def apply_merge_patch(target: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


def labels_match(labels: dict[str, str], selector: dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in selector.items())


class ClusterClient(ABC):
    """Persistence and discovery calls used by the reconciler."""

    @abstractmethod
    async def get_run(self, namespace: str, name: str) -> Run:
        """Fetch a run. Raises NotFoundError if it does not exist."""

    @abstractmethod
    async def patch_run_status(self, before: Run, after: Run) -> Run:
        """
        Persist the status difference between `before` and `after`.

        The write is rejected with ConflictError if the stored object no
        longer has `before`'s resource version.
        """

    @abstractmethod
    async def delete_run(self, run: Run) -> None: ...

    @abstractmethod
    async def list_worker_endpoints(
        self, namespace: str, selector: dict[str, str]
    ) -> list[WorkerEndpoint]: ...

    @abstractmethod
    async def list_worker_jobs(
        self, namespace: str, selector: dict[str, str]
    ) -> list[WorkerJob]: ...

    @abstractmethod
    async def delete_job(
        self, job: WorkerJob, *, propagation: PropagationPolicy
    ) -> None: ...

    @abstractmethod
    async def get_secret(self, namespace: str, name: str) -> Secret: ...


RunCallback = Callable[[Run], None]
WorkerCallback = Callable[[WorkerEvent], None]


class InMemoryCluster(ClusterClient):
    """Dict-backed cluster with optimistic locking and watch callbacks."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._runs: dict[tuple[str, str], Run] = {}
        self._endpoints: dict[tuple[str, str], WorkerEndpoint] = {}
        self._jobs: dict[tuple[str, str], WorkerJob] = {}
        self._secrets: dict[tuple[str, str], Secret] = {}
        self._version = 0
        self._run_watchers: list[RunCallback] = []
        self._worker_watchers: list[WorkerCallback] = []
        self.status_patches: list[dict[str, Any]] = []
        self.deleted_jobs: list[tuple[str, PropagationPolicy]] = []

    def watch_runs(self, callback: RunCallback) -> None:
        self._run_watchers.append(callback)

    def watch_workers(self, callback: WorkerCallback) -> None:
        self._worker_watchers.append(callback)

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _notify_run(self, run: Run) -> None:
        for cb in self._run_watchers:
            cb(run.model_copy(deep=True))

    def _notify_worker(self, event: WorkerEvent) -> None:
        for cb in self._worker_watchers:
            cb(event)

    # ------------------------------------------------------------------
    # Seeding helpers (what other controllers or users would write)
    # ------------------------------------------------------------------

    async def put_run(self, run: Run) -> Run:
        async with self._lock:
            stored = run.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._runs[(stored.namespace, stored.name)] = stored
            result = stored.model_copy(deep=True)
        self._notify_run(result)
        return result

    async def put_worker(self, endpoint: WorkerEndpoint, job: WorkerJob) -> None:
        async with self._lock:
            self._endpoints[(endpoint.namespace, endpoint.name)] = endpoint
            self._jobs[(job.namespace, job.name)] = job
        self._notify_worker(
            WorkerEvent(
                type=EventType.ADDED,
                name=endpoint.name,
                namespace=endpoint.namespace,
                labels=dict(endpoint.labels),
            )
        )

    async def put_secret(self, secret: Secret) -> None:
        async with self._lock:
            self._secrets[(secret.namespace, secret.name)] = secret

    # ------------------------------------------------------------------
    # ClusterClient
    # ------------------------------------------------------------------

    async def get_run(self, namespace: str, name: str) -> Run:
        async with self._lock:
            run = self._runs.get((namespace, name))
            if run is None:
                raise NotFoundError("Run", namespace, name)
            return run.model_copy(deep=True)

    async def patch_run_status(self, before: Run, after: Run) -> Run:
        patch = build_merge_patch(
            before.status.model_dump(mode="json"), after.status.model_dump(mode="json")
        )
        async with self._lock:
            key = (before.namespace, before.name)
            stored = self._runs.get(key)
            if stored is None:
                raise NotFoundError("Run", before.namespace, before.name)
            if stored.metadata.resource_version != before.metadata.resource_version:
                raise ConflictError(
                    f"run {before.namespace}/{before.name} was modified "
                    f"(have {before.metadata.resource_version}, "
                    f"stored {stored.metadata.resource_version})"
                )
            merged = apply_merge_patch(stored.status.model_dump(mode="json"), patch)
            stored.status = RunStatus.model_validate(merged)
            stored.metadata.resource_version = self._next_version()
            self.status_patches.append(patch)
            result = stored.model_copy(deep=True)
        self._notify_run(result)
        return result

    async def delete_run(self, run: Run) -> None:
        async with self._lock:
            if self._runs.pop((run.namespace, run.name), None) is None:
                raise NotFoundError("Run", run.namespace, run.name)

    async def list_worker_endpoints(
        self, namespace: str, selector: dict[str, str]
    ) -> list[WorkerEndpoint]:
        async with self._lock:
            return [
                ep.model_copy()
                for (ns, _), ep in sorted(self._endpoints.items())
                if ns == namespace and labels_match(ep.labels, selector)
            ]

    async def list_worker_jobs(
        self, namespace: str, selector: dict[str, str]
    ) -> list[WorkerJob]:
        async with self._lock:
            return [
                job.model_copy()
                for (ns, _), job in sorted(self._jobs.items())
                if ns == namespace and labels_match(job.labels, selector)
            ]

    async def delete_job(
        self, job: WorkerJob, *, propagation: PropagationPolicy
    ) -> None:
        async with self._lock:
            if self._jobs.pop((job.namespace, job.name), None) is None:
                raise NotFoundError("Job", job.namespace, job.name)
            self.deleted_jobs.append((job.name, propagation))
            # Background propagation: the pod/service go with the job.
            endpoint = self._endpoints.pop((job.namespace, job.name), None)
        if endpoint is not None:
            self._notify_worker(
                WorkerEvent(
                    type=EventType.DELETED,
                    name=endpoint.name,
                    namespace=endpoint.namespace,
                    labels=dict(endpoint.labels),
                )
            )

    async def get_secret(self, namespace: str, name: str) -> Secret:
        async with self._lock:
            secret = self._secrets.get((namespace, name))
            if secret is None:
                raise NotFoundError("Secret", namespace, name)
            return secret.model_copy(deep=True)
