"""
Shared builders and HTTP fakes for the controller tests.
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Callable

import httpx

from loadtest_operator.core.cloud import CloudClient, CloudCoordinator
from loadtest_operator.core.cluster import InMemoryCluster
from loadtest_operator.core.lifecycle import ExternalWorkersLifecycle
from loadtest_operator.core.reconciler import RunReconciler
from loadtest_operator.core.status_updater import StatusUpdater
from loadtest_operator.core.worker_poller import WorkerPoller
from loadtest_operator.models import (
    CleanupPolicy,
    EnvVar,
    ObjectMeta,
    Run,
    RunSpec,
    WorkerEndpoint,
    WorkerJob,
)

RUN_NAME = "load-test"


def make_run(
    name: str = RUN_NAME,
    namespace: str = "default",
    *,
    stage: str = "",
    parallelism: int = 3,
    cleanup: CleanupPolicy = CleanupPolicy.NEVER,
    test_run_id: str = "",
    token: str = "",
    runner_env: list[EnvVar] | None = None,
) -> Run:
    run = Run(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=RunSpec(
            parallelism=parallelism,
            cleanup=cleanup,
            test_run_id=test_run_id,
            token=token,
            runner_env=list(runner_env or []),
        ),
    )
    run.status.stage = stage
    return run


def runner_labels(run_name: str = RUN_NAME) -> dict[str, str]:
    return {"app": "k6", "k6_cr": run_name, "runner": "true"}


async def add_workers(
    cluster: InMemoryCluster,
    count: int,
    *,
    run_name: str = RUN_NAME,
    namespace: str = "default",
) -> list[str]:
    names = []
    for idx in range(count):
        name = f"{run_name}-{idx + 1}"
        labels = runner_labels(run_name)
        await cluster.put_worker(
            WorkerEndpoint(name=name, namespace=namespace, labels=dict(labels)),
            WorkerJob(name=name, namespace=namespace, labels=dict(labels)),
        )
        names.append(name)
    return names


def status_document(*, stopped: bool) -> dict[str, Any]:
    return {
        "data": {
            "type": "status",
            "id": "default",
            "attributes": {
                "status": 7 if stopped else 4,
                "paused": False,
                "stopped": stopped,
                "running": not stopped,
                "tainted": False,
                "vus": 0 if stopped else 10,
            },
        }
    }


class FakeWorkers:
    """
    Stands in for runner status endpoints.

    States per worker name: "running", "stopped", "refused", "timeout",
    "500", "garbage". Unknown workers report running.
    """

    def __init__(self) -> None:
        self.states: dict[str, str] = {}
        self.patches: list[tuple[str, dict[str, Any]]] = []
        self.status_reads: list[str] = []
        self.patch_status = 200

    def set_all(self, names: list[str], state: str) -> None:
        for name in names:
            self.states[name] = state

    def handler(self, request: httpx.Request) -> httpx.Response:
        name = request.url.host.split(".")[0]
        if request.method == "PATCH":
            self.patches.append((name, json.loads(request.content)))
            return httpx.Response(self.patch_status, json=status_document(stopped=False))

        self.status_reads.append(name)
        state = self.states.get(name, "running")
        if state == "refused":
            raise httpx.ConnectError("connection refused", request=request)
        if state == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if state == "500":
            return httpx.Response(500, text="internal error")
        if state == "garbage":
            return httpx.Response(200, text="<html>not json</html>")
        return httpx.Response(200, json=status_document(stopped=state == "stopped"))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeCloud:
    """Stands in for the cloud control-plane."""

    def __init__(self, *, run_status: int = 2) -> None:
        self.run_status = run_status
        self.state_response: Callable[[httpx.Request], httpx.Response] | None = None
        self.finish_status = 200
        self.created_id = 5150
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "GET" and path.startswith("/loadtests/v4/test_runs"):
            if self.state_response is not None:
                return self.state_response(request)
            return httpx.Response(200, json={"id": 4242, "run_status": self.run_status})
        if request.method == "POST" and path == "/v1/tests":
            return httpx.Response(200, json={"reference_id": self.created_id})
        if request.method == "POST" and path.startswith("/v1/tests/"):
            if self.finish_status >= 400:
                return httpx.Response(
                    self.finish_status, json={"error": {"message": "finalize rejected"}}
                )
            return httpx.Response(200, json={})
        return httpx.Response(404, json={"error": {"message": "no such endpoint"}})

    def finish_requests(self) -> list[httpx.Request]:
        return [
            r for r in self.requests if r.method == "POST" and r.url.path.startswith("/v1/tests/")
        ]

    def factory(self) -> Callable[[str, str], CloudClient]:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

        def _make(token: str, host: str) -> CloudClient:
            return CloudClient(token, host, http=http)

        return _make


def build_controller_parts(
    cluster: InMemoryCluster | None = None,
    *,
    workers: FakeWorkers | None = None,
    cloud: FakeCloud | None = None,
    lifecycle_cls: type = ExternalWorkersLifecycle,
) -> SimpleNamespace:
    cluster = cluster or InMemoryCluster()
    workers = workers or FakeWorkers()
    cloud = cloud or FakeCloud()
    updater = StatusUpdater(cluster)
    poller = WorkerPoller(cluster, http=workers.client(), probe_timeout=0.5)
    coordinator = CloudCoordinator(cluster, client_factory=cloud.factory())
    lifecycle = lifecycle_cls(updater, poller, coordinator)
    reconciler = RunReconciler(
        cluster=cluster,
        updater=updater,
        poller=poller,
        cloud=coordinator,
        lifecycle=lifecycle,
    )
    return SimpleNamespace(
        cluster=cluster,
        workers=workers,
        cloud=cloud,
        updater=updater,
        poller=poller,
        coordinator=coordinator,
        lifecycle=lifecycle,
        reconciler=reconciler,
    )
