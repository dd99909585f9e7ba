"""
Process-wide wiring of the controller components.
"""

from __future__ import annotations

import logging
from typing import Optional

from loadtest_operator.core.cloud import CloudCoordinator
from loadtest_operator.core.cluster import InMemoryCluster
from loadtest_operator.core.controller import Controller
from loadtest_operator.core.lifecycle import ExternalWorkersLifecycle, RunLifecycle
from loadtest_operator.core.reconciler import RunReconciler
from loadtest_operator.core.status_updater import StatusUpdater
from loadtest_operator.core.worker_poller import WorkerPoller

logger = logging.getLogger(__name__)


class OperatorRuntime:
    """Owns the cluster backend, the reconciler and the controller driving it."""

    def __init__(
        self,
        *,
        cluster: Optional[InMemoryCluster] = None,
        poller: Optional[WorkerPoller] = None,
        cloud: Optional[CloudCoordinator] = None,
        lifecycle: Optional[RunLifecycle] = None,
        max_concurrent_reconciles: Optional[int] = None,
    ) -> None:
        self.cluster = cluster or InMemoryCluster()
        self.updater = StatusUpdater(self.cluster)
        self.poller = poller or WorkerPoller(self.cluster)
        self.cloud = cloud or CloudCoordinator(self.cluster)
        self.lifecycle = lifecycle or ExternalWorkersLifecycle(
            self.updater, self.poller, self.cloud
        )
        self.reconciler = RunReconciler(
            cluster=self.cluster,
            updater=self.updater,
            poller=self.poller,
            cloud=self.cloud,
            lifecycle=self.lifecycle,
        )
        self.controller = Controller(
            self.reconciler, max_concurrent_reconciles=max_concurrent_reconciles
        )
        self._watching = False

    async def start(self) -> None:
        if not self._watching:
            self.cluster.watch_runs(self.controller.handle_run_event)
            self.cluster.watch_workers(self.controller.handle_worker_event)
            self._watching = True
        await self.controller.start()

    async def stop(self) -> None:
        await self.controller.stop()
        await self.poller.aclose()
        await self.cloud.aclose()
        logger.info("Controller runtime stopped")


runtime = OperatorRuntime()
