"""
Stage collaborators invoked by the reconciler.

Validation, cloud test-run setup and job creation depend on how workers are
provisioned, so they sit behind `RunLifecycle`. `ExternalWorkersLifecycle` is
the default wiring: runner jobs are created outside the controller and only
discovered by label here.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from loadtest_operator.config import settings
from loadtest_operator.core.cloud import CloudCoordinator
from loadtest_operator.core.errors import OperatorError
from loadtest_operator.core.status_updater import StatusUpdater
from loadtest_operator.core.worker_poller import WorkerPoller
from loadtest_operator.models.reconcile import ReconcileResult
from loadtest_operator.models.run import ConditionStatus, ConditionType, Run, Stage

logger = logging.getLogger(__name__)


class RunLifecycle(ABC):
    """Per-stage actions. Each persists its own progress through the updater."""

    def __init__(
        self,
        updater: StatusUpdater,
        poller: WorkerPoller,
        cloud: Optional[CloudCoordinator] = None,
    ) -> None:
        self.updater = updater
        self.poller = poller
        self.cloud = cloud

    async def initialize_jobs(self, run: Run) -> ReconcileResult:
        """Hook run right after a run enters `initialization`."""
        return ReconcileResult.done()

    @abstractmethod
    async def run_validations(self, run: Run) -> ReconcileResult:
        """Decide the CloudTestRun condition."""

    @abstractmethod
    async def setup_cloud_test(self, run: Run) -> ReconcileResult:
        """Create the remote test run and mark CloudTestRunCreated."""

    @abstractmethod
    async def create_jobs(self, run: Run) -> ReconcileResult:
        """Create runner jobs and move the run to `created`."""

    async def start_jobs(self, run: Run) -> ReconcileResult:
        """
        Unpause all runners once every shard is reachable and mark the run started.
        """
        endpoints = await self.poller.list_endpoints(run)
        if len(endpoints) < run.spec.parallelism:
            logger.info(
                "Waiting for runners: %d/%d available",
                len(endpoints),
                run.spec.parallelism,
            )
            return ReconcileResult.after(settings.START_JOBS_RETRY_SECONDS)

        started = await self.poller.start_all(run)
        logger.info("Started %d runners", started)

        run.update_condition(
            ConditionType.TEST_RUN_RUNNING, ConditionStatus.TRUE, reason="TestRunRunning"
        )
        logger.info("Changing stage of run status to started")
        run.status.stage = Stage.STARTED.value
        await self.updater.update_status(run)
        return ReconcileResult.done()


class ExternalWorkersLifecycle(RunLifecycle):
    async def run_validations(self, run: Run) -> ReconcileResult:
        if run.is_true(ConditionType.CLOUD_PLZ_TEST_RUN):
            return ReconcileResult.done()
        run.update_condition(
            ConditionType.CLOUD_TEST_RUN,
            ConditionStatus.FALSE,
            reason="CloudTestRunFalse",
        )
        await self.updater.update_status(run)
        return ReconcileResult.done()

    async def setup_cloud_test(self, run: Run) -> ReconcileResult:
        if self.cloud is None:
            raise OperatorError("cloud test run requested but no cloud coordinator is wired")

        test_run_id = await self.cloud.create_test_run(run)
        if test_run_id is None:
            return ReconcileResult.after(settings.TOKEN_RETRY_SECONDS)

        run.status.test_run_id = test_run_id
        run.update_condition(
            ConditionType.CLOUD_TEST_RUN_CREATED,
            ConditionStatus.TRUE,
            reason="CloudTestRunCreatedTrue",
        )
        await self.updater.update_status(run)
        return ReconcileResult.done()

    async def create_jobs(self, run: Run) -> ReconcileResult:
        logger.info("Runner jobs are provisioned externally; changing stage to created")
        run.status.stage = Stage.CREATED.value
        await self.updater.update_status(run)
        return ReconcileResult.done()
