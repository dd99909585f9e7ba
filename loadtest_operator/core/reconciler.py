"""
Run reconciliation state machine.

Every invocation loads the run, performs at most one forward-moving action
for its stage and returns a scheduling directive. Each action is gated on
persisted stage/conditions that the action itself flips once applied, so the
loop can be re-invoked any number of times (restarts, duplicate events)
without repeating side effects.
"""

from __future__ import annotations

import logging

from loadtest_operator.config import settings
from loadtest_operator.core.cloud import CloudCoordinator
from loadtest_operator.core.cluster import ClusterClient
from loadtest_operator.core.errors import InvalidStageError, NotFoundError
from loadtest_operator.core.lifecycle import RunLifecycle
from loadtest_operator.core.log_context import bind_test_run_id, reconcile_context
from loadtest_operator.core.status_updater import StatusUpdater
from loadtest_operator.core.worker_poller import WorkerPoller
from loadtest_operator.models.reconcile import ReconcileRequest, ReconcileResult
from loadtest_operator.models.run import (
    CleanupPolicy,
    ConditionStatus,
    ConditionType,
    Run,
    Stage,
)

logger = logging.getLogger(__name__)


class RunReconciler:
    def __init__(
        self,
        *,
        cluster: ClusterClient,
        updater: StatusUpdater,
        poller: WorkerPoller,
        cloud: CloudCoordinator,
        lifecycle: RunLifecycle,
    ) -> None:
        self._cluster = cluster
        self._updater = updater
        self._poller = poller
        self._cloud = cloud
        self._lifecycle = lifecycle

    async def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        with reconcile_context(str(request)):
            return await self._reconcile(request)

    async def _reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        try:
            run = await self._cluster.get_run(request.namespace, request.name)
        except NotFoundError:
            logger.info("Run deleted. Nothing to reconcile.")
            return ReconcileResult.done()
        except Exception:
            logger.exception("Could not fetch run")
            raise

        bind_test_run_id(run.status.test_run_id)

        if run.is_true(ConditionType.CLOUD_PLZ_TEST_RUN):
            if not await self._cloud.ensure_client(run):
                return ReconcileResult.after(settings.TOKEN_RETRY_SECONDS)

        logger.info("Reconcile(); stage = %r", run.status.stage)

        stage = run.stage
        if stage is None:
            err = InvalidStageError(run.status.stage)
            logger.error("Invalid stage for the run: %s", err)
            raise err

        if stage == Stage.UNSET:
            return await self._on_unset(run)
        if stage == Stage.INITIALIZATION:
            return await self._on_initialization(run)
        if stage == Stage.INITIALIZED:
            return await self._lifecycle.create_jobs(run)
        if stage == Stage.CREATED:
            return await self._lifecycle.start_jobs(run)
        if stage == Stage.STARTED:
            return await self._on_started(run)
        if stage == Stage.STOPPED:
            return await self._on_stopped(run)
        if stage in (Stage.FINISHED, Stage.ERROR):
            return await self._on_terminal(run)

        # Unreachable while every Stage member is handled above.
        raise InvalidStageError(run.status.stage)

    async def _advance(self, run: Run, stage: Stage) -> bool:
        logger.info("Changing stage of run status to %s", stage.value)
        run.status.stage = stage.value
        return await self._updater.update_status(run)

    async def _on_unset(self, run: Run) -> ReconcileResult:
        logger.info("Initialize test run")
        run.initialize()
        await self._updater.update_status(run)

        if await self._advance(run, Stage.INITIALIZATION):
            return await self._lifecycle.initialize_jobs(run)
        return ReconcileResult.done()

    async def _on_initialization(self, run: Run) -> ReconcileResult:
        if run.is_unknown(ConditionType.CLOUD_TEST_RUN):
            return await self._lifecycle.run_validations(run)

        if run.is_false(ConditionType.CLOUD_TEST_RUN):
            await self._advance(run, Stage.INITIALIZED)
            return ReconcileResult.done()

        if not run.is_true(ConditionType.CLOUD_TEST_RUN_CREATED):
            return await self._lifecycle.setup_cloud_test(run)

        await self._advance(run, Stage.INITIALIZED)
        return ReconcileResult.done()

    async def _on_started(self, run: Run) -> ReconcileResult:
        if run.is_true(ConditionType.CLOUD_TEST_RUN) and run.is_true(
            ConditionType.CLOUD_TEST_RUN_FINALIZED
        ):
            return ReconcileResult.done()
        if run.is_true(ConditionType.CLOUD_TEST_RUN_ABORTED):
            return ReconcileResult.done()

        if not await self._poller.poll_stopped(run):
            if run.is_true(ConditionType.CLOUD_PLZ_TEST_RUN) and run.is_false(
                ConditionType.CLOUD_TEST_RUN_ABORTED
            ):
                if await self._cloud.should_abort(run):
                    logger.info("Received an abort signal from the cloud: stopping the test run.")
                    return await self._force_stop(run)

            # Test runs are long; check in periodically rather than busy-poll.
            return ReconcileResult.after(settings.STARTED_POLL_INTERVAL_SECONDS)

        logger.info("All runners are finished")
        run.update_condition(
            ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE, reason="TestRunStopped"
        )
        await self._advance(run, Stage.STOPPED)
        return ReconcileResult.done()

    async def _force_stop(self, run: Run) -> ReconcileResult:
        await self._poller.stop_all(run)

        run.update_condition(
            ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE, reason="TestRunAborted"
        )
        run.update_condition(
            ConditionType.CLOUD_TEST_RUN_ABORTED,
            ConditionStatus.TRUE,
            reason="CloudTestRunAborted",
        )
        await self._advance(run, Stage.STOPPED)
        return ReconcileResult.done()

    async def _on_stopped(self, run: Run) -> ReconcileResult:
        if run.is_true(ConditionType.CLOUD_PLZ_TEST_RUN) and run.is_true(
            ConditionType.CLOUD_TEST_RUN_ABORTED
        ):
            # Forced abort: runners were told to stop; tear their jobs down
            # once they have. Finalize and finish do not wait for this.
            if await self._poller.poll_stopped(run):
                sweep = await self._poller.kill_all(run)
                sweep.raise_for_errors()
                if sweep.all_deleted:
                    run.update_condition(
                        ConditionType.CLOUD_TEST_RUN_ABORTED,
                        ConditionStatus.TRUE,
                        reason="CloudTestRunAborted",
                    )
                    await self._updater.update_status(run)
            else:
                logger.info("Runners have not stopped yet; skipping job teardown")

        if run.is_true(ConditionType.CLOUD_TEST_RUN) and not run.is_true(
            ConditionType.CLOUD_TEST_RUN_FINALIZED
        ):
            if not await self._cloud.finalize(run):
                return ReconcileResult.after(settings.STOPPED_REQUEUE_SECONDS)
            run.update_condition(
                ConditionType.CLOUD_TEST_RUN_FINALIZED,
                ConditionStatus.TRUE,
                reason="CloudTestRunFinalized",
            )

        await self._advance(run, Stage.FINISHED)
        return ReconcileResult.after(settings.STOPPED_REQUEUE_SECONDS)

    async def _on_terminal(self, run: Run) -> ReconcileResult:
        if run.spec.cleanup == CleanupPolicy.POST:
            logger.info("Cleaning up all resources")
            try:
                await self._cluster.delete_run(run)
            except NotFoundError:
                pass
        return ReconcileResult.done()
