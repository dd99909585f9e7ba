import pytest

from loadtest_operator.core.cluster import InMemoryCluster
from loadtest_operator.core.errors import ConflictError
from loadtest_operator.core.status_updater import StatusUpdater
from loadtest_operator.models import ConditionStatus, ConditionType, Run

from helpers import make_run


class _RacingCluster(InMemoryCluster):
    """Another writer bumps the resource version right after every read."""

    async def get_run(self, namespace: str, name: str) -> Run:
        run = await super().get_run(namespace, name)
        await self.put_run(run)
        return run


@pytest.mark.asyncio
async def test_forward_progress_is_patched() -> None:
    cluster = InMemoryCluster()
    stored = await cluster.put_run(make_run(stage="created"))
    updater = StatusUpdater(cluster)

    proposal = stored.model_copy(deep=True)
    proposal.status.stage = "started"

    assert await updater.update_status(proposal) is True
    assert cluster.status_patches == [{"stage": "started"}]
    assert proposal.metadata.resource_version != stored.metadata.resource_version
    assert (await cluster.get_run("default", stored.name)).status.stage == "started"


@pytest.mark.asyncio
async def test_stale_proposal_is_not_written() -> None:
    cluster = InMemoryCluster()
    await cluster.put_run(make_run(stage="started"))
    updater = StatusUpdater(cluster)

    stale = make_run(stage="initialized")

    assert await updater.update_status(stale) is False
    assert cluster.status_patches == []
    # The caller's copy now mirrors what is stored.
    assert stale.status.stage == "started"


@pytest.mark.asyncio
async def test_concurrent_progress_survives_a_stale_write() -> None:
    cluster = InMemoryCluster()
    stored = await cluster.put_run(make_run(stage="initialization"))
    updater = StatusUpdater(cluster)

    # Worker A computes from an old read, worker B moves the run forward first.
    stale = stored.model_copy(deep=True)
    fresh = stored.model_copy(deep=True)
    fresh.status.stage = "created"
    assert await updater.update_status(fresh) is True

    stale.status.stage = "initialized"
    stale.update_condition(ConditionType.CLOUD_TEST_RUN, ConditionStatus.FALSE)
    assert await updater.update_status(stale) is True

    persisted = await cluster.get_run("default", stored.name)
    assert persisted.status.stage == "created"
    assert persisted.status.condition_status(ConditionType.CLOUD_TEST_RUN) == ConditionStatus.FALSE


@pytest.mark.asyncio
async def test_deleted_run_is_not_an_error() -> None:
    updater = StatusUpdater(InMemoryCluster())
    assert await updater.update_status(make_run(stage="started")) is False


@pytest.mark.asyncio
async def test_conflict_is_raised_to_the_caller() -> None:
    cluster = _RacingCluster()
    await cluster.put_run(make_run(stage="created"))
    updater = StatusUpdater(cluster)

    proposal = make_run(stage="started")
    with pytest.raises(ConflictError):
        await updater.update_status(proposal)
    assert cluster.status_patches == []
