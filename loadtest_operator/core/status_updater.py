"""
Optimistic status updates for runs.

Every status write goes through refetch -> forward-only merge -> diff patch so
that progress written by another code path between our read and our write is
never clobbered by a stale calculation.
"""

from __future__ import annotations

import logging

from loadtest_operator.core.cluster import ClusterClient
from loadtest_operator.core.errors import NotFoundError
from loadtest_operator.models.run import Run

logger = logging.getLogger(__name__)


class StatusUpdater:
    def __init__(self, cluster: ClusterClient) -> None:
        self._cluster = cluster

    async def update_status(self, run: Run) -> bool:
        """
        Persist the status proposed in `run` if it is newer than what is stored.

        On return `run` holds the freshly fetched object (with the proposal
        merged in when an update happened), mirroring what is persisted.

        Returns:
            True if a patch was written; False if the run is gone or the
            proposal carried no forward progress.

        Raises:
            ClusterError: fetch/patch failed (including ConflictError).
        """
        proposed = run.status.model_copy(deep=True)

        try:
            current = await self._cluster.get_run(run.namespace, run.name)
        except NotFoundError:
            logger.info("Run deleted. No status to update.")
            return False

        clean = current.model_copy(deep=True)

        if not current.status.set_if_newer(proposed):
            _refresh(run, current)
            return False

        try:
            persisted = await self._cluster.patch_run_status(clean, current)
        except NotFoundError:
            logger.info("Run deleted before its status could be patched.")
            return False
        except Exception:
            logger.exception("Could not update status of run")
            raise

        _refresh(run, persisted)
        return True


def _refresh(target: Run, source: Run) -> None:
    target.metadata = source.metadata.model_copy(deep=True)
    target.spec = source.spec.model_copy(deep=True)
    target.status = source.status.model_copy(deep=True)
