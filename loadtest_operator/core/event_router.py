"""
Maps watch events to reconcile requests.

Worker pods are tied to their run only through the owner label; events
without it are not ours and are dropped.
"""

from __future__ import annotations

from loadtest_operator.config import settings
from loadtest_operator.models.cluster import WorkerEvent
from loadtest_operator.models.reconcile import ReconcileRequest
from loadtest_operator.models.run import Run


def has_owner_label(event: WorkerEvent) -> bool:
    return settings.OWNER_LABEL in event.labels


def requests_for_worker_event(event: WorkerEvent) -> list[ReconcileRequest]:
    owner = event.labels.get(settings.OWNER_LABEL)
    if owner is None:
        return []
    return [ReconcileRequest(namespace=event.namespace, name=owner)]


def request_for_run(run: Run) -> ReconcileRequest:
    return ReconcileRequest(namespace=run.namespace, name=run.name)
