"""Data models for the load-test run controller."""

from loadtest_operator.models.cluster import (
    EventType,
    PropagationPolicy,
    Secret,
    WorkerEndpoint,
    WorkerEvent,
    WorkerJob,
)
from loadtest_operator.models.reconcile import ReconcileRequest, ReconcileResult
from loadtest_operator.models.run import (
    CleanupPolicy,
    Condition,
    ConditionStatus,
    ConditionType,
    EnvVar,
    ObjectMeta,
    Run,
    RunSpec,
    RunStatus,
    Stage,
)

__all__ = [
    "CleanupPolicy",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "EnvVar",
    "EventType",
    "ObjectMeta",
    "PropagationPolicy",
    "ReconcileRequest",
    "ReconcileResult",
    "Run",
    "RunSpec",
    "RunStatus",
    "Secret",
    "Stage",
    "WorkerEndpoint",
    "WorkerEvent",
    "WorkerJob",
]
