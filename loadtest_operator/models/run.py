"""
Run Resource Models

Defines Pydantic models for the load-test run resource and its status.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class Stage(str, Enum):
    """Coarse-grained position of a run in its lifecycle."""

    UNSET = ""
    INITIALIZATION = "initialization"
    INITIALIZED = "initialized"
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.FINISHED, Stage.ERROR)

    @classmethod
    def parse(cls, value: str) -> Optional["Stage"]:
        """Map a persisted stage string to a Stage, or None if it is not one."""
        try:
            return cls(value)
        except ValueError:
            return None


# Forward order of the run lifecycle. ERROR is handled separately: it is
# reachable from every non-terminal stage.
STAGE_ORDER: dict[Stage, int] = {
    Stage.UNSET: 0,
    Stage.INITIALIZATION: 1,
    Stage.INITIALIZED: 2,
    Stage.CREATED: 3,
    Stage.STARTED: 4,
    Stage.STOPPED: 5,
    Stage.FINISHED: 6,
}


class ConditionStatus(str, Enum):
    """Tri-state value of a condition. UNKNOWN means not evaluated yet."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionType(str, Enum):
    CLOUD_TEST_RUN = "CloudTestRun"
    CLOUD_TEST_RUN_CREATED = "CloudTestRunCreated"
    CLOUD_TEST_RUN_FINALIZED = "CloudTestRunFinalized"
    CLOUD_TEST_RUN_ABORTED = "CloudTestRunAborted"
    CLOUD_PLZ_TEST_RUN = "CloudPLZTestRun"
    TEST_RUN_RUNNING = "TestRunRunning"


class CleanupPolicy(str, Enum):
    NEVER = "never"
    POST = "post"


class Condition(BaseModel):
    """A named tri-state flag with the time it last changed."""

    type: ConditionType = Field(..., description="Condition name")
    status: ConditionStatus = Field(ConditionStatus.UNKNOWN, description="Value")
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the status last changed",
    )
    reason: str = Field("", description="Machine-readable reason")
    message: str = Field("", description="Human-readable detail")


class EnvVar(BaseModel):
    name: str
    value: str = ""


class ObjectMeta(BaseModel):
    name: str = Field(..., description="Run name, unique within namespace")
    namespace: str = Field("default", description="Owning namespace")
    resource_version: str = Field("", description="Optimistic-lock token")
    labels: dict[str, str] = Field(default_factory=dict)


class RunSpec(BaseModel):
    parallelism: int = Field(1, ge=1, description="Expected worker shard count")
    cleanup: CleanupPolicy = Field(CleanupPolicy.NEVER, description="Post-run cleanup")
    token: str = Field("", description="Name of the secret holding the cloud token")
    test_run_id: str = Field(
        "", description="Pre-created remote test run (PLZ mode) when non-empty"
    )
    runner_env: list[EnvVar] = Field(default_factory=list)

    def env_value(self, name: str) -> str:
        for var in self.runner_env:
            if var.name == name:
                return var.value
        return ""


class RunStatus(BaseModel):
    # Kept as a plain string: anything can be written to the persisted
    # object, and an unrecognised value must surface as an invalid stage
    # rather than fail to load.
    stage: str = Field("", description="Lifecycle stage")
    test_run_id: str = Field("", description="Remote test run identifier")
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: ConditionType) -> Optional[Condition]:
        for cond in self.conditions:
            if cond.type == condition_type:
                return cond
        return None

    def condition_status(self, condition_type: ConditionType) -> ConditionStatus:
        cond = self.get_condition(condition_type)
        return cond.status if cond is not None else ConditionStatus.UNKNOWN

    def set_if_newer(self, proposed: RunStatus) -> bool:
        """
        Merge a proposed status into this one, keeping only forward progress.

        Conditions move out of Unknown freely; a decided condition changes
        only when the proposal carries a later transition time, and never
        returns to Unknown. The stage moves only forward (or to ERROR from a
        non-terminal stage). The test run id is write-once.

        Returns:
            True if anything changed.
        """
        changed = False

        for prop in proposed.conditions:
            existing = self.get_condition(prop.type)
            if existing is None:
                self.conditions.append(prop.model_copy())
                changed = True
                continue
            if prop.status == existing.status:
                continue
            if prop.status == ConditionStatus.UNKNOWN:
                continue
            if (
                existing.status == ConditionStatus.UNKNOWN
                or prop.last_transition_time > existing.last_transition_time
            ):
                idx = self.conditions.index(existing)
                self.conditions[idx] = prop.model_copy()
                changed = True

        if _stage_advances(self.stage, proposed.stage):
            self.stage = proposed.stage
            changed = True

        if not self.test_run_id and proposed.test_run_id:
            self.test_run_id = proposed.test_run_id
            changed = True

        return changed


def _stage_advances(current_raw: str, proposed_raw: str) -> bool:
    if current_raw == proposed_raw:
        return False
    current = Stage.parse(current_raw)
    proposed = Stage.parse(proposed_raw)
    if current is None or proposed is None or proposed == Stage.UNSET:
        return False
    if current.is_terminal:
        return False
    if proposed == Stage.ERROR:
        return True
    return STAGE_ORDER[proposed] > STAGE_ORDER[current]


class Run(BaseModel):
    """
    A load-test run tracked by the controller.

    Mutated only through the status updater; the spec is owned by whoever
    created the run.
    """

    metadata: ObjectMeta
    spec: RunSpec = Field(default_factory=RunSpec)
    status: RunStatus = Field(default_factory=RunStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def stage(self) -> Optional[Stage]:
        return Stage.parse(self.status.stage)

    def is_true(self, condition_type: ConditionType) -> bool:
        return self.status.condition_status(condition_type) == ConditionStatus.TRUE

    def is_false(self, condition_type: ConditionType) -> bool:
        return self.status.condition_status(condition_type) == ConditionStatus.FALSE

    def is_unknown(self, condition_type: ConditionType) -> bool:
        return self.status.condition_status(condition_type) == ConditionStatus.UNKNOWN

    def update_condition(
        self,
        condition_type: ConditionType,
        status: ConditionStatus,
        *,
        reason: str = "",
        message: str = "",
    ) -> None:
        """Set a condition, stamping a transition time later than the previous one."""
        existing = self.status.get_condition(condition_type)
        now = datetime.now(UTC)
        if existing is None:
            self.status.conditions.append(
                Condition(
                    type=condition_type,
                    status=status,
                    last_transition_time=now,
                    reason=reason,
                    message=message,
                )
            )
            return
        if existing.status == status:
            return
        floor = existing.last_transition_time + timedelta(microseconds=1)
        existing.status = status
        existing.last_transition_time = max(now, floor)
        existing.reason = reason
        existing.message = message

    def initialize(self) -> None:
        """Reset conditions to the defaults of a freshly created run."""
        self.status.conditions = []
        defaults = (
            (ConditionType.CLOUD_TEST_RUN, ConditionStatus.UNKNOWN, "CloudTestRunUnknown"),
            (ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE, "TestRunPreparation"),
            (ConditionType.CLOUD_TEST_RUN_ABORTED, ConditionStatus.FALSE, "CloudTestRunAbortedFalse"),
            (ConditionType.CLOUD_PLZ_TEST_RUN, ConditionStatus.FALSE, "CloudPLZTestRunFalse"),
        )
        for condition_type, status, reason in defaults:
            self.update_condition(condition_type, status, reason=reason)

        if self.spec.test_run_id:
            # PLZ mode: the remote run already exists.
            self.update_condition(ConditionType.CLOUD_TEST_RUN, ConditionStatus.TRUE)
            self.update_condition(ConditionType.CLOUD_PLZ_TEST_RUN, ConditionStatus.TRUE)
            self.update_condition(ConditionType.CLOUD_TEST_RUN_CREATED, ConditionStatus.TRUE)
            self.update_condition(ConditionType.CLOUD_TEST_RUN_FINALIZED, ConditionStatus.FALSE)
            self.status.test_run_id = self.spec.test_run_id
        else:
            self.update_condition(ConditionType.CLOUD_TEST_RUN_CREATED, ConditionStatus.UNKNOWN)
            self.update_condition(ConditionType.CLOUD_TEST_RUN_FINALIZED, ConditionStatus.UNKNOWN)
