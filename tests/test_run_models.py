from datetime import UTC, datetime, timedelta

from loadtest_operator.models import (
    Condition,
    ConditionStatus,
    ConditionType,
    EnvVar,
    ReconcileRequest,
    ReconcileResult,
    RunStatus,
    Stage,
)

from helpers import make_run

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _cond(ctype: ConditionType, status: ConditionStatus, at: datetime) -> Condition:
    return Condition(type=ctype, status=status, last_transition_time=at)


def test_stage_parse_and_terminal() -> None:
    assert Stage.parse("") == Stage.UNSET
    assert Stage.parse("started") == Stage.STARTED
    assert Stage.parse("bogus") is None
    assert Stage.FINISHED.is_terminal
    assert Stage.ERROR.is_terminal
    assert not Stage.STOPPED.is_terminal


def test_unknown_condition_is_decided_by_any_proposal() -> None:
    current = RunStatus(
        conditions=[_cond(ConditionType.CLOUD_TEST_RUN, ConditionStatus.UNKNOWN, T0)]
    )
    # Even an older timestamp decides an Unknown condition.
    proposed = RunStatus(
        conditions=[
            _cond(ConditionType.CLOUD_TEST_RUN, ConditionStatus.FALSE, T0 - timedelta(days=1))
        ]
    )

    assert current.set_if_newer(proposed) is True
    assert current.condition_status(ConditionType.CLOUD_TEST_RUN) == ConditionStatus.FALSE


def test_decided_condition_needs_a_later_transition() -> None:
    current = RunStatus(
        conditions=[_cond(ConditionType.TEST_RUN_RUNNING, ConditionStatus.TRUE, T0)]
    )

    stale = RunStatus(
        conditions=[_cond(ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE, T0)]
    )
    assert current.set_if_newer(stale) is False
    assert current.condition_status(ConditionType.TEST_RUN_RUNNING) == ConditionStatus.TRUE

    fresh = RunStatus(
        conditions=[
            _cond(
                ConditionType.TEST_RUN_RUNNING,
                ConditionStatus.FALSE,
                T0 + timedelta(seconds=1),
            )
        ]
    )
    assert current.set_if_newer(fresh) is True
    assert current.condition_status(ConditionType.TEST_RUN_RUNNING) == ConditionStatus.FALSE


def test_decided_condition_never_returns_to_unknown() -> None:
    current = RunStatus(
        conditions=[_cond(ConditionType.CLOUD_TEST_RUN, ConditionStatus.TRUE, T0)]
    )
    proposed = RunStatus(
        conditions=[
            _cond(ConditionType.CLOUD_TEST_RUN, ConditionStatus.UNKNOWN, T0 + timedelta(hours=1))
        ]
    )

    assert current.set_if_newer(proposed) is False
    assert current.condition_status(ConditionType.CLOUD_TEST_RUN) == ConditionStatus.TRUE


def test_absent_condition_is_added() -> None:
    current = RunStatus()
    proposed = RunStatus(
        conditions=[_cond(ConditionType.CLOUD_TEST_RUN_ABORTED, ConditionStatus.TRUE, T0)]
    )

    assert current.set_if_newer(proposed) is True
    assert current.get_condition(ConditionType.CLOUD_TEST_RUN_ABORTED) is not None


def test_stage_only_moves_forward() -> None:
    current = RunStatus(stage="started")

    assert current.set_if_newer(RunStatus(stage="initialized")) is False
    assert current.set_if_newer(RunStatus(stage="")) is False
    assert current.set_if_newer(RunStatus(stage="bogus")) is False
    assert current.stage == "started"

    assert current.set_if_newer(RunStatus(stage="stopped")) is True
    assert current.stage == "stopped"


def test_error_reachable_until_terminal() -> None:
    current = RunStatus(stage="created")
    assert current.set_if_newer(RunStatus(stage="error")) is True
    assert current.stage == "error"

    finished = RunStatus(stage="finished")
    assert finished.set_if_newer(RunStatus(stage="error")) is False
    assert finished.stage == "finished"


def test_test_run_id_is_write_once() -> None:
    current = RunStatus()
    assert current.set_if_newer(RunStatus(test_run_id="101")) is True
    assert current.set_if_newer(RunStatus(test_run_id="202")) is False
    assert current.test_run_id == "101"


def test_update_condition_stamps_increasing_times() -> None:
    run = make_run()
    run.update_condition(ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE)
    first = run.status.get_condition(ConditionType.TEST_RUN_RUNNING)
    assert first is not None
    first_time = first.last_transition_time

    # Same status: no new transition.
    run.update_condition(ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE)
    assert first.last_transition_time == first_time

    run.update_condition(ConditionType.TEST_RUN_RUNNING, ConditionStatus.TRUE)
    second_time = first.last_transition_time
    run.update_condition(ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE)

    assert first_time < second_time < first.last_transition_time


def test_initialize_defaults_without_remote_run() -> None:
    run = make_run()
    run.initialize()

    assert run.is_unknown(ConditionType.CLOUD_TEST_RUN)
    assert run.is_false(ConditionType.TEST_RUN_RUNNING)
    assert run.is_false(ConditionType.CLOUD_TEST_RUN_ABORTED)
    assert run.is_false(ConditionType.CLOUD_PLZ_TEST_RUN)
    assert run.is_unknown(ConditionType.CLOUD_TEST_RUN_CREATED)
    assert run.is_unknown(ConditionType.CLOUD_TEST_RUN_FINALIZED)
    assert run.status.test_run_id == ""


def test_initialize_marks_precreated_remote_run() -> None:
    run = make_run(test_run_id="4242")
    run.initialize()

    assert run.is_true(ConditionType.CLOUD_TEST_RUN)
    assert run.is_true(ConditionType.CLOUD_PLZ_TEST_RUN)
    assert run.is_true(ConditionType.CLOUD_TEST_RUN_CREATED)
    assert run.is_false(ConditionType.CLOUD_TEST_RUN_FINALIZED)
    assert run.status.test_run_id == "4242"


def test_env_value_lookup() -> None:
    run = make_run(runner_env=[EnvVar(name="K6_CLOUD_HOST", value="https://example.test")])
    assert run.spec.env_value("K6_CLOUD_HOST") == "https://example.test"
    assert run.spec.env_value("MISSING") == ""


def test_reconcile_result_constructors() -> None:
    assert ReconcileResult.done() == ReconcileResult()
    assert ReconcileResult.immediately().requeue is True
    assert ReconcileResult.after(15).requeue_after == 15.0
    assert str(ReconcileRequest(namespace="ns", name="run")) == "ns/run"
