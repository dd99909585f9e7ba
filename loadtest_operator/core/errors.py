"""
Exception taxonomy for the run controller.

Anything raised out of a reconcile is retried by the controller with
backoff; the benign cases (not-found on refetch, probe failures, abort-check
failures, finalize failures) are handled where they occur and never get here.
"""

from __future__ import annotations


class OperatorError(Exception):
    """Base class for controller errors."""


class ClusterError(OperatorError):
    """A call against the cluster persistence/discovery API failed."""


class NotFoundError(ClusterError):
    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ConflictError(ClusterError):
    """The object changed between read and write."""


class InvalidStageError(OperatorError):
    def __init__(self, stage: str) -> None:
        super().__init__(f"invalid stage {stage!r}")
        self.stage = stage


class CloudAPIError(OperatorError):
    """The cloud control-plane rejected a request or could not be reached."""

    def __init__(
        self, message: str, *, status_code: int | None = None, server_message: str = ""
    ) -> None:
        if server_message:
            message = f"{message}. Message from server `{server_message}`"
        super().__init__(message)
        self.status_code = status_code
        self.server_message = server_message


class WorkerControlError(OperatorError):
    """A worker rejected a start/stop request or could not be reached."""


class WorkerSweepError(OperatorError):
    """One or more worker jobs could not be deleted."""

    def __init__(self, errors: dict[str, Exception]) -> None:
        names = ", ".join(sorted(errors))
        super().__init__(f"failed to delete {len(errors)} runner job(s): {names}")
        self.errors = dict(errors)
