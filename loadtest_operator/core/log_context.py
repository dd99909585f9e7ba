"""
Per-reconcile logging context.

The run being reconciled, the reconcile attempt and the remote test run are
tracked in contextvars so every log line emitted while handling one request
can be tied back to it, even with several reconciles in flight.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

CURRENT_RUN: ContextVar[Optional[str]] = ContextVar("CURRENT_RUN", default=None)
CURRENT_RECONCILE_ID: ContextVar[Optional[str]] = ContextVar(
    "CURRENT_RECONCILE_ID", default=None
)
CURRENT_TEST_RUN_ID: ContextVar[Optional[str]] = ContextVar(
    "CURRENT_TEST_RUN_ID", default=None
)


@contextmanager
def reconcile_context(run_ref: str) -> Iterator[str]:
    """Bind a run reference and a fresh reconcile id for the enclosed block."""
    reconcile_id = uuid.uuid4().hex[:12]
    run_token = CURRENT_RUN.set(run_ref)
    id_token = CURRENT_RECONCILE_ID.set(reconcile_id)
    trid_token = CURRENT_TEST_RUN_ID.set(None)
    try:
        yield reconcile_id
    finally:
        CURRENT_TEST_RUN_ID.reset(trid_token)
        CURRENT_RECONCILE_ID.reset(id_token)
        CURRENT_RUN.reset(run_token)


def bind_test_run_id(test_run_id: str) -> None:
    if test_run_id:
        CURRENT_TEST_RUN_ID.set(test_run_id)


class ReconcileContextFilter(logging.Filter):
    """
    Copies the reconcile context onto log records.

    Sets `run`, `reconcile_id`, `test_run_id` and a preformatted `run_ref`
    prefix (empty outside a reconcile) so formats can always reference them.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        run = CURRENT_RUN.get()
        reconcile_id = CURRENT_RECONCILE_ID.get()
        test_run_id = CURRENT_TEST_RUN_ID.get()
        record.run = run
        record.reconcile_id = reconcile_id
        record.test_run_id = test_run_id
        if run is None:
            record.run_ref = ""
        else:
            parts = [run, reconcile_id or "-"]
            if test_run_id:
                parts.append(f"testRunId={test_run_id}")
            record.run_ref = "[" + " ".join(parts) + "] "
        return True
