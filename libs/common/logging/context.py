"""Run ID propagation for batch and operator jobs.

Every CLI invocation (weekly retrain, shadow test end, rollback) gets a run ID
so that all log lines emitted while it executes can be grouped together. The
ID lives in a context variable, so it follows the call stack into worker
threads started with ``contextvars.copy_context()``.

Example:
    >>> with RunContext("retrain-2024w01") as run_id:
    ...     get_run_id()
    'retrain-2024w01'
"""

import contextvars
import uuid
from types import TracebackType

_run_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("run_id", default=None)


def generate_run_id() -> str:
    """Generate a new run ID (12 hex characters)."""
    return uuid.uuid4().hex[:12]


def get_run_id() -> str | None:
    """Get the current run ID, or None if no run is active."""
    return _run_id_var.get()


def set_run_id(run_id: str) -> None:
    """Set the run ID for the current context.

    Raises:
        ValueError: If run_id is empty.
    """
    if not run_id:
        raise ValueError("Run ID cannot be empty")
    _run_id_var.set(run_id)


def clear_run_id() -> None:
    """Clear the run ID from the current context."""
    _run_id_var.set(None)


class RunContext:
    """Context manager that scopes a run ID to a block of code.

    The previous run ID (if any) is restored on exit.
    """

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id or generate_run_id()
        self.previous_run_id: str | None = None

    def __enter__(self) -> str:
        self.previous_run_id = get_run_id()
        set_run_id(self.run_id)
        return self.run_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.previous_run_id is not None:
            set_run_id(self.previous_run_id)
        else:
            clear_run_id()
