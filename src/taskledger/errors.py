"""Error taxonomy for the session ledger.

Propagation rules:
- NotFoundError and ConfigurationError always reach the caller.
- PersistenceError reaches the caller for forced writes only; deferred
  writes log it and keep the session set dirty for the next attempt.
- TaskTimeoutError and TaskCancelledError are converted into failed
  ExecutionResult records by the orchestrator.
"""

from typing import Optional


class TaskLedgerError(Exception):
    """Base class for all ledger errors."""


class NotFoundError(TaskLedgerError, KeyError):
    """Raised when a session id is unknown."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return self.args[0]


class PersistenceError(TaskLedgerError):
    """Raised when the ledger cannot be serialized or written.

    session_id names the session whose creation triggered the write, when
    there is one.
    """

    def __init__(
        self, message: str, path: Optional[str] = None, session_id: Optional[str] = None
    ):
        self.path = path
        self.session_id = session_id
        super().__init__(message)


class ConfigurationError(TaskLedgerError):
    """Raised when the storage root or configuration file is invalid."""


class TaskTimeoutError(TaskLedgerError, TimeoutError):
    """Raised when an external call exceeds its time bound."""

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


class TaskCancelledError(TaskLedgerError):
    """Raised at a phase boundary after the caller cancelled the task."""

    def __init__(self, phase: Optional[str] = None, reason: str = "Task cancelled by user"):
        self.phase = phase
        self.reason = reason
        message = f"{reason} (phase: {phase})" if phase else reason
        super().__init__(message)
