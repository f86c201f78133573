"""Protocol definitions for the collaborators the ledger depends on.

These protocols keep the core independent of the concrete executors and
recommenders, so tests can inject simple fakes:
- Recommender: scores a task and suggests a mode
- Executor: runs a task in one concrete mode
- LogSink: receives log lines
"""

from typing import Protocol, runtime_checkable, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ExecutionResult, ModeRecommendation, Session, TaskDescriptor


@runtime_checkable
class Recommender(Protocol):
    """Suggests an execution mode for a task.

    May answer with the 'auto' sentinel; the mode selector then falls back
    to its configured fallback mode.
    """

    def recommend(self, task: "TaskDescriptor") -> "ModeRecommendation":
        """Score the task and recommend a mode."""
        ...


@runtime_checkable
class Executor(Protocol):
    """Runs a task in one concrete mode."""

    async def execute(self, task: "TaskDescriptor", session: "Session") -> "ExecutionResult":
        """Execute the task and return its result.

        Args:
            task: The task to run
            session: The session tracking this attempt

        Returns:
            ExecutionResult with success flag, mode and timing
        """
        ...


@runtime_checkable
class LogSink(Protocol):
    """Line-oriented log output."""

    def append_line(self, line: str) -> None:
        """Append one line."""
        ...
