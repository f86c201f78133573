"""Task orchestration - the entry point for running tasks.

Execution flow:
1. Create a session (SessionStore)
2. Resolve the execution mode (ModeSelector), honoring earlier sessions
3. Run the executor for that mode under a timeout
4. Checkpoint and save the result, then set the final status

All collaborators are passed in through OrchestratorContext; there are no
module-level instances.
"""

import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from ..config import LedgerConfig
from ..errors import (
    ConfigurationError, PersistenceError, TaskCancelledError, TaskTimeoutError,
)
from ..lifecycle import LifecycleScheduler
from ..log_sink import ComponentLog, ConsoleSink, FileSink, MultiSink, create_sink
from ..mode_selector import ModeSelector
from ..models import (
    Checkpoint, CodebaseSnapshot, ComplexityScore, ExecutionError, ExecutionMode,
    ExecutionOptions, ExecutionPhase, ExecutionResult, ModeDecision, Session,
    SessionStatistics, SessionStatus, TaskDescriptor, utc_now,
)
from ..protocols import Executor, LogSink, Recommender
from ..recommender import ComplexityRecommender
from ..session_store import SessionStore
from .cancellation import CancellationToken, run_with_timeout


@dataclass
class OrchestratorContext:
    """Everything the orchestrator needs, owned by the orchestrator."""
    config: LedgerConfig
    store: SessionStore
    selector: ModeSelector
    executors: dict[ExecutionMode, Executor]
    scheduler: LifecycleScheduler
    sink: LogSink = field(default_factory=ConsoleSink)

    def __post_init__(self):
        missing = [
            mode.value for mode in (ExecutionMode.LOCAL, ExecutionMode.REMOTE)
            if mode not in self.executors
        ]
        if missing:
            raise ConfigurationError(f"No executor registered for mode(s): {', '.join(missing)}")


class TaskOrchestrator:
    """Runs tasks through their phases and exposes the session API.

    Failures inside execute_task never escape as exceptions: timeouts,
    cancellations, persistence errors and executor errors all come back as
    a failed ExecutionResult, and the session keeps whatever state it had.
    """

    def __init__(self, context: OrchestratorContext):
        self.context = context
        self.config = context.config
        self.store = context.store
        self.selector = context.selector
        self.scheduler = context.scheduler
        self._log = ComponentLog(context.sink, "TaskOrchestrator")
        self._log.info("Orchestrator initialized")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Load the ledger and start the idle-session sweep."""
        await self.store.load()
        self.scheduler.start()

    async def dispose(self) -> None:
        """Cancel active sessions, flush the ledger and close log files."""
        self._log.info("Disposing orchestrator...")
        await self.scheduler.shutdown()
        self._close_sinks(self.context.sink)
        self._log.info("Orchestrator disposed successfully")

    def _close_sinks(self, sink: LogSink) -> None:
        if isinstance(sink, FileSink):
            sink.close()
        elif isinstance(sink, MultiSink):
            for inner in sink.sinks:
                self._close_sinks(inner)

    # =========================================================================
    # Execution
    # =========================================================================

    def resolve_mode(
        self,
        task: TaskDescriptor,
        options: Optional[ExecutionOptions] = None,
        previous: Optional[Session] = None,
    ) -> ModeDecision:
        """Resolve the mode for a task, continuing its latest decided session by default."""
        if previous is None:
            previous = self.store.find_latest_decided_for_task(task.id)
        return self.selector.resolve(task, options, previous)

    async def execute_task(
        self,
        task: TaskDescriptor,
        options: Optional[ExecutionOptions] = None,
        token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """Run a task end to end.

        Args:
            task: Task to run
            options: Execution options (force_mode, timeout_seconds, ...)
            token: Cancellation token checked at each phase boundary

        Returns:
            ExecutionResult; failed results carry error.code set to
            "timeout", "cancelled", "persistence" or "execution"
        """
        options = options or ExecutionOptions()
        token = token or CancellationToken()
        start_time = utc_now()
        session: Optional[Session] = None
        mode = options.force_mode if options.force_mode and options.force_mode.is_concrete else self.config.fallback_mode

        self._log.info(f"Executing task: {task.id}")
        self._log.info(f"Task type: {task.type.value}, description: {task.description[:100]}")

        try:
            # 1. Initializing
            token.raise_if_cancelled(ExecutionPhase.INITIALIZING)
            previous = self.store.find_latest_decided_for_task(task.id)
            session = await self.store.create(task, options)
            self._log.info(f"Session created: {session.id}")

            # 2. Routing
            token.raise_if_cancelled(ExecutionPhase.ROUTING)
            decision = self.selector.resolve(task, options, previous)
            mode = decision.mode
            complexity = decision.recommendation.complexity if decision.recommendation else None
            await self.store.update_context(
                session.id,
                mode_decision=decision,
                complexity_score=complexity,
            )
            self._log.info(f"Mode resolved: {mode.value} (source: {decision.source.value})")

            # 3. Executing
            token.raise_if_cancelled(ExecutionPhase.EXECUTING)
            executor = self.context.executors[mode]
            timeout = options.timeout_seconds or self.config.execution_timeout_seconds
            result = await run_with_timeout(
                executor.execute(task, session),
                timeout,
                f"{mode.value} execution",
            )

            # 4. Saving results - even a cancelled task keeps what it produced
            if token.is_cancelled:
                self._log.info("Task cancelled, saving intermediate results")
            await self.store.create_checkpoint(
                session.id,
                {"phase": ExecutionPhase.SAVING_RESULTS.value, "success": result.success},
                "Execution finished",
            )
            await self.store.save_state(session, result)
            status = SessionStatus.COMPLETED if result.success else SessionStatus.FAILED
            await self.store.update_session_status(session.id, status)
            self._log.info("Session state saved")

            return result

        except ConfigurationError:
            raise
        except TaskTimeoutError as e:
            return await self._fail(task, session, mode, start_time, e, "timeout", SessionStatus.TIMEOUT)
        except TaskCancelledError as e:
            return await self._fail(task, session, mode, start_time, e, "cancelled", SessionStatus.CANCELLED)
        except PersistenceError as e:
            if session is None and e.session_id:
                # The session exists in memory even though its first write failed
                session = self.store.get(e.session_id)
            return await self._fail(task, session, mode, start_time, e, "persistence", SessionStatus.FAILED)
        except Exception as e:
            return await self._fail(task, session, mode, start_time, e, "execution", SessionStatus.FAILED)

    async def _fail(
        self,
        task: TaskDescriptor,
        session: Optional[Session],
        mode: ExecutionMode,
        start_time: datetime,
        error: Exception,
        code: str,
        status: SessionStatus,
    ) -> ExecutionResult:
        """Build a failed result and record it on the session."""
        end_time = utc_now()
        self._log.error(f"Task execution failed: {error}")

        result = ExecutionResult(
            success=False,
            mode=mode,
            session_id=session.id if session else task.id,
            start_time=start_time,
            end_time=end_time,
            duration_ms=int((end_time - start_time).total_seconds() * 1000),
            error=ExecutionError(
                message=str(error),
                code=code,
                stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            ),
        )

        if session is not None and session.id in self.store:
            try:
                await self.store.save_state(session, result)
                await self.store.update_session_status(session.id, status)
            except PersistenceError as e:
                self._log.error(f"Could not record failure for session {session.id}: {e}")

        return result

    # =========================================================================
    # Session API
    # =========================================================================

    async def create_session(
        self,
        task: TaskDescriptor,
        options: Optional[ExecutionOptions] = None
    ) -> Session:
        return await self.store.create(task, options)

    async def save_state(self, session: Session, result: Any = None) -> None:
        await self.store.save_state(session, result)

    async def update_context(
        self,
        session_id: str,
        complexity_score: Optional[ComplexityScore] = None,
        codebase_snapshot: Optional[CodebaseSnapshot] = None,
    ) -> Session:
        return await self.store.update_context(
            session_id,
            complexity_score=complexity_score,
            codebase_snapshot=codebase_snapshot,
        )

    async def create_checkpoint(
        self,
        session_id: str,
        state: dict[str, Any],
        description: str
    ) -> Checkpoint:
        return await self.store.create_checkpoint(session_id, state, description)

    async def restore_session(self, session_id: str) -> Optional[Session]:
        """Restore a session from memory or disk."""
        self._log.info(f"Restoring session: {session_id}")
        session = await self.store.restore(session_id)
        if session:
            self._log.info(f"Session restored: {session_id} (status: {session.status.value})")
        else:
            self._log.info(f"Session not found: {session_id}")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get(session_id)

    def get_active_sessions(self) -> list[Session]:
        return self.store.get_active_sessions()

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        await self.store.update_session_status(session_id, status)

    async def delete_session(self, session_id: str) -> None:
        await self.store.delete_session(session_id)

    async def cleanup_old_sessions(self, max_age_seconds: Optional[float] = None) -> int:
        return await self.store.cleanup_expired(max_age_seconds)

    async def shutdown_all_active_sessions(self) -> int:
        return await self.store.shutdown_all_active_sessions()

    def get_statistics(self) -> SessionStatistics:
        return self.store.get_statistics()


def build_orchestrator(
    config: LedgerConfig,
    executors: dict[ExecutionMode, Executor],
    recommender: Optional[Recommender] = None,
    sink: Optional[LogSink] = None,
) -> TaskOrchestrator:
    """Wire a TaskOrchestrator and its collaborators from a config.

    Args:
        config: Ledger configuration
        executors: One executor per concrete mode
        recommender: Mode recommender (defaults to ComplexityRecommender)
        sink: Log sink (defaults to console, teed to config.log_path)

    Raises:
        ConfigurationError: If an executor is missing for a concrete mode
    """
    sink = sink or create_sink(config.log_path)
    recommender = recommender or ComplexityRecommender(threshold=config.remote_threshold)
    store = SessionStore(config, sink=sink)
    context = OrchestratorContext(
        config=config,
        store=store,
        selector=ModeSelector.from_config(config, recommender),
        executors=dict(executors),
        scheduler=LifecycleScheduler(store, sink=sink),
        sink=sink,
    )
    return TaskOrchestrator(context)
