"""In-memory session index backed by the persistence engine.

The in-memory index is authoritative. Every mutation touches the session,
marks it dirty and asks the engine to persist:
- create, update_context, create_checkpoint, update_session_status,
  delete_session and shutdown_all_active_sessions write immediately and
  raise PersistenceError on failure
- save_state, restore and cleanup_expired write through the debounce and
  only log failures
"""

import copy
import time
import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from .config import LedgerConfig
from .errors import NotFoundError, PersistenceError
from .log_sink import ComponentLog, ConsoleSink
from .models import (
    Checkpoint, CodebaseSnapshot, ComplexityScore, ExecutionOptions, ModeDecision,
    Session, SessionContext, SessionStatistics, SessionStatus, TaskDescriptor, utc_now,
)
from .persistence import FileLockRegistry, PersistenceEngine
from .protocols import LogSink


class SessionStore:
    """Creates, mutates, restores and queries sessions."""

    def __init__(
        self,
        config: LedgerConfig,
        sink: Optional[LogSink] = None,
        locks: Optional[FileLockRegistry] = None,
    ):
        """Initialize the store.

        Args:
            config: Ledger configuration
            sink: Log sink (defaults to the console)
            locks: Lock registry shared with other stores on the same file
        """
        self.config = config
        sink = sink or ConsoleSink()
        self._log = ComponentLog(sink, "SessionStore")
        self._sessions: dict[str, Session] = {}
        self.engine = PersistenceEngine(
            config.ledger_path,
            snapshot=lambda: list(self._sessions.values()),
            sink=sink,
            min_interval_seconds=config.min_persist_interval_seconds,
            locks=locks,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    # =========================================================================
    # Loading
    # =========================================================================

    async def load(self) -> int:
        """Load sessions from disk into memory.

        Sessions already in memory win over their on-disk copies. A corrupt
        ledger is logged and leaves memory untouched.

        Returns:
            Number of sessions added from disk
        """
        try:
            ledger = await self.engine.load()
        except PersistenceError as e:
            self._log.error(f"Failed to load sessions: {e}")
            return 0

        added = 0
        for session in ledger.sessions:
            if session.id not in self._sessions:
                self._sessions[session.id] = session
                added += 1

        if ledger.sessions:
            self._log.info(f"Loaded {len(ledger.sessions)} sessions from file")
        return added

    # =========================================================================
    # Creation and restore
    # =========================================================================

    def _generate_session_id(self) -> str:
        """Generate `<prefix>-<epochMillis>-<hex8>`, unique within the index."""
        while True:
            timestamp = int(time.time() * 1000)
            session_id = f"{self.config.session_id_prefix}-{timestamp}-{uuid.uuid4().hex[:8]}"
            if session_id not in self._sessions:
                return session_id

    async def create(
        self,
        task: TaskDescriptor,
        options: Optional[ExecutionOptions] = None
    ) -> Session:
        """Create an active session and persist it immediately.

        Args:
            task: Task the session tracks
            options: Execution options recorded in the session context

        Returns:
            The new session

        Raises:
            PersistenceError: If the forced write fails. The error carries the
                new session id; the session stays in memory and is written by
                the next persist
        """
        now = utc_now()
        session = Session(
            id=self._generate_session_id(),
            task=task,
            status=SessionStatus.ACTIVE,
            created_at=now,
            last_active_at=now,
            context=SessionContext(options=options),
        )

        self._sessions[session.id] = session
        self.engine.mark_dirty(session.id)

        try:
            await self.engine.persist(force=True)
        except PersistenceError as e:
            e.session_id = session.id
            raise

        self._log.info(f"Created session: {session.id}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        """Look up a session in memory only."""
        return self._sessions.get(session_id)

    async def restore(self, session_id: str) -> Optional[Session]:
        """Return a session, reloading the ledger if it is not in memory.

        Returns:
            The restored session, or None if it is unknown after reload
        """
        session = self._sessions.get(session_id)

        if session is None:
            await self.load()
            session = self._sessions.get(session_id)

        if session is None:
            self._log.info(f"Session not found: {session_id}")
            return None

        session.touch()
        self.engine.mark_dirty(session_id)
        await self.engine.persist()

        self._log.info(f"Restored session: {session_id}")
        return session

    # =========================================================================
    # Mutation
    # =========================================================================

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(session_id)
        return session

    async def save_state(self, session: Session, result: Any = None) -> None:
        """Record routine progress for a session.

        Args:
            session: Session to save
            result: Optional result cached as metadata["last_result"]

        Raises:
            NotFoundError: If the session is not in the index
        """
        self._require(session.id)

        session.touch()
        if result is not None:
            if isinstance(result, BaseModel):
                result = result.model_dump(mode="json", by_alias=True)
            session.metadata = {**session.metadata, "last_result": result}

        self._sessions[session.id] = session
        self.engine.mark_dirty(session.id)

        await self.engine.persist()

        self._log.info(f"Saved state for session: {session.id}")

    async def update_context(
        self,
        session_id: str,
        complexity_score: Optional[ComplexityScore] = None,
        codebase_snapshot: Optional[CodebaseSnapshot] = None,
        mode_decision: Optional[ModeDecision] = None,
        options: Optional[ExecutionOptions] = None,
    ) -> Session:
        """Update the context of a session. Fields left as None are kept."""
        session = self._require(session_id)

        if complexity_score is not None:
            session.context.complexity_score = complexity_score
        if codebase_snapshot is not None:
            session.context.codebase_snapshot = codebase_snapshot
        if mode_decision is not None:
            session.context.mode_decision = mode_decision
        if options is not None:
            session.context.options = options

        session.touch()
        self.engine.mark_dirty(session_id)

        await self.engine.persist(force=True)

        self._log.info(f"Updated context for session: {session_id}")
        return session

    async def create_checkpoint(
        self,
        session_id: str,
        state: dict[str, Any],
        description: str
    ) -> Checkpoint:
        """Append a checkpoint to a session and persist immediately."""
        session = self._require(session_id)

        checkpoint = Checkpoint(
            id=str(uuid.uuid4()),
            timestamp=utc_now(),
            description=description,
            state=copy.deepcopy(state),
        )
        session.append_checkpoint(checkpoint)

        session.touch()
        self.engine.mark_dirty(session_id)

        await self.engine.persist(force=True)

        self._log.info(f"Created checkpoint for session {session_id}: {description}")
        return checkpoint

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        """Set the status of a session and persist immediately.

        Leaving a terminal status is allowed but logged as a warning.
        """
        session = self._require(session_id)
        status = SessionStatus(status)

        if session.status.is_terminal and status != session.status:
            self._log.warning(
                f"Session {session_id} leaves terminal status "
                f"{session.status.value} for {status.value}"
            )

        session.status = status
        session.touch()
        self.engine.mark_dirty(session_id)

        await self.engine.persist(force=True)

        self._log.info(f"Updated session {session_id} status to: {status.value}")

    async def delete_session(self, session_id: str) -> None:
        """Remove a session and persist the removal immediately."""
        self._require(session_id)

        del self._sessions[session_id]
        self.engine.mark_dirty(session_id)

        await self.engine.persist(force=True)

        self._log.info(f"Deleted session: {session_id}")

    # =========================================================================
    # Lifecycle transitions
    # =========================================================================

    async def cleanup_expired(
        self,
        max_age_seconds: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> int:
        """Time out active sessions idle for longer than max_age_seconds.

        Completed, failed and cancelled sessions are kept as history.

        Returns:
            Number of sessions moved to timeout
        """
        if max_age_seconds is None:
            max_age_seconds = self.config.session_timeout_seconds
        now = now or utc_now()

        timed_out = 0
        for session in self._sessions.values():
            if session.status != SessionStatus.ACTIVE:
                continue
            age = session.idle_seconds(now)
            if age > max_age_seconds:
                session.status = SessionStatus.TIMEOUT
                self.engine.mark_dirty(session.id)
                timed_out += 1
                self._log.info(f"Session {session.id} timed out (age: {round(age)}s)")

        if timed_out > 0:
            await self.engine.persist()

        return timed_out

    async def shutdown_all_active_sessions(self) -> int:
        """Cancel every active session with a single write.

        Returns:
            Number of sessions cancelled
        """
        active = self.get_active_sessions()
        self._log.info(f"Shutting down {len(active)} active sessions...")

        now = utc_now()
        for session in active:
            session.status = SessionStatus.CANCELLED
            session.touch(now)
            self.engine.mark_dirty(session.id)

        if active:
            await self.engine.persist(force=True)

        self._log.info("All active sessions shut down")
        return len(active)

    # =========================================================================
    # Queries
    # =========================================================================

    def list_sessions(self, status: Optional[SessionStatus] = None) -> list[Session]:
        """All sessions, oldest first, optionally filtered by status."""
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at)
        if status is None:
            return sessions
        return [s for s in sessions if s.status == status]

    def get_active_sessions(self) -> list[Session]:
        return self.list_sessions(SessionStatus.ACTIVE)

    def find_latest_for_task(self, task_id: str) -> Optional[Session]:
        """Most recently created session for a task id."""
        candidates = [s for s in self._sessions.values() if s.task.id == task_id]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    def find_latest_decided_for_task(self, task_id: str) -> Optional[Session]:
        """Most recent session for a task that recorded a mode choice.

        Sessions created without a decision or a forced mode are skipped, so
        a bare create() does not hide an earlier forced run.
        """
        candidates = [
            s for s in self._sessions.values()
            if s.task.id == task_id and s.records_mode_choice
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    def get_checkpoints(self, session_id: str) -> list[Checkpoint]:
        return list(self._require(session_id).checkpoints)

    def get_latest_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        return self._require(session_id).latest_checkpoint()

    def get_statistics(self) -> SessionStatistics:
        return SessionStatistics.from_sessions(list(self._sessions.values()))
