"""Shared fixtures and fake collaborators."""

import asyncio
import threading
import time
from datetime import timedelta
from typing import Callable, Optional

import pytest

from taskledger.config import LedgerConfig, load_config
from taskledger.log_sink import MemorySink
from taskledger.models import (
    ExecutionMode, ExecutionResult, Ledger, ModeRecommendation, Session,
    SessionStatus, TaskDescriptor, TaskType, utc_now,
)
from taskledger.session_store import SessionStore


# =============================================================================
# Fake Collaborators
# =============================================================================

class FakeRecommender:
    """Recommender returning a fixed recommendation."""

    def __init__(self, mode: ExecutionMode = ExecutionMode.LOCAL, score: float = 3.0):
        self.mode = mode
        self.score = score
        self.calls = 0

    def recommend(self, task: TaskDescriptor) -> ModeRecommendation:
        self.calls += 1
        return ModeRecommendation(
            mode=self.mode,
            score=self.score,
            confidence=80.0,
            reasons=[f"fixed score {self.score}"],
        )


class FakeExecutor:
    """Executor that records calls and returns a canned result."""

    def __init__(
        self,
        mode: ExecutionMode,
        success: bool = True,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        on_execute: Optional[Callable[[TaskDescriptor, Session], None]] = None,
    ):
        self.mode = mode
        self.success = success
        self.delay = delay
        self.error = error
        self.on_execute = on_execute
        self.calls: list[str] = []

    async def execute(self, task: TaskDescriptor, session: Session) -> ExecutionResult:
        self.calls.append(session.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_execute:
            self.on_execute(task, session)
        if self.error:
            raise self.error
        return ExecutionResult(
            success=self.success,
            mode=self.mode,
            session_id=session.id,
            output=f"{self.mode.value} output for {task.id}",
        )


class SlowWrites:
    """Stand-in for PersistenceEngine._write_atomic that holds each write open.

    Tracks how many writes were inside the file write at the same time.
    """

    def __init__(self, engine, delay: float = 0.2):
        self._write = engine._write_atomic
        self.delay = delay
        self.started = threading.Event()
        self.max_concurrent = 0
        self._active = 0
        self._guard = threading.Lock()

    def __call__(self, payload: str) -> None:
        with self._guard:
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)
        self.started.set()
        try:
            time.sleep(self.delay)
            self._write(payload)
        finally:
            with self._guard:
                self._active -= 1

    async def wait_started(self) -> None:
        while not self.started.is_set():
            await asyncio.sleep(0.005)


def make_task(task_id: str = "T1", description: str = "Implement the feature", **kwargs) -> TaskDescriptor:
    return TaskDescriptor(id=task_id, description=description, **kwargs)


def make_session(
    session_id: str,
    task_id: str = "T1",
    status: SessionStatus = SessionStatus.ACTIVE,
    age: timedelta = timedelta(0),
) -> Session:
    created = utc_now() - age
    return Session(
        id=session_id,
        task=make_task(task_id, type=TaskType.IMPLEMENTATION),
        status=status,
        created_at=created,
        last_active_at=created,
    )


def write_ledger(config: LedgerConfig, sessions: list[Session]) -> None:
    """Write a ledger file directly, bypassing the engine."""
    config.ledger_path.parent.mkdir(parents=True, exist_ok=True)
    config.ledger_path.write_text(
        Ledger(sessions=sessions).model_dump_json(by_alias=True, indent=2),
        encoding="utf-8",
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config(tmp_path) -> LedgerConfig:
    """Config rooted in a temp dir with the debounce disabled."""
    return load_config(tmp_path, min_persist_interval_seconds=0)


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def store(config, sink) -> SessionStore:
    return SessionStore(config, sink=sink)


@pytest.fixture
def task() -> TaskDescriptor:
    return make_task()
