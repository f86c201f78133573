"""Data models for the session ledger.

Uses Pydantic for validation. Persisted models serialize with camelCase
keys and ISO-8601 timestamps; in memory every timestamp is a UTC-aware datetime.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


LEDGER_VERSION = "1.0.0"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps in older ledgers were written in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class LedgerModel(BaseModel):
    """Base for models written to the ledger file."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionStatus(str, Enum):
    """Lifecycle status of a session.

    ACTIVE is the only non-terminal state.
    """
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


class ExecutionMode(str, Enum):
    """Execution strategy for a task."""
    LOCAL = "local"      # Local agent executor
    REMOTE = "remote"    # Remote deep-analysis backend
    AUTO = "auto"        # Sentinel: resolve through the recommender

    @property
    def is_concrete(self) -> bool:
        return self is not ExecutionMode.AUTO


class DecisionSource(str, Enum):
    """Which link of the priority chain produced a mode decision."""
    EXPLICIT = "explicit"
    CONTINUITY = "continuity"
    CONFIG = "config"
    RECOMMENDER = "recommender"
    FALLBACK = "fallback"


class TaskType(str, Enum):
    """Kind of work a task represents."""
    REQUIREMENTS = "requirements"
    DESIGN = "design"
    TASKS = "tasks"
    REVIEW = "review"
    IMPLEMENTATION = "implementation"
    DEBUG = "debug"


class ExecutionPhase(str, Enum):
    """Phase boundaries at which cancellation is checked."""
    INITIALIZING = "initializing"
    ROUTING = "routing"
    EXECUTING = "executing"
    SAVING_RESULTS = "saving-results"
    COMPLETED = "completed"


# =============================================================================
# Task Models
# =============================================================================

class TaskContext(LedgerModel):
    """Documents attached to a task.

    Every field is optional but only these fields are accepted.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    requirements: Optional[str] = None
    design: Optional[str] = None
    tasks: Optional[str] = None
    additional_context: dict[str, Any] = Field(default_factory=dict)


class TaskDescriptor(LedgerModel):
    """A unit of work submitted by the caller."""
    id: str = Field(..., min_length=1, description="Caller-owned task identifier")
    type: TaskType = Field(default=TaskType.IMPLEMENTATION)
    description: str = Field(..., description="What the task should accomplish")
    spec_name: Optional[str] = Field(default=None, description="Feature spec document this task belongs to")
    related_files: list[str] = Field(default_factory=list)
    context: TaskContext = Field(default_factory=TaskContext)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Task description must not be blank")
        return value


class ExecutionOptions(LedgerModel):
    """Caller options for a single execution."""
    force_mode: Optional[ExecutionMode] = Field(
        default=None,
        description="Explicit mode override; 'auto' resolves through the recommender"
    )
    enable_deep_thinking: bool = False
    enable_codebase_scan: bool = False
    timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Bound on the executor call (None = use config default)"
    )
    run_in_background: bool = False
    custom_config: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Recommendation Models
# =============================================================================

class ComplexityDetails(LedgerModel):
    """Signals behind a complexity score."""
    file_count: int = 0
    involves_ast_modification: bool = False
    involves_async_complexity: bool = False
    involves_new_technology: bool = False
    requires_database_migration: bool = False
    cross_module_impact: bool = False
    affects_core_api: bool = False
    refactoring_scope: str = "none"  # none, single, multiple


class ComplexityScore(LedgerModel):
    """Weighted complexity score, every dimension in [1, 10]."""
    total: float
    code_scale: float
    technical_difficulty: float
    business_impact: float
    details: ComplexityDetails = Field(default_factory=ComplexityDetails)


class ModeRecommendation(LedgerModel):
    """Output of a Recommender. `mode` may be the AUTO sentinel."""
    mode: ExecutionMode
    score: float = 0.0
    confidence: float = 0.0
    reasons: list[str] = Field(default_factory=list)
    complexity: Optional[ComplexityScore] = None


class ModeDecision(LedgerModel):
    """Final, concrete mode chosen for a task."""
    mode: ExecutionMode
    source: DecisionSource
    requested: Optional[ExecutionMode] = None
    recommendation: Optional[ModeRecommendation] = None
    decided_at: UtcDatetime = Field(default_factory=utc_now)

    @field_validator("mode")
    @classmethod
    def _mode_is_concrete(cls, value: ExecutionMode) -> ExecutionMode:
        if not value.is_concrete:
            raise ValueError("A mode decision cannot be 'auto'")
        return value


# =============================================================================
# Session Models
# =============================================================================

class CodebaseSnapshot(LedgerModel):
    """Reference to a scan of the codebase taken for a session."""
    root: str
    captured_at: UtcDatetime = Field(default_factory=utc_now)
    file_count: int = 0
    files: list[str] = Field(default_factory=list)
    languages: dict[str, int] = Field(default_factory=dict)
    reference: Optional[str] = Field(default=None, description="External snapshot id or path")


class SessionContext(LedgerModel):
    """Context recorded on a session while it runs."""
    options: Optional[ExecutionOptions] = None
    mode_decision: Optional[ModeDecision] = None
    complexity_score: Optional[ComplexityScore] = None
    codebase_snapshot: Optional[CodebaseSnapshot] = None


class Checkpoint(LedgerModel):
    """Named snapshot of session progress. Immutable once appended."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    description: str
    state: dict[str, Any] = Field(default_factory=dict)


class Session(LedgerModel):
    """Persisted execution state for one task attempt."""
    id: str
    task: TaskDescriptor
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: UtcDatetime = Field(default_factory=utc_now)
    last_active_at: UtcDatetime = Field(default_factory=utc_now)
    context: SessionContext = Field(default_factory=SessionContext)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def touch(self, now: Optional[datetime] = None) -> None:
        """Refresh last_active_at, never moving it before created_at."""
        now = now or utc_now()
        self.last_active_at = max(now, self.created_at, self.last_active_at)

    def append_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Append a checkpoint; earlier entries are never touched."""
        self.checkpoints.append(checkpoint)

    def latest_checkpoint(self) -> Optional[Checkpoint]:
        return self.checkpoints[-1] if self.checkpoints else None

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or utc_now()
        return (now - self.last_active_at).total_seconds()

    @property
    def records_mode_choice(self) -> bool:
        """Whether the session recorded a mode decision or a concrete forced mode."""
        if self.context.mode_decision is not None:
            return True
        options = self.context.options
        return options is not None and options.force_mode is not None and options.force_mode.is_concrete


class Ledger(LedgerModel):
    """The full snapshot written to disk."""
    sessions: list[Session] = Field(default_factory=list)
    last_updated: UtcDatetime = Field(default_factory=utc_now)
    version: str = LEDGER_VERSION


class SessionStatistics(BaseModel):
    """Session counts by status."""
    total: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    timeout: int = 0
    cancelled: int = 0

    @classmethod
    def from_sessions(cls, sessions: list["Session"]) -> "SessionStatistics":
        counts = {status.value: 0 for status in SessionStatus}
        for session in sessions:
            counts[session.status.value] += 1
        return cls(total=len(sessions), **counts)


# =============================================================================
# Execution Result
# =============================================================================

class ExecutionError(LedgerModel):
    """Error details attached to a failed result."""
    message: str
    code: Optional[str] = None  # e.g. "timeout", "cancelled", "persistence"
    stack: Optional[str] = None


class ExecutionResult(LedgerModel):
    """Result returned by executors and by the orchestrator."""
    success: bool
    mode: ExecutionMode
    session_id: str
    start_time: UtcDatetime = Field(default_factory=utc_now)
    end_time: UtcDatetime = Field(default_factory=utc_now)
    duration_ms: int = 0
    output: Optional[str] = None
    generated_files: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    error: Optional[ExecutionError] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
