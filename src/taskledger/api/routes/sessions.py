"""Session, checkpoint and statistics endpoints."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ...config import LedgerConfig
from ...errors import PersistenceError
from ...models import Checkpoint, Session, SessionStatistics, SessionStatus
from ...persistence import read_ledger

router = APIRouter()


class SessionListResponse(BaseModel):
    """List of sessions with pagination info."""
    sessions: list[Session]
    total: int
    page: int
    page_size: int


def get_config(request: Request) -> LedgerConfig:
    """Get the ledger config from app state."""
    config = getattr(request.app.state, "config", None)
    if config is None:
        raise HTTPException(status_code=404, detail="Storage root not configured")
    return config


def load_sessions(config: LedgerConfig) -> list[Session]:
    """Read sessions from the ledger file, oldest first."""
    try:
        ledger = read_ledger(config.ledger_path)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e

    if ledger is None:
        return []
    return sorted(ledger.sessions, key=lambda s: s.created_at)


def find_session(config: LedgerConfig, session_id: str) -> Session:
    for session in load_sessions(config):
        if session.id == session_id:
            return session
    raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")


@router.get("/sessions", response_model=SessionListResponse)
async def get_sessions(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[SessionStatus] = None,
    task_id: Optional[str] = None,
) -> SessionListResponse:
    """Get sessions, newest first, with optional filtering."""
    records = load_sessions(get_config(request))

    if status:
        records = [s for s in records if s.status == status]
    if task_id:
        records = [s for s in records if s.task.id == task_id]

    records.reverse()

    total = len(records)
    start = (page - 1) * page_size
    return SessionListResponse(
        sessions=records[start:start + page_size],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/sessions/{session_id}", response_model=Session)
async def get_session(request: Request, session_id: str) -> Session:
    """Get a specific session by ID."""
    return find_session(get_config(request), session_id)


@router.get("/sessions/{session_id}/checkpoints", response_model=list[Checkpoint])
async def get_checkpoints(request: Request, session_id: str) -> list[Checkpoint]:
    """Get a session's checkpoints, oldest first."""
    return find_session(get_config(request), session_id).checkpoints


@router.get("/statistics", response_model=SessionStatistics)
async def get_statistics(request: Request) -> SessionStatistics:
    """Get session counts by status."""
    return SessionStatistics.from_sessions(load_sessions(get_config(request)))
