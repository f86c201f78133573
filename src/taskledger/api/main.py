"""FastAPI application serving the session ledger read-only.

The app never writes the ledger; every request reads the file that the
owning process persists.
"""

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import load_config
from .routes import sessions


def create_app(storage_root: Optional[Path] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        storage_root: Directory that holds the ledger namespace

    Returns:
        Configured FastAPI application

    Raises:
        ConfigurationError: If storage_root is given but invalid
    """
    app = FastAPI(
        title="taskledger API",
        description="Read-only view of task sessions and checkpoints",
        version=__version__,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.state.config = load_config(storage_root) if storage_root is not None else None

    app.include_router(sessions.router, prefix="/api", tags=["sessions"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "taskledger API",
            "version": __version__,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


def run_dashboard(
    storage_root: Path,
    host: str = "127.0.0.1",
    port: int = 8000,
    reload: bool = False
) -> None:
    """Run the API server.

    Args:
        storage_root: Directory that holds the ledger namespace
        host: Host to bind to
        port: Port to listen on
        reload: Enable auto-reload for development
    """
    import uvicorn

    app = create_app(storage_root)

    uvicorn.run(
        app,
        host=host,
        port=port,
        reload=reload,
    )
