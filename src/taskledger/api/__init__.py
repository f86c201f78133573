"""Read-only HTTP API over the session ledger."""

from .main import create_app, run_dashboard

__all__ = ["create_app", "run_dashboard"]
