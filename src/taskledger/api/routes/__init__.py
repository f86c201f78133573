"""API routes for the dashboard."""

from . import sessions

__all__ = ["sessions"]
