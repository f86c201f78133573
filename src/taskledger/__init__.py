"""Persistent session ledger and execution-mode selection for task runners."""

__version__ = "0.1.0"
