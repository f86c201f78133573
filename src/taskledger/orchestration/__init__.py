"""Task orchestration for the session ledger.

- TaskOrchestrator: runs tasks through their phases and exposes the session API
- OrchestratorContext: the explicit set of collaborators it owns
- CancellationToken / run_with_timeout: cooperative cancellation and timeouts
"""

from .cancellation import CancellationToken, run_with_timeout
from .orchestrator import OrchestratorContext, TaskOrchestrator, build_orchestrator

__all__ = [
    "CancellationToken",
    "run_with_timeout",
    "OrchestratorContext",
    "TaskOrchestrator",
    "build_orchestrator",
]
