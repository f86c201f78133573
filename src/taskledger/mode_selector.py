"""Execution mode selection.

Resolves a task to exactly one concrete mode (local or remote). The
decision depends only on its inputs, so a retried task with the same
persisted session, configuration and recommender output always gets the
same mode.
"""

from datetime import datetime
from typing import Optional

from .config import LedgerConfig
from .models import (
    DecisionSource, ExecutionMode, ExecutionOptions, ModeDecision,
    ModeRecommendation, Session, TaskDescriptor, utc_now,
)
from .protocols import Recommender


class ModeSelector:
    """Selects the execution mode for a task.

    Priority chain, highest wins:
    1. Explicit override from the caller ('auto' goes straight to the recommender)
    2. Continuity with a previous session of the same task that was forced
    3. Configured default mode, unless it is 'auto'
    4. Recommender output ('auto' from the recommender becomes the fallback mode)
    """

    def __init__(
        self,
        recommender: Recommender,
        default_mode: ExecutionMode = ExecutionMode.AUTO,
        fallback_mode: ExecutionMode = ExecutionMode.LOCAL,
    ):
        """Initialize the selector.

        Args:
            recommender: Scores tasks when no higher-priority rule applies
            default_mode: Global configured mode
            fallback_mode: Concrete mode used when the recommender answers 'auto'
        """
        if not ExecutionMode(fallback_mode).is_concrete:
            raise ValueError("fallback_mode must be a concrete mode")
        self.recommender = recommender
        self.default_mode = ExecutionMode(default_mode)
        self.fallback_mode = ExecutionMode(fallback_mode)

    @classmethod
    def from_config(cls, config: LedgerConfig, recommender: Recommender) -> "ModeSelector":
        return cls(
            recommender,
            default_mode=config.default_mode,
            fallback_mode=config.fallback_mode,
        )

    def resolve(
        self,
        task: TaskDescriptor,
        options: Optional[ExecutionOptions] = None,
        previous: Optional[Session] = None,
        now: Optional[datetime] = None,
    ) -> ModeDecision:
        """Resolve the mode for a task.

        Args:
            task: Task to run
            options: Caller options (force_mode is the explicit override)
            previous: Earlier session of the same task, if any
            now: Decision timestamp (defaults to now)

        Returns:
            ModeDecision whose mode is never 'auto'
        """
        decided_at = now or utc_now()
        requested = options.force_mode if options else None

        # 1. Explicit override
        if requested is not None:
            if requested.is_concrete:
                return ModeDecision(
                    mode=requested,
                    source=DecisionSource.EXPLICIT,
                    requested=requested,
                    decided_at=decided_at,
                )
            return self._from_recommender(task, requested, decided_at)

        # 2. Session continuity
        continued = self.continuity_mode(task, previous)
        if continued is not None:
            return ModeDecision(
                mode=continued,
                source=DecisionSource.CONTINUITY,
                decided_at=decided_at,
            )

        # 3. Configured default
        if self.default_mode.is_concrete:
            return ModeDecision(
                mode=self.default_mode,
                source=DecisionSource.CONFIG,
                decided_at=decided_at,
            )

        # 4. Recommender
        return self._from_recommender(task, None, decided_at)

    @staticmethod
    def continuity_mode(task: TaskDescriptor, previous: Optional[Session]) -> Optional[ExecutionMode]:
        """Mode a previous forced session of this task already ran with.

        Returns None when there is no previous session for the task or when
        its mode was not forced by the caller.
        """
        if previous is None or previous.task.id != task.id:
            return None

        decision = previous.context.mode_decision
        if decision is not None:
            if decision.source in (DecisionSource.EXPLICIT, DecisionSource.CONTINUITY):
                return decision.mode
            # Explicit 'auto' requests were forced through the recommender
            if decision.requested is not None:
                return decision.mode
            return None

        # Sessions created without a recorded decision
        options = previous.context.options
        if options is not None and options.force_mode is not None and options.force_mode.is_concrete:
            return options.force_mode
        return None

    def _from_recommender(
        self,
        task: TaskDescriptor,
        requested: Optional[ExecutionMode],
        decided_at: datetime,
    ) -> ModeDecision:
        recommendation: ModeRecommendation = self.recommender.recommend(task)
        if recommendation.mode.is_concrete:
            return ModeDecision(
                mode=recommendation.mode,
                source=DecisionSource.RECOMMENDER,
                requested=requested,
                recommendation=recommendation,
                decided_at=decided_at,
            )
        return ModeDecision(
            mode=self.fallback_mode,
            source=DecisionSource.FALLBACK,
            requested=requested,
            recommendation=recommendation,
            decided_at=decided_at,
        )

    def explain(
        self,
        task: TaskDescriptor,
        options: Optional[ExecutionOptions] = None,
        previous: Optional[Session] = None,
    ) -> dict:
        """Explain why a mode would be selected.

        Returns:
            Dict with mode, source, score, confidence and reasons
        """
        decision = self.resolve(task, options, previous)
        reasons = []

        if decision.source == DecisionSource.EXPLICIT:
            reasons.append(f"Using explicit override: {decision.mode.value}")
        elif decision.source == DecisionSource.CONTINUITY:
            reasons.append(
                f"Continuing mode of previous session {previous.id}: {decision.mode.value}"
            )
        elif decision.source == DecisionSource.CONFIG:
            reasons.append(f"Configured default mode: {decision.mode.value}")
        else:
            if decision.requested == ExecutionMode.AUTO:
                reasons.append("Explicit 'auto' request resolved by the recommender")
            if decision.recommendation is not None:
                reasons.extend(decision.recommendation.reasons)
            if decision.source == DecisionSource.FALLBACK:
                reasons.append(
                    f"Recommender returned 'auto', using fallback mode: {decision.mode.value}"
                )

        recommendation = decision.recommendation
        return {
            "mode": decision.mode.value,
            "source": decision.source.value,
            "score": recommendation.score if recommendation else None,
            "confidence": recommendation.confidence if recommendation else None,
            "reasons": reasons,
        }
