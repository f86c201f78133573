"""Complexity-based mode recommendation.

Scores a task on three dimensions and recommends remote deep analysis for
complex work, local execution otherwise:
- Code scale (30%): files involved, cross-file refactoring
- Technical difficulty (40%): AST work, async/concurrency, new technology,
  database migrations
- Business impact (30%): cross-module changes, core API changes
"""

import math
import re
from typing import Optional

from .models import (
    ComplexityDetails, ComplexityScore, ExecutionMode, ModeRecommendation,
    TaskDescriptor, TaskType,
)


# Score at or above which remote mode is recommended
DEFAULT_THRESHOLD = 7.0

WEIGHTS = {
    "code_scale": 0.3,
    "technical_difficulty": 0.4,
    "business_impact": 0.3,
}

AST_KEYWORDS = ["ast", "abstract syntax tree", "parser", "codemod", "syntax tree", "transpile"]

ASYNC_KEYWORDS = ["async", "await", "concurrency", "concurrent", "race condition", "thread", "lock", "parallel"]

NEW_TECHNOLOGY_KEYWORDS = ["introduce", "new framework", "new library", "adopt", "integration", "third-party"]

DATABASE_KEYWORDS = ["database migration", "schema migration", "migrate the database", "alter table", "migration"]

# Keywords that indicate complex tasks
COMPLEXITY_KEYWORDS = [
    "architecture",
    "redesign",
    "restructure",
    "refactor",
    "overhaul",
    "security",
    "authentication",
    "authorization",
    "encryption",
    "optimize",
    "performance",
    "scalability",
    "caching",
]

# Keywords that indicate simple tasks
SIMPLE_KEYWORDS = [
    "typo",
    "comment",
    "readme",
    "documentation",
    "rename",
    "log message",
    "format",
    "lint",
    "style",
]

CROSS_MODULE_KEYWORDS = ["cross-module", "across modules", "multiple modules", "system-wide", "entire codebase"]

CORE_API_KEYWORDS = ["public api", "core api", "breaking change", "interface change", "api contract"]

FILE_PATTERN = re.compile(r"\b[\w./-]+\.(?:py|ts|tsx|js|jsx|go|rs|java|kt|rb|cs|cpp|c|h|json|ya?ml|toml|md)\b")

# Estimated file counts when a task names no files
ESTIMATED_FILES_BY_TYPE = {
    TaskType.IMPLEMENTATION: 3,
    TaskType.DESIGN: 2,
    TaskType.DEBUG: 2,
    TaskType.REVIEW: 2,
    TaskType.REQUIREMENTS: 1,
    TaskType.TASKS: 1,
}


def _clamp(value: float) -> float:
    return max(1.0, min(10.0, value))


def _contains_any(text: str, keywords: list[str]) -> Optional[str]:
    for keyword in keywords:
        if re.search(rf"\b{re.escape(keyword)}\b", text):
            return keyword
    return None


class ComplexityRecommender:
    """Recommends a mode from a weighted complexity score."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        self.threshold = threshold

    def recommend(self, task: TaskDescriptor) -> ModeRecommendation:
        """Score a task and recommend a mode.

        Args:
            task: The task to analyze

        Returns:
            ModeRecommendation with score, confidence and reasons
        """
        score = self.analyze(task)
        mode = ExecutionMode.REMOTE if score.total >= self.threshold else ExecutionMode.LOCAL
        return ModeRecommendation(
            mode=mode,
            score=score.total,
            confidence=self.calculate_confidence(score),
            reasons=self.generate_reasons(score),
            complexity=score,
        )

    def analyze(self, task: TaskDescriptor) -> ComplexityScore:
        """Calculate the complexity score of a task."""
        text = self._task_text(task)
        details = self._collect_details(task, text)

        code_scale = self._code_scale(details)
        technical_difficulty = self._technical_difficulty(text, details)
        business_impact = self._business_impact(task, details)

        total = (
            code_scale * WEIGHTS["code_scale"]
            + technical_difficulty * WEIGHTS["technical_difficulty"]
            + business_impact * WEIGHTS["business_impact"]
        )

        return ComplexityScore(
            total=round(total, 1),
            code_scale=code_scale,
            technical_difficulty=technical_difficulty,
            business_impact=business_impact,
            details=details,
        )

    def _task_text(self, task: TaskDescriptor) -> str:
        parts = [task.description, task.context.requirements or "", task.context.design or ""]
        return " ".join(parts).lower()

    def _collect_details(self, task: TaskDescriptor, text: str) -> ComplexityDetails:
        file_count = len(task.related_files)
        if file_count == 0:
            mentioned = set(FILE_PATTERN.findall(task.description))
            file_count = len(mentioned) or ESTIMATED_FILES_BY_TYPE.get(task.type, 1)

        is_refactor = _contains_any(text, ["refactor", "restructure"]) is not None
        if is_refactor and file_count > 1:
            refactoring_scope = "multiple"
        elif is_refactor:
            refactoring_scope = "single"
        else:
            refactoring_scope = "none"

        return ComplexityDetails(
            file_count=file_count,
            involves_ast_modification=_contains_any(text, AST_KEYWORDS) is not None,
            involves_async_complexity=_contains_any(text, ASYNC_KEYWORDS) is not None,
            involves_new_technology=_contains_any(text, NEW_TECHNOLOGY_KEYWORDS) is not None,
            requires_database_migration=_contains_any(text, DATABASE_KEYWORDS) is not None,
            cross_module_impact=(
                _contains_any(text, CROSS_MODULE_KEYWORDS) is not None or file_count >= 5
            ),
            affects_core_api=_contains_any(text, CORE_API_KEYWORDS) is not None,
            refactoring_scope=refactoring_scope,
        )

    def _code_scale(self, details: ComplexityDetails) -> float:
        score = 1.0 + min(details.file_count, 10) * 0.8
        # Cross-file refactoring adds at least one point
        if details.refactoring_scope == "multiple":
            score += 1.0
        return _clamp(round(score, 1))

    def _technical_difficulty(self, text: str, details: ComplexityDetails) -> float:
        score = 2.0
        if details.involves_ast_modification:
            score += 3.0
        if details.involves_async_complexity:
            score += 2.0
        if details.involves_new_technology:
            score += 1.5
        if details.requires_database_migration:
            score += 2.0
        if _contains_any(text, COMPLEXITY_KEYWORDS):
            score += 1.0
        if _contains_any(text, SIMPLE_KEYWORDS):
            score -= 1.0
        return _clamp(score)

    def _business_impact(self, task: TaskDescriptor, details: ComplexityDetails) -> float:
        score = 2.0
        if details.cross_module_impact:
            score += 3.0
        if details.affects_core_api:
            score += 3.0
        if task.type in (TaskType.DESIGN, TaskType.REQUIREMENTS):
            score += 1.0
        return _clamp(score)

    def generate_reasons(self, score: ComplexityScore) -> list[str]:
        """Human-readable reasons behind a score."""
        reasons = []
        details = score.details

        if score.code_scale >= 7:
            reasons.append(
                f"Large code scale ({score.code_scale:.1f}/10) - involves {details.file_count} files"
            )
        elif score.code_scale >= 5:
            reasons.append(f"Medium code scale ({score.code_scale:.1f}/10)")

        if score.technical_difficulty >= 8:
            factors = []
            if details.involves_ast_modification:
                factors.append("AST modification")
            if details.involves_async_complexity:
                factors.append("async/concurrency")
            if details.involves_new_technology:
                factors.append("new technology")
            if details.requires_database_migration:
                factors.append("database migration")
            suffix = f" - includes: {', '.join(factors)}" if factors else ""
            reasons.append(
                f"Very high technical difficulty ({score.technical_difficulty:.1f}/10){suffix}"
            )
        elif score.technical_difficulty >= 6:
            reasons.append(f"High technical difficulty ({score.technical_difficulty:.1f}/10)")

        if score.business_impact >= 7:
            factors = []
            if details.cross_module_impact:
                factors.append("spans multiple modules")
            if details.affects_core_api:
                factors.append("affects core API")
            suffix = f" - {', '.join(factors)}" if factors else ""
            reasons.append(f"Wide business impact ({score.business_impact:.1f}/10){suffix}")
        elif score.business_impact >= 5:
            reasons.append(f"Moderate business impact ({score.business_impact:.1f}/10)")

        if details.refactoring_scope == "multiple":
            reasons.append("Requires cross-file refactoring")

        if not reasons:
            if score.total >= self.threshold:
                reasons.append("Overall complexity is high, deep analysis recommended")
            else:
                reasons.append("Moderate complexity, the local agent can handle this")

        return reasons

    @staticmethod
    def calculate_confidence(score: ComplexityScore) -> float:
        """Confidence (0-100) from how much the three dimensions agree.

        Low spread between dimensions means high confidence; totals near
        either end of the scale add a bonus.
        """
        values = [score.code_scale, score.technical_difficulty, score.business_impact]
        mean = sum(values) / len(values)
        variance = sum((v - mean) ** 2 for v in values) / len(values)
        confidence = max(0.0, 100.0 - math.sqrt(variance) * 10)

        if score.total >= 9 or score.total <= 2:
            confidence += 10
        elif score.total >= 8 or score.total <= 3:
            confidence += 5

        return round(min(100.0, confidence), 1)
