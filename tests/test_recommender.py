"""Tests for the complexity recommender."""

import pytest

from taskledger.models import (
    ComplexityDetails, ComplexityScore, ExecutionMode, TaskContext, TaskType,
)
from taskledger.protocols import Recommender
from taskledger.recommender import ComplexityRecommender

from conftest import make_task

COMPLEX_DESCRIPTION = (
    "Refactor the AST parser to use async concurrency across modules, "
    "a breaking change to the public API that needs a database migration"
)
COMPLEX_FILES = [f"src/module_{i}.py" for i in range(6)]


@pytest.fixture
def recommender():
    return ComplexityRecommender()


class TestRecommend:
    """Test mode recommendation."""

    def test_simple_task_stays_local(self, recommender):
        recommendation = recommender.recommend(make_task(description="Fix typo in README"))

        assert recommendation.mode == ExecutionMode.LOCAL
        assert recommendation.score < 7
        assert recommendation.reasons

    def test_complex_task_goes_remote(self, recommender):
        task = make_task(description=COMPLEX_DESCRIPTION, related_files=COMPLEX_FILES)

        recommendation = recommender.recommend(task)

        assert recommendation.mode == ExecutionMode.REMOTE
        assert recommendation.score >= 7
        assert recommendation.complexity.details.refactoring_scope == "multiple"
        assert "Requires cross-file refactoring" in recommendation.reasons

    def test_threshold_is_inclusive(self):
        """A score equal to the threshold recommends remote."""
        task = make_task(description="Fix typo in README")
        score = ComplexityRecommender().analyze(task).total

        assert ComplexityRecommender(threshold=score).recommend(task).mode == ExecutionMode.REMOTE

    def test_satisfies_protocol(self, recommender):
        assert isinstance(recommender, Recommender)

    def test_is_deterministic(self, recommender):
        task = make_task(description=COMPLEX_DESCRIPTION, related_files=COMPLEX_FILES)
        assert recommender.recommend(task) == recommender.recommend(task)


class TestAnalyze:
    """Test complexity analysis."""

    def test_weights(self, recommender):
        score = recommender.analyze(make_task(description=COMPLEX_DESCRIPTION, related_files=COMPLEX_FILES))

        expected = score.code_scale * 0.3 + score.technical_difficulty * 0.4 + score.business_impact * 0.3
        assert score.total == round(expected, 1)

    def test_detects_factors(self, recommender):
        details = recommender.analyze(
            make_task(description=COMPLEX_DESCRIPTION, related_files=COMPLEX_FILES)
        ).details

        assert details.file_count == 6
        assert details.involves_ast_modification
        assert details.involves_async_complexity
        assert details.requires_database_migration
        assert details.cross_module_impact
        assert details.affects_core_api

    def test_counts_files_named_in_description(self, recommender):
        details = recommender.analyze(
            make_task(description="Update config.py and utils/helpers.py")
        ).details

        assert details.file_count == 2

    def test_estimates_files_by_task_type(self, recommender):
        details = recommender.analyze(
            make_task(description="Write the requirements", type=TaskType.REQUIREMENTS)
        ).details

        assert details.file_count == 1

    def test_keywords_match_whole_words(self, recommender):
        """'last' must not count as an AST keyword."""
        details = recommender.analyze(make_task(description="Show the last value")).details

        assert not details.involves_ast_modification

    def test_reads_context_documents(self, recommender):
        task = make_task(
            description="Implement the design",
            context=TaskContext(design="Requires a schema migration"),
        )

        assert recommender.analyze(task).details.requires_database_migration

    def test_design_tasks_have_more_impact(self, recommender):
        implementation = recommender.analyze(make_task(description="Plan the work"))
        design = recommender.analyze(make_task(description="Plan the work", type=TaskType.DESIGN))

        assert design.business_impact == implementation.business_impact + 1

    def test_scores_are_clamped(self, recommender):
        task = make_task(
            description=COMPLEX_DESCRIPTION + " introduce a new framework, optimize performance",
            related_files=[f"f{i}.py" for i in range(30)],
        )
        score = recommender.analyze(task)

        for value in (score.code_scale, score.technical_difficulty, score.business_impact):
            assert 1 <= value <= 10


class TestConfidence:
    """Test confidence calculation."""

    def test_agreeing_dimensions_are_confident(self):
        score = ComplexityScore(total=5, code_scale=5, technical_difficulty=5, business_impact=5)
        assert ComplexityRecommender.calculate_confidence(score) == 100.0

    def test_spread_lowers_confidence(self):
        score = ComplexityScore(total=5, code_scale=1, technical_difficulty=9, business_impact=5)
        assert ComplexityRecommender.calculate_confidence(score) < 80

    def test_extreme_totals_add_bonus(self):
        middle = ComplexityScore(total=5, code_scale=4, technical_difficulty=6, business_impact=5)
        high = ComplexityScore(total=9.5, code_scale=4, technical_difficulty=6, business_impact=5)

        assert ComplexityRecommender.calculate_confidence(high) == min(
            100.0, ComplexityRecommender.calculate_confidence(middle) + 10
        )


class TestReasons:
    """Test reason generation."""

    def test_fallback_reason_for_moderate_task(self, recommender):
        score = ComplexityScore(
            total=3, code_scale=3, technical_difficulty=3, business_impact=3,
            details=ComplexityDetails(file_count=2),
        )

        assert recommender.generate_reasons(score) == [
            "Moderate complexity, the local agent can handle this"
        ]

    def test_difficulty_reason_lists_factors(self, recommender):
        score = ComplexityScore(
            total=6, code_scale=3, technical_difficulty=9, business_impact=3,
            details=ComplexityDetails(involves_ast_modification=True, involves_async_complexity=True),
        )

        reasons = recommender.generate_reasons(score)

        assert any("AST modification" in r and "async/concurrency" in r for r in reasons)
