"""
Unit tests for the quality gate and the auto-rewrite loop.

Tests cover:
- Dimension scoring and the accept / auto_rewrite / manual_review decision
- Deterministic evaluation
- Bounded rewriting with best-attempt fallback
"""

import pytest
from unittest.mock import AsyncMock

from serialforge.config import QualitySettings
from serialforge.core.canon import CanonResolver
from serialforge.core.errors import RunCancelledError
from serialforge.core.quality import (
    AutoRewriter,
    InstallmentDraft,
    QualityAction,
    QualityContext,
    QualityDimension,
    QualityGate,
    dialogue_ratio,
    jaccard_similarity,
)
from conftest import installment_text


def good_draft(n=1, title=None):
    return InstallmentDraft(title=title or f"Lantern Night {n}", content=installment_text(n))


class TestHelpers:
    """Tests for the similarity helpers."""

    def test_jaccard_similarity(self):
        assert jaccard_similarity("The Red Door", "the red door") == 1.0
        assert jaccard_similarity("a b", "c d") == 0.0
        assert jaccard_similarity("", "anything") == 0.0

    def test_dialogue_ratio(self):
        assert dialogue_ratio("") == 0.0
        assert dialogue_ratio('"Hi"') == 1.0
        assert 0.0 < dialogue_ratio('She said "hi" quietly.') < 0.5


class TestQualityGate:
    """Tests for QualityGate.evaluate."""

    def setup_method(self):
        self.gate = QualityGate(QualitySettings(target_words=50))
        self.context = QualityContext(installment=2, target_words=50)

    def test_clean_draft_is_accepted(self):
        report = self.gate.evaluate(good_draft(), self.context)

        assert report.action == QualityAction.ACCEPT
        assert report.overall == 100.0
        assert report.failures == []

    def test_evaluation_is_deterministic(self):
        draft = InstallmentDraft(title="Fragment", content="Too short to publish.")

        first = self.gate.evaluate(draft, self.context)
        second = self.gate.evaluate(draft, self.context)

        assert first.to_dict() == second.to_dict()

    def test_single_failure_goes_to_manual_review(self):
        report = self.gate.evaluate(InstallmentDraft(title="Fragment", content="Too short to publish."), self.context)

        assert report.scores[QualityDimension.STRUCTURE] == 50
        assert len(report.failures) == 1
        assert report.action == QualityAction.MANUAL_REVIEW

    def test_two_failures_trigger_rewrite(self):
        context = QualityContext(installment=2, target_words=50, prior_titles=["Fragment"])

        report = self.gate.evaluate(InstallmentDraft(title="Fragment", content="Too short to publish."), context)

        assert len(report.failures) == 2
        assert report.action == QualityAction.AUTO_REWRITE

    def test_dead_character_fails_consistency(self):
        canon = CanonResolver()
        canon.mark_dead("Oren", installment=1)
        context = QualityContext(installment=2, target_words=50, canon=canon)

        report = self.gate.evaluate(good_draft(), context)

        assert report.scores[QualityDimension.CONSISTENCY] == 60
        assert any("Oren" in f for f in report.failures)
        assert report.action == QualityAction.MANUAL_REVIEW
        # Scoring never files issues
        assert canon.issues == []

    def test_repeated_opening_and_closing_are_warnings(self):
        draft = good_draft(3)
        context = QualityContext(
            installment=4,
            target_words=50,
            prior_openings=[installment_text(3).split(". ")[0] + "."],
            prior_closings=["Far below, something answered her call."],
        )

        report = self.gate.evaluate(draft, context)

        assert report.scores[QualityDimension.VARIETY] == 60
        assert len(report.warnings) == 2
        assert report.failures == []
        assert report.action == QualityAction.ACCEPT

    def test_long_draft_warning(self):
        draft = InstallmentDraft(title="Long", content="\n\n".join([installment_text(1)] * 2))

        report = self.gate.evaluate(draft, self.context)

        assert any("long" in w for w in report.warnings)


class TestAutoRewriter:
    """Tests for AutoRewriter.run."""

    def setup_method(self):
        self.gate = QualityGate(QualitySettings(target_words=50, max_rewrite_attempts=2))
        self.rewriter = AutoRewriter(self.gate)
        self.bad = InstallmentDraft(title="Fragment", content="Too short to publish.")
        self.context = QualityContext(installment=5, target_words=50, prior_titles=["Fragment"])

    @pytest.mark.asyncio
    async def test_accepted_draft_skips_rewriting(self):
        generate = AsyncMock()

        outcome = await self.rewriter.run(generate, good_draft(5), self.context)

        assert outcome.attempts == 0
        assert outcome.needs_review is False
        generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_manual_review_is_not_rewritten(self):
        generate = AsyncMock()
        context = QualityContext(installment=5, target_words=50)

        outcome = await self.rewriter.run(generate, self.bad, context)

        assert outcome.needs_review is True
        assert outcome.draft is self.bad
        generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_rewrite_until_accepted(self):
        fixed = good_draft(5, title="Lantern Night Revised")
        generate = AsyncMock(return_value=fixed)

        outcome = await self.rewriter.run(generate, self.bad, self.context)

        assert outcome.draft is fixed
        assert outcome.attempts == 1
        assert outcome.needs_review is False
        previous, deficiencies, attempt = generate.await_args.args
        assert previous is self.bad
        assert any("too short" in d for d in deficiencies)
        assert attempt == 1

    @pytest.mark.asyncio
    async def test_best_attempt_is_kept_when_nothing_passes(self):
        generate = AsyncMock(return_value=InstallmentDraft(title="Fragment", content="Still short."))

        outcome = await self.rewriter.run(generate, self.bad, self.context)

        assert outcome.attempts == 2
        assert generate.await_count == 2
        assert outcome.needs_review is True
        assert outcome.report.overall == max(r.overall for r in outcome.history)
        assert len(outcome.history) == 3

    @pytest.mark.asyncio
    async def test_failed_rewrite_stops_the_loop(self):
        generate = AsyncMock(side_effect=RuntimeError("provider down"))

        outcome = await self.rewriter.run(generate, self.bad, self.context)

        assert outcome.draft is self.bad
        assert outcome.attempts == 1
        assert outcome.needs_review is True

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        generate = AsyncMock(side_effect=RunCancelledError("stopped"))

        with pytest.raises(RunCancelledError):
            await self.rewriter.run(generate, self.bad, self.context)

    @pytest.mark.asyncio
    async def test_zero_attempts_flags_immediately(self):
        rewriter = AutoRewriter(self.gate, max_attempts=0)
        generate = AsyncMock()

        outcome = await rewriter.run(generate, self.bad, self.context)

        assert outcome.attempts == 0
        assert outcome.needs_review is True
        generate.assert_not_called()
