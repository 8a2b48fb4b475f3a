"""
Quality Gate and Auto-Rewrite Loop for SerialForge

Generated installments are never trusted on the first pass. The gate scores a
draft on four dimensions and decides what happens next:
- accept: the draft is good enough
- auto_rewrite: regenerate with the previous draft and a deficiency list
- manual_review: keep the draft but flag it for a human

Key concepts:
- QualityGate.evaluate is a pure function of (draft, context), so scoring the
  same draft twice always yields the same action
- AutoRewriter bounds regeneration; when nothing clears the bar the
  best-scoring attempt is accepted and flagged
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import QualitySettings
from .canon import CanonResolver
from .errors import RunCancelledError
from .memory import count_words, extract_closing, extract_opening, split_paragraphs, split_sentences

logger = logging.getLogger("serialforge.quality")

_WORD_RE = re.compile(r"[a-z0-9']+")
_DIALOGUE_RE = re.compile(r"\"[^\"]*\"|“[^”]*”")


class QualityDimension(str, Enum):
    STYLE = "style"
    CONSISTENCY = "consistency"
    VARIETY = "variety"
    STRUCTURE = "structure"


class QualityAction(str, Enum):
    ACCEPT = "accept"
    AUTO_REWRITE = "auto_rewrite"
    MANUAL_REVIEW = "manual_review"


@dataclass
class InstallmentDraft:
    title: str
    content: str

    @property
    def word_count(self) -> int:
        return count_words(self.content)


@dataclass
class QualityContext:
    """What the gate compares a draft against."""
    installment: int
    target_words: int
    prior_titles: List[str] = field(default_factory=list)
    prior_openings: List[str] = field(default_factory=list)
    prior_closings: List[str] = field(default_factory=list)
    canon: Optional[CanonResolver] = None


@dataclass
class QualityReport:
    overall: float
    scores: Dict[QualityDimension, float]
    action: QualityAction
    failures: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def deficiencies(self) -> List[str]:
        return self.failures + self.warnings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall,
            "scores": {d.value: s for d, s in self.scores.items()},
            "action": self.action.value,
            "failures": list(self.failures),
            "warnings": list(self.warnings),
        }


def word_set(text: str) -> set:
    return set(_WORD_RE.findall((text or "").lower()))


def jaccard_similarity(a: str, b: str) -> float:
    words_a, words_b = word_set(a), word_set(b)
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def dialogue_ratio(content: str) -> float:
    if not content:
        return 0.0
    quoted = sum(len(m) for m in _DIALOGUE_RE.findall(content))
    return quoted / len(content)


class QualityGate:
    """Deterministic heuristic scorer."""

    def __init__(self, settings: Optional[QualitySettings] = None):
        self.settings = settings or QualitySettings()

    def evaluate(self, draft: InstallmentDraft, context: QualityContext) -> QualityReport:
        failures: List[str] = []
        warnings: List[str] = []
        scores = {
            QualityDimension.STYLE: self._score_style(draft, failures, warnings),
            QualityDimension.CONSISTENCY: self._score_consistency(draft, context, failures, warnings),
            QualityDimension.VARIETY: self._score_variety(draft, context, failures, warnings),
            QualityDimension.STRUCTURE: self._score_structure(draft, context, failures, warnings),
        }

        for dimension, score in scores.items():
            if score < self.settings.dimension_floor:
                failures.append(f"{dimension.value} score {score:.0f} is below {self.settings.dimension_floor}")

        overall = round(self._weighted(scores), 1)
        action = self._decide(overall, failures)
        return QualityReport(overall=overall, scores=scores, action=action, failures=failures, warnings=warnings)

    def _weighted(self, scores: Dict[QualityDimension, float]) -> float:
        s = self.settings
        weights = {
            QualityDimension.STYLE: s.style_weight,
            QualityDimension.CONSISTENCY: s.consistency_weight,
            QualityDimension.VARIETY: s.variety_weight,
            QualityDimension.STRUCTURE: s.structure_weight,
        }
        total = sum(weights.values())
        if total <= 0:
            return sum(scores.values()) / len(scores)
        return sum(scores[d] * w for d, w in weights.items()) / total

    def _decide(self, overall: float, failures: List[str]) -> QualityAction:
        if overall < self.settings.auto_rewrite_below or len(failures) >= 2:
            return QualityAction.AUTO_REWRITE
        if overall < self.settings.accept_threshold or failures:
            return QualityAction.MANUAL_REVIEW
        return QualityAction.ACCEPT

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    def _score_style(self, draft: InstallmentDraft, failures: List[str], warnings: List[str]) -> float:
        score = 100.0
        ratio = dialogue_ratio(draft.content)
        if ratio < 0.1 or ratio > 0.6:
            score -= 15
            warnings.append(f"Dialogue makes up {ratio:.0%} of the text; aim for 10-60%")

        paragraphs = split_paragraphs(draft.content)
        if paragraphs:
            avg = sum(len(p) for p in paragraphs) / len(paragraphs)
            if avg > 500:
                score -= 10
                warnings.append("Paragraphs are too long on average; break up dense blocks")
            elif avg < 50:
                score -= 10
                warnings.append("Paragraphs are too short on average; develop scenes more fully")

        sentences = split_sentences(draft.content)
        if len(sentences) >= 10:
            openers: Dict[str, int] = {}
            for sentence in sentences:
                first = sentence.split()[0].lower().strip("\"'“")
                openers[first] = openers.get(first, 0) + 1
            word, count = max(openers.items(), key=lambda kv: kv[1])
            if count / len(sentences) > 0.3:
                score -= 10
                warnings.append(f"Too many sentences start with '{word}'")
        return max(0.0, score)

    def _score_consistency(
        self,
        draft: InstallmentDraft,
        context: QualityContext,
        failures: List[str],
        warnings: List[str],
    ) -> float:
        score = 100.0
        if context.canon is None:
            return score
        for name, sentence in context.canon.find_dead_appearances(draft.content):
            score -= 40
            failures.append(f"Dead character '{name}' appears alive: {sentence[:120]}")
        critical = context.canon.get_critical_issues()
        if critical:
            warnings.append(f"{len(critical)} critical continuity issue(s) are still open")
        return max(0.0, score)

    def _score_variety(
        self,
        draft: InstallmentDraft,
        context: QualityContext,
        failures: List[str],
        warnings: List[str],
    ) -> float:
        score = 100.0
        limit = self.settings.title_similarity_limit
        for title in context.prior_titles:
            if jaccard_similarity(draft.title, title) >= limit:
                score -= 30
                failures.append(f"Title is too similar to earlier title '{title}'")
                break

        opening = extract_opening(draft.content)
        for prior in context.prior_openings:
            if jaccard_similarity(opening, prior) >= limit:
                score -= 20
                warnings.append("Opening line mirrors an earlier installment; open differently")
                break

        closing = extract_closing(draft.content)
        for prior in context.prior_closings:
            if jaccard_similarity(closing, prior) >= limit:
                score -= 20
                warnings.append("Closing hook mirrors an earlier installment; end with a different kind of hook")
                break

        paragraphs = split_paragraphs(draft.content)
        if len(paragraphs) >= 4:
            duplicated = len(paragraphs) - len(set(paragraphs))
            if duplicated / len(paragraphs) > 0.2:
                score -= 20
                warnings.append("Paragraphs repeat within the installment")
        return max(0.0, score)

    def _score_structure(
        self,
        draft: InstallmentDraft,
        context: QualityContext,
        failures: List[str],
        warnings: List[str],
    ) -> float:
        score = 100.0
        words = draft.word_count
        target = context.target_words
        if words < target * 0.5:
            score -= 50
            failures.append(f"Installment is far too short ({words} words, target {target})")
        elif words < target * 0.8:
            score -= 20
            warnings.append(f"Installment is short ({words} words, target {target})")
        elif words > target * 1.5:
            score -= 10
            warnings.append(f"Installment is long ({words} words, target {target})")

        if not draft.title.strip():
            score -= 10
            warnings.append("Installment has no title")

        if words > 300 and len(split_paragraphs(draft.content)) < 2:
            score -= 15
            warnings.append("Installment is a single block of text; use paragraphs")
        return max(0.0, score)


@dataclass
class RewriteOutcome:
    draft: InstallmentDraft
    report: QualityReport
    attempts: int
    needs_review: bool
    history: List[QualityReport] = field(default_factory=list)


RewriteFn = Callable[[InstallmentDraft, List[str], int], Awaitable[InstallmentDraft]]


class AutoRewriter:
    """
    Bounded regeneration loop.

    ``generate`` receives the previous draft, its deficiency list and the
    attempt number and returns a new draft built from the same context.
    """

    def __init__(self, gate: QualityGate, max_attempts: Optional[int] = None):
        self.gate = gate
        self.max_attempts = gate.settings.max_rewrite_attempts if max_attempts is None else max_attempts

    async def run(self, generate: RewriteFn, draft: InstallmentDraft, context: QualityContext) -> RewriteOutcome:
        report = self.gate.evaluate(draft, context)
        history = [report]

        if report.action == QualityAction.ACCEPT:
            return RewriteOutcome(draft, report, attempts=0, needs_review=False, history=history)
        if report.action == QualityAction.MANUAL_REVIEW:
            logger.info(
                f"[run] Installment {context.installment} flagged for review "
                f"(score {report.overall}): {report.deficiencies[:3]}"
            )
            return RewriteOutcome(draft, report, attempts=0, needs_review=True, history=history)

        candidates = [(draft, report)]
        current, current_report = draft, report
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            logger.info(
                f"[run] Rewriting installment {context.installment}, attempt {attempt}/{self.max_attempts} "
                f"(score {current_report.overall})"
            )
            try:
                rewritten = await generate(current, current_report.deficiencies, attempt)
            except RunCancelledError:
                raise
            except Exception as e:
                logger.warning(f"[run] Rewrite attempt {attempt} for installment {context.installment} failed: {e}")
                break

            rewritten_report = self.gate.evaluate(rewritten, context)
            history.append(rewritten_report)
            if rewritten_report.action == QualityAction.ACCEPT:
                return RewriteOutcome(rewritten, rewritten_report, attempts=attempt, needs_review=False, history=history)
            candidates.append((rewritten, rewritten_report))
            current, current_report = rewritten, rewritten_report

        best_draft, best_report = max(candidates, key=lambda c: c[1].overall)
        logger.warning(
            f"[run] Installment {context.installment} did not clear the gate after {attempts} rewrite(s); "
            f"accepting best attempt (score {best_report.overall}) for review"
        )
        return RewriteOutcome(best_draft, best_report, attempts=attempts, needs_review=True, history=history)
