"""
Hierarchical Context Assembler for SerialForge

Builds the size-bounded context payload for one installment from ordered
layers:
1.  Global bible
1b. Canon block (facts, dead entities, world constraints)
2.  Rolling synopsis
3.  Last-N raw installments (shrinks oldest-first to fit)
4.  Arc plan, installment brief and plot objectives
4b. Beat restrictions
5.  Anti-repetition lists (titles, openings, closings)

Key concepts:
- Each layer is a named async loader; a loader that raises is logged and the
  layer is omitted, the others keep their relative order
- A layer is added only while the running estimate stays within the budget,
  so the payload never exceeds it
- Context tier (full / medium / minimal) picks the budget and how many raw
  installments are considered
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Union

from ..config import ContextSettings
from .arcs import Arc, ArcPlanner
from .beats import BeatLedger
from .canon import CanonResolver
from .constraints import WorldConstraint, format_constraints_for_prompt, get_relevant_constraints, keywords_from
from .memory import StoryMemory

logger = logging.getLogger("serialforge.context")

LayerContent = Union[str, List[str], None]


class ContextLevel(str, Enum):
    FULL = "full"
    MEDIUM = "medium"
    MINIMAL = "minimal"


def estimate_tokens(text: str) -> int:
    """Rough estimate: ~1.3 tokens per word for English."""
    if not text:
        return 0
    return int(math.ceil(len(text.split()) * 1.3))


def determine_context_level(installment: int, arc: Optional[Arc], golden_installments: int = 3) -> ContextLevel:
    if installment <= golden_installments:
        return ContextLevel.FULL
    if arc is None:
        return ContextLevel.MEDIUM
    position = arc.position(installment)
    if position == 0 or position >= arc.size - 2:
        return ContextLevel.FULL
    ratio = position / arc.size
    if 0.7 <= ratio <= 0.9:
        return ContextLevel.MEDIUM
    return ContextLevel.MINIMAL


@dataclass
class ContextSection:
    name: str
    content: str
    title: Optional[str] = None

    def render(self) -> str:
        if self.title:
            return f"=== {self.title} ===\n{self.content}"
        return self.content

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.render())


@dataclass
class ContextLayer:
    name: str
    loader: Callable[[], Awaitable[LayerContent]]
    title: Optional[str] = None


@dataclass
class ContextPayload:
    """Assembled context for one installment. Never persisted."""
    installment: int
    level: ContextLevel
    budget: int
    sections: List[ContextSection] = field(default_factory=list)
    failed_layers: List[str] = field(default_factory=list)
    skipped_layers: List[str] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(s.tokens for s in self.sections)

    @property
    def layer_names(self) -> List[str]:
        return [s.name for s in self.sections]

    def get(self, name: str) -> Optional[ContextSection]:
        for section in self.sections:
            if section.name == name:
                return section
        return None

    def render(self) -> str:
        return "\n\n".join(s.render() for s in self.sections)


class HierarchicalContextAssembler:
    """
    Composes ContextPayloads.

    ``assemble`` is the generic budgeted pass over arbitrary layers;
    ``build`` wires the standard layers from a story's memory, canon, arc
    planner and beat ledger.
    """

    def __init__(self, settings: Optional[ContextSettings] = None):
        self.settings = settings or ContextSettings()

    def budget_for(self, level: ContextLevel) -> int:
        return {
            ContextLevel.FULL: self.settings.full_budget,
            ContextLevel.MEDIUM: self.settings.medium_budget,
            ContextLevel.MINIMAL: self.settings.minimal_budget,
        }[level]

    def recent_count_for(self, level: ContextLevel) -> int:
        return {
            ContextLevel.FULL: self.settings.full_recent,
            ContextLevel.MEDIUM: self.settings.medium_recent,
            ContextLevel.MINIMAL: self.settings.minimal_recent,
        }[level]

    async def assemble(
        self,
        layers: List[ContextLayer],
        budget: int,
        installment: int = 0,
        level: ContextLevel = ContextLevel.FULL,
    ) -> ContextPayload:
        payload = ContextPayload(installment=installment, level=level, budget=budget)
        used = 0

        for layer in layers:
            try:
                content = await layer.loader()
            except Exception as e:
                logger.warning(f"[assemble] Layer '{layer.name}' failed for installment {installment}, omitting: {e}")
                payload.failed_layers.append(layer.name)
                continue

            if not content:
                continue

            if isinstance(content, list):
                chunks = [c for c in content if c]
                section = None
                # Drop oldest chunks until the layer fits
                while chunks:
                    candidate = ContextSection(layer.name, "\n\n".join(chunks), layer.title)
                    if used + candidate.tokens <= budget:
                        section = candidate
                        break
                    chunks = chunks[1:]
            else:
                section = ContextSection(layer.name, content, layer.title)
                if used + section.tokens > budget:
                    section = None

            if section is None:
                payload.skipped_layers.append(layer.name)
                continue

            payload.sections.append(section)
            used += section.tokens

        logger.debug(
            f"[assemble] Installment {installment} ({level.value}): {used}/{budget} tokens, "
            f"layers={payload.layer_names}, failed={payload.failed_layers}, skipped={payload.skipped_layers}"
        )
        return payload

    async def build(
        self,
        installment: int,
        memory: StoryMemory,
        canon: CanonResolver,
        arcs: ArcPlanner,
        beats: BeatLedger,
        constraints: Optional[List[WorldConstraint]] = None,
        target_installments: Optional[int] = None,
    ) -> ContextPayload:
        arc = arcs.ensure_arc(installment)
        level = determine_context_level(installment, arc, self.settings.golden_installments)
        recent_count = self.recent_count_for(level)
        s = self.settings

        async def load_bible() -> LayerContent:
            return memory.bible

        async def load_canon() -> LayerContent:
            parts = []
            dead = canon.dead_entities()
            if dead:
                parts.append("DEAD (must not appear alive): " + ", ".join(dead))
            block = canon.build_canon_context(installment=installment)
            if block:
                parts.append(block)
            if constraints:
                recent_text = " ".join(text for _, _, text in memory.recent_installments(installment, 1))
                keywords = keywords_from(arc.plan, arc.briefs.get(installment), recent_text)
                relevant = get_relevant_constraints(constraints, keywords)
                block = format_constraints_for_prompt(relevant)
                if block:
                    parts.append(block)
            return "\n\n".join(parts)

        async def load_synopsis() -> LayerContent:
            return memory.synopsis.render()

        async def load_recent() -> LayerContent:
            return [
                f"--- Installment {n}: {title} ---\n{text}"
                for n, title, text in memory.recent_installments(installment, recent_count)
            ]

        async def load_plan() -> LayerContent:
            parts = []
            if arc.plan:
                parts.append(f"Arc {arc.arc_number} ({arc.start_installment}-{arc.end_installment}): {arc.plan}")
            brief = arc.briefs.get(installment)
            if brief:
                parts.append(f"Installment {installment} brief: {brief}")
            parts.append(arcs.generate_plot_objectives(installment, target_installments))
            return "\n\n".join(parts)

        async def load_beats() -> LayerContent:
            restrictions = beats.format_restrictions(installment)
            recs = beats.get_recommendations(installment, arc.start_installment, arc.end_installment)
            lines = [restrictions] if restrictions else []
            if recs.suggested:
                lines.append("CONSIDER: " + ", ".join(recs.suggested))
            return "\n".join(lines)

        async def load_anti_repetition() -> LayerContent:
            parts = []
            titles = memory.prior_titles(s.max_prior_titles)
            if titles:
                parts.append(
                    "Previous titles (the new title must not resemble any of these):\n"
                    + "\n".join(f"- {t}" for t in titles)
                )
            openings = memory.prior_openings(s.max_prior_openings)
            if openings:
                parts.append(
                    "Previous opening lines (open with a structurally different first sentence):\n"
                    + "\n".join(f"- {o}" for o in openings)
                )
            closings = memory.prior_closings(s.max_prior_closings)
            if closings:
                parts.append(
                    "Previous closing lines (end with a different kind of hook):\n"
                    + "\n".join(f"- {c}" for c in closings)
                )
            return "\n\n".join(parts)

        layers = [
            ContextLayer("bible", load_bible, "STORY BIBLE"),
            ContextLayer("canon", load_canon),
            ContextLayer("synopsis", load_synopsis, "STORY SO FAR"),
            ContextLayer("recent", load_recent, "RECENT INSTALLMENTS"),
            ContextLayer("arc_plan", load_plan, "ARC PLAN"),
            ContextLayer("beats", load_beats, "BEAT RESTRICTIONS"),
            ContextLayer("anti_repetition", load_anti_repetition, "DO NOT REPEAT"),
        ]
        return await self.assemble(layers, self.budget_for(level), installment=installment, level=level)
