"""
Constraint Extractor for SerialForge

One-shot distillation of the foundational world document into structured
constraints:
- immutable: breaking it is a continuity error. Registered in the canon at
  world-bible authority and always included in context
- mutable: changing it is a legitimate plot development. Included only when
  keyword or subject matching makes it relevant, under a hard cap
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.schemas import ExtractedConstraint, validate_entries
from ..prompts import EXTRACTOR_SYSTEM_PROMPT, EXTRACTOR_USER_PROMPT_TEMPLATE
from .canon import CanonFact, CanonLevel, CanonResolver, FactCategory
from .json_repair import parse_json_list

logger = logging.getLogger("serialforge.constraints")

MAX_RELEVANT_CONSTRAINTS = 30
MAX_IMMUTABLE_IN_CONTEXT = 20


class ConstraintCategory(str, Enum):
    QUANTITY = "quantity"
    HIERARCHY = "hierarchy"
    RULE = "rule"
    GEOGRAPHY = "geography"
    CHARACTER_LIMIT = "character_limit"
    POWER_CAP = "power_cap"

    @classmethod
    def parse(cls, value: Any) -> "ConstraintCategory":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.RULE


CANON_CATEGORY: Dict[ConstraintCategory, FactCategory] = {
    ConstraintCategory.CHARACTER_LIMIT: FactCategory.CHARACTER,
    ConstraintCategory.POWER_CAP: FactCategory.POWER,
}


@dataclass
class WorldConstraint:
    subject: str
    predicate: str
    value: str
    context: str
    category: ConstraintCategory = ConstraintCategory.RULE
    immutable: bool = True

    @property
    def key(self) -> Tuple[str, str]:
        return (self.subject.strip().lower(), self.predicate.strip().lower())

    def to_canon_fact(self) -> CanonFact:
        return CanonFact(
            subject=self.subject,
            predicate=self.predicate,
            value=self.value,
            authority=CanonLevel.WORLD_BIBLE,
            category=CANON_CATEGORY.get(self.category, FactCategory.WORLD_RULE),
            source="world_document",
        )

    def matches(self, keywords: Iterable[str]) -> bool:
        haystack = f"{self.subject} {self.context}".lower()
        return any(k and k.lower() in haystack for k in keywords)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "predicate": self.predicate,
            "value": self.value,
            "context": self.context,
            "category": self.category.value,
            "immutable": self.immutable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorldConstraint":
        return cls(
            subject=data["subject"],
            predicate=data["predicate"],
            value=data["value"],
            context=data.get("context", ""),
            category=ConstraintCategory.parse(data.get("category")),
            immutable=data.get("immutable", True),
        )


def parse_constraints(raw_entries: List[Any]) -> List[WorldConstraint]:
    """Validate extracted entries, dropping incomplete ones and duplicates.

    Duplicates share a case-insensitive (subject, predicate); the first wins.
    """
    constraints: List[WorldConstraint] = []
    seen = set()
    for entry in validate_entries(raw_entries, ExtractedConstraint):
        constraint = WorldConstraint(
            subject=entry.subject,
            predicate=entry.predicate,
            value=entry.value,
            context=entry.context,
            category=ConstraintCategory.parse(entry.category),
            immutable=entry.immutable,
        )
        if constraint.key in seen:
            continue
        seen.add(constraint.key)
        constraints.append(constraint)

    dropped = len(raw_entries) - len(constraints)
    if dropped:
        logger.debug(f"[parse_constraints] Dropped {dropped} invalid or duplicate entries")
    return constraints


def get_relevant_constraints(
    constraints: List[WorldConstraint],
    keywords: Iterable[str],
    max_count: int = MAX_RELEVANT_CONSTRAINTS,
    max_immutable: int = MAX_IMMUTABLE_IN_CONTEXT,
) -> List[WorldConstraint]:
    """Immutable constraints first, then keyword-matched mutable ones."""
    keywords = [k for k in keywords if k]
    immutable = [c for c in constraints if c.immutable][:max_immutable]
    mutable = [c for c in constraints if not c.immutable and c.matches(keywords)]
    return (immutable + mutable)[:max_count]


def format_constraints_for_prompt(constraints: List[WorldConstraint]) -> str:
    if not constraints:
        return ""
    hard = [c for c in constraints if c.immutable]
    soft = [c for c in constraints if not c.immutable]
    lines = ["=== WORLD CONSTRAINTS ==="]
    if hard:
        lines.append("HARD (never violate):")
        lines.extend(f"- {c.subject} {c.predicate}: {c.value}" for c in hard)
    if soft:
        lines.append("SOFT (may change only as a deliberate plot development):")
        lines.extend(f"- {c.subject} {c.predicate}: {c.value}" for c in soft)
    return "\n".join(lines)


class ConstraintExtractor:
    """Runs the extraction call and feeds the canon."""

    def __init__(self, generation, max_tokens: int = 4096):
        self.generation = generation
        self.max_tokens = max_tokens

    async def extract(self, world_document: str, cancel=None) -> List[WorldConstraint]:
        if not world_document or not world_document.strip():
            return []
        raw = await self.generation.invoke(
            EXTRACTOR_SYSTEM_PROMPT,
            EXTRACTOR_USER_PROMPT_TEMPLATE.format(world_document=world_document),
            max_tokens=self.max_tokens,
            temperature=0.2,
            cancel=cancel,
            label="extract_constraints",
        )
        entries = parse_json_list(raw, key="constraints")
        constraints = parse_constraints(entries)
        logger.info(
            f"[extract] {len(constraints)} constraints "
            f"({sum(1 for c in constraints if c.immutable)} immutable) from {len(entries)} entries"
        )
        return constraints

    @staticmethod
    def apply_to_canon(constraints: List[WorldConstraint], canon: CanonResolver) -> int:
        """Register immutable constraints; returns how many were accepted."""
        accepted = 0
        for constraint in constraints:
            if not constraint.immutable:
                continue
            if canon.register_fact(constraint.to_canon_fact()).success:
                accepted += 1
        return accepted


def keywords_from(*texts: Optional[str]) -> List[str]:
    """Capitalized words and quoted names, used as relevance keywords."""
    words = set()
    for text in texts:
        if not text:
            continue
        for token in text.replace("\n", " ").split():
            cleaned = token.strip(".,;:!?\"'()[]")
            if len(cleaned) > 2 and cleaned[0].isupper():
                words.add(cleaned)
    return sorted(words)
