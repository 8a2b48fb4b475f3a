"""
Canon Resolver (Fact Store) for SerialForge

Keeps the authoritative value of every (subject, predicate) pair across the
whole story and decides what happens when a new assertion contradicts it.

Key concepts:
- CanonLevel: ordinal authority; the world bible outranks arc summaries, which
  outrank facts pulled from a single installment, which outrank retrieved or
  inferred facts
- Strictly higher authority replaces, strictly lower is discarded silently
- Equal authority at or above the high-stakes tier is never auto-resolved; it
  becomes a ContinuityIssue for review. Below that tier the newest fact wins
- Death is a first-class query: is_entity_dead() short-circuits resurrection
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("serialforge.canon")


class CanonLevel(IntEnum):
    """How canonically binding a fact is."""
    WORLD_BIBLE = 100
    VOLUME_SUMMARY = 80
    ARC_SUMMARY = 60
    INSTALLMENT_FACT = 40
    RETRIEVED = 20
    INFERRED = 10


class FactCategory(str, Enum):
    CHARACTER = "character"
    WORLD_RULE = "world_rule"
    POWER = "power"
    RELATIONSHIP = "relationship"
    LOCATION = "location"
    ITEM = "item"
    EVENT = "event"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "FactCategory":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class IssueStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    IGNORED = "ignored"


class Resolution(str, Enum):
    USE_NEW = "use_new"
    KEEP_EXISTING = "keep_existing"
    MANUAL_REVIEW = "manual_review"


SEVERITY_BY_CATEGORY: Dict[FactCategory, IssueSeverity] = {
    FactCategory.CHARACTER: IssueSeverity.CRITICAL,
    FactCategory.WORLD_RULE: IssueSeverity.CRITICAL,
    FactCategory.POWER: IssueSeverity.MAJOR,
    FactCategory.RELATIONSHIP: IssueSeverity.MAJOR,
}

DEATH_PREDICATES = {"is_dead", "dead", "deceased"}
LIFE_PREDICATES = {"is_alive", "alive"}
STATUS_PREDICATES = {"status", "life_status", "state"}
DEAD_VALUES = {"dead", "deceased", "killed", "slain"}
TRUE_VALUES = {"true", "yes", "1"}
FALSE_VALUES = {"false", "no", "0"}

# Sentences mentioning a dead character with one of these words are treated
# as remembrance rather than an appearance.
MEMORIAL_CUES = re.compile(
    r"\b(remember\w*|memor\w*|grave|tomb|funeral|ghost|spirit|late|corpse|body|"
    r"mourn\w*|died|dead|death|killed|buried|legacy|recalled|once said|used to)\b",
    re.IGNORECASE,
)


def normalize_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


@dataclass
class CanonFact:
    """A single asserted fact about the story world."""
    subject: str
    predicate: str
    value: str
    authority: CanonLevel = CanonLevel.INSTALLMENT_FACT
    category: FactCategory = FactCategory.OTHER
    source_installment: Optional[int] = None
    confidence: float = 1.0
    valid_from: Optional[int] = None
    valid_until: Optional[int] = None
    source: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        self.value = normalize_value(self.value)
        self.authority = CanonLevel(int(self.authority))
        if not isinstance(self.category, FactCategory):
            self.category = FactCategory.parse(self.category)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.subject.strip().lower(), self.predicate.strip().lower())

    def same_value(self, other: "CanonFact") -> bool:
        return self.value.lower() == other.value.lower()

    def is_active(self, installment: Optional[int] = None) -> bool:
        """Whether the validity window covers ``installment`` (None = always)."""
        if installment is None:
            return True
        if self.valid_from is not None and installment < self.valid_from:
            return False
        if self.valid_until is not None and installment > self.valid_until:
            return False
        return True

    def describe(self) -> str:
        return f"{self.subject} {self.predicate}: {self.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "predicate": self.predicate,
            "value": self.value,
            "authority": int(self.authority),
            "category": self.category.value,
            "source_installment": self.source_installment,
            "confidence": self.confidence,
            "valid_from": self.valid_from,
            "valid_until": self.valid_until,
            "source": self.source,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonFact":
        return cls(
            subject=data["subject"],
            predicate=data["predicate"],
            value=data["value"],
            authority=CanonLevel(int(data.get("authority", CanonLevel.INSTALLMENT_FACT))),
            category=FactCategory.parse(data.get("category", "other")),
            source_installment=data.get("source_installment"),
            confidence=data.get("confidence", 1.0),
            valid_from=data.get("valid_from"),
            valid_until=data.get("valid_until"),
            source=data.get("source", ""),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.utcnow(),
        )


@dataclass
class ContinuityIssue:
    """An unresolved contradiction queued for review."""
    installment: Optional[int]
    severity: IssueSeverity
    existing_fact: CanonFact
    incoming_fact: CanonFact
    suggested_resolution: Resolution
    description: str = ""
    status: IssueStatus = IssueStatus.OPEN
    issue_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "installment": self.installment,
            "severity": self.severity.value,
            "existing_fact": self.existing_fact.to_dict(),
            "incoming_fact": self.incoming_fact.to_dict(),
            "suggested_resolution": self.suggested_resolution.value,
            "description": self.description,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContinuityIssue":
        return cls(
            issue_id=data["issue_id"],
            installment=data.get("installment"),
            severity=IssueSeverity(data["severity"]),
            existing_fact=CanonFact.from_dict(data["existing_fact"]),
            incoming_fact=CanonFact.from_dict(data["incoming_fact"]),
            suggested_resolution=Resolution(data["suggested_resolution"]),
            description=data.get("description", ""),
            status=IssueStatus(data.get("status", "open")),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.utcnow(),
            resolved_at=datetime.fromisoformat(data["resolved_at"]) if data.get("resolved_at") else None,
        )


@dataclass
class ConflictCheck:
    has_conflict: bool
    resolution: Resolution
    existing: Optional[CanonFact] = None
    reason: str = ""


@dataclass
class RegistrationResult:
    success: bool
    conflict: Optional[ConflictCheck] = None
    issue: Optional[ContinuityIssue] = None


class CanonResolver:
    """
    Authority-ranked index of world facts for one story.

    At most one active fact exists per (subject, predicate); keys are compared
    case-insensitively. Superseded facts are kept in ``history`` for audit.
    """

    def __init__(
        self,
        project_id: str = "",
        high_stakes_threshold: int = CanonLevel.ARC_SUMMARY,
    ):
        self.project_id = project_id
        self.high_stakes_threshold = int(high_stakes_threshold)
        self._facts: Dict[Tuple[str, str], CanonFact] = {}
        self.history: List[CanonFact] = []
        self.issues: List[ContinuityIssue] = []

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def check_conflict(self, candidate: CanonFact) -> ConflictCheck:
        existing = self._facts.get(candidate.key)
        if existing is None:
            return ConflictCheck(False, Resolution.USE_NEW, reason="no existing fact")

        if existing.same_value(candidate):
            return ConflictCheck(False, Resolution.KEEP_EXISTING, existing, "same value")

        if candidate.authority > existing.authority:
            return ConflictCheck(True, Resolution.USE_NEW, existing, "higher authority")

        if candidate.authority < existing.authority:
            return ConflictCheck(True, Resolution.KEEP_EXISTING, existing, "lower authority")

        if int(candidate.authority) >= self.high_stakes_threshold:
            return ConflictCheck(True, Resolution.MANUAL_REVIEW, existing, "equal high-stakes authority")

        return ConflictCheck(True, Resolution.USE_NEW, existing, "equal authority, newest wins")

    def register_fact(self, fact: CanonFact) -> RegistrationResult:
        """Register a fact, resolving any contradiction with existing canon."""
        check = self.check_conflict(fact)

        if check.resolution == Resolution.USE_NEW:
            if check.existing is not None:
                self.history.append(check.existing)
                logger.debug(
                    f"[register_fact] {fact.describe()} replaces '{check.existing.value}' ({check.reason})"
                )
            self._facts[fact.key] = fact
            return RegistrationResult(True, check if check.has_conflict else None)

        if check.resolution == Resolution.KEEP_EXISTING:
            if check.has_conflict:
                logger.debug(f"[register_fact] Discarded {fact.describe()} ({check.reason})")
            return RegistrationResult(True, check if check.has_conflict else None)

        issue = ContinuityIssue(
            installment=fact.source_installment,
            severity=self.severity_for(fact.category),
            existing_fact=check.existing,
            incoming_fact=fact,
            suggested_resolution=Resolution.MANUAL_REVIEW,
            description=(
                f"'{fact.subject}' {fact.predicate}: '{check.existing.value}' vs '{fact.value}' "
                f"at equal authority {fact.authority.name}"
            ),
        )
        self.issues.append(issue)
        logger.warning(f"[register_fact] Continuity issue {issue.issue_id} ({issue.severity.value}): {issue.description}")
        return RegistrationResult(False, check, issue)

    def register_many(self, facts: List[CanonFact]) -> List[RegistrationResult]:
        return [self.register_fact(f) for f in facts]

    @staticmethod
    def severity_for(category: FactCategory) -> IssueSeverity:
        return SEVERITY_BY_CATEGORY.get(category, IssueSeverity.MINOR)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def facts(self) -> List[CanonFact]:
        return list(self._facts.values())

    def get_fact(self, subject: str, predicate: str) -> Optional[CanonFact]:
        return self._facts.get((subject.strip().lower(), predicate.strip().lower()))

    def get_facts_for_subject(
        self,
        name: str,
        limit: int = 5,
        installment: Optional[int] = None,
    ) -> List[CanonFact]:
        """Facts about an entity, strongest authority first, top ``limit``."""
        needle = name.strip().lower()
        matching = [
            f for f in self._facts.values()
            if f.key[0] == needle and f.is_active(installment)
        ]
        matching.sort(key=lambda f: (int(f.authority), f.created_at), reverse=True)
        return matching[:limit]

    def is_entity_dead(self, name: str) -> bool:
        needle = name.strip().lower()
        for (subject, predicate), fact in self._facts.items():
            if subject != needle:
                continue
            value = fact.value.lower()
            if predicate in DEATH_PREDICATES and value in TRUE_VALUES:
                return True
            if predicate in LIFE_PREDICATES and value in FALSE_VALUES:
                return True
            if predicate in STATUS_PREDICATES and value in DEAD_VALUES:
                return True
        return False

    def dead_entities(self) -> List[str]:
        names = {f.subject for f in self._facts.values() if self.is_entity_dead(f.subject)}
        return sorted(names)

    def mark_dead(
        self,
        name: str,
        installment: Optional[int] = None,
        authority: CanonLevel = CanonLevel.VOLUME_SUMMARY,
    ) -> RegistrationResult:
        """Record a death; death facts carry elevated authority."""
        return self.register_fact(CanonFact(
            subject=name,
            predicate="is_dead",
            value="true",
            authority=authority,
            category=FactCategory.CHARACTER,
            source_installment=installment,
            source="death",
        ))

    def subjects(self, category: Optional[FactCategory] = None) -> List[str]:
        seen: Dict[str, str] = {}
        for fact in self._facts.values():
            if category is None or fact.category == category:
                seen.setdefault(fact.key[0], fact.subject)
        return list(seen.values())

    # ------------------------------------------------------------------
    # Issue backlog
    # ------------------------------------------------------------------

    def get_open_issues(self) -> List[ContinuityIssue]:
        return [i for i in self.issues if i.status == IssueStatus.OPEN]

    def get_critical_issues(self) -> List[ContinuityIssue]:
        return [i for i in self.get_open_issues() if i.severity == IssueSeverity.CRITICAL]

    def _find_issue(self, issue_id: str) -> Optional[ContinuityIssue]:
        for issue in self.issues:
            if issue.issue_id == issue_id:
                return issue
        return None

    def resolve_issue(self, issue_id: str, keep: str = "existing") -> bool:
        """Close an issue, keeping either the existing or the incoming fact."""
        issue = self._find_issue(issue_id)
        if issue is None or issue.status != IssueStatus.OPEN:
            return False
        if keep == "incoming":
            self.history.append(issue.existing_fact)
            self._facts[issue.incoming_fact.key] = issue.incoming_fact
        elif keep != "existing":
            raise ValueError(f"keep must be 'existing' or 'incoming', got {keep!r}")
        issue.status = IssueStatus.RESOLVED
        issue.resolved_at = datetime.utcnow()
        return True

    def ignore_issue(self, issue_id: str) -> bool:
        issue = self._find_issue(issue_id)
        if issue is None or issue.status != IssueStatus.OPEN:
            return False
        issue.status = IssueStatus.IGNORED
        issue.resolved_at = datetime.utcnow()
        return True

    # ------------------------------------------------------------------
    # Retrieval filtering and consistency checks
    # ------------------------------------------------------------------

    def resolve_retrieved_conflicts(self, retrieved: List[CanonFact]) -> List[CanonFact]:
        """Drop retrieved facts that contradict equal or stronger canon."""
        kept = []
        for fact in retrieved:
            existing = self._facts.get(fact.key)
            if existing and not existing.same_value(fact) and existing.authority >= fact.authority:
                continue
            kept.append(fact)
        return kept

    def find_dead_appearances(self, text: str) -> List[Tuple[str, str]]:
        """(name, sentence) pairs where a dead entity seems to act. Read-only."""
        appearances: List[Tuple[str, str]] = []
        if not text:
            return appearances
        sentences = re.split(r"(?<=[.!?])\s+", text)
        for name in self.dead_entities():
            pattern = re.compile(rf"\b{re.escape(name)}\b", re.IGNORECASE)
            for sentence in sentences:
                if pattern.search(sentence) and not MEMORIAL_CUES.search(sentence):
                    appearances.append((name, sentence.strip()))
                    break
        return appearances

    def check_text_consistency(self, text: str, installment: int) -> List[ContinuityIssue]:
        """Flag dead entities that appear to act in new text.

        Advisory only: issues are queued, nothing is rejected.
        """
        found: List[ContinuityIssue] = []
        for name, sentence in self.find_dead_appearances(text):
            existing = self.get_fact(name, "is_dead") or self.get_facts_for_subject(name, limit=1)[0]
            issue = ContinuityIssue(
                installment=installment,
                severity=IssueSeverity.CRITICAL,
                existing_fact=existing,
                incoming_fact=CanonFact(
                    subject=name,
                    predicate="is_dead",
                    value="false",
                    authority=CanonLevel.INFERRED,
                    category=FactCategory.CHARACTER,
                    source_installment=installment,
                    source="consistency_check",
                ),
                suggested_resolution=Resolution.KEEP_EXISTING,
                description=f"Dead character '{name}' appears active: {sentence[:160]}",
            )
            self.issues.append(issue)
            found.append(issue)
        return found

    # ------------------------------------------------------------------
    # Prompt context
    # ------------------------------------------------------------------

    def build_canon_context(
        self,
        max_characters: int = 10,
        facts_per_subject: int = 5,
        max_world_rules: int = 10,
        installment: Optional[int] = None,
    ) -> str:
        """Render canon as a prompt block; empty string when there is none."""
        if not self._facts:
            return ""

        lines = ["=== CANON (DO NOT CONTRADICT) ==="]

        characters = self.subjects(FactCategory.CHARACTER)[:max_characters]
        if characters:
            lines.append("\n[CHARACTERS]")
            for name in characters:
                marker = " [DEAD - must not appear alive]" if self.is_entity_dead(name) else ""
                facts = self.get_facts_for_subject(name, limit=facts_per_subject, installment=installment)
                details = "; ".join(f"{f.predicate}: {f.value}" for f in facts)
                lines.append(f"- {name}{marker}: {details}")

        rules = [
            f for f in self._facts.values()
            if f.category == FactCategory.WORLD_RULE and f.is_active(installment)
        ]
        rules.sort(key=lambda f: int(f.authority), reverse=True)
        if rules:
            lines.append("\n[WORLD RULES]")
            for fact in rules[:max_world_rules]:
                lines.append(f"- {fact.describe()}")

        power = [f for f in self._facts.values() if f.category == FactCategory.POWER and f.is_active(installment)]
        if power:
            lines.append("\n[POWER LEVELS]")
            for fact in sorted(power, key=lambda f: int(f.authority), reverse=True)[:max_world_rules]:
                lines.append(f"- {fact.describe()}")

        return "\n".join(lines) if len(lines) > 1 else ""

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "high_stakes_threshold": self.high_stakes_threshold,
            "facts": [f.to_dict() for f in self._facts.values()],
            "history": [f.to_dict() for f in self.history],
            "issues": [i.to_dict() for i in self.issues],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonResolver":
        resolver = cls(
            project_id=data.get("project_id", ""),
            high_stakes_threshold=data.get("high_stakes_threshold", CanonLevel.ARC_SUMMARY),
        )
        for raw in data.get("facts", []):
            fact = CanonFact.from_dict(raw)
            resolver._facts[fact.key] = fact
        resolver.history = [CanonFact.from_dict(f) for f in data.get("history", [])]
        resolver.issues = [ContinuityIssue.from_dict(i) for i in data.get("issues", [])]
        return resolver
