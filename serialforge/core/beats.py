"""
Beat Ledger for SerialForge

Anti-repetition tracking for narrative devices ("beats"). Every beat type has a
cooldown in installments; once used at installment n it is forbidden until
n + cooldown. Rare structural beats (a betrayal, a mentor's death) cool down for
dozens of installments, minor reaction beats for a handful.

Key concepts:
- can_use / record_use / get_restrictions: the cooldown contract
- Per-arc limits cap how often a beat appears within a single arc
- detect_beats: keyword scan of accepted text, used for bookkeeping
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern


class BeatCategory(str, Enum):
    PLOT = "plot"
    EMOTIONAL = "emotional"
    SETTING = "setting"


PLOT_COOLDOWNS: Dict[str, int] = {
    "tournament": 30,
    "auction": 25,
    "secret_realm": 20,
    "sect_conflict": 15,
    "assassination": 20,
    "breakthrough": 8,
    "rescue_mission": 15,
    "betrayal": 40,
    "alliance": 20,
    "war": 50,
    "trial": 12,
    "inheritance": 35,
    "revelation": 25,
    "duel": 10,
    "training": 5,
    "merchant": 8,
    "investigation": 12,
    "escape": 15,
    "family_reunion": 30,
    "treasure_hunt": 18,
    "near_death": 25,
    "love_confession": 40,
    "mentor_death": 100,
}

EMOTIONAL_COOLDOWNS: Dict[str, int] = {
    "face_slap": 3,
    "humiliation": 20,
    "revenge": 25,
    "triumph": 12,
    "despair": 15,
    "hope": 8,
    "shock": 10,
    "romance": 15,
    "sacrifice": 40,
    "loyalty": 10,
    "growth": 8,
    "loss": 25,
    "reunion": 20,
    "tension": 5,
    "relief": 8,
    "curiosity": 5,
    "anger": 8,
    "satisfaction": 10,
}

SETTING_COOLDOWNS: Dict[str, int] = {
    "sect_grounds": 3,
    "wilderness": 5,
    "city": 5,
    "ancient_ruins": 20,
    "mortal_realm": 15,
    "divine_realm": 25,
    "underworld": 30,
    "mountain": 8,
    "ocean": 15,
    "sky": 12,
    "cave": 10,
    "palace": 12,
    "marketplace": 6,
    "battlefield": 20,
    "prison": 25,
}

DEFAULT_COOLDOWN = 10

ARC_BEAT_LIMITS: Dict[str, int] = {
    "tournament": 1,
    "auction": 1,
    "secret_realm": 2,
    "betrayal": 1,
    "war": 1,
    "inheritance": 1,
    "mentor_death": 1,
    "humiliation": 2,
    "revenge": 2,
    "sacrifice": 1,
}
DEFAULT_PLOT_ARC_LIMIT = 3
DEFAULT_EMOTIONAL_ARC_LIMIT = 5

RECOMMENDABLE_BEATS = [
    "tournament", "auction", "secret_realm", "duel", "training", "trial",
    "revelation", "breakthrough", "merchant", "investigation",
    "triumph", "growth", "hope", "tension", "curiosity", "satisfaction",
]


def _patterns(*raw: str) -> List[Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in raw]


BEAT_PATTERNS: Dict[str, List[Pattern]] = {
    "tournament": _patterns(r"\btournament\w*\b", r"\bcompetition\b"),
    "auction": _patterns(r"\bauction\w*\b", r"\bbidding\b"),
    "secret_realm": _patterns(r"\bsecret realm\b", r"\bhidden realm\b"),
    "assassination": _patterns(r"\bassassin\w*\b"),
    "breakthrough": _patterns(r"\bbreakthrough\b", r"\bbr(?:oke|eaks?|eaking) through\b"),
    "betrayal": _patterns(r"\bbetray\w*\b", r"\btraitor\w*\b"),
    "duel": _patterns(r"\bduel\w*\b"),
    "training": _patterns(r"\btraining\b", r"\bcultivat\w*\b"),
    "revelation": _patterns(r"\brevelation\b", r"\bthe truth was\b"),
    "rescue_mission": _patterns(r"\brescue\w*\b"),
    "escape": _patterns(r"\bescap\w*\b", r"\bfled\b"),
    "investigation": _patterns(r"\binvestigat\w*\b", r"\bclues?\b"),
    "near_death": _patterns(r"\bnear death\b", r"\bbrink of death\b"),
    "face_slap": _patterns(r"\bface[- ]slap\w*\b", r"\bslapped\b"),
    "humiliation": _patterns(r"\bhumiliat\w*\b", r"\bmocker(?:y|ies)\b"),
    "revenge": _patterns(r"\brevenge\b", r"\bvengeance\b"),
    "triumph": _patterns(r"\btriumph\w*\b", r"\bvictor(?:y|ious)\b"),
    "despair": _patterns(r"\bdespair\w*\b", r"\bhopeless\w*\b"),
    "romance": _patterns(r"\bkiss\w*\b", r"\bblush\w*\b"),
    "sacrifice": _patterns(r"\bsacrific\w*\b"),
    "city": _patterns(r"\bcity\b"),
    "wilderness": _patterns(r"\bwilderness\b", r"\bforest\b"),
    "ancient_ruins": _patterns(r"\bancient ruins?\b"),
    "cave": _patterns(r"\bcaves?\b", r"\bcavern\w*\b"),
    "palace": _patterns(r"\bpalace\b"),
    "marketplace": _patterns(r"\bmarket(?:place)?\b"),
    "battlefield": _patterns(r"\bbattlefield\b"),
}


def category_of(beat_type: str) -> BeatCategory:
    if beat_type in EMOTIONAL_COOLDOWNS:
        return BeatCategory.EMOTIONAL
    if beat_type in SETTING_COOLDOWNS:
        return BeatCategory.SETTING
    return BeatCategory.PLOT


@dataclass
class BeatUsage:
    installment: int
    beat_type: str
    cooldown_expiry: int
    category: BeatCategory = BeatCategory.PLOT
    intensity: int = 5
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installment": self.installment,
            "beat_type": self.beat_type,
            "cooldown_expiry": self.cooldown_expiry,
            "category": self.category.value,
            "intensity": self.intensity,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BeatUsage":
        return cls(
            installment=data["installment"],
            beat_type=data["beat_type"],
            cooldown_expiry=data["cooldown_expiry"],
            category=BeatCategory(data.get("category", "plot")),
            intensity=data.get("intensity", 5),
            description=data.get("description", ""),
        )


@dataclass
class BeatRestriction:
    beat_type: str
    last_used: int
    available_at: int


@dataclass
class DetectedBeat:
    beat_type: str
    category: BeatCategory
    intensity: int


@dataclass
class BeatRecommendations:
    suggested: List[str] = field(default_factory=list)
    avoid: List[str] = field(default_factory=list)


class BeatLedger:
    """Cooldown tracker for one story."""

    def __init__(self, cooldowns: Optional[Dict[str, int]] = None):
        self.cooldowns: Dict[str, int] = {**PLOT_COOLDOWNS, **EMOTIONAL_COOLDOWNS, **SETTING_COOLDOWNS}
        if cooldowns:
            self.cooldowns.update(cooldowns)
        self.entries: List[BeatUsage] = []
        self.last_used: Dict[str, int] = {}

    def cooldown(self, beat_type: str) -> int:
        return self.cooldowns.get(beat_type, DEFAULT_COOLDOWN)

    def can_use(self, beat_type: str, at_installment: int) -> bool:
        last = self.last_used.get(beat_type)
        if last is None:
            return True
        return at_installment >= last + self.cooldown(beat_type)

    def record_use(
        self,
        beat_type: str,
        installment: int,
        intensity: int = 5,
        description: str = "",
    ) -> BeatUsage:
        usage = BeatUsage(
            installment=installment,
            beat_type=beat_type,
            cooldown_expiry=installment + self.cooldown(beat_type),
            category=category_of(beat_type),
            intensity=intensity,
            description=description,
        )
        self.entries.append(usage)
        previous = self.last_used.get(beat_type)
        if previous is None or installment >= previous:
            self.last_used[beat_type] = installment
        return usage

    def get_restrictions(self, at_installment: int) -> List[BeatRestriction]:
        """Beat types that may not be used at ``at_installment``."""
        restrictions = []
        for beat_type, last in self.last_used.items():
            available_at = last + self.cooldown(beat_type)
            if at_installment < available_at:
                restrictions.append(BeatRestriction(beat_type, last, available_at))
        restrictions.sort(key=lambda r: (r.available_at, r.beat_type), reverse=True)
        return restrictions

    def format_restrictions(self, at_installment: int, limit: int = 15) -> str:
        restrictions = self.get_restrictions(at_installment)[:limit]
        if not restrictions:
            return ""
        items = ", ".join(f"{r.beat_type} (until {r.available_at})" for r in restrictions)
        return f"AVOID: {items}"

    # ------------------------------------------------------------------
    # Arc budgets
    # ------------------------------------------------------------------

    @staticmethod
    def arc_limit(beat_type: str) -> int:
        if beat_type in ARC_BEAT_LIMITS:
            return ARC_BEAT_LIMITS[beat_type]
        if category_of(beat_type) == BeatCategory.EMOTIONAL:
            return DEFAULT_EMOTIONAL_ARC_LIMIT
        return DEFAULT_PLOT_ARC_LIMIT

    def uses_in_range(self, beat_type: str, start: int, end: int) -> int:
        return sum(1 for e in self.entries if e.beat_type == beat_type and start <= e.installment <= end)

    def can_use_in_arc(self, beat_type: str, at_installment: int, arc_start: int, arc_end: int) -> bool:
        if not self.can_use(beat_type, at_installment):
            return False
        return self.uses_in_range(beat_type, arc_start, arc_end) < self.arc_limit(beat_type)

    def arc_stats(self, start: int, end: int) -> Dict[str, Any]:
        entries = [e for e in self.entries if start <= e.installment <= end]
        usage: Dict[str, Dict[str, int]] = {}
        for entry in entries:
            slot = usage.setdefault(entry.beat_type, {"used": 0, "max": self.arc_limit(entry.beat_type)})
            slot["used"] += 1
        return {
            "total_beats": len(entries),
            "unique_beats": len({e.beat_type for e in entries}),
            "usage": usage,
        }

    # ------------------------------------------------------------------
    # Detection and recommendations
    # ------------------------------------------------------------------

    @staticmethod
    def detect_beats(text: str) -> List[DetectedBeat]:
        detected = []
        if not text:
            return detected
        for beat_type, patterns in BEAT_PATTERNS.items():
            matches = sum(len(p.findall(text)) for p in patterns)
            if matches:
                detected.append(DetectedBeat(
                    beat_type=beat_type,
                    category=category_of(beat_type),
                    intensity=min(10, matches * 2),
                ))
        return detected

    def get_recommendations(
        self,
        at_installment: int,
        arc_start: Optional[int] = None,
        arc_end: Optional[int] = None,
    ) -> BeatRecommendations:
        recs = BeatRecommendations()
        for beat_type in RECOMMENDABLE_BEATS:
            if arc_start is not None and arc_end is not None:
                allowed = self.can_use_in_arc(beat_type, at_installment, arc_start, arc_end)
            else:
                allowed = self.can_use(beat_type, at_installment)
            if not allowed:
                recs.avoid.append(beat_type)
                continue
            recently_used = any(
                e.beat_type == beat_type and e.installment >= at_installment - 5
                for e in self.entries
            )
            if not recently_used:
                recs.suggested.append(beat_type)
        for restriction in self.get_restrictions(at_installment):
            if restriction.beat_type not in recs.avoid:
                recs.avoid.append(restriction.beat_type)
        recs.suggested = recs.suggested[:5]
        recs.avoid = recs.avoid[:10]
        return recs

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "last_used": dict(self.last_used),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], cooldowns: Optional[Dict[str, int]] = None) -> "BeatLedger":
        ledger = cls(cooldowns=cooldowns)
        ledger.entries = [BeatUsage.from_dict(e) for e in data.get("entries", [])]
        ledger.last_used = {k: int(v) for k, v in data.get("last_used", {}).items()}
        return ledger
