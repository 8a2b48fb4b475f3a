"""
Arc and Tension Planner for SerialForge

Macro structure of a serialized story: fixed-length arcs that partition the
installment sequence, one tension curve per arc and scheduled twists.

Key concepts:
- build_tension_curve / schedule_twists: pure functions, randomness only
  through an explicit random.Random
- ArcPlanner.ensure_arc: idempotent, derives the arc covering an installment
- generate_plot_objectives: per-installment pacing directives for the writer
"""

import logging
import math
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..config import ArcSettings, TwistWindow

logger = logging.getLogger("serialforge.arcs")

ARC_THEMES = [
    "foundation",
    "conflict",
    "growth",
    "betrayal",
    "redemption",
    "revelation",
    "war",
    "triumph",
]
FINALE_THEME = "finale"

THEME_GUIDANCE: Dict[str, str] = {
    "foundation": "Establish the world, the protagonist's starting point and the stakes.",
    "conflict": "Introduce a clear antagonist force and put the protagonist under pressure.",
    "growth": "Let the protagonist earn new capability at a real cost.",
    "betrayal": "Test loyalties; trust that was built earlier should be strained.",
    "redemption": "Give flawed characters a chance to make amends or fail trying.",
    "revelation": "Uncover hidden truths that recontextualize earlier events.",
    "war": "Escalate to open confrontation between factions.",
    "triumph": "Pay off long-running setups with hard-won victories.",
    FINALE_THEME: "Converge every open thread toward the ending; no new subplots.",
}

UPCOMING_TWIST_LOOKAHEAD = 5


class ArcStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TwistStatus(str, Enum):
    PLANNED = "planned"
    FORESHADOWED = "foreshadowed"
    REVEALED = "revealed"


@dataclass
class Twist:
    target_installment: int
    twist_type: str
    impact_level: int
    status: TwistStatus = TwistStatus.PLANNED
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_installment": self.target_installment,
            "twist_type": self.twist_type,
            "impact_level": self.impact_level,
            "status": self.status.value,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Twist":
        return cls(
            target_installment=data["target_installment"],
            twist_type=data["twist_type"],
            impact_level=data.get("impact_level", 60),
            status=TwistStatus(data.get("status", "planned")),
            description=data.get("description", ""),
        )


@dataclass
class Arc:
    arc_number: int
    start_installment: int
    end_installment: int
    tension_curve: List[int]
    climax_installment: int
    theme: str
    status: ArcStatus = ArcStatus.PLANNED
    twists: List[Twist] = field(default_factory=list)
    plan: str = ""
    briefs: Dict[int, str] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return self.end_installment - self.start_installment + 1

    def contains(self, installment: int) -> bool:
        return self.start_installment <= installment <= self.end_installment

    def position(self, installment: int) -> int:
        """Zero-based offset of ``installment`` inside the arc."""
        return installment - self.start_installment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "arc_number": self.arc_number,
            "start_installment": self.start_installment,
            "end_installment": self.end_installment,
            "tension_curve": list(self.tension_curve),
            "climax_installment": self.climax_installment,
            "theme": self.theme,
            "status": self.status.value,
            "twists": [t.to_dict() for t in self.twists],
            "plan": self.plan,
            "briefs": {str(k): v for k, v in self.briefs.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Arc":
        return cls(
            arc_number=data["arc_number"],
            start_installment=data["start_installment"],
            end_installment=data["end_installment"],
            tension_curve=list(data.get("tension_curve", [])),
            climax_installment=data["climax_installment"],
            theme=data.get("theme", ARC_THEMES[0]),
            status=ArcStatus(data.get("status", "planned")),
            twists=[Twist.from_dict(t) for t in data.get("twists", [])],
            plan=data.get("plan", ""),
            briefs={int(k): v for k, v in data.get("briefs", {}).items()},
        )


def _clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, round(value))))


def climax_index(length: int, climax_ratio: float = 0.7) -> int:
    return min(length - 1, int(math.floor(length * climax_ratio)))


def build_tension_curve(
    length: int,
    baseline: int = 30,
    near_peak: int = 90,
    peak: int = 95,
    fall_to: int = 50,
    climax_ratio: float = 0.7,
) -> List[int]:
    """Rise from baseline toward near_peak, one peak at the climax, fall after.

    The climax value is the curve maximum and every value lies in [0, 100].
    """
    if length <= 0:
        return []
    peak = _clamp(peak)
    rise_from = min(_clamp(baseline), peak)
    rise_to = max(rise_from, min(_clamp(near_peak), peak))
    fall_to = min(_clamp(fall_to), peak)
    ci = climax_index(length, climax_ratio)

    curve = []
    for i in range(length):
        if i < ci:
            value = rise_from + (i / ci) * (rise_to - rise_from)
        elif i == ci:
            value = peak
        else:
            fall_progress = (i - ci) / (length - ci)
            value = peak - fall_progress * (peak - fall_to)
        curve.append(_clamp(value, high=peak))
    return curve


def twist_offsets(size: int, window: TwistWindow) -> List[int]:
    """Candidate zero-based offsets inside an arc of ``size`` for one window."""
    low = min(size - 1, int(math.floor(size * window.start_ratio)))
    high = min(size - 1, max(low, int(math.ceil(size * window.end_ratio)) - 1))
    return list(range(low, high + 1))


def schedule_twists(arc: Arc, rng: random.Random, windows: List[TwistWindow]) -> List[Twist]:
    """One twist per window, target and type picked by ``rng``."""
    twists = []
    for window in windows:
        offset = rng.choice(twist_offsets(arc.size, window))
        twist_type = rng.choice(window.twist_types) if window.twist_types else "plot_reversal"
        twists.append(Twist(
            target_installment=arc.start_installment + offset,
            twist_type=twist_type,
            impact_level=window.impact_level,
        ))
    return twists


class ArcPlanner:
    """
    Owns the arcs of one story.

    Arcs are derived from the installment number alone, so any missing arc can
    be re-created deterministically after a restart; only twist targets depend
    on the random source.
    """

    def __init__(
        self,
        settings: Optional[ArcSettings] = None,
        rng: Optional[random.Random] = None,
        target_installments: Optional[int] = None,
    ):
        self.settings = settings or ArcSettings()
        self.rng = rng or random.Random()
        self.target_installments = target_installments
        self.arcs: Dict[int, Arc] = {}

    @property
    def arc_size(self) -> int:
        return self.settings.arc_size

    def arc_number_for(self, installment: int) -> int:
        return (installment - 1) // self.arc_size + 1

    def theme_for(self, arc_number: int) -> str:
        if self.target_installments and arc_number == self.arc_number_for(self.target_installments) and arc_number > 1:
            return FINALE_THEME
        return ARC_THEMES[(arc_number - 1) % len(ARC_THEMES)]

    def ensure_arc(self, installment: int) -> Arc:
        if installment < 1:
            raise ValueError(f"installment must be >= 1, got {installment}")
        arc_number = self.arc_number_for(installment)
        existing = self.arcs.get(arc_number)
        if existing:
            return existing

        start = (arc_number - 1) * self.arc_size + 1
        end = start + self.arc_size - 1
        s = self.settings
        curve = build_tension_curve(
            self.arc_size,
            baseline=s.tension_baseline,
            near_peak=s.tension_near_peak,
            peak=s.tension_peak,
            fall_to=s.tension_fall_to,
            climax_ratio=s.climax_ratio,
        )
        arc = Arc(
            arc_number=arc_number,
            start_installment=start,
            end_installment=end,
            tension_curve=curve,
            climax_installment=start + climax_index(self.arc_size, s.climax_ratio),
            theme=self.theme_for(arc_number),
        )
        arc.twists = schedule_twists(arc, self.rng, s.twist_windows)
        self.arcs[arc_number] = arc
        logger.debug(
            f"[ensure_arc] Arc {arc_number} ({start}-{end}), theme={arc.theme}, "
            f"twists at {[t.target_installment for t in arc.twists]}"
        )
        return arc

    def plan_arcs(self, target_installments: int) -> List[Arc]:
        """Make sure every arc up to ``target_installments`` exists."""
        self.target_installments = target_installments
        last = self.arc_number_for(target_installments)
        return [self.ensure_arc((n - 1) * self.arc_size + 1) for n in range(1, last + 1)]

    def add_arc(self, arc: Arc) -> None:
        self.arcs[arc.arc_number] = arc

    def get_arc(self, installment: int) -> Optional[Arc]:
        return self.arcs.get(self.arc_number_for(installment))

    def get_arc_by_number(self, arc_number: int) -> Optional[Arc]:
        return self.arcs.get(arc_number)

    def get_tension_target(self, installment: int) -> int:
        arc = self.get_arc(installment)
        if not arc:
            return self.settings.default_tension
        offset = arc.position(installment)
        if 0 <= offset < len(arc.tension_curve):
            return arc.tension_curve[offset]
        return self.settings.default_tension

    def upcoming_twists(self, installment: int, lookahead: int = UPCOMING_TWIST_LOOKAHEAD) -> List[Twist]:
        twists = []
        for arc in self.arcs.values():
            for twist in arc.twists:
                if twist.status == TwistStatus.REVEALED:
                    continue
                if installment <= twist.target_installment <= installment + lookahead:
                    twists.append(twist)
        return sorted(twists, key=lambda t: t.target_installment)

    def _twist_at(self, installment: int) -> Optional[Twist]:
        arc = self.get_arc(installment)
        if not arc:
            return None
        for twist in arc.twists:
            if twist.target_installment == installment:
                return twist
        return None

    def mark_twist_foreshadowed(self, target_installment: int) -> bool:
        twist = self._twist_at(target_installment)
        if not twist or twist.status != TwistStatus.PLANNED:
            return False
        twist.status = TwistStatus.FORESHADOWED
        return True

    def mark_twist_revealed(self, target_installment: int) -> bool:
        twist = self._twist_at(target_installment)
        if not twist or twist.status == TwistStatus.REVEALED:
            return False
        twist.status = TwistStatus.REVEALED
        return True

    def start_arc(self, arc_number: int) -> None:
        arc = self.arcs.get(arc_number)
        if arc and arc.status == ArcStatus.PLANNED:
            arc.status = ArcStatus.IN_PROGRESS

    def complete_arc(self, arc_number: int) -> None:
        arc = self.arcs.get(arc_number)
        if arc:
            arc.status = ArcStatus.COMPLETED

    # ------------------------------------------------------------------
    # Objectives
    # ------------------------------------------------------------------

    def generate_plot_objectives(self, installment: int, target_installments: Optional[int] = None) -> str:
        """Pacing, theme, twist, milestone and finale directives for one installment."""
        arc = self.ensure_arc(installment)
        tension = self.get_tension_target(installment)
        lines = [f"TENSION TARGET: {tension}/100"]

        if tension < 40:
            lines.append("PACING: Slow. Setup, character moments and worldbuilding; plant seeds for later.")
        elif tension < 70:
            lines.append("PACING: Moderate. Advance the plot steadily and raise the stakes.")
        elif tension < 90:
            lines.append("PACING: Fast. Escalate the conflict; every scene should tighten the pressure.")
        else:
            lines.append(
                "PACING: CLIMAX MODE. Deliver a decisive moment that changes the situation, "
                "and end on a cliffhanger."
            )

        guidance = THEME_GUIDANCE.get(arc.theme, "")
        lines.append(f"ARC {arc.arc_number} THEME: {arc.theme.upper()}. {guidance}".rstrip())

        for twist in self.upcoming_twists(installment):
            distance = twist.target_installment - installment
            if distance == 0:
                lines.append(f"TWIST: Reveal the planned {twist.twist_type} in this installment.")
            elif distance <= self.settings.foreshadow_lookahead and twist.status == TwistStatus.PLANNED:
                lines.append(
                    f"FORESHADOW: A {twist.twist_type} lands in {distance} installment(s); "
                    f"plant a subtle hint without giving it away."
                )

        if installment == arc.climax_installment:
            lines.append("CLIMAX: This is the climax installment of the arc. Resolve the arc's central conflict.")

        if installment % 10 == 0:
            lines.append("MILESTONE (major): Show a significant change in the protagonist's power, status or relationships.")
        elif installment % 5 == 0:
            lines.append("MILESTONE (minor): Give a supporting character a moment of growth.")

        target = target_installments or self.target_installments
        if target:
            remaining = target - installment
            if remaining <= 0:
                lines.append("FINALE: This is the final installment. Resolve the main conflict and close the story.")
            elif remaining <= 5:
                lines.append(f"FINALE: {remaining} installment(s) remain. Converge all threads; introduce nothing new.")
            elif remaining <= 20:
                lines.append(f"FINALE: {remaining} installments remain. Begin steering toward the ending.")

        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_installments": self.target_installments,
            "arcs": [a.to_dict() for a in sorted(self.arcs.values(), key=lambda a: a.arc_number)],
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        settings: Optional[ArcSettings] = None,
        rng: Optional[random.Random] = None,
    ) -> "ArcPlanner":
        planner = cls(settings=settings, rng=rng, target_installments=data.get("target_installments"))
        for raw in data.get("arcs", []):
            planner.add_arc(Arc.from_dict(raw))
        return planner
