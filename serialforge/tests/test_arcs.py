"""
Unit tests for arc planning, tension curves and twist scheduling.
"""

import random

import pytest

from serialforge.config import ArcSettings, TwistWindow
from serialforge.core.arcs import (
    FINALE_THEME,
    ArcPlanner,
    ArcStatus,
    TwistStatus,
    build_tension_curve,
    climax_index,
    twist_offsets,
)


class TestTensionCurve:
    """Tests for build_tension_curve."""

    def test_single_peak_at_climax(self):
        curve = build_tension_curve(20)
        ci = climax_index(20)

        assert ci == 14
        assert curve[ci] == 95
        assert max(curve) == 95
        assert curve.count(95) == 1

    def test_rises_then_falls(self):
        curve = build_tension_curve(20)
        ci = climax_index(20)

        assert curve[0] == 30
        assert all(a <= b for a, b in zip(curve[:ci], curve[1:ci + 1]))
        assert all(a >= b for a, b in zip(curve[ci:], curve[ci + 1:]))

    def test_values_stay_in_range(self):
        curve = build_tension_curve(7, baseline=-20, near_peak=150, peak=120, fall_to=-5)

        assert all(0 <= v <= 100 for v in curve)
        assert max(curve) == curve[climax_index(7)]

    def test_near_peak_above_peak_is_capped(self):
        curve = build_tension_curve(10, near_peak=99, peak=80)

        assert max(curve) == 80

    def test_degenerate_lengths(self):
        assert build_tension_curve(0) == []
        assert build_tension_curve(1) == [95]


class TestTwistScheduling:
    """Tests for twist windows."""

    def test_offsets_for_default_windows(self):
        windows = ArcSettings().twist_windows

        assert twist_offsets(20, windows[0]) == [8, 9]
        assert twist_offsets(20, windows[1]) == [16, 17]
        assert twist_offsets(10, windows[0]) == [4]

    def test_twists_land_inside_their_windows(self):
        planner = ArcPlanner(ArcSettings(arc_size=20), rng=random.Random(7))

        arc = planner.ensure_arc(25)

        assert arc.start_installment == 21
        assert len(arc.twists) == 2
        assert arc.twists[0].target_installment in (29, 30)
        assert arc.twists[1].target_installment in (37, 38)

    def test_windows_are_configurable(self):
        settings = ArcSettings(arc_size=10, twist_windows=[TwistWindow(start_ratio=0.0, end_ratio=0.1)])
        planner = ArcPlanner(settings, rng=random.Random(1))

        arc = planner.ensure_arc(1)

        assert [t.target_installment for t in arc.twists] == [1]
        assert arc.twists[0].twist_type == "plot_reversal"

    def test_window_order_is_validated(self):
        with pytest.raises(ValueError):
            TwistWindow(start_ratio=0.5, end_ratio=0.4)


class TestArcPlanner:
    """Tests for ArcPlanner."""

    def setup_method(self):
        self.planner = ArcPlanner(ArcSettings(arc_size=10), rng=random.Random(3), target_installments=30)

    def test_arcs_partition_installments(self):
        arcs = self.planner.plan_arcs(30)

        assert [(a.start_installment, a.end_installment) for a in arcs] == [(1, 10), (11, 20), (21, 30)]
        assert self.planner.arc_number_for(10) == 1
        assert self.planner.arc_number_for(11) == 2

    def test_ensure_arc_is_idempotent(self):
        first = self.planner.ensure_arc(5)

        assert self.planner.ensure_arc(9) is first

    def test_ensure_arc_rejects_zero(self):
        with pytest.raises(ValueError):
            self.planner.ensure_arc(0)

    def test_final_arc_is_the_finale(self):
        arcs = self.planner.plan_arcs(30)

        assert arcs[0].theme == "foundation"
        assert arcs[1].theme == "conflict"
        assert arcs[2].theme == FINALE_THEME

    def test_tension_target(self):
        self.planner.ensure_arc(1)

        assert self.planner.get_tension_target(1) == 30
        assert self.planner.get_tension_target(8) == 95
        assert self.planner.get_tension_target(95) == self.planner.settings.default_tension

    def test_twist_lifecycle(self):
        arc = self.planner.ensure_arc(1)
        target = arc.twists[0].target_installment

        assert self.planner.mark_twist_foreshadowed(target) is True
        assert self.planner.mark_twist_foreshadowed(target) is False
        assert self.planner.mark_twist_revealed(target) is True
        assert self.planner.mark_twist_revealed(target) is False
        assert target not in [t.target_installment for t in self.planner.upcoming_twists(1)]

    def test_arc_status_transitions(self):
        arc = self.planner.ensure_arc(1)

        self.planner.start_arc(1)
        assert arc.status == ArcStatus.IN_PROGRESS
        self.planner.complete_arc(1)
        assert arc.status == ArcStatus.COMPLETED

    def test_snapshot_round_trip(self):
        self.planner.plan_arcs(30)
        self.planner.mark_twist_revealed(self.planner.arcs[1].twists[0].target_installment)
        self.planner.arcs[1].briefs = {3: "Cross the river."}

        restored = ArcPlanner.from_dict(self.planner.to_dict(), settings=ArcSettings(arc_size=10))

        assert sorted(restored.arcs) == [1, 2, 3]
        assert restored.arcs[1].twists[0].status == TwistStatus.REVEALED
        assert restored.arcs[1].briefs == {3: "Cross the river."}
        assert restored.arcs[2].tension_curve == self.planner.arcs[2].tension_curve


class TestPlotObjectives:
    """Tests for generate_plot_objectives."""

    def setup_method(self):
        settings = ArcSettings(arc_size=10, twist_windows=[TwistWindow(start_ratio=0.4, end_ratio=0.5)])
        self.planner = ArcPlanner(settings, rng=random.Random(0), target_installments=100)

    def test_slow_start(self):
        text = self.planner.generate_plot_objectives(1)

        assert "TENSION TARGET: 30/100" in text
        assert "PACING: Slow" in text
        assert "ARC 1 THEME: FOUNDATION" in text

    def test_twist_and_foreshadow(self):
        assert "FORESHADOW" in self.planner.generate_plot_objectives(3)
        assert "TWIST: Reveal" in self.planner.generate_plot_objectives(5)

    def test_climax(self):
        text = self.planner.generate_plot_objectives(8)

        assert "CLIMAX MODE" in text
        assert "CLIMAX: This is the climax installment" in text

    def test_milestones(self):
        assert "MILESTONE (major)" in self.planner.generate_plot_objectives(20)
        assert "MILESTONE (minor)" in self.planner.generate_plot_objectives(15)

    def test_finale_directives(self):
        assert "Begin steering toward the ending" in self.planner.generate_plot_objectives(85)
        assert "Converge all threads" in self.planner.generate_plot_objectives(97)
        assert "This is the final installment" in self.planner.generate_plot_objectives(100)
        assert "FINALE" not in self.planner.generate_plot_objectives(50)
