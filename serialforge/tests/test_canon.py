"""
Unit tests for the canon resolver.

Tests cover:
- Authority-ranked conflict resolution
- Escalation of equal high-stakes contradictions to the issue backlog
- Death tracking and dead-character consistency checks
- Prompt rendering and snapshot round trip
"""

import pytest

from serialforge.core.canon import (
    CanonFact,
    CanonLevel,
    CanonResolver,
    ContinuityIssue,
    FactCategory,
    IssueSeverity,
    IssueStatus,
    Resolution,
)


def fact(subject, predicate, value, authority=CanonLevel.INSTALLMENT_FACT, category=FactCategory.CHARACTER, **kwargs):
    return CanonFact(subject=subject, predicate=predicate, value=value, authority=authority, category=category, **kwargs)


class TestCanonFact:
    """Tests for CanonFact."""

    def test_key_is_case_insensitive(self):
        assert fact("Mira", "Location", "x").key == fact("mira ", "location", "y").key

    def test_boolean_values_are_normalized(self):
        assert fact("Mira", "is_dead", True).value == "true"

    def test_validity_window(self):
        f = fact("Mira", "rank", "captain", valid_from=10, valid_until=20)

        assert f.is_active() is True
        assert f.is_active(9) is False
        assert f.is_active(15) is True
        assert f.is_active(21) is False

    def test_unknown_category_falls_back_to_other(self):
        assert fact("Mira", "x", "y", category="nonsense").category == FactCategory.OTHER


class TestConflictResolution:
    """Tests for register_fact."""

    def setup_method(self):
        self.canon = CanonResolver(project_id="story-1")

    def test_first_fact_is_registered(self):
        result = self.canon.register_fact(fact("Mira", "location", "harbor"))

        assert result.success is True
        assert result.conflict is None
        assert self.canon.get_fact("mira", "LOCATION").value == "harbor"

    def test_same_value_is_not_a_conflict(self):
        self.canon.register_fact(fact("Mira", "location", "harbor"))
        result = self.canon.register_fact(fact("Mira", "location", "Harbor"))

        assert result.success is True
        assert result.conflict is None

    def test_higher_authority_replaces(self):
        self.canon.register_fact(fact("Mira", "location", "harbor"))
        result = self.canon.register_fact(fact("Mira", "location", "tower", authority=CanonLevel.ARC_SUMMARY))

        assert result.success is True
        assert result.conflict.resolution == Resolution.USE_NEW
        assert self.canon.get_fact("Mira", "location").value == "tower"
        assert [f.value for f in self.canon.history] == ["harbor"]

    def test_lower_authority_is_discarded(self):
        self.canon.register_fact(fact("Mira", "location", "tower", authority=CanonLevel.WORLD_BIBLE))
        result = self.canon.register_fact(fact("Mira", "location", "harbor"))

        assert result.success is True
        assert result.conflict.resolution == Resolution.KEEP_EXISTING
        assert self.canon.get_fact("Mira", "location").value == "tower"

    def test_equal_low_authority_newest_wins(self):
        self.canon.register_fact(fact("Mira", "location", "harbor"))
        result = self.canon.register_fact(fact("Mira", "location", "market"))

        assert result.success is True
        assert self.canon.get_fact("Mira", "location").value == "market"
        assert self.canon.issues == []

    def test_equal_high_stakes_authority_escalates(self):
        self.canon.register_fact(fact("Mira", "sister", "Lena", authority=CanonLevel.ARC_SUMMARY))
        result = self.canon.register_fact(fact("Mira", "sister", "Tova", authority=CanonLevel.ARC_SUMMARY))

        assert result.success is False
        assert result.issue is not None
        assert result.issue.severity == IssueSeverity.CRITICAL
        assert result.issue.suggested_resolution == Resolution.MANUAL_REVIEW
        # Existing canon is untouched until a human decides
        assert self.canon.get_fact("Mira", "sister").value == "Lena"
        assert self.canon.get_open_issues() == [result.issue]

    def test_threshold_is_configurable(self):
        canon = CanonResolver(high_stakes_threshold=CanonLevel.WORLD_BIBLE)
        canon.register_fact(fact("Mira", "sister", "Lena", authority=CanonLevel.ARC_SUMMARY))
        result = canon.register_fact(fact("Mira", "sister", "Tova", authority=CanonLevel.ARC_SUMMARY))

        assert result.success is True
        assert canon.get_fact("Mira", "sister").value == "Tova"

    def test_severity_follows_category(self):
        self.canon.register_fact(fact("Sword", "owner", "Mira", authority=CanonLevel.ARC_SUMMARY, category=FactCategory.ITEM))
        result = self.canon.register_fact(
            fact("Sword", "owner", "Oren", authority=CanonLevel.ARC_SUMMARY, category=FactCategory.ITEM)
        )

        assert result.issue.severity == IssueSeverity.MINOR

    def test_at_most_one_fact_per_key(self):
        self.canon.register_many([
            fact("Mira", "location", "harbor"),
            fact("mira", "location", "market"),
            fact("MIRA", "location", "tower"),
        ])

        assert len(self.canon.facts) == 1


class TestIssueBacklog:
    """Tests for resolving and ignoring continuity issues."""

    def setup_method(self):
        self.canon = CanonResolver()
        self.canon.register_fact(fact("Mira", "sister", "Lena", authority=CanonLevel.ARC_SUMMARY))
        self.issue = self.canon.register_fact(
            fact("Mira", "sister", "Tova", authority=CanonLevel.ARC_SUMMARY)
        ).issue

    def test_resolve_keeping_incoming(self):
        assert self.canon.resolve_issue(self.issue.issue_id, keep="incoming") is True

        assert self.canon.get_fact("Mira", "sister").value == "Tova"
        assert self.issue.status == IssueStatus.RESOLVED
        assert self.canon.get_open_issues() == []

    def test_resolve_twice_is_rejected(self):
        self.canon.resolve_issue(self.issue.issue_id)

        assert self.canon.resolve_issue(self.issue.issue_id) is False

    def test_resolve_with_bad_choice(self):
        with pytest.raises(ValueError):
            self.canon.resolve_issue(self.issue.issue_id, keep="both")

    def test_ignore(self):
        assert self.canon.ignore_issue(self.issue.issue_id) is True
        assert self.issue.status == IssueStatus.IGNORED
        assert self.canon.get_critical_issues() == []


class TestDeathTracking:
    """Tests for death facts and dead-character appearances."""

    def setup_method(self):
        self.canon = CanonResolver()
        self.canon.register_fact(fact("Oren", "role", "guide"))

    def test_mark_dead(self):
        self.canon.mark_dead("Oren", installment=12)

        assert self.canon.is_entity_dead("oren") is True
        assert self.canon.dead_entities() == ["Oren"]
        assert self.canon.get_fact("Oren", "is_dead").authority == CanonLevel.VOLUME_SUMMARY

    def test_status_predicate_counts_as_death(self):
        self.canon.register_fact(fact("Lena", "status", "killed"))

        assert self.canon.is_entity_dead("Lena") is True

    def test_alive_false_counts_as_death(self):
        self.canon.register_fact(fact("Tova", "is_alive", "false"))

        assert self.canon.is_entity_dead("Tova") is True

    def test_dead_character_acting_is_flagged(self):
        self.canon.mark_dead("Oren", installment=12)

        issues = self.canon.check_text_consistency('Oren smiled. "Keep walking," he said.', installment=13)

        assert len(issues) == 1
        assert issues[0].severity == IssueSeverity.CRITICAL
        assert issues[0].installment == 13
        assert self.canon.get_critical_issues() == issues

    def test_memorial_mention_is_not_flagged(self):
        self.canon.mark_dead("Oren", installment=12)

        issues = self.canon.check_text_consistency("She remembered Oren at the grave.", installment=13)

        assert issues == []

    def test_find_dead_appearances_is_read_only(self):
        self.canon.mark_dead("Oren")

        found = self.canon.find_dead_appearances("Oren drew his knife.")

        assert found == [("Oren", "Oren drew his knife.")]
        assert self.canon.issues == []


class TestCanonContext:
    """Tests for build_canon_context and snapshots."""

    def setup_method(self):
        self.canon = CanonResolver(project_id="story-1")
        self.canon.register_fact(fact("Mira", "role", "courier"))
        self.canon.register_fact(fact("Oren", "role", "guide"))
        self.canon.mark_dead("Oren")
        self.canon.register_fact(fact(
            "Magic", "cost", "memory", authority=CanonLevel.WORLD_BIBLE, category=FactCategory.WORLD_RULE
        ))

    def test_empty_canon_renders_nothing(self):
        assert CanonResolver().build_canon_context() == ""

    def test_context_marks_dead_and_lists_rules(self):
        text = self.canon.build_canon_context()

        assert "CANON" in text
        assert "Oren [DEAD" in text
        assert "[WORLD RULES]" in text
        assert "Magic cost: memory" in text

    def test_snapshot_round_trip(self):
        self.canon.register_fact(fact("Oren", "is_dead", "false", authority=CanonLevel.VOLUME_SUMMARY))

        restored = CanonResolver.from_dict(self.canon.to_dict())

        assert restored.project_id == "story-1"
        assert len(restored.facts) == len(self.canon.facts)
        assert restored.is_entity_dead("Oren") is True
        assert len(restored.issues) == 1
        assert isinstance(restored.issues[0], ContinuityIssue)
