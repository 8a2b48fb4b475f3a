"""
Unit tests for the beat ledger.
"""

import pytest
from pydantic import ValidationError

from serialforge.config import BeatSettings, create_engine_settings_from_env
from serialforge.core.beats import (
    DEFAULT_COOLDOWN,
    BeatCategory,
    BeatLedger,
    category_of,
)


class TestCooldowns:
    """Tests for can_use and record_use."""

    def setup_method(self):
        self.ledger = BeatLedger()

    def test_unused_beat_is_allowed(self):
        assert self.ledger.can_use("tournament", 1) is True

    def test_cooldown_window(self):
        self.ledger.record_use("tournament", 10)

        assert self.ledger.can_use("tournament", 39) is False
        assert self.ledger.can_use("tournament", 40) is True

    def test_unknown_beat_uses_default_cooldown(self):
        self.ledger.record_use("picnic", 5)

        assert self.ledger.cooldown("picnic") == DEFAULT_COOLDOWN
        assert self.ledger.can_use("picnic", 5 + DEFAULT_COOLDOWN) is True

    def test_custom_cooldowns_override_defaults(self):
        ledger = BeatLedger(cooldowns={"face_slap": 1})
        ledger.record_use("face_slap", 3)

        assert ledger.can_use("face_slap", 4) is True

    def test_last_use_does_not_move_backwards(self):
        self.ledger.record_use("duel", 20)
        self.ledger.record_use("duel", 12)

        assert self.ledger.last_used["duel"] == 20

    def test_categories(self):
        assert category_of("face_slap") == BeatCategory.EMOTIONAL
        assert category_of("palace") == BeatCategory.SETTING
        assert category_of("duel") == BeatCategory.PLOT
        assert self.ledger.record_use("hope", 1).category == BeatCategory.EMOTIONAL


class TestRestrictions:
    """Tests for restriction listing and formatting."""

    def setup_method(self):
        self.ledger = BeatLedger()
        self.ledger.record_use("tournament", 10)
        self.ledger.record_use("face_slap", 10)

    def test_expired_beats_are_not_restricted(self):
        names = [r.beat_type for r in self.ledger.get_restrictions(14)]

        assert names == ["tournament"]

    def test_format(self):
        assert self.ledger.format_restrictions(11) == "AVOID: tournament (until 40), face_slap (until 13)"

    def test_format_nothing(self):
        assert BeatLedger().format_restrictions(1) == ""


class TestArcBudgets:
    """Tests for per-arc limits and statistics."""

    def setup_method(self):
        self.ledger = BeatLedger(cooldowns={"tournament": 1, "duel": 1})

    def test_arc_limit_blocks_even_after_cooldown(self):
        self.ledger.record_use("tournament", 2)

        assert self.ledger.can_use("tournament", 5) is True
        assert self.ledger.can_use_in_arc("tournament", 5, 1, 20) is False
        assert self.ledger.can_use_in_arc("tournament", 25, 21, 40) is True

    def test_default_limits(self):
        assert BeatLedger.arc_limit("duel") == 3
        assert BeatLedger.arc_limit("hope") == 5

    def test_arc_stats(self):
        self.ledger.record_use("duel", 2)
        self.ledger.record_use("duel", 4)
        self.ledger.record_use("tournament", 6)
        self.ledger.record_use("duel", 30)

        stats = self.ledger.arc_stats(1, 20)

        assert stats["total_beats"] == 3
        assert stats["unique_beats"] == 2
        assert stats["usage"]["duel"] == {"used": 2, "max": 3}


class TestDetectionAndRecommendations:
    """Tests for keyword detection and suggestions."""

    def test_detect_beats(self):
        text = "The tournament began. Her victory was a triumph, and the rival was humiliated."

        detected = {b.beat_type: b for b in BeatLedger.detect_beats(text)}

        assert "tournament" in detected
        assert detected["triumph"].intensity == 4
        assert detected["humiliation"].category == BeatCategory.EMOTIONAL

    def test_detect_nothing(self):
        assert BeatLedger.detect_beats("") == []

    def test_recommendations_avoid_cooling_beats(self):
        ledger = BeatLedger()
        ledger.record_use("tournament", 10)

        recs = ledger.get_recommendations(12, 1, 20)

        assert "tournament" in recs.avoid
        assert "tournament" not in recs.suggested
        assert len(recs.suggested) <= 5
        assert len(recs.avoid) <= 10

    def test_snapshot_round_trip(self):
        ledger = BeatLedger()
        ledger.record_use("betrayal", 7, intensity=8, description="the guide turns")

        restored = BeatLedger.from_dict(ledger.to_dict())

        assert restored.can_use("betrayal", 46) is False
        assert restored.can_use("betrayal", 47) is True
        assert restored.entries[0].description == "the guide turns"


class TestCooldownOverrides:
    """Tests for configured cooldown overrides."""

    def test_override_replaces_builtin_cooldown(self):
        ledger = BeatLedger(cooldowns=BeatSettings(cooldown_overrides={"betrayal": 5}).cooldown_overrides)
        ledger.record_use("betrayal", 10)

        assert ledger.cooldown("betrayal") == 5
        assert ledger.can_use("betrayal", 15) is True
        assert ledger.cooldown("tournament") == BeatLedger().cooldown("tournament")

    def test_snapshot_restore_applies_overrides(self):
        ledger = BeatLedger()
        ledger.record_use("betrayal", 10)

        restored = BeatLedger.from_dict(ledger.to_dict(), cooldowns={"betrayal": 5})

        assert restored.can_use("betrayal", 15) is True
        assert ledger.can_use("betrayal", 15) is False

    def test_negative_cooldown_is_rejected(self):
        with pytest.raises(ValidationError):
            BeatSettings(cooldown_overrides={"betrayal": -1})

    def test_overrides_from_environment(self, monkeypatch):
        monkeypatch.setenv("SERIALFORGE_BEAT_COOLDOWNS", '{"betrayal": 80, "hope": 2}')

        settings = create_engine_settings_from_env()

        assert settings.beats.cooldown_overrides == {"betrayal": 80, "hope": 2}
