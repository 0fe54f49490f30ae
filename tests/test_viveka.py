"""
Tests for Viveka scoring/decay and the tier transition rules.
"""

import math
from datetime import timedelta

import pytest

from vidurai.config import ViduraiConfig
from vidurai.errors import ValidationError
from vidurai.models import MemoryRecord, Tier, promote, validate_importance
from vidurai.viveka import FREQUENCY_WEIGHT, Viveka


def _record(clock, **kwargs) -> MemoryRecord:
    kwargs.setdefault("session_id", "s1")
    kwargs.setdefault("content", "some memory")
    return MemoryRecord(created_at=clock(), **kwargs)


# ── Scoring ──


class TestScore:
    def test_explicit_importance_short_circuits(self, clock):
        significance_calls = []

        def significance(text):
            significance_calls.append(text)
            return 1.0

        viveka = Viveka(significance=significance)
        record = _record(clock)
        assert viveka.score(record, clock(), explicit=0.42) == 0.42
        assert significance_calls == []

    def test_category_prior_orders_scores(self, clock):
        viveka = Viveka()
        fact = viveka.score(_record(clock, category="fact"), clock())
        chat = viveka.score(_record(clock, category="conversation"), clock())
        assert fact > chat

    def test_unknown_category_uses_general_prior(self, clock):
        viveka = Viveka()
        general = viveka.score(_record(clock, category="general"), clock())
        custom = viveka.score(_record(clock, category="recipe"), clock())
        assert custom == general

    def test_significance_signal_raises_score(self, clock):
        low = Viveka(significance=lambda text: 0.0).score(_record(clock), clock())
        high = Viveka(significance=lambda text: 1.0).score(_record(clock), clock())
        assert high > low

    def test_failing_significance_is_neutral(self, clock):
        def broken(text):
            raise RuntimeError("classifier down")

        neutral = Viveka().score(_record(clock), clock())
        assert Viveka(significance=broken).score(_record(clock), clock()) == neutral

    def test_score_in_unit_interval(self, clock):
        viveka = Viveka(significance=lambda text: 5.0)
        record = _record(clock, category="fact", access_count=1000)
        assert 0.0 <= viveka.score(record, clock()) <= 1.0

    def test_frequency_saturates(self, clock):
        viveka = Viveka(frequency_saturation=10)
        assert viveka.frequency(_record(clock, access_count=10)) == pytest.approx(1.0)
        assert viveka.frequency(_record(clock, access_count=500)) == 1.0
        assert viveka.frequency(_record(clock)) == 0.0


# ── Decay ──


class TestDecay:
    def test_exponential_decay(self, clock):
        viveka = Viveka(ViduraiConfig(decay_rate=0.1))
        record = _record(clock, importance=0.8, tier=Tier.EPISODIC)
        clock.advance(hours=5)
        assert viveka.decay(record, clock()) == pytest.approx(0.8 * 2.718281828 ** -0.5, rel=1e-6)

    def test_decay_is_monotonic(self, clock):
        viveka = Viveka(ViduraiConfig(decay_rate=0.2))
        record = _record(clock, importance=0.9, tier=Tier.EPISODIC)
        start = clock()
        values = [viveka.decay(record, start + timedelta(hours=h)) for h in range(0, 48, 3)]
        assert all(b <= a for a, b in zip(values, values[1:]))
        assert values[-1] < values[0]

    def test_decay_does_not_mutate(self, clock):
        viveka = Viveka()
        record = _record(clock, importance=0.7, tier=Tier.EPISODIC)
        clock.advance(hours=100)
        viveka.decay(record, clock())
        assert record.importance == 0.7

    def test_working_tier_does_not_decay(self, clock):
        viveka = Viveka(ViduraiConfig(decay_rate=0.5))
        record = _record(clock, importance=0.6, tier=Tier.WORKING)
        clock.advance(hours=10)
        assert viveka.decay(record, clock()) == 0.6

    def test_decay_disabled(self, clock):
        viveka = Viveka(ViduraiConfig(enable_decay=False))
        record = _record(clock, importance=0.6, tier=Tier.EPISODIC)
        clock.advance(days=30)
        assert viveka.decay(record, clock()) == 0.6

    def test_wisdom_never_below_floor(self, clock):
        viveka = Viveka(ViduraiConfig(decay_rate=0.9))
        record = _record(clock, importance=0.95, tier=Tier.EPISODIC)
        promote(record, Tier.WISDOM, clock())
        clock.advance(days=365)
        assert viveka.decay(record, clock()) == pytest.approx(0.95)

    def test_apply_decay_persists_and_resets_anchor(self, clock):
        viveka = Viveka(ViduraiConfig(decay_rate=0.1))
        record = _record(clock, importance=0.8, tier=Tier.EPISODIC)
        clock.advance(hours=2)
        expected = viveka.decay(record, clock())
        assert viveka.apply_decay(record, clock()) == pytest.approx(expected)
        assert record.scored_at == clock()
        assert viveka.decay(record, clock()) == pytest.approx(expected)


class TestReinforce:
    def test_reinforce_boosts_auto_scored(self, clock):
        viveka = Viveka()
        record = _record(clock, importance=0.5, tier=Tier.EPISODIC)
        viveka.reinforce(record, clock())
        assert record.access_count == 1
        assert record.importance > 0.5

    def test_reinforce_keeps_explicit_importance(self, clock):
        viveka = Viveka()
        record = _record(clock, importance=0.5, explicit_importance=True, tier=Tier.EPISODIC)
        viveka.reinforce(record, clock())
        assert record.access_count == 1
        assert record.importance == 0.5

    def test_reinforce_adds_frequency_gain(self, clock):
        viveka = Viveka(access_boost=0.0)
        record = _record(clock, importance=0.5)
        viveka.reinforce(record, clock())
        expected = 0.5 + FREQUENCY_WEIGHT * math.log1p(1) / math.log1p(10)
        assert record.importance == pytest.approx(expected)

        record.access_count = 10
        before = record.importance
        viveka.reinforce(record, clock())
        assert record.importance == pytest.approx(before)

    def test_frequent_access_raises_score(self, clock):
        viveka = Viveka()
        record = _record(clock)
        baseline = viveka.score(record, clock())
        record.access_count = 5
        assert viveka.score(record, clock()) > baseline

    def test_rescore_after_category_change(self, clock):
        viveka = Viveka()
        record = _record(clock, category="conversation")
        record.importance = viveka.score(record, clock())
        record.category = "fact"
        clock.advance(minutes=1)
        viveka.rescore(record, clock())
        assert record.importance == pytest.approx(
            viveka.score(record, clock()), abs=1e-9
        )
        assert record.scored_at == clock()

    def test_rescore_keeps_wisdom_floor(self, clock):
        viveka = Viveka()
        record = _record(clock, importance=0.95, tier=Tier.EPISODIC)
        promote(record, Tier.WISDOM, clock())
        record.category = "conversation"
        viveka.rescore(record, clock())
        assert record.importance == 0.95

    def test_reinforce_wisdom_non_decreasing(self, clock):
        viveka = Viveka(ViduraiConfig(decay_rate=0.5))
        record = _record(clock, importance=0.92, tier=Tier.EPISODIC)
        promote(record, Tier.WISDOM, clock())
        previous = record.importance
        for _ in range(5):
            clock.advance(days=3)
            viveka.reinforce(record, clock())
            assert record.importance >= previous
            previous = record.importance
        assert record.importance <= 1.0


# ── Tier transitions ──


class TestTierTransitions:
    def test_allowed_transitions(self, clock):
        record = _record(clock)
        promote(record, Tier.EPISODIC, clock())
        promote(record, Tier.WISDOM, clock())
        assert record.tier == Tier.WISDOM
        assert record.importance_floor == record.importance

    @pytest.mark.parametrize("source,target", [
        (Tier.WISDOM, Tier.EPISODIC),
        (Tier.WISDOM, Tier.WORKING),
        (Tier.EPISODIC, Tier.WORKING),
        (Tier.EPISODIC, Tier.EPISODIC),
    ])
    def test_illegal_transitions(self, clock, source, target):
        record = _record(clock, tier=source)
        with pytest.raises(ValidationError):
            promote(record, target, clock())

    def test_record_importance_is_clamped(self, clock):
        assert _record(clock, importance=1.7).importance == 1.0
        assert _record(clock, importance=-0.2).importance == 0.0

    def test_validate_importance(self):
        assert validate_importance(None) is None
        assert validate_importance(0.3) == 0.3
        with pytest.raises(ValidationError):
            validate_importance(1.01)
        with pytest.raises(ValidationError):
            validate_importance("high")
