"""
Viveka: importance scoring and decay.

Importance is computed once at insertion and then aged lazily: nothing
here mutates stored importance except ``reinforce`` (a recall hit) and
``apply_decay`` (an explicit maintenance pass). Given a record and a
timestamp, ``decay`` is a pure function.
"""

import logging
import math
from datetime import datetime
from typing import Callable, Optional

from .config import ViduraiConfig
from .models import DEFAULT_CATEGORY, MemoryRecord, Tier, clamp_importance

logger = logging.getLogger(__name__)

CATEGORY_PRIORS: dict[str, float] = {
    "fact": 0.8,
    "preference": 0.75,
    "goal": 0.7,
    "context": 0.5,
    "general": 0.4,
    "conversation": 0.3,
}

# Component weights, sum to 1.0
RECENCY_WEIGHT = 0.2
FREQUENCY_WEIGHT = 0.1
SIGNIFICANCE_WEIGHT = 0.3
CATEGORY_WEIGHT = 0.4

NEUTRAL_SIGNIFICANCE = 0.5


class Viveka:
    """Scoring engine for memory importance."""

    def __init__(
        self,
        config: Optional[ViduraiConfig] = None,
        significance: Optional[Callable[[str], float]] = None,
        recency_half_life_hours: float = 24.0,
        frequency_saturation: int = 10,
        access_boost: float = 0.05,
    ):
        self.config = config or ViduraiConfig()
        self.significance = significance
        self.recency_half_life_hours = recency_half_life_hours
        self.frequency_saturation = frequency_saturation
        self.access_boost = access_boost

    def category_prior(self, category: str) -> float:
        return CATEGORY_PRIORS.get(category, CATEGORY_PRIORS[DEFAULT_CATEGORY])

    def recency(self, record: MemoryRecord, now: datetime) -> float:
        hours = max((now - record.created_at).total_seconds(), 0.0) / 3600.0
        return 0.5 ** (hours / self.recency_half_life_hours)

    def frequency(self, record: MemoryRecord) -> float:
        if record.access_count <= 0:
            return 0.0
        return min(
            1.0,
            math.log1p(record.access_count) / math.log1p(self.frequency_saturation),
        )

    def semantic_significance(self, content: str) -> float:
        if self.significance is None:
            return NEUTRAL_SIGNIFICANCE
        try:
            return clamp_importance(self.significance(content))
        except Exception as e:
            logger.warning("Significance classifier failed, using neutral score: %s", e)
            return NEUTRAL_SIGNIFICANCE

    def score(
        self,
        record: MemoryRecord,
        now: datetime,
        explicit: Optional[float] = None,
    ) -> float:
        """
        Compute importance for a record.

        An explicit user-supplied importance takes precedence and skips the
        automatic computation entirely.
        """
        if explicit is not None:
            return clamp_importance(explicit)

        value = (
            RECENCY_WEIGHT * self.recency(record, now)
            + FREQUENCY_WEIGHT * self.frequency(record)
            + SIGNIFICANCE_WEIGHT * self.semantic_significance(record.content)
            + CATEGORY_WEIGHT * self.category_prior(record.category)
        )
        return round(clamp_importance(value), 4)

    def decay(self, record: MemoryRecord, now: datetime) -> float:
        """
        Importance of ``record`` as seen at ``now``.

        importance(t) = importance(0) * exp(-decay_rate * elapsed), elapsed in
        ``decay_unit_seconds`` since the record was last scored. Working
        records do not decay; wisdom records never drop below their floor.
        """
        if not self.config.enable_decay or record.tier == Tier.WORKING:
            return record.importance

        elapsed = max((now - record.scored_at).total_seconds(), 0.0)
        units = elapsed / self.config.decay_unit_seconds
        value = record.importance * math.exp(-self.config.decay_rate * units)

        if record.tier == Tier.WISDOM:
            floor = record.importance_floor
            if floor is None:
                floor = record.importance
            value = max(value, floor)
        return clamp_importance(value)

    def rescore(self, record: MemoryRecord, now: datetime) -> float:
        """
        Recompute an automatic score after content or category changed.

        Wisdom keeps its floor; the decay clock restarts.
        """
        value = self.score(record, now)
        if record.tier == Tier.WISDOM:
            value = max(value, record.importance_floor or record.importance)
            record.importance_floor = value
        record.importance = value
        record.scored_at = now
        return value

    def reinforce(self, record: MemoryRecord, now: datetime) -> float:
        """
        Record an access and pull importance back up.

        An automatic score gains the increase of its frequency term plus
        ``access_boost`` of the remaining headroom.
        """
        previous_frequency = self.frequency(record)
        record.access_count += 1
        if record.explicit_importance:
            return record.importance

        current = self.decay(record, now)
        gain = FREQUENCY_WEIGHT * (self.frequency(record) - previous_frequency)
        current = clamp_importance(current + gain)
        boosted = clamp_importance(current + self.access_boost * (1.0 - current))
        if record.tier == Tier.WISDOM:
            boosted = max(boosted, record.importance)
            record.importance_floor = boosted
        record.importance = boosted
        record.scored_at = now
        return record.importance

    def apply_decay(self, record: MemoryRecord, now: datetime) -> float:
        """Persist the decayed value and restart the decay clock."""
        if record.tier == Tier.WORKING or not self.config.enable_decay:
            return record.importance
        record.importance = self.decay(record, now)
        record.scored_at = now
        return record.importance
