"""
Three-kosha tiered store.

One ``KoshaStore`` holds every memory of one session across three tiers:

- Working (Annamaya): fixed-capacity FIFO with TTL, no decay. The oldest
  record leaves on overflow: promoted to episodic when important enough,
  deleted otherwise.
- Episodic (Manomaya): count cap + token budget. Overflow never deletes;
  it signals the compression engine.
- Wisdom (Vijnanamaya): unbounded, never removed automatically.

All mutating calls must run under ``store.lock``; the facade holds it for
the full duration of an operation, including external capability calls
made by compression.
"""

import logging
import threading
from collections import Counter, deque
from datetime import datetime
from typing import Callable, Iterable, Optional

from .config import ViduraiConfig
from .errors import ValidationError
from .models import MemoryRecord, Tier, promote
from .viveka import Viveka

logger = logging.getLogger(__name__)


def _normalize_text(text: str) -> str:
    return " ".join(text.split()).lower()


class KoshaStore:
    """Tiered memory store for a single session."""

    def __init__(
        self,
        session_id: str,
        config: Optional[ViduraiConfig] = None,
        viveka: Optional[Viveka] = None,
    ):
        self.session_id = session_id
        self.config = config or ViduraiConfig()
        self.viveka = viveka or Viveka(self.config)
        self.lock = threading.RLock()
        self._records: dict[str, MemoryRecord] = {}
        self._working: deque[str] = deque()  # ids, oldest first

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, memory_id: str) -> bool:
        return memory_id in self._records

    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        return self._records.get(memory_id)

    def records(self, tiers: Optional[Iterable[Tier]] = None) -> list[MemoryRecord]:
        if tiers is None:
            return list(self._records.values())
        wanted = set(tiers)
        return [r for r in self._records.values() if r.tier in wanted]

    def tier_count(self, tier: Tier) -> int:
        return sum(1 for r in self._records.values() if r.tier == tier)

    def tier_tokens(self, tier: Tier) -> int:
        return sum(r.tokens for r in self._records.values() if r.tier == tier)

    # ── Insertion & eviction ──

    def insert(self, record: MemoryRecord, now: datetime) -> Tier:
        """
        Place a new record.

        Explicit importance at or above the consolidation threshold goes
        straight to wisdom; everything else enters working memory.
        """
        if record.id in self._records:
            raise ValidationError(f"duplicate memory id: {record.id}")
        if record.session_id != self.session_id:
            raise ValidationError(
                f"record belongs to session {record.session_id!r}, not {self.session_id!r}"
            )

        if (
            record.explicit_importance
            and record.importance >= self.config.consolidation_threshold
        ):
            record.tier = Tier.WISDOM
            record.importance_floor = record.importance
            self._records[record.id] = record
            logger.debug("Memory %s routed directly to wisdom", record.id)
            return record.tier

        record.tier = Tier.WORKING
        self._records[record.id] = record
        self._working.append(record.id)

        if len(self._working) > self.config.working_capacity:
            self._evict_working(self._working[0], now, reason="capacity")
        return record.tier

    def _evict_working(self, memory_id: str, now: datetime, reason: str) -> Optional[MemoryRecord]:
        """
        Take one record out of working memory.

        Returns the record if it was deleted, None if it was promoted.
        """
        self._working.remove(memory_id)
        record = self._records[memory_id]
        if record.importance >= self.config.promote_on_evict_threshold:
            promote(record, Tier.EPISODIC, now)
            logger.debug(
                "Working memory %s promoted to episodic on %s eviction (importance %.3f)",
                memory_id, reason, record.importance,
            )
            return None

        del self._records[memory_id]
        logger.info(
            "Evicted working memory %s for session %s (%s, importance %.3f)",
            memory_id, self.session_id, reason, record.importance,
        )
        return record

    def evict_due(self, now: datetime) -> list[MemoryRecord]:
        """Expire working records past their TTL. Returns deleted records."""
        ttl = self.config.working_ttl_seconds
        if ttl <= 0:
            return []
        expired = [
            memory_id for memory_id in self._working
            if (now - self._records[memory_id].created_at).total_seconds() > ttl
        ]
        deleted = []
        for memory_id in expired:
            record = self._evict_working(memory_id, now, reason="ttl")
            if record is not None:
                deleted.append(record)
        return deleted

    def promote_candidates(self, now: datetime) -> list[MemoryRecord]:
        """Consolidate episodic records whose importance reached the wisdom threshold."""
        promoted = []
        for record in self.records([Tier.EPISODIC]):
            current = self.viveka.decay(record, now)
            if current >= self.config.consolidation_threshold:
                record.importance = current
                promote(record, Tier.WISDOM, now)
                promoted.append(record)
                logger.info("Memory %s consolidated into wisdom", record.id)
        return promoted

    def reposition(self, record: MemoryRecord, now: datetime) -> Tier:
        """Re-apply routing after an importance change (update path)."""
        if record.tier == Tier.WISDOM:
            return record.tier
        if record.importance >= self.config.consolidation_threshold:
            if record.tier == Tier.WORKING:
                self._working.remove(record.id)
            promote(record, Tier.WISDOM, now)
        return record.tier

    def episodic_over_capacity(self) -> bool:
        """Hard limits: episodic count past capacity or tokens past the full budget."""
        return (
            self.tier_count(Tier.EPISODIC) > self.config.episodic_capacity
            or self.tier_tokens(Tier.EPISODIC) > self.config.token_budget
        )

    # ── Removal ──

    def remove(self, memory_id: str) -> Optional[MemoryRecord]:
        record = self._records.pop(memory_id, None)
        if record is not None and record.tier == Tier.WORKING:
            self._working.remove(memory_id)
        return record

    def clear(self, category: Optional[str] = None) -> int:
        ids = [
            r.id for r in self._records.values()
            if category is None or r.category == category
        ]
        for memory_id in ids:
            self.remove(memory_id)
        return len(ids)

    def replace(
        self,
        source_ids: list[str],
        representative: MemoryRecord,
    ) -> None:
        """
        Swap a batch of episodic records for one representative.

        Checked in full before anything changes: either every source is
        removed and the representative inserted, or nothing happens.
        """
        missing = [i for i in source_ids if i not in self._records]
        if missing:
            raise ValidationError(f"compression sources missing: {missing}")
        not_episodic = [i for i in source_ids if self._records[i].tier != Tier.EPISODIC]
        if not_episodic:
            raise ValidationError(f"compression sources not episodic: {not_episodic}")
        if representative.id in self._records:
            raise ValidationError(f"duplicate memory id: {representative.id}")

        for memory_id in source_ids:
            del self._records[memory_id]
        representative.tier = Tier.EPISODIC
        self._records[representative.id] = representative

    # ── Query ──

    def query(
        self,
        now: datetime,
        category: Optional[str] = None,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        tiers: Optional[Iterable[Tier]] = None,
        min_importance: float = 0.0,
    ) -> list[MemoryRecord]:
        """Filtered records, newest first."""
        results = []
        for record in self.records(tiers):
            if category is not None and record.category != category:
                continue
            if after is not None and record.created_at < after:
                continue
            if before is not None and record.created_at > before:
                continue
            if min_importance and self.viveka.decay(record, now) < min_importance:
                continue
            results.append(record)
        results.sort(key=lambda r: r.created_at, reverse=True)
        return results

    def rank(
        self,
        query: str,
        similarity: Callable[[str, str], float],
        now: datetime,
        limit: int = 5,
        category: Optional[str] = None,
        min_score: float = 0.0,
    ) -> list[tuple[MemoryRecord, float]]:
        """
        Rank records from all tiers against a query.

        combined = relevance_weight * relevance + importance_weight * importance,
        using decayed importance. Records whose content is the query itself
        (ignoring case and whitespace) rank ahead of everything else; then
        combined score, higher importance, newer. Exceptions from
        ``similarity`` propagate to the caller.
        """
        wanted = _normalize_text(query)
        scored = []
        for record in self.query(now, category=category):
            relevance = max(0.0, min(1.0, float(similarity(query, record.content))))
            importance = self.viveka.decay(record, now)
            combined = (
                self.config.relevance_weight * relevance
                + self.config.importance_weight * importance
            )
            if combined < min_score:
                continue
            exact = _normalize_text(record.content) == wanted
            scored.append((record, combined, importance, exact))

        scored.sort(
            key=lambda item: (item[3], item[1], item[2], item[0].created_at),
            reverse=True,
        )
        return [(record, combined) for record, combined, _, _ in scored[:limit]]

    def stats(self, now: datetime) -> dict:
        records = list(self._records.values())
        importances = [self.viveka.decay(r, now) for r in records]
        return {
            "total": len(records),
            "by_category": dict(Counter(r.category for r in records)),
            "by_tier": {tier.value: self.tier_count(tier) for tier in Tier},
            "avg_importance": (
                round(sum(importances) / len(importances), 4) if importances else 0.0
            ),
            "token_count": sum(r.tokens for r in records),
            "episodic_count": self.tier_count(Tier.EPISODIC),
            "episodic_tokens": self.tier_tokens(Tier.EPISODIC),
        }
