"""
Vismriti: compression of low-value episodic memories.

Selects the least important, oldest episodic records, asks the injected
summarizer for one representative text and swaps the batch for a single
episodic record. Wisdom records and anything above the protect threshold
are never candidates.

The swap is all-or-nothing: the summarizer and similarity calls happen
before the store is touched, so a failing capability leaves the store
exactly as it was.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .config import CompressionMode, ViduraiConfig
from .errors import CapabilityUnavailableError
from .koshas import KoshaStore
from .models import CompressionEvent, MemoryRecord, Tier
from .token_budget import estimate_texts_tokens

logger = logging.getLogger(__name__)

MIN_BATCH = 2
MIXED_CATEGORY = "general"


class Vismriti:
    """Compression engine shared by every session store."""

    def __init__(
        self,
        config: Optional[ViduraiConfig] = None,
        summarizer: Optional[Callable[[list[str]], str]] = None,
        similarity: Optional[Callable[[str, str], float]] = None,
    ):
        self.config = config or ViduraiConfig()
        self.summarizer = summarizer
        self.similarity = similarity
        self._events: list[CompressionEvent] = []
        self._events_lock = threading.Lock()

    def should_compress(self, stats: dict, mode: Optional[CompressionMode] = None) -> bool:
        """Token usage past the mode's threshold, or episodic count past capacity."""
        preset = self.config.preset(mode)
        token_limit = preset.threshold * self.config.token_budget
        return (
            stats["episodic_tokens"] > token_limit
            or stats["episodic_count"] > self.config.episodic_capacity
        )

    def is_protected(self, record: MemoryRecord, store: KoshaStore, now: datetime) -> bool:
        if record.tier == Tier.WISDOM:
            return True
        return store.viveka.decay(record, now) > self.config.protect_threshold

    def select_candidates(
        self,
        store: KoshaStore,
        now: datetime,
        mode: Optional[CompressionMode] = None,
        force: bool = False,
    ) -> list[MemoryRecord]:
        """
        Pick the batch to compress: least important first, then oldest.

        The batch grows until episodic tokens fall below
        ``threshold * budget * (1 - safety_margin)`` and the episodic count
        is back within capacity, capped at the preset's ``max_batch``.
        Forced runs with nothing to shed take ``forced_batch`` records.
        """
        preset = self.config.preset(mode)
        pool = [
            r for r in store.records([Tier.EPISODIC])
            if not self.is_protected(r, store, now)
        ]
        pool.sort(key=lambda r: (store.viveka.decay(r, now), r.created_at))

        episodic_tokens = store.tier_tokens(Tier.EPISODIC)
        episodic_count = store.tier_count(Tier.EPISODIC)
        target_tokens = preset.threshold * self.config.token_budget * (1 - preset.safety_margin)
        tokens_to_shed = episodic_tokens - target_tokens
        # N records collapse into 1, so shedding k records needs a batch of k + 1
        records_to_shed = episodic_count - self.config.episodic_capacity + 1

        if tokens_to_shed <= 0 and records_to_shed <= 1:
            if not force:
                return []
            batch_size = preset.forced_batch
            batch = pool[:batch_size]
        else:
            batch = []
            shed = 0
            for record in pool:
                if len(batch) >= preset.max_batch:
                    break
                if (
                    shed >= tokens_to_shed
                    and len(batch) >= max(records_to_shed, MIN_BATCH)
                ):
                    break
                batch.append(record)
                shed += record.tokens

        if len(batch) < MIN_BATCH:
            return []
        return batch

    def compress(
        self,
        store: KoshaStore,
        candidates: list[MemoryRecord],
        now: datetime,
        mode: Optional[CompressionMode] = None,
    ) -> CompressionEvent:
        """
        Replace ``candidates`` with one summarized representative.

        Raises CapabilityUnavailableError, leaving the store untouched, when
        summarization or the quality measurement fails.
        """
        mode = CompressionMode(mode or self.config.compression_mode)
        if self.summarizer is None:
            raise CapabilityUnavailableError("summarization", "no summarizer configured")
        if self.similarity is None:
            raise CapabilityUnavailableError("similarity", "no similarity configured")
        for record in candidates:
            if self.is_protected(record, store, now):
                raise ValueError(f"protected memory selected for compression: {record.id}")

        texts = [r.content for r in candidates]
        try:
            summary = self.summarizer(texts)
        except CapabilityUnavailableError:
            raise
        except Exception as e:
            raise CapabilityUnavailableError("summarization", str(e)) from e
        if not isinstance(summary, str):
            raise CapabilityUnavailableError(
                "summarization", f"expected text, got {type(summary).__name__}"
            )
        if not summary.strip():
            raise CapabilityUnavailableError("summarization", "empty summary returned")

        try:
            quality = float(self.similarity("\n".join(texts), summary))
        except CapabilityUnavailableError:
            raise
        except Exception as e:
            raise CapabilityUnavailableError("similarity", str(e)) from e
        quality = max(0.0, min(1.0, quality))

        representative = self._build_representative(store, candidates, summary, now)
        source_ids = [r.id for r in candidates]
        tokens_before = estimate_texts_tokens(texts)

        store.replace(source_ids, representative)

        event = CompressionEvent(
            session_id=store.session_id,
            timestamp=now,
            source_ids=tuple(source_ids),
            result_id=representative.id,
            tokens_before=tokens_before,
            tokens_after=representative.tokens,
            quality=quality,
            mode=mode.value,
        )
        with self._events_lock:
            self._events.append(event)

        logger.info(
            "Compressed %d memories into %s for session %s (%s): %d -> %d tokens, quality %.3f",
            len(source_ids), representative.id, store.session_id, mode.value,
            event.tokens_before, event.tokens_after, quality,
        )
        return event

    @staticmethod
    def _build_representative(
        store: KoshaStore,
        candidates: list[MemoryRecord],
        summary: str,
        now: datetime,
    ) -> MemoryRecord:
        categories = {r.category for r in candidates}
        category = categories.pop() if len(categories) == 1 else MIXED_CATEGORY

        provenance = []
        for record in candidates:
            provenance.append({
                "id": record.id,
                "category": record.category,
                "created_at": record.created_at.isoformat(),
                "metadata": dict(record.metadata),
            })
            # Sources that were themselves compressed keep their lineage
            provenance.extend(record.metadata.get("provenance", []))

        return MemoryRecord(
            session_id=store.session_id,
            content=summary.strip(),
            category=category,
            created_at=min(r.created_at for r in candidates),
            updated_at=now,
            scored_at=now,
            importance=max(store.viveka.decay(r, now) for r in candidates),
            tier=Tier.EPISODIC,
            access_count=sum(r.access_count for r in candidates),
            metadata={
                "compressed": True,
                "compressed_from": [r.id for r in candidates],
                "provenance": provenance,
            },
        )

    def run(
        self,
        store: KoshaStore,
        now: datetime,
        mode: Optional[CompressionMode] = None,
        force: bool = False,
    ) -> Optional[CompressionEvent]:
        """Check the trigger, select and compress. Returns None when nothing ran."""
        if not force and not self.should_compress(store.stats(now), mode):
            return None
        candidates = self.select_candidates(store, now, mode, force=force)
        if not candidates:
            logger.debug("No compressible memories for session %s", store.session_id)
            return None
        return self.compress(store, candidates, now, mode)

    def events(self, session_id: Optional[str] = None) -> list[CompressionEvent]:
        with self._events_lock:
            if session_id is None:
                return list(self._events)
            return [e for e in self._events if e.session_id == session_id]

    def last_compression_at(self, session_id: str) -> Optional[datetime]:
        with self._events_lock:
            for event in reversed(self._events):
                if event.session_id == session_id:
                    return event.timestamp
        return None
