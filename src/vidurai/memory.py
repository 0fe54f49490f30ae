"""
Vidurai memory facade.

The public, synchronous operation surface. Each session gets its own
``KoshaStore`` guarded by its own lock; the compression engine and the
RL agent (with its Q-table) are shared by every session of a facade.

Nothing runs in the background. Decay is computed at read time and TTL
eviction, consolidation and compression happen on the next operation
that touches a session, using the injected clock.

Usage:
    memory = Vidurai(summarizer=create_llm_summarizer())
    memory.remember("user-1", "Prefers dark mode", category="preference")
    hits = memory.recall("user-1", "what theme does the user like?")
"""

import logging
import random
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import ViduraiConfig
from .errors import CapabilityUnavailableError, NotFoundError, QuotaExceededError, ValidationError
from .koshas import KoshaStore
from .models import (
    MemoryRecord,
    Tier,
    normalize_category,
    validate_importance,
)
from .rl_agent import PolicyAgent, QTableStore
from .similarity import KeywordSimilarity
from .viveka import Viveka
from .vismriti import Vismriti

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(name: str, value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise ValidationError(f"{name} must be a datetime")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value


class _GuardedSimilarity:
    """Turns any failure of an injected similarity into CapabilityUnavailableError."""

    def __init__(self, similarity: Callable[[str, str], float]):
        self._similarity = similarity

    def __call__(self, text_a: str, text_b: str) -> float:
        try:
            return float(self._similarity(text_a, text_b))
        except CapabilityUnavailableError:
            raise
        except Exception as e:
            raise CapabilityUnavailableError("similarity", str(e)) from e


class Vidurai:
    """Three-kosha memory with Viveka scoring, Vismriti compression and an RL policy."""

    def __init__(
        self,
        config: Optional[ViduraiConfig] = None,
        summarizer: Optional[Callable[[list[str]], str]] = None,
        similarity: Optional[Callable[[str, str], float]] = None,
        significance: Optional[Callable[[str], float]] = None,
        agent: Optional[PolicyAgent] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or ViduraiConfig()
        self.clock = clock or utc_now
        self._keyword_similarity = KeywordSimilarity()
        self.similarity = _GuardedSimilarity(similarity or self._keyword_similarity)
        self.viveka = Viveka(self.config, significance=significance)
        self.vismriti = Vismriti(self.config, summarizer=summarizer, similarity=self.similarity)

        if agent is not None:
            self.agent: Optional[PolicyAgent] = agent
        elif self.config.enable_rl_agent:
            self.agent = PolicyAgent(
                self.config,
                persistence=QTableStore(self.config.resolve_q_table_path()),
                rng=rng,
            )
        else:
            self.agent = None

        self._stores: dict[str, KoshaStore] = {}
        self._lock = threading.Lock()
        self._writes = 0

    # ── Sessions ──

    def _store(self, session_id: str, create: bool = False) -> Optional[KoshaStore]:
        with self._lock:
            store = self._stores.get(session_id)
            if store is None and create:
                store = KoshaStore(session_id, self.config, self.viveka)
                self._stores[session_id] = store
            return store

    def _find(self, memory_id: str) -> tuple[KoshaStore, MemoryRecord]:
        _require_text("memory_id", memory_id)
        with self._lock:
            stores = list(self._stores.values())
        for store in stores:
            with store.lock:
                record = store.get(memory_id)
            if record is not None:
                return store, record
        raise NotFoundError(memory_id)

    def sessions(self) -> list[str]:
        with self._lock:
            return list(self._stores)

    def _maintain(self, store: KoshaStore, now: datetime) -> None:
        """Lazy upkeep run at the start of every operation on a session."""
        store.evict_due(now)
        store.promote_candidates(now)

    # ── Operations ──

    def remember(
        self,
        session_id: str,
        content: str,
        category: str = "general",
        metadata: Optional[dict] = None,
        importance: Optional[float] = None,
    ) -> MemoryRecord:
        """Store a memory and return a copy of the stored record."""
        _require_text("session_id", session_id)
        _require_text("content", content)
        category = normalize_category(category)
        importance = validate_importance(importance)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a mapping")

        store = self._store(session_id, create=True)
        with store.lock:
            now = self.clock()
            self._maintain(store, now)

            limit = self.config.max_memories_per_session
            if limit and len(store) >= limit:
                raise QuotaExceededError(len(store), limit)

            record = MemoryRecord(
                session_id=session_id,
                content=content,
                category=category,
                metadata=dict(metadata or {}),
                created_at=now,
            )
            record.importance = self.viveka.score(record, now, explicit=importance)
            record.explicit_importance = importance is not None
            tier = store.insert(record, now)
            logger.debug(
                "Remembered %s in %s for session %s (importance %.3f)",
                record.id, tier.value, session_id, record.importance,
            )

            self._after_write(store, now)
            return record.copy()

    def _after_write(self, store: KoshaStore, now: datetime) -> None:
        """Let the agent decide, then enforce the threshold trigger."""
        with self._lock:
            self._writes += 1
            decide = (
                self.agent is not None
                and self._writes % self.config.decision_interval == 0
            )

        compressed = False
        if decide:
            step = self.agent.step(store, self.vismriti, now)
            compressed = step.event is not None

        if not compressed and self.vismriti.should_compress(store.stats(now)):
            try:
                self.vismriti.run(store, now)
            except CapabilityUnavailableError as e:
                logger.warning(
                    "Threshold compression skipped for session %s: %s",
                    store.session_id, e,
                )

    def recall(
        self,
        session_id: str,
        query: str,
        limit: int = 5,
        category: Optional[str] = None,
        min_score: float = 0.0,
    ) -> list[MemoryRecord]:
        """Ranked memories for ``query``, highest combined score first."""
        _require_text("session_id", session_id)
        _require_text("query", query)
        if not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        if not 0.0 <= min_score <= 1.0:
            raise ValidationError("min_score must be in [0, 1]")
        if category is not None:
            category = normalize_category(category)

        store = self._store(session_id)
        if store is None:
            return []

        with store.lock:
            now = self.clock()
            self._maintain(store, now)
            try:
                ranked = store.rank(query, self.similarity, now, limit, category, min_score)
            except CapabilityUnavailableError as e:
                logger.warning("Similarity unavailable, recalling by keywords: %s", e)
                ranked = store.rank(
                    query, self._keyword_similarity, now, limit, category, min_score
                )

            for record, _ in ranked:
                self.viveka.reinforce(record, now)
            store.promote_candidates(now)
            return [record.copy(score=round(score, 4)) for record, score in ranked]

    def search(
        self,
        session_id: str,
        category: Optional[str] = None,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[MemoryRecord]:
        """Filtered memories, newest first. No ranking, no reinforcement."""
        _require_text("session_id", session_id)
        if not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        if category is not None:
            category = normalize_category(category)
        after = _as_utc("after", after)
        before = _as_utc("before", before)
        if after is not None and before is not None and after > before:
            raise ValidationError("after must not be later than before")

        store = self._store(session_id)
        if store is None:
            return []
        with store.lock:
            now = self.clock()
            self._maintain(store, now)
            records = store.query(now, category=category, after=after, before=before)
            return [r.copy() for r in records[:limit]]

    def update(
        self,
        memory_id: str,
        content: Optional[str] = None,
        category: Optional[str] = None,
        metadata: Optional[dict] = None,
        importance: Optional[float] = None,
    ) -> MemoryRecord:
        """
        Edit a memory in place.

        Setting importance makes it an explicit override; reaching the
        consolidation threshold promotes the memory to wisdom. Wisdom
        importance can be raised but not lowered. Automatically scored
        memories are rescored when their content or category changes.
        """
        if content is not None:
            _require_text("content", content)
        if category is not None:
            category = normalize_category(category)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a mapping")
        importance = validate_importance(importance)

        store, _ = self._find(memory_id)
        with store.lock:
            record = store.get(memory_id)
            if record is None:
                raise NotFoundError(memory_id)
            now = self.clock()
            if (
                importance is not None
                and record.tier == Tier.WISDOM
                and importance < record.importance
            ):
                raise ValidationError(
                    "wisdom importance cannot be lowered; forget the memory instead"
                )

            if content is not None:
                record.set_content(content, now)
            if category is not None:
                record.category = category
            if metadata is not None:
                record.metadata = dict(metadata)
            if importance is not None:
                record.importance = importance
                record.explicit_importance = True
                record.scored_at = now
                if record.tier == Tier.WISDOM:
                    record.importance_floor = importance
            elif not record.explicit_importance and (
                content is not None or category is not None
            ):
                self.viveka.rescore(record, now)
            record.updated_at = now
            store.reposition(record, now)
            return record.copy()

    def get(self, memory_id: str) -> MemoryRecord:
        store, _ = self._find(memory_id)
        with store.lock:
            record = store.get(memory_id)
            if record is None:
                raise NotFoundError(memory_id)
            return record.copy()

    def forget(self, memory_id: str) -> bool:
        """Delete one memory from any tier. False when the id is unknown."""
        try:
            store, _ = self._find(memory_id)
        except NotFoundError:
            return False
        with store.lock:
            removed = store.remove(memory_id)
        if removed is not None:
            logger.info("Forgot memory %s (%s)", memory_id, removed.tier.value)
        return removed is not None

    def forget_all(self, session_id: str, category: Optional[str] = None) -> int:
        """Delete every memory of a session (optionally one category). Returns the count."""
        _require_text("session_id", session_id)
        if category is not None:
            category = normalize_category(category)
        store = self._store(session_id)
        if store is None:
            return 0
        with store.lock:
            count = store.clear(category)
        logger.info("Forgot %d memories for session %s", count, session_id)
        return count

    def get_stats(self, session_id: str) -> dict:
        _require_text("session_id", session_id)
        store = self._store(session_id)
        if store is None:
            return {
                "total": 0,
                "by_category": {},
                "by_tier": {tier.value: 0 for tier in Tier},
                "avg_importance": 0.0,
                "token_count": 0,
                "compressions": 0,
            }
        with store.lock:
            now = self.clock()
            self._maintain(store, now)
            stats = store.stats(now)
        return {
            "total": stats["total"],
            "by_category": stats["by_category"],
            "by_tier": stats["by_tier"],
            "avg_importance": stats["avg_importance"],
            "token_count": stats["token_count"],
            "compressions": len(self.vismriti.events(session_id)),
        }

    def get_agent_stats(self) -> dict:
        if self.agent is None:
            return {"episodes": 0, "epsilon": 0.0, "q_table_size": 0, "enabled": False}
        return {**self.agent.stats(), "enabled": True}

    def compression_events(self, session_id: Optional[str] = None) -> list:
        return self.vismriti.events(session_id)

    # ── Maintenance & lifecycle ──

    def run_maintenance(self, session_id: Optional[str] = None) -> dict:
        """
        Explicit maintenance pass.

        Persists decayed importance, expires working memory, consolidates
        wisdom and compresses sessions that are over threshold, repeating
        until the episodic tier is back within its hard limits. This is the
        only place stored importance is rewritten by decay.
        """
        if session_id is not None:
            _require_text("session_id", session_id)
            session_ids = [session_id]
        else:
            session_ids = self.sessions()

        summary = {"sessions": 0, "decayed": 0, "evicted": 0, "promoted": 0, "compressed": 0}
        for sid in session_ids:
            store = self._store(sid)
            if store is None:
                continue
            with store.lock:
                now = self.clock()
                for record in store.records([Tier.EPISODIC, Tier.WISDOM]):
                    before = record.importance
                    if self.viveka.apply_decay(record, now) != before:
                        summary["decayed"] += 1
                summary["evicted"] += len(store.evict_due(now))
                summary["promoted"] += len(store.promote_candidates(now))
                try:
                    if self.vismriti.run(store, now) is not None:
                        summary["compressed"] += 1
                        while store.episodic_over_capacity():
                            if self.vismriti.run(store, now) is None:
                                break
                            summary["compressed"] += 1
                except CapabilityUnavailableError as e:
                    logger.warning(
                        "Maintenance compression skipped for session %s: %s",
                        store.session_id, e,
                    )
            summary["sessions"] += 1
        return summary

    def checkpoint(self) -> None:
        """Persist the agent's Q-table."""
        if self.agent is not None:
            self.agent.checkpoint()

    def close(self) -> None:
        self.checkpoint()

    def __enter__(self) -> "Vidurai":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
