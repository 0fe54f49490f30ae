"""
Memory records, tiers and compression events.

Tiers form a small cycle-free state machine:

    working -> episodic -> wisdom
    working ----------------> wisdom

Compression collapses N episodic records into one episodic record; it is
not a tier transition. Moves are made through ``promote`` only.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .errors import ValidationError
from .token_budget import estimate_tokens

RECOGNIZED_CATEGORIES = (
    "preference",
    "conversation",
    "fact",
    "goal",
    "context",
    "general",
)
DEFAULT_CATEGORY = "general"


class Tier(str, Enum):
    WORKING = "working"
    EPISODIC = "episodic"
    WISDOM = "wisdom"


ALLOWED_TRANSITIONS: dict[Tier, frozenset[Tier]] = {
    Tier.WORKING: frozenset({Tier.EPISODIC, Tier.WISDOM}),
    Tier.EPISODIC: frozenset({Tier.WISDOM}),
    Tier.WISDOM: frozenset(),
}


def new_memory_id() -> str:
    return f"mem-{uuid.uuid4().hex}"


@dataclass
class MemoryRecord:
    """A single memory owned by a session's kosha store."""

    session_id: str
    content: str
    created_at: datetime
    category: str = DEFAULT_CATEGORY
    metadata: dict[str, Any] = field(default_factory=dict)
    importance: float = 0.5
    tier: Tier = Tier.WORKING
    id: str = field(default_factory=new_memory_id)
    updated_at: Optional[datetime] = None
    scored_at: Optional[datetime] = None  # decay anchor
    access_count: int = 0
    explicit_importance: bool = False
    importance_floor: Optional[float] = None  # set when promoted to wisdom
    tokens: int = 0
    score: Optional[float] = None  # query-time only, never persisted

    def __post_init__(self):
        if self.updated_at is None:
            self.updated_at = self.created_at
        if self.scored_at is None:
            self.scored_at = self.created_at
        if not self.tokens:
            self.tokens = estimate_tokens(self.content)
        self.importance = clamp_importance(self.importance)

    def set_content(self, content: str, now: datetime):
        self.content = content
        self.tokens = estimate_tokens(content)
        self.updated_at = now

    def copy(self, score: Optional[float] = None) -> "MemoryRecord":
        """Detached copy handed to callers."""
        return replace(self, metadata=dict(self.metadata), score=score)


def clamp_importance(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def validate_importance(value: Optional[float]) -> Optional[float]:
    """Reject explicit importance outside [0, 1]."""
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"importance must be a number, got {value!r}") from e
    if not 0.0 <= value <= 1.0:
        raise ValidationError(f"importance must be in [0, 1], got {value}")
    return value


def normalize_category(category: Optional[str]) -> str:
    if category is None:
        return DEFAULT_CATEGORY
    if not isinstance(category, str) or not category.strip():
        raise ValidationError("category must be a non-empty string")
    return category.strip().lower()


def can_transition(source: Tier, target: Tier) -> bool:
    return target in ALLOWED_TRANSITIONS[source]


def promote(record: MemoryRecord, target: Tier, now: datetime) -> MemoryRecord:
    """
    Move a record up the tier ladder.

    Promotion to wisdom freezes the current importance as the record's
    floor. Promotion out of working starts the decay clock, since working
    records do not decay.
    """
    if not can_transition(record.tier, target):
        raise ValidationError(
            f"illegal tier transition {record.tier.value} -> {target.value}"
        )
    if record.tier == Tier.WORKING:
        record.scored_at = now
    if target == Tier.WISDOM:
        record.importance_floor = record.importance
        record.scored_at = now
    record.tier = target
    record.updated_at = now
    return record


@dataclass(frozen=True)
class CompressionEvent:
    """Audit entry for one N -> 1 compression. Append-only."""

    session_id: str
    timestamp: datetime
    source_ids: tuple[str, ...]
    result_id: str
    tokens_before: int
    tokens_after: int
    quality: float
    mode: str
    id: str = field(default_factory=lambda: f"cmp-{uuid.uuid4().hex[:12]}")

    @property
    def tokens_saved(self) -> int:
        return max(self.tokens_before - self.tokens_after, 0)

    @property
    def compression_ratio(self) -> float:
        if not self.tokens_before:
            return 0.0
        return self.tokens_after / self.tokens_before
