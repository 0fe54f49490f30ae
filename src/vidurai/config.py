"""
Memory configuration, compression presets and reward profiles.

Every recognized option lives on ``ViduraiConfig``. Unknown options are
rejected by ``from_options`` instead of being silently accepted.
"""

import os
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv

from .errors import ValidationError

ENV_PREFIX = "VIDURAI_"
DEFAULT_Q_TABLE_PATH = Path.home() / ".vidurai" / "q_table.json"


class CompressionMode(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class RewardProfile(str, Enum):
    COST_FOCUSED = "cost_focused"
    BALANCED = "balanced"
    QUALITY_FOCUSED = "quality_focused"

    @property
    def weights(self) -> tuple[float, float]:
        """(token savings weight, quality retention weight)"""
        return REWARD_WEIGHTS[self]


REWARD_WEIGHTS: dict[RewardProfile, tuple[float, float]] = {
    RewardProfile.COST_FOCUSED: (0.8, 0.2),
    RewardProfile.BALANCED: (0.5, 0.5),
    RewardProfile.QUALITY_FOCUSED: (0.2, 0.8),
}


@dataclass(frozen=True)
class CompressionPreset:
    """Parameterization of the single compression algorithm."""

    threshold: float  # fraction of the token budget that triggers compression
    safety_margin: float  # compress this far below the threshold
    max_batch: int  # most records consumed by one compression
    forced_batch: int  # records consumed when forced below threshold


COMPRESSION_PRESETS: dict[CompressionMode, CompressionPreset] = {
    CompressionMode.CONSERVATIVE: CompressionPreset(0.90, 0.05, 5, 2),
    CompressionMode.BALANCED: CompressionPreset(0.75, 0.10, 10, 3),
    CompressionMode.AGGRESSIVE: CompressionPreset(0.60, 0.20, 20, 5),
}


@dataclass
class ViduraiConfig:
    """Configuration for the three-kosha memory core."""

    # Working tier (FIFO + TTL, no decay)
    working_capacity: int = 10
    working_ttl_seconds: float = 3600.0  # 0 = no TTL

    # Episodic tier
    episodic_capacity: int = 100
    token_budget: int = 4000  # episodic token budget

    # Tier thresholds
    consolidation_threshold: float = 0.9  # episodic -> wisdom
    promote_on_evict_threshold: float = 0.6  # working -> episodic instead of delete
    protect_threshold: float = 0.8  # never compressed above this

    # Viveka decay: importance * exp(-decay_rate * elapsed_units)
    decay_rate: float = 0.01
    decay_unit_seconds: float = 3600.0
    enable_decay: bool = True

    # Vismriti
    compression_mode: CompressionMode = CompressionMode.BALANCED
    compression_threshold: Optional[float] = None  # None = preset threshold

    # RL agent
    enable_rl_agent: bool = True
    reward_profile: RewardProfile = RewardProfile.BALANCED
    decision_interval: int = 1  # decide every N remember calls
    learning_rate: float = 0.1
    discount_factor: float = 0.9
    epsilon_start: float = 0.30
    epsilon_min: float = 0.05
    epsilon_decay: float = 0.965
    q_table_path: Optional[str] = None  # None = ~/.vidurai/q_table.json
    save_interval: int = 25  # episodes between Q-table saves, 0 = only on close

    # Quotas (0 = unlimited)
    max_memories_per_session: int = 0

    # Recall ranking
    relevance_weight: float = 0.7
    importance_weight: float = 0.3

    def __post_init__(self):
        try:
            self.compression_mode = CompressionMode(self.compression_mode)
            self.reward_profile = RewardProfile(self.reward_profile)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        self._validate()

    def _validate(self):
        if self.working_capacity < 1:
            raise ValidationError("working_capacity must be >= 1")
        if self.episodic_capacity < 1:
            raise ValidationError("episodic_capacity must be >= 1")
        if self.token_budget < 1:
            raise ValidationError("token_budget must be >= 1")
        if self.working_ttl_seconds < 0:
            raise ValidationError("working_ttl_seconds must be >= 0")
        for name in (
            "consolidation_threshold",
            "promote_on_evict_threshold",
            "protect_threshold",
            "relevance_weight",
            "importance_weight",
            "epsilon_start",
            "epsilon_min",
            "discount_factor",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be in [0, 1], got {value}")
        if not 0.0 < self.decay_rate < 1.0:
            raise ValidationError(f"decay_rate must be in (0, 1), got {self.decay_rate}")
        if self.decay_unit_seconds <= 0:
            raise ValidationError("decay_unit_seconds must be > 0")
        if self.compression_threshold is not None and not (
            0.0 < self.compression_threshold <= 1.0
        ):
            raise ValidationError("compression_threshold must be in (0, 1]")
        if not 0.0 < self.learning_rate <= 1.0:
            raise ValidationError("learning_rate must be in (0, 1]")
        if not 0.0 < self.epsilon_decay <= 1.0:
            raise ValidationError("epsilon_decay must be in (0, 1]")
        if self.epsilon_min > self.epsilon_start:
            raise ValidationError("epsilon_min must not exceed epsilon_start")
        if self.decision_interval < 1:
            raise ValidationError("decision_interval must be >= 1")
        if self.save_interval < 0 or self.max_memories_per_session < 0:
            raise ValidationError("save_interval and max_memories_per_session must be >= 0")

    def preset(self, mode: Optional[CompressionMode] = None) -> CompressionPreset:
        """Resolve the compression preset, applying the threshold override."""
        mode = CompressionMode(mode or self.compression_mode)
        preset = COMPRESSION_PRESETS[mode]
        if self.compression_threshold is not None and mode == self.compression_mode:
            return CompressionPreset(
                threshold=self.compression_threshold,
                safety_margin=preset.safety_margin,
                max_batch=preset.max_batch,
                forced_batch=preset.forced_batch,
            )
        return preset

    def resolve_q_table_path(self) -> Path:
        if self.q_table_path:
            return Path(self.q_table_path).expanduser()
        return DEFAULT_Q_TABLE_PATH

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "ViduraiConfig":
        """Build a config from keyword options, rejecting unknown names."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ValidationError(f"unknown config option(s): {', '.join(unknown)}")
        return cls(**dict(options))

    @classmethod
    def from_env(cls) -> "ViduraiConfig":
        """Load configuration from VIDURAI_* environment variables (and .env)."""
        load_dotenv()
        options: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            options[f.name] = _parse_env_value(f.name, raw, getattr(cls, f.name))
        return cls(**options)


def _parse_env_value(name: str, raw: str, default: Any) -> Any:
    """Convert an environment string using the field's default as type hint."""
    try:
        if isinstance(default, bool):
            return raw.lower() in ("1", "true", "yes")
        if isinstance(default, Enum):
            return type(default)(raw.lower())
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float) or name == "compression_threshold":
            return float(raw)
    except ValueError as e:
        raise ValidationError(f"invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return raw
