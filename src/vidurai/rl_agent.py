"""
Vismriti RL agent: tabular Q-learning over compression decisions.

The agent observes a discretized view of a session store, picks one of
four actions (wait or compress at one of three aggressiveness levels),
runs it through the compression engine and learns from the outcome:

    reward = w_tokens * tokens_saved / tokens_before + w_quality * quality
    Q(s, a) += lr * (reward + discount * max_a' Q(s', a') - Q(s, a))

The Q-table is shared by every session of a process. It is an explicit
component with its own lock and a JSON persistence boundary; nothing
else writes to it.
"""

import json
import logging
import math
import os
import random
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import CompressionMode, RewardProfile, ViduraiConfig
from .errors import CapabilityUnavailableError
from .koshas import KoshaStore
from .models import CompressionEvent
from .vismriti import Vismriti

logger = logging.getLogger(__name__)

Q_TABLE_VERSION = 1
FAILURE_REWARD = -1.0


class Action(str, Enum):
    WAIT = "wait"
    COMPRESS_CONSERVATIVE = "compress_conservative"
    COMPRESS_BALANCED = "compress_balanced"
    COMPRESS_AGGRESSIVE = "compress_aggressive"

    @property
    def compression_mode(self) -> Optional[CompressionMode]:
        return ACTION_MODES.get(self)


ACTION_MODES: dict[Action, CompressionMode] = {
    Action.COMPRESS_CONSERVATIVE: CompressionMode.CONSERVATIVE,
    Action.COMPRESS_BALANCED: CompressionMode.BALANCED,
    Action.COMPRESS_AGGRESSIVE: CompressionMode.AGGRESSIVE,
}

# Exploitation ties go to this action
DEFAULT_ACTION = Action.COMPRESS_BALANCED

# Bucket edges: ratios of capacity/budget, mean importance, hours since compression
LOAD_EDGES = (0.25, 0.5, 0.75, 1.0)
IMPORTANCE_EDGES = (0.25, 0.5, 0.75)
HOURS_EDGES = (1.0, 6.0, 24.0)


def _bucket(value: float, edges: tuple[float, ...]) -> int:
    for i, edge in enumerate(edges):
        if value < edge:
            return i
    return len(edges)


@dataclass(frozen=True)
class AgentState:
    """Discretized store state."""

    memory_bucket: int
    token_bucket: int
    importance_bucket: int
    since_compression_bucket: int

    @property
    def key(self) -> str:
        return (
            f"c{self.memory_bucket}|t{self.token_bucket}"
            f"|i{self.importance_bucket}|s{self.since_compression_bucket}"
        )


def q_key(state_key: str, action: Action) -> str:
    return f"{state_key}::{action.value}"


def split_q_key(key: str) -> tuple[str, Action]:
    state_key, _, action = key.rpartition("::")
    return state_key, Action(action)


class QTableStore:
    """JSON file persistence for the Q-table."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> tuple[dict[str, float], dict]:
        """Return (values, meta). A missing or corrupt file yields an empty table."""
        if not self.path.exists():
            return {}, {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load Q-table from %s: %s", self.path, e)
            return {}, {}
        if not isinstance(data, dict) or not isinstance(data.get("q_values", {}), dict):
            logger.warning("Failed to load Q-table from %s: not a Q-table object", self.path)
            return {}, {}

        meta = data.get("meta", {})
        values = {}
        for key, value in data.get("q_values", {}).items():
            try:
                split_q_key(key)
                values[key] = float(value)
            except (ValueError, TypeError):
                logger.warning("Skipping malformed Q-table entry %r", key)
        return values, meta if isinstance(meta, dict) else {}

    def save(self, values: dict[str, float], meta: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": Q_TABLE_VERSION, "meta": meta, "q_values": values}
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".q_table-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info("Saved Q-table (%d entries) to %s", len(values), self.path)


class QTable:
    """
    Learned (state, action) values.

    Unseen pairs read as 0.0. Entries are only added or updated, never
    pruned; ``clear`` is the explicit reset.
    """

    def __init__(self, values: Optional[dict[str, float]] = None):
        self._values: dict[str, float] = dict(values or {})
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def get(self, state: AgentState, action: Action) -> float:
        with self._lock:
            return self._values.get(q_key(state.key, action), 0.0)

    def _max_value(self, state: AgentState) -> float:
        return max(self._values.get(q_key(state.key, a), 0.0) for a in Action)

    def max_value(self, state: AgentState) -> float:
        with self._lock:
            return self._max_value(state)

    def best_action(self, state: AgentState) -> Action:
        with self._lock:
            values = {a: self._values.get(q_key(state.key, a), 0.0) for a in Action}
        best = max(values.values())
        if math.isclose(values[DEFAULT_ACTION], best):
            return DEFAULT_ACTION
        for action in Action:
            if math.isclose(values[action], best):
                return action
        return DEFAULT_ACTION

    def update(
        self,
        state: AgentState,
        action: Action,
        reward: float,
        next_state: AgentState,
        learning_rate: float,
        discount: float,
    ) -> float:
        """Atomic Q-learning update. Returns the new value."""
        key = q_key(state.key, action)
        with self._lock:
            old = self._values.get(key, 0.0)
            target = reward + discount * self._max_value(next_state)
            new = old + learning_rate * (target - old)
            self._values[key] = new
        return new

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return dict(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


@dataclass
class AgentStep:
    """Outcome of one decision cycle."""

    state: AgentState
    action: Action
    executed: Action
    reward: float
    next_state: AgentState
    event: Optional[CompressionEvent] = None
    failed: bool = False


class PolicyAgent:
    """Epsilon-greedy Q-learning agent deciding when and how hard to compress."""

    def __init__(
        self,
        config: Optional[ViduraiConfig] = None,
        q_table: Optional[QTable] = None,
        persistence: Optional[QTableStore] = None,
        reward_profile: Optional[RewardProfile] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or ViduraiConfig()
        self.reward_profile = RewardProfile(reward_profile or self.config.reward_profile)
        self.persistence = persistence
        self.rng = rng or random.Random()
        self._lock = threading.Lock()
        self.episodes = 0
        self.total_reward = 0.0
        self.last_action: Optional[Action] = None

        if q_table is not None:
            self.q_table = q_table
        else:
            values, meta = persistence.load() if persistence else ({}, {})
            self.q_table = QTable(values)
            self.episodes = int(meta.get("episodes", 0))
            if values:
                logger.info("Loaded Q-table with %d entries", len(values))

    @property
    def epsilon(self) -> float:
        return self._epsilon_for(self.episodes)

    def _epsilon_for(self, episodes: int) -> float:
        return max(
            self.config.epsilon_min,
            self.config.epsilon_start * self.config.epsilon_decay ** episodes,
        )

    def observe(
        self,
        stats: dict,
        now: datetime,
        last_compression_at: Optional[datetime] = None,
    ) -> AgentState:
        if last_compression_at is None:
            since = len(HOURS_EDGES)
        else:
            hours = max((now - last_compression_at).total_seconds(), 0.0) / 3600.0
            since = _bucket(hours, HOURS_EDGES)
        return AgentState(
            memory_bucket=_bucket(
                stats["episodic_count"] / self.config.episodic_capacity, LOAD_EDGES
            ),
            token_bucket=_bucket(
                stats["episodic_tokens"] / self.config.token_budget, LOAD_EDGES
            ),
            importance_bucket=_bucket(stats["avg_importance"], IMPORTANCE_EDGES),
            since_compression_bucket=since,
        )

    def select_action(self, state: AgentState) -> Action:
        if self.rng.random() < self.epsilon:
            return self.rng.choice(list(Action))
        return self.q_table.best_action(state)

    def compute_reward(self, event: Optional[CompressionEvent], failed: bool = False) -> float:
        if failed:
            return FAILURE_REWARD
        w_tokens, w_quality = self.reward_profile.weights
        if event is None or not event.tokens_before:
            # Nothing compressed: no savings, nothing lost
            return w_quality * 1.0
        savings = event.tokens_saved / event.tokens_before
        return w_tokens * savings + w_quality * event.quality

    def learn(
        self,
        state: AgentState,
        action: Action,
        reward: float,
        next_state: AgentState,
    ) -> float:
        """Apply one Q update and advance the exploration schedule."""
        value = self.q_table.update(
            state,
            action,
            reward,
            next_state,
            self.config.learning_rate,
            self.config.discount_factor,
        )
        with self._lock:
            self.episodes += 1
            self.total_reward += reward
            self.last_action = action
            episodes = self.episodes
        if self.config.save_interval and episodes % self.config.save_interval == 0:
            self.checkpoint()
        return value

    def step(self, store: KoshaStore, engine: Vismriti, now: datetime) -> AgentStep:
        """
        Run one decision cycle against ``store``.

        Compression failures never escape: the cycle is scored with
        FAILURE_REWARD and counts as a wait.
        """
        state = self.observe(store.stats(now), now, engine.last_compression_at(store.session_id))
        action = self.select_action(state)

        event = None
        failed = False
        executed = action
        mode = action.compression_mode
        if mode is not None:
            try:
                event = engine.run(store, now, mode=mode, force=True)
            except CapabilityUnavailableError as e:
                logger.warning(
                    "Compression action %s failed for session %s, waiting instead: %s",
                    action.value, store.session_id, e,
                )
                failed = True
                executed = Action.WAIT

        next_state = self.observe(
            store.stats(now), now, engine.last_compression_at(store.session_id)
        )
        reward = self.compute_reward(event, failed=failed)
        self.learn(state, action, reward, next_state)
        logger.debug(
            "Agent step %s: action=%s reward=%.3f epsilon=%.3f",
            state.key, action.value, reward, self.epsilon,
        )
        return AgentStep(
            state=state,
            action=action,
            executed=executed,
            reward=reward,
            next_state=next_state,
            event=event,
            failed=failed,
        )

    def checkpoint(self) -> None:
        if self.persistence is None:
            return
        meta = {"episodes": self.episodes, "reward_profile": self.reward_profile.value}
        try:
            self.persistence.save(self.q_table.snapshot(), meta)
        except OSError as e:
            logger.warning("Failed to save Q-table: %s", e)

    def reset(self, clear_table: bool = False) -> None:
        """Restart exploration; optionally forget everything learned."""
        with self._lock:
            self.episodes = 0
            self.total_reward = 0.0
            self.last_action = None
        if clear_table:
            self.q_table.clear()

    def stats(self) -> dict:
        return {
            "episodes": self.episodes,
            "epsilon": round(self.epsilon, 4),
            "q_table_size": len(self.q_table),
            "reward_profile": self.reward_profile.value,
            "total_reward": round(self.total_reward, 4),
            "last_action": self.last_action.value if self.last_action else None,
        }
