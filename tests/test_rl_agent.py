"""
Tests for the Q-learning policy agent and Q-table persistence.
"""

import json
import random
import threading
from datetime import timedelta

import pytest

from vidurai.config import RewardProfile, ViduraiConfig
from vidurai.koshas import KoshaStore
from vidurai.models import CompressionEvent, MemoryRecord, Tier
from vidurai.rl_agent import (
    FAILURE_REWARD,
    Action,
    AgentState,
    PolicyAgent,
    QTable,
    QTableStore,
    q_key,
)
from vidurai.similarity import KeywordSimilarity
from vidurai.vismriti import Vismriti

S0 = AgentState(0, 0, 0, 3)
S1 = AgentState(1, 2, 1, 0)


def _event(clock, before=100, after=40, quality=0.5) -> CompressionEvent:
    return CompressionEvent(
        session_id="s1",
        timestamp=clock(),
        source_ids=("a", "b"),
        result_id="c",
        tokens_before=before,
        tokens_after=after,
        quality=quality,
        mode="balanced",
    )


def _add_episodic(store, clock, n):
    for i in range(n):
        record = MemoryRecord(
            session_id=store.session_id,
            content=f"synthetic episode {i} about topic {clock().minute}",
            created_at=clock(),
            importance=0.3,
            tier=Tier.EPISODIC,
        )
        store._records[record.id] = record
        clock.advance(minutes=1)


class TestQTable:
    def test_unseen_pairs_are_zero(self):
        table = QTable()
        assert table.get(S0, Action.WAIT) == 0.0
        assert table.max_value(S0) == 0.0
        assert len(table) == 0

    def test_q_learning_update_rule(self):
        table = QTable({q_key(S1.key, Action.WAIT): 2.0})
        new = table.update(S0, Action.COMPRESS_AGGRESSIVE, reward=1.0, next_state=S1,
                           learning_rate=0.5, discount=0.9)
        # 0 + 0.5 * (1.0 + 0.9 * 2.0 - 0)
        assert new == pytest.approx(1.4)
        assert table.get(S0, Action.COMPRESS_AGGRESSIVE) == pytest.approx(1.4)

    def test_best_action_ties_go_to_balanced(self):
        table = QTable()
        assert table.best_action(S0) == Action.COMPRESS_BALANCED
        table.update(S0, Action.WAIT, 1.0, S1, 1.0, 0.0)
        assert table.best_action(S0) == Action.WAIT

    def test_concurrent_updates_all_land(self):
        table = QTable()

        def worker(offset):
            for i in range(100):
                state = AgentState(offset, i % 5, i % 4, i % 4)
                table.update(state, Action.WAIT, 0.5, S1, 0.1, 0.9)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(table) == 8 * 5 * 4


class TestQTableStore:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "q.json"
        store = QTableStore(path)
        store.save({q_key(S0.key, Action.WAIT): 0.25}, {"episodes": 7})
        values, meta = store.load()
        assert values == {q_key(S0.key, Action.WAIT): 0.25}
        assert meta["episodes"] == 7

    def test_missing_and_corrupt_files(self, tmp_path):
        assert QTableStore(tmp_path / "none.json").load() == ({}, {})
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")
        assert QTableStore(bad).load() == ({}, {})

    @pytest.mark.parametrize("payload", ["[]", "42", '"text"', '{"q_values": [1, 2]}'])
    def test_json_that_is_not_a_table(self, tmp_path, payload):
        path = tmp_path / "q.json"
        path.write_text(payload)
        assert QTableStore(path).load() == ({}, {})
        agent = PolicyAgent(ViduraiConfig(), persistence=QTableStore(path))
        assert agent.episodes == 0
        assert len(agent.q_table) == 0

    def test_malformed_entries_skipped(self, tmp_path):
        path = tmp_path / "q.json"
        path.write_text(json.dumps({"q_values": {
            q_key(S0.key, Action.WAIT): 1.0,
            "c0|t0|i0|s0::explode": 3.0,
        }}))
        values, _ = QTableStore(path).load()
        assert list(values) == [q_key(S0.key, Action.WAIT)]

    def test_agent_loads_and_checkpoints(self, tmp_path):
        persistence = QTableStore(tmp_path / "q.json")
        persistence.save({q_key(S0.key, Action.WAIT): 0.9}, {"episodes": 60})
        agent = PolicyAgent(ViduraiConfig(), persistence=persistence)
        assert agent.episodes == 60
        assert agent.epsilon == pytest.approx(0.05)
        assert agent.q_table.get(S0, Action.WAIT) == 0.9
        assert agent.q_table.get(S1, Action.WAIT) == 0.0

        agent.learn(S1, Action.WAIT, 0.5, S0)
        agent.checkpoint()
        values, meta = persistence.load()
        assert len(values) == 2
        assert meta["episodes"] == 61


class TestPolicyAgent:
    def test_epsilon_schedule(self):
        agent = PolicyAgent(ViduraiConfig())
        assert agent.epsilon == pytest.approx(0.30)
        assert 0.15 < agent._epsilon_for(10) < 0.30
        assert agent._epsilon_for(50) <= 0.06
        assert agent._epsilon_for(500) == 0.05

    def test_exploration_and_exploitation(self):
        agent = PolicyAgent(ViduraiConfig(epsilon_start=0.0, epsilon_min=0.0))
        agent.q_table.update(S0, Action.COMPRESS_AGGRESSIVE, 1.0, S1, 1.0, 0.0)
        assert agent.select_action(S0) == Action.COMPRESS_AGGRESSIVE

        explorer = PolicyAgent(
            ViduraiConfig(epsilon_start=1.0, epsilon_min=1.0, epsilon_decay=1.0),
            rng=random.Random(7),
        )
        seen = {explorer.select_action(S0) for _ in range(200)}
        assert seen == set(Action)

    @pytest.mark.parametrize("profile,expected", [
        (RewardProfile.COST_FOCUSED, 0.8 * 0.6 + 0.2 * 0.5),
        (RewardProfile.BALANCED, 0.5 * 0.6 + 0.5 * 0.5),
        (RewardProfile.QUALITY_FOCUSED, 0.2 * 0.6 + 0.8 * 0.5),
    ])
    def test_reward_profiles(self, clock, profile, expected):
        agent = PolicyAgent(ViduraiConfig(), reward_profile=profile)
        assert agent.compute_reward(_event(clock)) == pytest.approx(expected)

    def test_wait_and_failure_rewards(self):
        agent = PolicyAgent(ViduraiConfig(reward_profile="cost_focused"))
        assert agent.compute_reward(None) == pytest.approx(0.2)
        assert agent.compute_reward(None, failed=True) == FAILURE_REWARD

    def test_observe_buckets(self, clock):
        agent = PolicyAgent(ViduraiConfig(episodic_capacity=100, token_budget=1000))
        stats = {"episodic_count": 60, "episodic_tokens": 1200, "avg_importance": 0.3}
        state = agent.observe(stats, clock())
        assert state == AgentState(2, 4, 1, 3)
        recent = agent.observe(stats, clock(), last_compression_at=clock() - timedelta(minutes=5))
        assert recent.since_compression_bucket == 0
        assert state.key == "c2|t4|i1|s3"

    def test_step_compresses_and_learns(self, clock, summarizer):
        config = ViduraiConfig(token_budget=100, epsilon_start=0.0, epsilon_min=0.0)
        store = KoshaStore("s1", config)
        engine = Vismriti(config, summarizer=summarizer, similarity=KeywordSimilarity())
        _add_episodic(store, clock, 6)
        agent = PolicyAgent(config)

        step = agent.step(store, engine, clock())

        assert step.action == Action.COMPRESS_BALANCED
        assert step.event is not None
        assert not step.failed
        assert len(store) < 6
        assert agent.episodes == 1
        assert agent.q_table.get(step.state, step.action) != 0.0

    def test_step_failure_falls_back_to_wait(self, clock, failing_summarizer):
        config = ViduraiConfig(token_budget=100, epsilon_start=0.0, epsilon_min=0.0)
        store = KoshaStore("s1", config)
        engine = Vismriti(config, summarizer=failing_summarizer, similarity=KeywordSimilarity())
        _add_episodic(store, clock, 6)
        agent = PolicyAgent(config)

        step = agent.step(store, engine, clock())

        assert step.failed
        assert step.executed == Action.WAIT
        assert step.reward == FAILURE_REWARD
        assert len(store) == 6
        assert agent.q_table.get(step.state, step.action) < 0

    def test_cost_focused_training_run(self, clock, summarizer):
        config = ViduraiConfig(
            token_budget=200,
            episodic_capacity=20,
            reward_profile="cost_focused",
            save_interval=0,
        )
        store = KoshaStore("s1", config)
        engine = Vismriti(config, summarizer=summarizer, similarity=KeywordSimilarity())
        agent = PolicyAgent(config, rng=random.Random(42))

        epsilons = [agent.epsilon]
        sizes = [len(agent.q_table)]
        for episode in range(200):
            _add_episodic(store, clock, random.Random(episode).randint(0, 3))
            agent.step(store, engine, clock())
            epsilons.append(agent.epsilon)
            sizes.append(len(agent.q_table))
            clock.advance(minutes=30)

        assert agent.episodes == 200
        assert all(b <= a for a, b in zip(epsilons, epsilons[1:]))
        assert epsilons[-1] < epsilons[0]
        assert epsilons[-1] <= 0.05
        assert all(b >= a for a, b in zip(sizes, sizes[1:]))
        assert agent.stats()["q_table_size"] == sizes[-1]

    def test_reset(self):
        agent = PolicyAgent(ViduraiConfig())
        for _ in range(30):
            agent.learn(S0, Action.WAIT, 0.1, S1)
        assert agent.epsilon < 0.30
        agent.reset()
        assert agent.epsilon == pytest.approx(0.30)
        assert len(agent.q_table) == 1
        agent.reset(clear_table=True)
        assert len(agent.q_table) == 0
