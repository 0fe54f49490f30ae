"""
Shared fixtures.

Puts ``src`` on the module search path so tests import ``vidurai`` without
an install, and provides a controllable clock plus fake capabilities so
decay, eviction and compression are deterministic.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from vidurai.config import ViduraiConfig  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime = datetime(2025, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSummarizer:
    """Keeps the first sentence of each entry and counts calls."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[list[str]] = []

    def __call__(self, texts: list[str]) -> str:
        self.calls.append(list(texts))
        if self.fail:
            raise RuntimeError("LLM offline")
        return " ".join(t.split(".")[0][:20] for t in texts)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def summarizer():
    return FakeSummarizer()


@pytest.fixture
def failing_summarizer():
    return FakeSummarizer(fail=True)


@pytest.fixture
def config(tmp_path):
    return ViduraiConfig(q_table_path=str(tmp_path / "q_table.json"))
