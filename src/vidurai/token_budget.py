"""
Token estimation for memory content.

Token counts drive the episodic budget, compression sizing, the injected
memory block and the agent's token-savings reward, so the estimate only
needs to be consistent, not exact.
"""

from typing import Iterable


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~3 chars per token for mixed CJK/English."""
    if not text:
        return 0
    return max(1, len(text) // 3)


def estimate_texts_tokens(texts: Iterable[str]) -> int:
    return sum(estimate_tokens(t) for t in texts)
