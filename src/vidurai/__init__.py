"""
Vidurai: importance-aware three-kosha memory for conversational agents.

- Working (Annamaya): small FIFO with TTL for the current exchange
- Episodic (Manomaya): scored, decaying memories kept within a token budget
- Wisdom (Vijnanamaya): consolidated memories that never decay or expire

Viveka scores and ages importance, Vismriti compresses low-value episodic
memories through an injected summarizer, and a Q-learning agent learns
when and how aggressively to compress.
"""

from .config import (
    CompressionMode,
    CompressionPreset,
    RewardProfile,
    ViduraiConfig,
)
from .errors import (
    CapabilityUnavailableError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
    ViduraiError,
)
from .koshas import KoshaStore
from .memory import Vidurai
from .middleware import MemoryMiddleware
from .models import CompressionEvent, MemoryRecord, Tier
from .rl_agent import Action, AgentState, PolicyAgent, QTable, QTableStore
from .similarity import EmbeddingSimilarity, KeywordSimilarity, create_embedding_similarity
from .summarizer import LLMSummarizer, create_llm_summarizer
from .token_budget import estimate_tokens
from .viveka import Viveka
from .vismriti import Vismriti

__all__ = [
    "Action",
    "AgentState",
    "CapabilityUnavailableError",
    "CompressionEvent",
    "CompressionMode",
    "CompressionPreset",
    "EmbeddingSimilarity",
    "KeywordSimilarity",
    "KoshaStore",
    "LLMSummarizer",
    "MemoryMiddleware",
    "MemoryRecord",
    "NotFoundError",
    "PolicyAgent",
    "QTable",
    "QTableStore",
    "QuotaExceededError",
    "RewardProfile",
    "Tier",
    "ValidationError",
    "Vidurai",
    "ViduraiConfig",
    "ViduraiError",
    "Viveka",
    "Vismriti",
    "create_embedding_similarity",
    "create_llm_summarizer",
    "estimate_tokens",
]
