"""
Similarity capabilities used for recall ranking and compression quality.

Any ``similarity(text_a, text_b) -> float`` callable in [0, 1] can be
injected. Two implementations ship with the package:

  - KeywordSimilarity: token-set Jaccard overlap, no external calls.
    Used as the default and as the fallback when an injected capability
    fails during recall.
  - EmbeddingSimilarity: cosine similarity over a LangChain ``Embeddings``
    model, with a small content-hash cache so repeated recall does not
    re-embed stored memories.
"""

import hashlib
import logging
import math
import os
import re
from collections import OrderedDict
from typing import Optional

from .errors import CapabilityUnavailableError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> set[str]:
    return {t.lower() for t in _TOKEN_RE.findall(text or "")}


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class KeywordSimilarity:
    """Jaccard overlap of lower-cased word tokens."""

    def __call__(self, text_a: str, text_b: str) -> float:
        a = tokenize(text_a)
        b = tokenize(text_b)
        if not a or not b:
            return 0.0
        return len(a & b) / len(a | b)


class EmbeddingSimilarity:
    """
    Cosine similarity over embeddings from a LangChain ``Embeddings`` model.

    Negative cosine values are clipped to 0 so the result stays in [0, 1].
    Embedding failures raise ``CapabilityUnavailableError``.
    """

    def __init__(self, embedding_model, cache_size: int = 1024):
        self._embedding_model = embedding_model
        self._cache_size = cache_size
        self._cache: OrderedDict[str, list[float]] = OrderedDict()

    @staticmethod
    def _key(text: str) -> str:
        return hashlib.sha256(text.encode()).hexdigest()[:32]

    def embed(self, text: str) -> list[float]:
        key = self._key(text)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached
        try:
            vector = self._embedding_model.embed_query(text)
        except Exception as e:
            raise CapabilityUnavailableError("embedding", str(e)) from e
        if not vector:
            raise CapabilityUnavailableError("embedding", "empty embedding returned")
        self._cache[key] = vector
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return vector

    def __call__(self, text_a: str, text_b: str) -> float:
        score = cosine_similarity(self.embed(text_a), self.embed(text_b))
        return max(0.0, min(1.0, score))


def create_embedding_similarity(
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
) -> Optional[EmbeddingSimilarity]:
    """
    Build an EmbeddingSimilarity from environment credentials.

    Credentials: dedicated VIDURAI_EMBEDDING_* vars > API_KEY / API_BASE_URL.
    Returns None when no embedding model can be created, in which case
    callers keep the keyword default.
    """
    try:
        from langchain_openai import OpenAIEmbeddings
    except ImportError:
        logger.info("langchain-openai not installed, using keyword similarity")
        return None

    model = model or os.getenv("VIDURAI_EMBEDDING_MODEL", "text-embedding-3-small")
    api_key = api_key or os.getenv("VIDURAI_EMBEDDING_API_KEY") or os.getenv("API_KEY")
    base_url = base_url or os.getenv("VIDURAI_EMBEDDING_BASE_URL") or os.getenv("API_BASE_URL")

    embed_kwargs = {}
    if api_key:
        embed_kwargs["api_key"] = api_key
    if base_url:
        embed_kwargs["base_url"] = base_url
    try:
        return EmbeddingSimilarity(OpenAIEmbeddings(model=model, **embed_kwargs))
    except Exception as e:
        logger.warning("Failed to create embedding model: %s", e)
        return None
