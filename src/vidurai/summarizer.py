"""
LLM-backed summarization capability for Vismriti.

``LLMSummarizer`` is a callable ``summarize(texts) -> str`` that wraps any
LangChain chat model. Unlike recall-path helpers, failures are not
swallowed: the compression engine needs to know the call failed so it can
roll back and report the action as failed.
"""

import logging
import os
from typing import Optional

from .errors import CapabilityUnavailableError
from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You consolidate an AI assistant's stored memories.
Merge the following memory entries into one concise memory that keeps:
- Facts, preferences and goals stated by the user
- Decisions made and their outcomes
- Names, numbers and dates exactly as written

Drop small talk and repetition. Output plain text in the same language as the
entries, no markdown headers, no preamble."""

# Entries longer than this are truncated before summarization
MAX_ENTRY_CHARS = 1000


class LLMSummarizer:
    """Summarizes a batch of memory texts with a chat model."""

    def __init__(self, llm, max_summary_tokens: int = 300):
        self._llm = llm
        self.max_summary_tokens = max_summary_tokens

    @staticmethod
    def _format_entries(texts: list[str]) -> str:
        lines = []
        for i, text in enumerate(texts, 1):
            if len(text) > MAX_ENTRY_CHARS:
                text = text[:MAX_ENTRY_CHARS] + "..."
            lines.append(f"[{i}] {text}")
        return "\n".join(lines)

    def __call__(self, texts: list[str]) -> str:
        if self._llm is None:
            raise CapabilityUnavailableError("summarization", "no LLM configured")
        if not texts:
            raise CapabilityUnavailableError("summarization", "nothing to summarize")

        try:
            response = self._llm.invoke([
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": self._format_entries(texts)},
            ])
        except Exception as e:
            raise CapabilityUnavailableError("summarization", str(e)) from e

        summary = response.content if hasattr(response, "content") else str(response)
        if not isinstance(summary, str):
            summary = str(summary)
        summary = summary.strip()
        if not summary:
            raise CapabilityUnavailableError("summarization", "empty summary returned")

        if estimate_tokens(summary) > self.max_summary_tokens:
            logger.debug(
                "Summary exceeds %d tokens, truncating", self.max_summary_tokens
            )
            summary = summary[: self.max_summary_tokens * 3]
        return summary


def create_llm_summarizer(
    model_name: Optional[str] = None,
    max_summary_tokens: int = 300,
) -> LLMSummarizer:
    """
    Build an LLMSummarizer from environment credentials.

    Model: argument > VIDURAI_SUMMARY_MODEL > CLAUDE_MODEL.
    API Key: API_KEY > ANTHROPIC_API_KEY; Base URL: API_BASE_URL > ANTHROPIC_BASE_URL.
    If the model cannot be created the summarizer is returned without an
    LLM and every call raises CapabilityUnavailableError.
    """
    from langchain.chat_models import init_chat_model

    model_name = (
        model_name
        or os.getenv("VIDURAI_SUMMARY_MODEL")
        or os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5-20250929")
    )
    api_key = os.getenv("API_KEY") or os.getenv("ANTHROPIC_API_KEY")
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")

    init_kwargs = {"temperature": 0.3, "max_tokens": max_summary_tokens * 2}
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url
    provider_kwargs = {}
    model_provider = os.getenv("MODEL_PROVIDER")
    if model_provider:
        provider_kwargs["model_provider"] = model_provider

    try:
        llm = init_chat_model(model_name, **provider_kwargs, **init_kwargs)
    except Exception as e:
        logger.warning("Failed to create summarizer LLM: %s", e)
        llm = None
    return LLMSummarizer(llm, max_summary_tokens=max_summary_tokens)
