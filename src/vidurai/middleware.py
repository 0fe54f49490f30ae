"""
LangChain message middleware over the Vidurai facade.

A thin translator: it turns the latest user message into a ``recall``
query and injects the hits as a system message, and turns finished turns
into ``remember`` calls. No memory policy lives here.

Usage:
    middleware = MemoryMiddleware(memory)
    messages = middleware.apply(messages, session_id)
    # ... call the LLM ...
    middleware.save_turn(messages + [ai_reply], session_id)
"""

import logging
from typing import Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from .memory import Vidurai
from .models import MemoryRecord
from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

MEMORY_HEADER = "[Relevant Memories]"


def message_text(msg) -> str:
    """Plain text of a LangChain message, skipping thinking/tool blocks."""
    content = msg.content
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "\n".join(p for p in parts if p)
    return str(content) if content else ""


class MemoryMiddleware:
    """Injects recalled memories before the LLM call and stores turns after it."""

    def __init__(
        self,
        memory: Vidurai,
        recall_limit: int = 5,
        min_score: float = 0.0,
        max_memory_tokens: int = 500,
        turn_category: str = "conversation",
    ):
        self.memory = memory
        self.recall_limit = recall_limit
        self.min_score = min_score
        self.max_memory_tokens = max_memory_tokens
        self.turn_category = turn_category

    def _last_human(self, messages: list) -> Optional[HumanMessage]:
        for msg in reversed(messages):
            if isinstance(msg, HumanMessage) and message_text(msg).strip():
                return msg
        return None

    def _format(self, records: list[MemoryRecord]) -> str:
        lines = [MEMORY_HEADER]
        used = estimate_tokens(MEMORY_HEADER)
        for record in records:
            line = f"- ({record.category}) {record.content}"
            tokens = estimate_tokens(line)
            if used + tokens > self.max_memory_tokens:
                break
            lines.append(line)
            used += tokens
        return "\n".join(lines) if len(lines) > 1 else ""

    def apply(self, messages: list, session_id: str) -> list:
        """
        Return a new message list with recalled memories injected after the
        leading system messages. The original list is not modified.
        """
        query_msg = self._last_human(messages)
        if query_msg is None:
            return messages

        records = self.memory.recall(
            session_id,
            message_text(query_msg),
            limit=self.recall_limit,
            min_score=self.min_score,
        )
        block = self._format(records)
        if not block:
            return messages

        insert_at = 0
        while insert_at < len(messages) and isinstance(messages[insert_at], SystemMessage):
            insert_at += 1

        logger.debug("Injecting %d memories for session %s", len(records), session_id)
        return [
            *messages[:insert_at],
            SystemMessage(content=block, id="vidurai-memories"),
            *messages[insert_at:],
        ]

    def save_turn(self, messages: list, session_id: str) -> list[MemoryRecord]:
        """Remember the latest user message and the assistant reply that follows it."""
        saved = []
        human_index = None
        for i in range(len(messages) - 1, -1, -1):
            if isinstance(messages[i], HumanMessage):
                human_index = i
                break
        if human_index is None:
            return saved

        text = message_text(messages[human_index]).strip()
        if text:
            saved.append(self.memory.remember(
                session_id, text, category=self.turn_category, metadata={"role": "user"},
            ))
        for msg in messages[human_index + 1:]:
            if isinstance(msg, AIMessage):
                reply = message_text(msg).strip()
                if reply:
                    saved.append(self.memory.remember(
                        session_id, reply, category=self.turn_category,
                        metadata={"role": "assistant"},
                    ))
                break
        return saved
