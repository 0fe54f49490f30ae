"""
Error types raised by the memory core.
"""

from typing import Optional


class ViduraiError(Exception):
    """Base class for all memory core errors."""


class ValidationError(ViduraiError, ValueError):
    """A required field is missing or a value is out of range."""


class NotFoundError(ViduraiError, KeyError):
    """An operation referenced a memory id that does not exist."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(memory_id)

    def __str__(self) -> str:
        return f"memory not found: {self.memory_id}"


class CapabilityUnavailableError(ViduraiError):
    """An injected summarization or similarity capability failed or is missing."""

    def __init__(self, capability: str, reason: Optional[str] = None):
        self.capability = capability
        self.reason = reason
        message = f"{capability} capability unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class QuotaExceededError(ViduraiError):
    """A configured cap was reached; nothing was stored."""

    def __init__(self, current: int, limit: int, what: str = "memories"):
        self.current = current
        self.limit = limit
        super().__init__(
            f"{what} quota reached ({current}/{limit}); "
            f"forget existing {what} or raise the limit"
        )
