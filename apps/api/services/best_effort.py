"""Result wrapper for pipeline steps that fall back to a default on failure."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BestEffort(Generic[T]):
    value: T
    fallback_used: bool = False
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: T) -> "BestEffort[T]":
        return cls(value=value)

    @classmethod
    def fallback(cls, value: T, error: Any) -> "BestEffort[T]":
        return cls(value=value, fallback_used=True, error=str(error))


async def best_effort(step: str, operation: Callable[[], Awaitable[T]], default: T) -> BestEffort[T]:
    """Run ``operation`` and return ``default`` (flagged) if it raises."""
    try:
        return BestEffort.ok(await operation())
    except Exception as exc:
        logger.warning("%s failed, continuing with default: %s", step, exc)
        return BestEffort.fallback(default, exc)
