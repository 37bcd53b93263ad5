"""Bounded fan-out over a ScoringPort.

Every call is capped by a shared semaphore and its own timeout. A call that
raises, times out, or returns something that is not a finite number comes
back as ``None``; the failure is logged as ``ScoringUnavailableError`` and
counted, never raised. Cancellation of the caller is not a failure and
propagates.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable

from dictum.core.metrics import SCORING_FAILURES_TOTAL
from dictum.memory.errors import ScoringUnavailableError
from dictum.memory.store import clamp_score
from dictum.models.memory import MemoryItem
from dictum.protocols.memory import ScoringPort

logger = logging.getLogger(__name__)


class ScoringPool:
    def __init__(
        self,
        scorer: ScoringPort,
        *,
        timeout_s: float = 0.3,
        max_concurrency: int = 8,
    ) -> None:
        self._scorer = scorer
        self._timeout_s = timeout_s
        self._max_concurrency = max(1, max_concurrency)
        self._semaphore = asyncio.Semaphore(self._max_concurrency)

    @property
    def scorer(self) -> ScoringPort:
        return self._scorer

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    # ── public API ──────────────────────────────────────────────────

    async def initial(self, item: MemoryItem) -> float | None:
        snapshot = item.model_copy(deep=True)
        return await self._call("initial", item.id, lambda: self._scorer.initial_score(snapshot))

    async def refresh(self, item: MemoryItem) -> float | None:
        snapshot = item.model_copy(deep=True)
        return await self._call("refresh", item.id, lambda: self._scorer.refresh_score(snapshot))

    async def refresh_many(self, items: list[MemoryItem]) -> dict[str, float | None]:
        """Refresh scores concurrently; ``None`` marks a failed item."""
        results = await asyncio.gather(*(self.refresh(item) for item in items))
        return {item.id: score for item, score in zip(items, results, strict=True)}

    async def command_relevance_many(
        self,
        items: list[MemoryItem],
        command: str,
    ) -> dict[str, float | None]:
        async def one(item: MemoryItem) -> float | None:
            snapshot = item.model_copy(deep=True)
            return await self._call(
                "command_relevance",
                item.id,
                lambda: self._scorer.relevance_to_command(snapshot, command),
            )

        results = await asyncio.gather(*(one(item) for item in items))
        return {item.id: score for item, score in zip(items, results, strict=True)}

    # ── internals ───────────────────────────────────────────────────

    async def _call(
        self,
        operation: str,
        item_id: str,
        factory: Callable[[], Awaitable[float]],
    ) -> float | None:
        async with self._semaphore:
            try:
                async with asyncio.timeout(self._timeout_s):
                    value = await factory()
            except TimeoutError as exc:
                self._record_failure(operation, item_id, "timed out", exc)
                return None
            except Exception as exc:
                self._record_failure(operation, item_id, "failed", exc)
                return None

        if isinstance(value, bool) or not isinstance(value, int | float) or math.isnan(value):
            self._record_failure(operation, item_id, f"returned invalid score {value!r}", None)
            return None
        return clamp_score(value)

    def _record_failure(
        self,
        operation: str,
        item_id: str,
        reason: str,
        cause: BaseException | None,
    ) -> None:
        error = ScoringUnavailableError(
            f"scoring {operation} {reason}",
            operation=operation,
            item_id=item_id,
            timeout_s=self._timeout_s,
        )
        error.__cause__ = cause
        SCORING_FAILURES_TOTAL.labels(operation=operation).inc()
        logger.warning(
            "scoring_unavailable operation=%s id=%s reason=%s error=%s",
            operation,
            item_id,
            reason,
            error.to_dict(),
        )


__all__ = ["ScoringPool"]
