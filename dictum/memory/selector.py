"""Command-time context retrieval.

Scores every resident item against the dictated command, keeps the ones
above the relevance floor, and hands back the best few. Items that make the
cut are recorded as used. If the scorer is down for every item, the selector
falls back to a recency ordering and records nothing.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable

from dictum.config import ContextConfig
from dictum.core.logging import correlation_scope
from dictum.core.metrics import CONTEXT_REQUESTS_TOTAL
from dictum.memory.errors import InvalidArgumentError
from dictum.memory.scoring import ScoringPool
from dictum.memory.store import ItemStore
from dictum.models.memory import TIER_ORDER, ContextResult, MemoryItem, ScoredItem

logger = logging.getLogger(__name__)

UsageRecorder = Callable[[list[str], int], Awaitable[None]]


class ContextSelector:
    def __init__(
        self,
        store: ItemStore,
        pool: ScoringPool,
        lock: asyncio.Lock,
        record_usage: UsageRecorder,
        *,
        config: ContextConfig | None = None,
    ) -> None:
        self._store = store
        self._pool = pool
        self._lock = lock
        self._record_usage = record_usage
        self._config = config or ContextConfig()

    async def get_context_for_command(
        self,
        command: str,
        max_items: int | None = None,
        min_relevance: float | None = None,
    ) -> ContextResult:
        limit = self._config.max_items if max_items is None else max_items
        floor = self._config.min_relevance if min_relevance is None else min_relevance
        _validate(command, limit, floor)

        command_id = uuid.uuid4().hex[:12]
        with correlation_scope(command_id=command_id):
            async with self._lock:
                snapshot = self._store.snapshot()
            items = snapshot.all_items()
            if not items:
                CONTEXT_REQUESTS_TOTAL.labels(mode="empty").inc()
                return ContextResult()

            # A cancelled fan-out raises here, before any usage is recorded.
            scores = await self._pool.command_relevance_many(items, command)
            async with self._lock:
                items = [item for item in items if item.id in self._store]

            if all(score is None for score in scores.values()) and self._config.fallback_to_recency:
                CONTEXT_REQUESTS_TOTAL.labels(mode="degraded").inc()
                logger.warning("context_degraded items=%d reason=scoring_unavailable", len(items))
                return ContextResult(items=_by_recency(items)[:limit], degraded=True)

            relevant = [
                ScoredItem(item=item, command_relevance=score)
                for item in items
                if (score := scores.get(item.id)) is not None and score >= floor
            ]
            relevant.sort(key=_rank_key)
            chosen = relevant[:limit]

            if chosen:
                await self._record_usage(
                    [scored.item.id for scored in chosen], self._config.usage_usefulness
                )
                async with self._lock:
                    chosen = _still_resident(self._store, chosen)

            CONTEXT_REQUESTS_TOTAL.labels(mode="scored").inc()
            logger.info(
                "context_selected candidates=%d relevant=%d returned=%d",
                len(items),
                len(relevant),
                len(chosen),
            )
            return ContextResult(items=chosen, total_relevant_items=len(relevant))


def _validate(command: str, max_items: int, min_relevance: float) -> None:
    if not command or not command.strip():
        raise InvalidArgumentError("command must be a non-empty string")
    if max_items < 0:
        raise InvalidArgumentError("max_items must not be negative", max_items=max_items)
    if not 0.0 <= min_relevance <= 1.0:
        raise InvalidArgumentError(
            "min_relevance must be between 0 and 1", min_relevance=min_relevance
        )


def _rank_key(scored: ScoredItem) -> tuple[float, float, float, str]:
    item = scored.item
    return (
        -scored.command_relevance,
        -item.relevance_score,
        -item.last_accessed.timestamp(),
        item.id,
    )


def _by_recency(items: list[MemoryItem]) -> list[ScoredItem]:
    rank = {tier: position for position, tier in enumerate(TIER_ORDER)}
    ordered = sorted(
        items,
        key=lambda item: (rank[item.tier], -item.last_accessed.timestamp(), item.id),
    )
    return [ScoredItem(item=item, command_relevance=0.0) for item in ordered]


def _still_resident(store: ItemStore, chosen: list[ScoredItem]) -> list[ScoredItem]:
    # Post-usage state of each pick; items deleted meanwhile are dropped.
    return [
        ScoredItem(item=current, command_relevance=scored.command_relevance)
        for scored in chosen
        if (current := store.get(scored.item.id)) is not None
    ]


__all__ = ["ContextSelector", "UsageRecorder"]
