"""MemoryEngine: the explicitly constructed facade over the memory tiers.

The engine owns the single writer lock. Every ItemStore call runs under it;
scoring always happens outside it. Collaborators get the engine passed to
them and drive it through ``init``/``shutdown``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime

from pydantic import ValidationError

from dictum.config import DictumSettings
from dictum.core.metrics import ITEMS_ADDED_TOTAL, RECONCILE_PASSES_TOTAL, TIER_ITEMS
from dictum.memory.errors import InvalidItemError, NotInitializedError, PersistenceError
from dictum.memory.persistence import JsonFilePersistence, NullPersistence
from dictum.memory.reconciler import TierReconciler
from dictum.memory.scorer import NullScorer
from dictum.memory.scoring import ScoringPool
from dictum.memory.selector import ContextSelector
from dictum.memory.stats import MemoryStats
from dictum.memory.store import Clock, ItemStore, parse_tier
from dictum.models.memory import (
    TIER_ORDER,
    ContextResult,
    MemoryItem,
    MemorySnapshot,
    MemoryStatsSnapshot,
    MemoryTier,
    TierChanges,
    utc_now,
)
from dictum.protocols.memory import PersistenceGateway, ScoringPort

logger = logging.getLogger(__name__)


class MemoryEngine:
    def __init__(
        self,
        settings: DictumSettings | None = None,
        *,
        scorer: ScoringPort | None = None,
        persistence: PersistenceGateway | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or DictumSettings()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._store = ItemStore(self._settings.memory, clock=clock)
        self._pool = ScoringPool(
            scorer or NullScorer(),
            timeout_s=self._settings.scoring.timeout_s,
            max_concurrency=self._settings.scoring.max_concurrency,
        )
        self._reconciler = TierReconciler(
            self._store,
            self._pool,
            self._lock,
            config=self._settings.memory,
            clock=clock,
        )
        self._selector = ContextSelector(
            self._store,
            self._pool,
            self._lock,
            self._record_usage_many,
            config=self._settings.context,
        )
        self._persistence: PersistenceGateway = persistence or NullPersistence()
        self._stats = MemoryStats(clock=clock)
        self._initialized = False
        self._pass_task: asyncio.Task[TierChanges | None] | None = None
        self._save_task: asyncio.Task[None] | None = None
        self._save_pending = False

    @classmethod
    def from_settings(
        cls,
        settings: DictumSettings,
        *,
        scorer: ScoringPort | None = None,
        clock: Clock = utc_now,
    ) -> MemoryEngine:
        """Build an engine with file persistence wired from ``settings.persistence``."""
        persistence: PersistenceGateway | None = None
        if settings.persistence.enabled:
            persistence = JsonFilePersistence(settings.persistence.file_path)
        return cls(settings, scorer=scorer, persistence=persistence, clock=clock)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def settings(self) -> DictumSettings:
        return self._settings

    async def __aenter__(self) -> MemoryEngine:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ── lifecycle ───────────────────────────────────────────────────

    async def init(
        self,
        long_term: Iterable[Mapping[str, object] | MemoryItem] | None = None,
    ) -> None:
        """Seed LongTerm and open the engine. A second call is a no-op.

        Records come from ``long_term`` when given, otherwise from the
        persistence gateway. Each one is re-validated; invalid records are
        skipped with a warning.
        """
        if self._initialized:
            logger.debug("memory_engine_init_skipped reason=already_initialized")
            return

        if long_term is None:
            records = await self._load_persisted()
        else:
            records = list(long_term)

        items = _validate_records(records)
        async with self._lock:
            seeded = self._store.seed_long_term(items)
            self._publish_tier_sizes()

        self._initialized = True
        logger.info(
            "memory_engine_initialized seeded=%d skipped=%d",
            seeded,
            len(records) - seeded,
        )

    async def shutdown(self) -> None:
        """Drop any in-flight pass, flush pending persistence, and close."""
        if not self._initialized:
            return
        self._initialized = False

        pass_task = self._pass_task
        if pass_task is not None and not pass_task.done():
            pass_task.cancel()
            await asyncio.wait([pass_task])

        save_task = self._save_task
        if save_task is not None and not save_task.done():
            await asyncio.wait([save_task])
        logger.info("memory_engine_shutdown")

    # ── producer API ────────────────────────────────────────────────

    async def add_item(
        self,
        content: str,
        source: str = "unknown",
        application: str | None = None,
        timestamp: datetime | None = None,
    ) -> MemoryItem:
        self._require_initialized()
        if not isinstance(content, str) or not content.strip():
            raise InvalidItemError("memory item requires non-empty content", source=source)

        created = timestamp or self._clock()
        item = MemoryItem(
            content=content,
            source=source,
            application=application,
            created_at=created,
            last_accessed=self._clock(),
        )
        score = await self._pool.initial(item)
        item.relevance_score = 0.0 if score is None else score

        async with self._lock:
            before = len(self._store)
            stored = self._store.add_item(item)
            evicted = before + 1 - len(self._store)
            self._publish_tier_sizes()

        self._stats.record_add(evicted)
        ITEMS_ADDED_TOTAL.labels(source=source).inc()
        return stored

    # ── consumer API ────────────────────────────────────────────────

    async def get_context_for_command(
        self,
        command: str,
        max_items: int | None = None,
        min_relevance: float | None = None,
    ) -> ContextResult:
        self._require_initialized()
        result = await self._selector.get_context_for_command(
            command, max_items=max_items, min_relevance=min_relevance
        )
        self._stats.record_context_request()
        return result

    async def record_usage(self, item_id: str, usefulness: int) -> bool:
        """Record that an item was used. ``False`` if no tier holds it."""
        self._require_initialized()
        async with self._lock:
            updated = self._store.record_usage(item_id, usefulness)
        if updated is None:
            return False

        self._stats.record_access()
        score = await self._pool.refresh(updated)
        if score is not None:
            async with self._lock:
                self._store.update_score(item_id, score)
        return True

    # ── admin API ───────────────────────────────────────────────────

    async def get_all_memory_items(self) -> MemorySnapshot:
        self._require_initialized()
        async with self._lock:
            return self._store.snapshot()

    async def delete_item(self, item_id: str) -> bool:
        self._require_initialized()
        async with self._lock:
            tier = self._store.tier_of(item_id)
            removed = self._store.delete_item(item_id)
            self._publish_tier_sizes()
        if not removed:
            return False

        self._stats.record_deletion()
        if tier == MemoryTier.long_term:
            self._notify_long_term_changed()
        return True

    async def clear_memory(self, tier: MemoryTier | str | None = None) -> int:
        """Empty one tier, or all of them. Returns the number of items removed."""
        self._require_initialized()
        target = None if tier is None else parse_tier(tier)
        async with self._lock:
            long_term_before = self._store.counts()[MemoryTier.long_term]
            removed = self._store.clear_tier(target)
            self._publish_tier_sizes()

        if removed:
            self._stats.record_deletion(removed)
        if long_term_before and target in (None, MemoryTier.long_term):
            self._notify_long_term_changed()
        return removed

    async def get_stats(self) -> MemoryStatsSnapshot:
        self._require_initialized()
        async with self._lock:
            snapshot = self._store.snapshot()
        return self._stats.snapshot(snapshot)

    # ── reconciliation ──────────────────────────────────────────────

    async def reconcile(self) -> TierChanges | None:
        """Run one reconciliation pass.

        Returns ``None`` if a pass is already running, or if shutdown dropped
        this one.
        """
        self._require_initialized()
        # Checked on the engine task, which exists before the pass itself starts running.
        if self._pass_task is not None and not self._pass_task.done():
            RECONCILE_PASSES_TOTAL.labels(outcome="coalesced").inc()
            logger.info("reconcile_coalesced reason=pass_in_flight")
            return None

        task = asyncio.create_task(self._reconciler.run())
        self._pass_task = task
        try:
            changes = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info("reconcile_dropped reason=shutdown")
            return None
        finally:
            if self._pass_task is task:
                self._pass_task = None

        if changes is None:
            return None
        self._stats.record_pass(changes)
        if changes.long_term_changed:
            self._notify_long_term_changed()
        return changes

    # ── internals ───────────────────────────────────────────────────

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("memory engine is not initialized")

    async def _record_usage_many(self, item_ids: list[str], usefulness: int) -> None:
        async with self._lock:
            updated = [
                item
                for item_id in item_ids
                if (item := self._store.record_usage(item_id, usefulness)) is not None
            ]
        if not updated:
            return

        self._stats.record_access(len(updated))
        scores = await self._pool.refresh_many(updated)
        async with self._lock:
            for item_id, score in scores.items():
                if score is not None:
                    self._store.update_score(item_id, score)

    async def _load_persisted(self) -> list[Mapping[str, object]]:
        try:
            return list(await self._persistence.load_long_term())
        except Exception as exc:
            error = PersistenceError("failed to load long-term memory")
            error.__cause__ = exc
            logger.error("memory_load_failed error=%s", error.to_dict())
            return []

    def _notify_long_term_changed(self) -> None:
        """Schedule a background save; never blocks the caller."""
        self._save_pending = True
        if self._save_task is None or self._save_task.done():
            self._save_task = asyncio.create_task(self._save_long_term())

    async def _save_long_term(self) -> None:
        # Changes that land during a save trigger exactly one more save.
        while self._save_pending:
            self._save_pending = False
            async with self._lock:
                items = self._store.items(MemoryTier.long_term)
            try:
                await self._persistence.save_long_term(items)
            except Exception as exc:
                error = exc if isinstance(exc, PersistenceError) else PersistenceError(
                    "failed to save long-term memory"
                )
                if error is not exc:
                    error.__cause__ = exc
                logger.error("memory_save_failed items=%d error=%s", len(items), error.to_dict())
            else:
                logger.debug("memory_saved items=%d", len(items))

    def _publish_tier_sizes(self) -> None:
        counts = self._store.counts()
        for tier in TIER_ORDER:
            TIER_ITEMS.labels(tier=tier.value).set(counts[tier])


def _validate_records(records: Iterable[Mapping[str, object] | MemoryItem]) -> list[MemoryItem]:
    items: list[MemoryItem] = []
    for position, record in enumerate(records):
        if isinstance(record, MemoryItem):
            items.append(record)
            continue
        try:
            items.append(MemoryItem.model_validate(record))
        except ValidationError as exc:
            logger.warning(
                "memory_seed_invalid position=%d errors=%d detail=%s",
                position,
                exc.error_count(),
                exc.errors(include_url=False)[:3],
            )
    return items


__all__ = ["MemoryEngine"]
