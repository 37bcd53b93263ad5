"""Periodic reconciliation on APScheduler 3's ``AsyncIOScheduler``.

Jobs run as coroutines on the loop that calls :meth:`ReconcileScheduler.start`,
so a scheduled pass takes the engine's writer lock like any other caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from dictum.config import ReconcileConfig

if TYPE_CHECKING:
    from dictum.memory.engine import MemoryEngine

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Coroutine[Any, Any, Any]]


class ReconcileScheduler:
    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler()
        self._schedules: set[str] = set()
        self._failures: dict[str, int] = {}
        # AsyncIOScheduler applies shutdown on a later loop tick, so its own flag lags.
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def job_ids(self) -> list[str]:
        return sorted(self._schedules)

    def consecutive_failures(self, schedule_id: str) -> int:
        return self._failures.get(schedule_id, 0)

    def add_heartbeat(
        self,
        name: str,
        interval_seconds: int,
        callback: AsyncCallback,
        *,
        run_immediately: bool = False,
    ) -> str:
        """Call ``callback`` every ``interval_seconds``; returns ``heartbeat:<name>``.

        A tick that comes due while the previous one is still running is
        skipped rather than queued. Raises ``ValueError`` for a non-positive
        interval or a name that is already scheduled.
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        schedule_id = f"heartbeat:{name}"
        if schedule_id in self._schedules:
            raise ValueError(f"schedule '{schedule_id}' already registered")

        # APScheduler treats an explicit next_run_time=None as "paused".
        extra: dict[str, Any] = {"next_run_time": datetime.now(UTC)} if run_immediately else {}
        self._scheduler.add_job(
            self._safe_invoke(callback, schedule_id),
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=schedule_id,
            name=name,
            max_instances=1,
            coalesce=True,
            **extra,
        )
        self._schedules.add(schedule_id)
        self._failures[schedule_id] = 0
        logger.info("heartbeat_registered id=%s interval_s=%d", schedule_id, interval_seconds)
        return schedule_id

    def remove_schedule(self, schedule_id: str) -> None:
        if schedule_id not in self._schedules:
            raise KeyError(f"unknown schedule: {schedule_id}")
        self._scheduler.remove_job(schedule_id)
        self._schedules.discard(schedule_id)
        self._failures.pop(schedule_id, None)
        logger.info("heartbeat_removed id=%s", schedule_id)

    def start(self) -> None:
        """Start ticking on the running event loop; no-op if already started."""
        if self.running:
            return
        self._scheduler.start()
        self._running = True
        logger.info("scheduler_started jobs=%d", len(self._schedules))

    def stop(self) -> None:
        """Stop ticking and drop every schedule; no-op if not started."""
        if not self.running:
            return
        self._scheduler.shutdown(wait=False)
        # A fresh instance lets start() follow stop() before the deferred shutdown lands.
        self._scheduler = AsyncIOScheduler()
        self._schedules.clear()
        self._failures.clear()
        self._running = False
        logger.info("scheduler_stopped")

    def _safe_invoke(self, callback: AsyncCallback, schedule_id: str) -> AsyncCallback:
        async def _tick() -> None:
            started = time.monotonic()
            try:
                await callback()
            except Exception:
                failures = self._failures.get(schedule_id, 0) + 1
                self._failures[schedule_id] = failures
                logger.exception(
                    "heartbeat_failed id=%s consecutive_failures=%d", schedule_id, failures
                )
                return
            if self._failures.get(schedule_id):
                logger.info(
                    "heartbeat_recovered id=%s after_failures=%d",
                    schedule_id,
                    self._failures[schedule_id],
                )
            self._failures[schedule_id] = 0
            logger.debug(
                "heartbeat_done id=%s duration_ms=%.1f",
                schedule_id,
                (time.monotonic() - started) * 1000,
            )

        return _tick


def attach_reconcile(
    scheduler: ReconcileScheduler,
    engine: MemoryEngine,
    config: ReconcileConfig,
) -> str | None:
    """Schedule ``engine.reconcile``, first tick at start; ``None`` when disabled."""
    if not config.enabled:
        logger.info("reconcile_heartbeat_disabled")
        return None
    return scheduler.add_heartbeat(
        "reconcile",
        config.interval_seconds,
        engine.reconcile,
        run_immediately=True,
    )


__all__ = ["AsyncCallback", "ReconcileScheduler", "attach_reconcile"]
