from __future__ import annotations

from collections.abc import Callable

import pytest
from dictum.config import DictumSettings, MemoryConfig, ScoringConfig, TierConfig
from dictum.memory.engine import MemoryEngine
from dictum.memory.store import ItemStore

from tests.fakes import RecordingPersistence, ScriptedScorer
from tests.helpers import ManualClock

EngineFactory = Callable[..., MemoryEngine]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scorer() -> ScriptedScorer:
    return ScriptedScorer()


@pytest.fixture
def persistence() -> RecordingPersistence:
    return RecordingPersistence()


@pytest.fixture
def small_memory() -> MemoryConfig:
    return MemoryConfig(
        working=TierConfig(max_items=3, ttl_seconds=300),
        short_term=TierConfig(max_items=3, ttl_seconds=86400),
        long_term=TierConfig(max_items=3),
    )


@pytest.fixture
def store(clock: ManualClock) -> ItemStore:
    return ItemStore(MemoryConfig(), clock=clock)


@pytest.fixture
def make_engine(
    clock: ManualClock,
    scorer: ScriptedScorer,
    persistence: RecordingPersistence,
) -> EngineFactory:
    def _make(
        memory: MemoryConfig | None = None,
        *,
        timeout_s: float = 0.3,
        **overrides: object,
    ) -> MemoryEngine:
        settings = DictumSettings(
            memory=memory or MemoryConfig(),
            scoring=ScoringConfig(timeout_s=timeout_s),
        )
        return MemoryEngine(
            settings,
            scorer=overrides.get("scorer", scorer),  # type: ignore[arg-type]
            persistence=overrides.get("persistence", persistence),  # type: ignore[arg-type]
            clock=clock,
        )

    return _make
