from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from dictum.models.memory import MemoryItem


@runtime_checkable
class ScoringPort(Protocol):
    async def initial_score(self, item: MemoryItem) -> float: ...

    async def refresh_score(self, item: MemoryItem) -> float: ...

    async def relevance_to_command(self, item: MemoryItem, command: str) -> float: ...


@runtime_checkable
class PersistenceGateway(Protocol):
    async def load_long_term(self) -> list[Mapping[str, object]]: ...

    async def save_long_term(self, items: list[MemoryItem]) -> None: ...


__all__ = ["PersistenceGateway", "ScoringPort"]
