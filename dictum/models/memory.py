from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_item_id() -> str:
    return uuid.uuid4().hex


class MemoryTier(StrEnum):
    working = "working"
    short_term = "short-term"
    long_term = "long-term"


# Shorter retention first.
TIER_ORDER: tuple[MemoryTier, ...] = (
    MemoryTier.working,
    MemoryTier.short_term,
    MemoryTier.long_term,
)


class _CamelModel(BaseModel):
    # camelCase aliases keep snapshots compatible with the desktop app's JSON.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MemoryItem(_CamelModel):
    id: str = Field(default_factory=new_item_id, frozen=True)
    content: str = Field(frozen=True)
    source: str = "unknown"
    application: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    last_accessed: datetime = Field(default_factory=utc_now)
    access_count: int = Field(default=0, ge=0)
    usefulness: int = Field(default=0, ge=0, le=10)
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    tier: MemoryTier = MemoryTier.working
    expires_at: datetime | None = None
    demoted_at: datetime | None = None

    @field_validator("content")
    @classmethod
    def _require_content(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("content must be non-empty")
        return value

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        key = value.strip().lower().replace("_", "-")
        return {"shortterm": "short-term", "longterm": "long-term"}.get(key, key)

    @field_validator("created_at", "last_accessed", "expires_at", "demoted_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # Persisted snapshots from older builds carry naive timestamps.
        if value is None:
            return value
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            return value.replace(tzinfo=UTC)
        return value

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class ScoredItem(_CamelModel):
    item: MemoryItem
    command_relevance: float = 0.0


class ContextResult(_CamelModel):
    items: list[ScoredItem] = Field(default_factory=list)
    total_relevant_items: int = 0
    degraded: bool = False


class TierChanges(_CamelModel):
    """Summary of one reconciliation pass."""

    expired: int = 0
    promoted_to_short_term: int = 0
    promoted_to_long_term: int = 0
    demoted_to_working: int = 0
    demoted_to_short_term: int = 0
    evicted: dict[MemoryTier, int] = Field(default_factory=dict)
    scoring_failures: int = 0
    item_failures: int = 0
    long_term_changed: bool = False

    @property
    def promoted(self) -> int:
        return self.promoted_to_short_term + self.promoted_to_long_term

    @property
    def demoted(self) -> int:
        return self.demoted_to_working + self.demoted_to_short_term


class MemorySnapshot(_CamelModel):
    working: list[MemoryItem] = Field(default_factory=list)
    short_term: list[MemoryItem] = Field(default_factory=list)
    long_term: list[MemoryItem] = Field(default_factory=list)

    def for_tier(self, tier: MemoryTier) -> list[MemoryItem]:
        if tier == MemoryTier.working:
            return self.working
        if tier == MemoryTier.short_term:
            return self.short_term
        return self.long_term

    def all_items(self) -> list[MemoryItem]:
        return [*self.working, *self.short_term, *self.long_term]

    @property
    def total(self) -> int:
        return len(self.working) + len(self.short_term) + len(self.long_term)


class OperationCounts(_CamelModel):
    adds: int = 0
    accesses: int = 0
    deletions: int = 0
    promotions: int = 0
    demotions: int = 0
    expirations: int = 0
    evictions: int = 0
    context_requests: int = 0


class MemoryStatsSnapshot(_CamelModel):
    total_items: int = 0
    items_by_tier: dict[MemoryTier, int] = Field(default_factory=dict)
    average_scores: dict[MemoryTier, float] = Field(default_factory=dict)
    operations: OperationCounts = Field(default_factory=OperationCounts)
    last_updated: datetime = Field(default_factory=utc_now)


__all__ = [
    "TIER_ORDER",
    "ContextResult",
    "MemoryItem",
    "MemorySnapshot",
    "MemoryStatsSnapshot",
    "MemoryTier",
    "OperationCounts",
    "ScoredItem",
    "TierChanges",
    "new_item_id",
    "utc_now",
]
