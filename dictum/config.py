from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from dictum.models.memory import MemoryTier


class TierConfig(BaseModel):
    max_items: int = Field(ge=1)
    ttl_seconds: float | None = None
    """Seconds an item may sit in the tier; ``None`` means it never expires."""

    @field_validator("ttl_seconds")
    @classmethod
    def _validate_ttl(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("ttl_seconds must be positive or null")
        return value


class PromotionRule(BaseModel):
    """Any one criterion is enough to promote."""

    min_access_count: int = Field(ge=0)
    min_usefulness: int = Field(ge=0, le=10)
    min_relevance: float = Field(ge=0.0, le=1.0)


class MemoryConfig(BaseModel):
    working: TierConfig = Field(
        default_factory=lambda: TierConfig(max_items=50, ttl_seconds=5 * 60)
    )
    short_term: TierConfig = Field(
        default_factory=lambda: TierConfig(max_items=100, ttl_seconds=24 * 60 * 60)
    )
    long_term: TierConfig = Field(default_factory=lambda: TierConfig(max_items=500))
    promote_to_short_term: PromotionRule = Field(
        default_factory=lambda: PromotionRule(
            min_access_count=3, min_usefulness=7, min_relevance=0.7
        )
    )
    promote_to_long_term: PromotionRule = Field(
        default_factory=lambda: PromotionRule(
            min_access_count=5, min_usefulness=8, min_relevance=0.8
        )
    )
    short_term_keep_relevance: float = Field(default=0.3, ge=0.0, le=1.0)
    long_term_demote_below: float = Field(default=0.5, ge=0.0, le=1.0)
    long_term_stale_after_days: float = Field(default=30.0, gt=0)
    sticky_demotion: bool = True

    @model_validator(mode="after")
    def _validate_ttls(self) -> MemoryConfig:
        if self.working.ttl_seconds is None or self.short_term.ttl_seconds is None:
            raise ValueError("working and short_term tiers require a ttl_seconds")
        return self

    def tier(self, tier: MemoryTier) -> TierConfig:
        if tier == MemoryTier.working:
            return self.working
        if tier == MemoryTier.short_term:
            return self.short_term
        return self.long_term


class ScoringConfig(BaseModel):
    timeout_s: float = Field(default=0.3, gt=0)
    max_concurrency: int = Field(default=8, ge=1)


class ContextConfig(BaseModel):
    max_items: int = Field(default=10, ge=0)
    min_relevance: float = Field(default=0.3, ge=0.0, le=1.0)
    usage_usefulness: int = Field(default=5, ge=0, le=10)
    fallback_to_recency: bool = True


class ReconcileConfig(BaseModel):
    enabled: bool = True
    interval_seconds: int = Field(default=60, ge=1)


class PersistenceConfig(BaseModel):
    enabled: bool = True
    data_dir: Path = Path("./data")
    filename: str = "long-term-memory.json"

    @property
    def file_path(self) -> Path:
        return self.data_dir / "memory" / self.filename


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class DictumSettings(BaseSettings):
    """Engine settings: YAML file values, overridden by ``DICTUM_*`` env vars.

    Nested fields use ``__`` in env names, e.g.
    ``DICTUM_MEMORY__WORKING__MAX_ITEMS=20``.
    """

    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DICTUM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # File values arrive as init kwargs; the environment outranks them.
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def read_yaml_section(path: Path, section: str = "dictum") -> dict[str, object]:
    """Return the ``section`` mapping of a YAML file, or the whole file if it has none."""
    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    body = document.get(section, document)
    if not isinstance(body, dict):
        raise ValueError(f"{path}: '{section}' must be a mapping")
    return body


def load_config(path: str | Path = "config/dictum.yaml") -> DictumSettings:
    config_path = Path(path)
    if not config_path.is_file():
        raise FileNotFoundError(f"no config file at {config_path}")
    return DictumSettings(**read_yaml_section(config_path))


__all__ = [
    "ContextConfig",
    "DictumSettings",
    "LoggingConfig",
    "MemoryConfig",
    "PersistenceConfig",
    "PromotionRule",
    "ReconcileConfig",
    "ScoringConfig",
    "TierConfig",
    "load_config",
    "read_yaml_section",
]
