"""dictum CLI entry point and engine wiring."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from dictum.config import DictumSettings, load_config
from dictum.core.logging import setup_logging
from dictum.memory.engine import MemoryEngine
from dictum.memory.errors import MemoryEngineError
from dictum.memory.scorer import HeuristicScorer
from dictum.models.memory import TIER_ORDER, MemoryItem
from dictum.scheduler import ReconcileScheduler, attach_reconcile

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PREVIEW_CHARS = 60


def build_engine(settings: DictumSettings) -> MemoryEngine:
    return MemoryEngine.from_settings(settings, scorer=HeuristicScorer())


def _load_settings(config_path: str) -> DictumSettings:
    path = Path(config_path)
    if not path.exists():
        # Env vars alone are enough to run without a config file.
        return DictumSettings()
    return load_config(path)


def _with_engine(settings: DictumSettings, operation: Callable[[MemoryEngine], Awaitable[T]]) -> T:
    async def _run() -> T:
        async with build_engine(settings) as engine:
            return await operation(engine)

    try:
        return asyncio.run(_run())
    except MemoryEngineError as exc:
        raise click.ClickException(exc.message) from exc


def _preview(item: MemoryItem) -> str:
    text = " ".join(item.content.split())
    if len(text) > _PREVIEW_CHARS:
        return text[: _PREVIEW_CHARS - 3] + "..."
    return text


@click.group()
@click.option("--config", "config_path", default="config/dictum.yaml", show_default=True)
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """dictum context-memory CLI."""
    try:
        settings = _load_settings(config_path)
    except ValueError as exc:
        raise click.ClickException(f"invalid config {config_path}: {exc}") from exc
    setup_logging(settings.logging.level, settings.logging.json_output)
    ctx.obj = settings


@cli.group("memory")
def memory_group() -> None:
    """Inspect and edit persisted memory."""


@memory_group.command("show")
@click.option("--json", "as_json", is_flag=True, help="Print the full snapshot as JSON.")
@click.pass_obj
def show_command(settings: DictumSettings, as_json: bool) -> None:
    """List every resident memory item."""
    snapshot = _with_engine(settings, lambda engine: engine.get_all_memory_items())
    if as_json:
        click.echo(snapshot.model_dump_json(by_alias=True, indent=2))
        return
    if snapshot.total == 0:
        click.echo("No memory items.")
        return
    for tier in TIER_ORDER:
        for item in snapshot.for_tier(tier):
            click.echo(
                f"{tier.value:<10} {item.id}  score={item.relevance_score:.2f} "
                f"uses={item.access_count}  {_preview(item)}"
            )


@memory_group.command("stats")
@click.pass_obj
def stats_command(settings: DictumSettings) -> None:
    """Print tier sizes and average relevance."""
    stats = _with_engine(settings, lambda engine: engine.get_stats())
    click.echo(f"total: {stats.total_items}")
    for tier in TIER_ORDER:
        click.echo(
            f"{tier.value}: {stats.items_by_tier.get(tier, 0)} items, "
            f"avg score {stats.average_scores.get(tier, 0.0):.2f}"
        )


@memory_group.command("delete")
@click.argument("item_id")
@click.pass_obj
def delete_command(settings: DictumSettings, item_id: str) -> None:
    """Delete one item by id."""
    removed = _with_engine(settings, lambda engine: engine.delete_item(item_id))
    if not removed:
        raise click.ClickException(f"no memory item with id {item_id}")
    click.echo(f"Deleted {item_id}")


@memory_group.command("clear")
@click.argument("tier", required=False)
@click.pass_obj
def clear_command(settings: DictumSettings, tier: str | None) -> None:
    """Remove every item, or every item in TIER."""
    removed = _with_engine(settings, lambda engine: engine.clear_memory(tier))
    click.echo(f"Removed {removed} items")


async def _serve(settings: DictumSettings, stop: asyncio.Event) -> None:
    scheduler = ReconcileScheduler()
    async with build_engine(settings) as engine:
        attach_reconcile(scheduler, engine, settings.reconcile)
        scheduler.start()
        try:
            await stop.wait()
        finally:
            scheduler.stop()


@cli.command("start")
@click.pass_obj
def start_command(settings: DictumSettings) -> None:
    """Run the engine with periodic reconciliation until interrupted."""
    logger.info(
        "dictum_starting reconcile_interval_s=%d persistence=%s",
        settings.reconcile.interval_seconds,
        settings.persistence.file_path if settings.persistence.enabled else "disabled",
    )
    try:
        asyncio.run(_serve(settings, asyncio.Event()))
    except KeyboardInterrupt:
        click.echo("Shutting down.")


__all__ = ["build_engine", "cli"]


if __name__ == "__main__":
    cli()
