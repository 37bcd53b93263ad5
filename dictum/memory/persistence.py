"""PersistenceGateway implementations for the long-term tier."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path

from pydantic import TypeAdapter

from dictum.memory.errors import PersistenceError
from dictum.models.memory import MemoryItem

logger = logging.getLogger(__name__)

_ITEMS_ADAPTER = TypeAdapter(list[MemoryItem])


class NullPersistence:
    """Keeps nothing: loads empty, discards saves."""

    async def load_long_term(self) -> list[Mapping[str, object]]:
        return []

    async def save_long_term(self, items: list[MemoryItem]) -> None:
        return None


class JsonFilePersistence:
    """Long-term items as a JSON array on disk, written atomically.

    Before each write the previous file is copied to ``<file>.backup``; the
    new content goes to a temp file in the same directory and is renamed
    over the original. Field names are camelCase so files written by the
    desktop app load unchanged.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def backup_path(self) -> Path:
        return self._path.with_name(self._path.name + ".backup")

    async def load_long_term(self) -> list[Mapping[str, object]]:
        return await asyncio.to_thread(self._load)

    async def save_long_term(self, items: list[MemoryItem]) -> None:
        payload = _ITEMS_ADAPTER.dump_json(items, by_alias=True, indent=2)
        await asyncio.to_thread(self._save, payload)

    def _load(self) -> list[Mapping[str, object]]:
        if not self._path.exists():
            logger.info("memory_file_missing path=%s", self._path)
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("memory_file_unreadable path=%s error=%s", self._path, exc)
            return []
        if not isinstance(data, list):
            logger.error("memory_file_invalid path=%s reason=not_an_array", self._path)
            return []
        records = [record for record in data if isinstance(record, Mapping)]
        if len(records) != len(data):
            logger.warning(
                "memory_file_skipped_records path=%s skipped=%d",
                self._path,
                len(data) - len(records),
            )
        logger.info("memory_file_loaded path=%s items=%d", self._path, len(records))
        return records

    def _save(self, payload: bytes) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if self._path.is_file():
                shutil.copyfile(self._path, self.backup_path)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(
                "failed to save long-term memory", path=str(self._path)
            ) from exc
        logger.info("memory_file_saved path=%s bytes=%d", self._path, len(payload))


__all__ = ["JsonFilePersistence", "NullPersistence"]
