"""
Outbox storage — where a client keeps messages composed while offline.

Backends:
  - MemoryOutboxStorage: dict-backed, for tests and ephemeral clients
  - FileOutboxStorage: one JSON file per user, survives restarts

Data layout (FileOutboxStorage):
  {storage_dir}/
    {user_id}.json      # {entry_id: OutboxEntry JSON}

Single-process only: the owning OfflineOutbox serializes writes.
"""
from __future__ import annotations

import abc
import json
import re
import structlog
from pathlib import Path
from typing import Optional

from models.schemas import OutboxEntry

logger = structlog.get_logger()


class OutboxStorage(abc.ABC):
    """Persistent map of entry id → OutboxEntry for one user."""

    @abc.abstractmethod
    async def load(self) -> dict[str, OutboxEntry]:
        ...

    @abc.abstractmethod
    async def save(self, entry: OutboxEntry) -> None:
        ...

    @abc.abstractmethod
    async def save_many(self, entries: list[OutboxEntry]) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, entry_id: str) -> None:
        ...

    @abc.abstractmethod
    async def delete_many(self, entry_ids: list[str]) -> None:
        ...


class MemoryOutboxStorage(OutboxStorage):

    def __init__(self):
        self._entries: dict[str, OutboxEntry] = {}

    async def load(self) -> dict[str, OutboxEntry]:
        return {k: v.model_copy(deep=True) for k, v in self._entries.items()}

    async def save(self, entry: OutboxEntry) -> None:
        self._entries[entry.id] = entry.model_copy(deep=True)

    async def save_many(self, entries: list[OutboxEntry]) -> None:
        for entry in entries:
            await self.save(entry)

    async def delete(self, entry_id: str) -> None:
        self._entries.pop(entry_id, None)

    async def delete_many(self, entry_ids: list[str]) -> None:
        for entry_id in entry_ids:
            self._entries.pop(entry_id, None)


class FileOutboxStorage(OutboxStorage):
    """
    JSON file per user. Every mutation rewrites the file through a
    temporary file and an atomic rename.
    """

    def __init__(self, storage_dir: str, user_id: str):
        self._dir = Path(storage_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        safe_user = re.sub(r"[^A-Za-z0-9_.-]", "_", user_id) or "anonymous"
        self._path = self._dir / f"{safe_user}.json"
        self._entries: Optional[dict[str, OutboxEntry]] = None

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, OutboxEntry]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("outbox_file_load_error", path=str(self._path), error=str(e))
            return {}
        entries: dict[str, OutboxEntry] = {}
        for entry_id, data in (raw or {}).items():
            try:
                entries[entry_id] = OutboxEntry.model_validate(data)
            except ValueError as e:
                logger.warning("outbox_entry_invalid", entry_id=entry_id, error=str(e))
        return entries

    def _flush(self):
        data = {k: v.model_dump(mode="json") for k, v in (self._entries or {}).items()}
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self._path)

    def _cache(self) -> dict[str, OutboxEntry]:
        if self._entries is None:
            self._entries = self._read()
        return self._entries

    async def load(self) -> dict[str, OutboxEntry]:
        self._entries = self._read()
        logger.debug("outbox_file_loaded", path=str(self._path), entries=len(self._entries))
        return {k: v.model_copy(deep=True) for k, v in self._entries.items()}

    async def save(self, entry: OutboxEntry) -> None:
        self._cache()[entry.id] = entry.model_copy(deep=True)
        self._flush()

    async def save_many(self, entries: list[OutboxEntry]) -> None:
        cache = self._cache()
        for entry in entries:
            cache[entry.id] = entry.model_copy(deep=True)
        self._flush()

    async def delete(self, entry_id: str) -> None:
        self._cache().pop(entry_id, None)
        self._flush()

    async def delete_many(self, entry_ids: list[str]) -> None:
        cache = self._cache()
        for entry_id in entry_ids:
            cache.pop(entry_id, None)
        self._flush()
