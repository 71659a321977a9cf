from __future__ import annotations

from collections.abc import Iterable
import logging
import threading
from typing import Any

from .errors import ConflictError, NotFoundError
from .models import Backup

logger = logging.getLogger(__name__)


class BackupStore:
    """In-memory, newest-first collection of backup records.

    Every method holds the store lock, so a read-modify-write through
    ``update`` is serialized against any other mutation.
    """

    def __init__(self, backups: Iterable[Backup] = ()) -> None:
        self._lock = threading.Lock()
        self._backups: list[Backup] = []
        self._highest_id = 0
        # Seed records arrive newest-first, so append instead of prepending.
        for backup in backups:
            if any(existing.id == backup.id for existing in self._backups):
                raise ConflictError(f"backup {backup.id} already exists")
            self._backups.append(backup)
            self._highest_id = max(self._highest_id, backup.id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._backups)

    def __contains__(self, backup_id: object) -> bool:
        with self._lock:
            return any(backup.id == backup_id for backup in self._backups)

    def list(self) -> tuple[Backup, ...]:
        with self._lock:
            return tuple(self._backups)

    def get(self, backup_id: int) -> Backup:
        with self._lock:
            return self._backups[self._index_of(backup_id)]

    def next_id(self) -> int:
        with self._lock:
            return self._highest_id + 1

    def insert(self, backup: Backup) -> Backup:
        with self._lock:
            if any(existing.id == backup.id for existing in self._backups):
                raise ConflictError(f"backup {backup.id} already exists")
            self._backups.insert(0, backup)
            self._highest_id = max(self._highest_id, backup.id)
        logger.debug("Inserted backup %s (%s)", backup.id, backup.status)
        return backup

    def update(self, backup_id: int, **changes: Any) -> Backup:
        with self._lock:
            index = self._index_of(backup_id)
            updated = self._backups[index].evolve(**changes)
            self._backups[index] = updated
        logger.debug("Updated backup %s: %s", backup_id, ", ".join(sorted(changes)))
        return updated

    def remove(self, backup_id: int) -> Backup:
        with self._lock:
            removed = self._backups.pop(self._index_of(backup_id))
        logger.debug("Removed backup %s", backup_id)
        return removed

    def _index_of(self, backup_id: int) -> int:
        for index, backup in enumerate(self._backups):
            if backup.id == backup_id:
                return index
        raise NotFoundError(backup_id)
