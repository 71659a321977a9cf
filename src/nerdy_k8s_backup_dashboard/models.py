from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any

STATUS_PENDING = "Pending"
STATUS_IN_PROGRESS = "In Progress"
STATUS_COMPLETED = "Completed"
STATUS_FAILED = "Failed"
BACKUP_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED, STATUS_FAILED)
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

TYPE_FULL = "Full"
TYPE_INCREMENTAL = "Incremental"
BACKUP_TYPES = (TYPE_FULL, TYPE_INCREMENTAL)

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_IN_PROGRESS}),
    STATUS_IN_PROGRESS: frozenset({STATUS_COMPLETED, STATUS_FAILED}),
    STATUS_COMPLETED: frozenset(),
    STATUS_FAILED: frozenset(),
}
_IMMUTABLE_FIELDS = frozenset({"id", "name", "backup_type", "created_at"})


class BackupStateError(ValueError):
    """Raised when a change would break the backup state machine or metric ordering."""


@dataclass(frozen=True)
class BackupDetails:
    duration_seconds: int = 0
    file_count: int = 0
    compression_ratio: float = 0.0


@dataclass(frozen=True)
class Backup:
    id: int
    name: str
    status: str
    backup_type: str
    size_bytes: int
    created_at: datetime
    details: BackupDetails | None = None
    message: str = ""

    def __post_init__(self) -> None:
        if self.status not in BACKUP_STATUSES:
            raise BackupStateError(f"unknown backup status: {self.status!r}")
        if self.backup_type not in BACKUP_TYPES:
            raise BackupStateError(f"unknown backup type: {self.backup_type!r}")
        if self.size_bytes < 0:
            raise BackupStateError("size_bytes must be >= 0")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def metrics(self) -> dict[str, Any]:
        details = self.details or BackupDetails()
        return {
            "size_bytes": self.size_bytes,
            "file_count": details.file_count,
            "duration_seconds": details.duration_seconds,
            "compression_ratio": details.compression_ratio,
        }

    def evolve(self, **changes: Any) -> Backup:
        """Return a copy with ``changes`` applied, enforcing the lifecycle rules.

        Terminal backups are frozen, status only moves forward, and metrics
        never decrease.
        """
        if not changes:
            return self

        known_fields = {field.name for field in fields(self)}
        unknown = sorted(set(changes) - known_fields)
        if unknown:
            raise BackupStateError(f"unknown backup field(s): {', '.join(unknown)}")
        immutable = sorted(name for name in changes if name in _IMMUTABLE_FIELDS and changes[name] != getattr(self, name))
        if immutable:
            raise BackupStateError(f"backup {self.id} field(s) cannot change: {', '.join(immutable)}")

        if self.is_terminal:
            raise BackupStateError(f"backup {self.id} is {self.status} and can no longer change")

        new_status = changes.get("status", self.status)
        if new_status != self.status and new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise BackupStateError(f"backup {self.id} cannot move from {self.status} to {new_status}")

        candidate = replace(self, **changes)
        _ensure_monotonic(self, candidate)
        return candidate


def _ensure_monotonic(current: Backup, candidate: Backup) -> None:
    before = current.metrics()
    after = candidate.metrics()
    decreased = [name for name, value in before.items() if after[name] < value]
    if decreased:
        raise BackupStateError(f"backup {current.id} metric(s) cannot decrease: {', '.join(decreased)}")
