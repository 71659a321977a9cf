from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from .models import BACKUP_STATUSES, Backup

_BUCKET_FORMATS = {
    "day": "%Y-%m-%d",
    "month": "%Y-%m",
    "year": "%Y",
}


@dataclass(frozen=True)
class Aggregates:
    status_distribution: dict[str, int]
    storage_trend: list[tuple[str, int]]
    total_backups: int
    total_size_bytes: int
    last_backup_at: datetime | None


def status_distribution(backups: Iterable[Backup]) -> dict[str, int]:
    counts = {status: 0 for status in BACKUP_STATUSES}
    for backup in backups:
        counts[backup.status] += 1
    return counts


def storage_trend(backups: Iterable[Backup], bucket_by: str = "month") -> list[tuple[str, int]]:
    """Sum backup sizes per creation period, oldest period first."""
    bucket_format = _BUCKET_FORMATS.get(bucket_by)
    if bucket_format is None:
        supported = ", ".join(_BUCKET_FORMATS)
        raise ValueError(f"unsupported bucket {bucket_by!r}; expected one of: {supported}")

    totals: dict[str, int] = {}
    for backup in backups:
        period = _bucket_label(backup.created_at, bucket_format)
        totals[period] = totals.get(period, 0) + backup.size_bytes
    # Zero-padded labels sort chronologically.
    return sorted(totals.items())


def last_backup_at(backups: Iterable[Backup]) -> datetime | None:
    return max((backup.created_at for backup in backups), default=None)


def compute_aggregates(backups: Iterable[Backup], bucket_by: str = "month") -> Aggregates:
    snapshot = tuple(backups)
    return Aggregates(
        status_distribution=status_distribution(snapshot),
        storage_trend=storage_trend(snapshot, bucket_by=bucket_by),
        total_backups=len(snapshot),
        total_size_bytes=sum(backup.size_bytes for backup in snapshot),
        last_backup_at=last_backup_at(snapshot),
    )


def _bucket_label(created_at: datetime, bucket_format: str) -> str:
    return created_at.strftime(bucket_format)
