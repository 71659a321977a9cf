from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path
import logging
from typing import Any

import yaml

from .models import Backup, BackupDetails, BackupStateError
from .units import parse_duration, parse_percentage, parse_size

logger = logging.getLogger(__name__)

DEFAULT_SEED_YAML = """
backups:
  - id: 1
    name: daily-backup-1
    status: Completed
    size: "2.5GB"
    created_at: "2024-03-10T10:00:00+00:00"
    type: Full
    details: {duration: "15m", files: 1250, compression: "65%"}
  - id: 2
    name: daily-backup-2
    status: Failed
    size: "2.3GB"
    created_at: "2024-03-09T10:00:00+00:00"
    type: Full
    details: {duration: "12m", files: 1100, compression: "62%"}
  - id: 3
    name: hourly-backup-1
    status: In Progress
    size: "1.2GB"
    created_at: "2024-03-10T09:00:00+00:00"
    type: Incremental
    details: {duration: "8m", files: 450, compression: "58%"}
"""

_REQUIRED_FIELDS = ("id", "name", "status", "size", "created_at", "type")


class SeedDataError(ValueError):
    """Raised when seed backup records cannot be parsed."""


def load_seed_backups(path: Path | None = None) -> list[Backup]:
    """Load seed records from ``path``, or the built-in sample set when ``path`` is None."""
    if path is None:
        return parse_seed_document(DEFAULT_SEED_YAML, source_label="Built-in seed data")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as error:
        raise SeedDataError(f"Unable to read seed file {path}: {error}") from error

    backups = parse_seed_document(content, source_label=f"Seed file '{path}'")
    logger.info("Loaded %d seed backup(s) from %s", len(backups), path)
    return backups


def parse_seed_document(content: str, *, source_label: str) -> list[Backup]:
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as error:
        raise SeedDataError(f"{source_label} must be valid YAML: {error.__class__.__name__}.") from error

    if parsed is None:
        return []
    if isinstance(parsed, dict):
        parsed = parsed.get("backups", [])
    if not isinstance(parsed, list):
        raise SeedDataError(f"{source_label} must be a list of backups or a mapping with a 'backups' list.")

    backups = [_parse_record(record, source_label=source_label, position=index) for index, record in enumerate(parsed)]

    seen: set[int] = set()
    for backup in backups:
        if backup.id in seen:
            raise SeedDataError(f"{source_label} contains duplicate backup id {backup.id}.")
        seen.add(backup.id)

    return sorted(backups, key=lambda backup: backup.created_at, reverse=True)


def _parse_record(record: Any, *, source_label: str, position: int) -> Backup:
    label = f"{source_label} entry #{position + 1}"
    if not isinstance(record, dict):
        raise SeedDataError(f"{label} must be a mapping.")

    missing_fields = [name for name in _REQUIRED_FIELDS if name not in record]
    if missing_fields:
        raise SeedDataError(f"{label} is missing required field(s): {', '.join(missing_fields)}.")

    try:
        details = _parse_details(record.get("details"))
        return Backup(
            id=int(record["id"]),
            name=str(record["name"]),
            status=str(record["status"]),
            backup_type=str(record["type"]),
            size_bytes=parse_size(record["size"]),
            created_at=_parse_timestamp(record["created_at"]),
            details=details,
            message=str(record.get("message", "") or ""),
        )
    except (BackupStateError, TypeError, ValueError) as error:
        raise SeedDataError(f"{label} is invalid: {error}") from error


def _parse_details(value: Any) -> BackupDetails | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError("details must be a mapping")
    return BackupDetails(
        duration_seconds=parse_duration(value.get("duration", 0)),
        file_count=int(value.get("files", 0)),
        compression_ratio=parse_percentage(value.get("compression", 0.0)),
    )


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
