from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from nerdy_k8s_backup_dashboard.models import STATUS_COMPLETED, STATUS_IN_PROGRESS, TYPE_INCREMENTAL
from nerdy_k8s_backup_dashboard.seed import SeedDataError, load_seed_backups, parse_seed_document
from nerdy_k8s_backup_dashboard.units import MB


def test_load_seed_backups_without_path_returns_builtin_records_newest_first() -> None:
    backups = load_seed_backups()

    assert [backup.id for backup in backups] == [1, 3, 2]
    newest = backups[0]
    assert newest.name == "daily-backup-1"
    assert newest.status == STATUS_COMPLETED
    assert newest.size_bytes == 2500 * MB
    assert newest.created_at == datetime(2024, 3, 10, 10, 0, tzinfo=UTC)
    assert newest.details is not None
    assert newest.details.duration_seconds == 900
    assert newest.details.file_count == 1250
    assert newest.details.compression_ratio == pytest.approx(0.65)
    assert backups[1].status == STATUS_IN_PROGRESS
    assert backups[1].backup_type == TYPE_INCREMENTAL


def test_load_seed_backups_with_list_file_parses_records(tmp_path: Path) -> None:
    seed_file = tmp_path / "seed.yaml"
    seed_file.write_text(
        """
- id: 10
  name: weekly-full
  status: Completed
  size: 3221225472
  created_at: 2024-02-01T08:00:00
  type: Full
  details:
    duration: 1h 5m
    files: 2000
    compression: 0.5
- id: 11
  name: weekly-incremental
  status: Failed
  size: "0.4GB"
  created_at: "2024-02-08T08:00:00+00:00"
  type: Incremental
  message: transfer stage failed
""",
        encoding="utf-8",
    )

    backups = load_seed_backups(seed_file)

    assert [backup.id for backup in backups] == [11, 10]
    assert backups[0].message == "transfer stage failed"
    assert backups[0].details is None
    assert backups[1].size_bytes == 3221225472
    assert backups[1].created_at.tzinfo is not None
    assert backups[1].details is not None
    assert backups[1].details.duration_seconds == 3900


def test_load_seed_backups_with_missing_file_raises_seed_error(tmp_path: Path) -> None:
    with pytest.raises(SeedDataError, match="Unable to read seed file"):
        load_seed_backups(tmp_path / "missing.yaml")


def test_parse_seed_document_with_empty_content_returns_no_backups() -> None:
    assert parse_seed_document("", source_label="Seed") == []
    assert parse_seed_document("backups: []", source_label="Seed") == []


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("backups: [", "must be valid YAML"),
        ("just text", "must be a list of backups"),
        ("- 42", "entry #1 must be a mapping"),
        ("- {id: 1, name: a}", "missing required field(s): status, size, created_at, type"),
        (
            "- {id: 1, name: a, status: Queued, size: 1GB, created_at: '2024-03-01', type: Full}",
            "unknown backup status",
        ),
        (
            "- {id: 1, name: a, status: Completed, size: big, created_at: '2024-03-01', type: Full}",
            "invalid size",
        ),
    ],
)
def test_parse_seed_document_with_invalid_content_raises_actionable_error(content: str, message: str) -> None:
    with pytest.raises(SeedDataError) as error_info:
        parse_seed_document(content, source_label="Seed")

    assert message in str(error_info.value)


def test_parse_seed_document_with_duplicate_ids_raises() -> None:
    content = """
- {id: 1, name: a, status: Completed, size: 1GB, created_at: '2024-03-01', type: Full}
- {id: 1, name: b, status: Failed, size: 1GB, created_at: '2024-03-02', type: Full}
"""

    with pytest.raises(SeedDataError, match="duplicate backup id 1"):
        parse_seed_document(content, source_label="Seed")
