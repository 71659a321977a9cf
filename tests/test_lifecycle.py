from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime

import pytest

from nerdy_k8s_backup_dashboard.clock import ManualClock
from nerdy_k8s_backup_dashboard.errors import ConflictError, NotFoundError
from nerdy_k8s_backup_dashboard.events import (
    BACKUP_COMPLETED,
    BACKUP_CREATED,
    BACKUP_FAILED,
    BACKUP_PROGRESS,
    DELETE_STARTED,
    DELETE_SUCCEEDED,
    KIND_FAILED,
    KIND_PROGRESS,
    KIND_STARTED,
    KIND_SUCCEEDED,
    RESTORE_STARTED,
    RESTORE_SUCCEEDED,
    EventLog,
    LifecycleEvent,
)
from nerdy_k8s_backup_dashboard.lifecycle import LifecycleConfig, LifecycleOrchestrator
from nerdy_k8s_backup_dashboard.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    TYPE_FULL,
    Backup,
    BackupDetails,
    BackupStateError,
)
from nerdy_k8s_backup_dashboard.pipeline import (
    FailurePredicate,
    SimulatedBackupPipeline,
    StageUpdate,
    fail_at_stage,
    never_fail,
)
from nerdy_k8s_backup_dashboard.store import BackupStore
from nerdy_k8s_backup_dashboard.units import MB


def _backup(backup_id: int = 1, *, status: str = STATUS_COMPLETED) -> Backup:
    return Backup(
        id=backup_id,
        name=f"daily-backup-{backup_id}",
        status=status,
        backup_type=TYPE_FULL,
        size_bytes=2500 * MB,
        created_at=datetime(2024, 3, 10, 10, 0, tzinfo=UTC),
        details=BackupDetails(duration_seconds=900, file_count=1250, compression_ratio=0.65),
    )


def _orchestrator(
    *,
    backups: Sequence[Backup] = (),
    should_fail: FailurePredicate = never_fail,
    config: LifecycleConfig | None = None,
) -> tuple[LifecycleOrchestrator, ManualClock, EventLog]:
    clock = ManualClock()
    event_log = EventLog()
    orchestrator = LifecycleOrchestrator(
        store=BackupStore(backups),
        sink=event_log,
        pipeline=SimulatedBackupPipeline(clock=clock, stage_delay_seconds=1.0, should_fail=should_fail),
        clock=clock,
        config=config,
    )
    return orchestrator, clock, event_log


def _metrics(backup: Backup) -> tuple[int, int, int, float]:
    assert backup.details is not None
    return (
        backup.size_bytes,
        backup.details.file_count,
        backup.details.duration_seconds,
        backup.details.compression_ratio,
    )


@pytest.mark.asyncio
async def test_create_backup_with_empty_store_walks_stages_to_completed() -> None:
    orchestrator, clock, event_log = _orchestrator()

    operation = await orchestrator.create_backup()

    backups = orchestrator.list_backups()
    assert [backup.id for backup in backups] == [operation.backup_id]
    assert backups[0].status == STATUS_IN_PROGRESS
    assert backups[0].size_bytes == 0
    assert event_log.names() == [BACKUP_CREATED]

    await clock.advance(1.0)
    first = orchestrator.list_backups()[0]
    assert first.status == STATUS_IN_PROGRESS
    assert _metrics(first) == (800 * MB, 400, 300, 0.30)

    await clock.advance(1.0)
    second = orchestrator.list_backups()[0]
    assert second.status == STATUS_IN_PROGRESS
    assert _metrics(second) == (1500 * MB, 800, 600, 0.45)

    await clock.advance(1.0)
    final = orchestrator.list_backups()[0]
    assert final.status == STATUS_COMPLETED
    assert _metrics(final) == (2100 * MB, 1200, 900, 0.60)
    assert event_log.names() == [BACKUP_CREATED, BACKUP_PROGRESS, BACKUP_PROGRESS, BACKUP_COMPLETED]
    assert operation.done
    assert orchestrator.in_flight_creation is None


@pytest.mark.asyncio
async def test_create_backup_emits_each_transition_once_for_the_same_operation() -> None:
    orchestrator, clock, event_log = _orchestrator()

    operation = await orchestrator.create_backup()
    await clock.advance(3.0)

    events = event_log.for_operation(operation.operation_id)
    assert [event.kind for event in events] == [KIND_STARTED, KIND_PROGRESS, KIND_PROGRESS, KIND_SUCCEEDED]
    assert [event.payload.get("stage") for event in events[1:]] == [1, 2, 3]
    assert all(event.backup_id == operation.backup_id for event in events)


@pytest.mark.asyncio
async def test_create_backup_with_concurrent_calls_admits_exactly_one() -> None:
    orchestrator, clock, _ = _orchestrator()

    results = await asyncio.gather(*(orchestrator.create_backup() for _ in range(5)), return_exceptions=True)

    conflicts = [result for result in results if isinstance(result, ConflictError)]
    operations = [result for result in results if not isinstance(result, BaseException)]
    assert len(operations) == 1
    assert len(conflicts) == 4
    assert len(orchestrator.list_backups()) == 1
    assert orchestrator.in_flight_creation == operations[0].backup_id

    await clock.advance(3.0)
    assert orchestrator.in_flight_creation is None


@pytest.mark.asyncio
async def test_create_backup_while_in_flight_raises_conflict_and_leaves_store_unchanged() -> None:
    orchestrator, clock, event_log = _orchestrator(backups=[_backup(1)])
    operation = await orchestrator.create_backup()
    await clock.advance(1.0)
    snapshot = orchestrator.list_backups()
    event_count = len(event_log.events())

    with pytest.raises(ConflictError, match="still being created"):
        await orchestrator.create_backup()

    assert orchestrator.list_backups() == snapshot
    assert len(event_log.events()) == event_count
    assert orchestrator.in_flight_creation == operation.backup_id


@pytest.mark.asyncio
async def test_create_backup_after_completion_allocates_next_id() -> None:
    orchestrator, clock, _ = _orchestrator(backups=[_backup(7)])

    first = await orchestrator.create_backup()
    await clock.advance(3.0)
    second = await orchestrator.create_backup()

    assert first.backup_id == 8
    assert second.backup_id == 9
    assert [backup.id for backup in orchestrator.list_backups()] == [9, 8, 7]


@pytest.mark.asyncio
async def test_create_backup_progress_metrics_are_monotonic_and_end_at_maximum() -> None:
    orchestrator, clock, event_log = _orchestrator()

    await orchestrator.create_backup()
    await clock.advance(3.0)

    reports = [event.payload for event in event_log.events() if event.name in {BACKUP_PROGRESS, BACKUP_COMPLETED}]
    for metric in ("size_bytes", "file_count", "duration_seconds", "compression_ratio"):
        values = [report[metric] for report in reports]
        assert values == sorted(values)
        assert values[-1] == max(values)


@pytest.mark.asyncio
async def test_create_backup_with_simulated_failure_marks_failed_and_releases_guard() -> None:
    orchestrator, clock, event_log = _orchestrator(should_fail=fail_at_stage(2))

    operation = await orchestrator.create_backup()
    await clock.advance(2.0)

    failed = orchestrator.list_backups()[0]
    assert failed.status == STATUS_FAILED
    assert failed.message == "transfer stage failed: simulated backup failure"
    assert _metrics(failed) == (800 * MB, 400, 300, 0.30)
    assert event_log.names() == [BACKUP_CREATED, BACKUP_PROGRESS, BACKUP_FAILED]
    failed_event = event_log.events()[-1]
    assert failed_event.kind == KIND_FAILED
    assert failed_event.operation_id == operation.operation_id
    assert orchestrator.in_flight_creation is None

    retry = await orchestrator.create_backup()
    assert retry.backup_id == failed.id + 1


@pytest.mark.asyncio
async def test_terminal_backup_rejects_further_status_changes() -> None:
    orchestrator, clock, _ = _orchestrator()
    operation = await orchestrator.create_backup()
    await clock.advance(3.0)

    with pytest.raises(BackupStateError):
        orchestrator.store.update(operation.backup_id, status=STATUS_FAILED)

    assert orchestrator.store.get(operation.backup_id).status == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_create_backup_with_pipeline_error_marks_failed_with_unexpected_message() -> None:
    class _ExplodingPipeline:
        async def run(self, backup: Backup):  # type: ignore[no-untyped-def]
            raise RuntimeError("boom")
            yield  # pragma: no cover

    clock = ManualClock()
    event_log = EventLog()
    orchestrator = LifecycleOrchestrator(
        store=BackupStore(),
        sink=event_log,
        pipeline=_ExplodingPipeline(),
        clock=clock,
    )

    await orchestrator.create_backup()
    await clock.advance(0)

    failed = orchestrator.list_backups()[0]
    assert failed.status == STATUS_FAILED
    assert failed.message == "unexpected backup failure: boom"
    assert event_log.names() == [BACKUP_CREATED, BACKUP_FAILED]
    assert orchestrator.in_flight_creation is None


@pytest.mark.asyncio
async def test_create_backup_with_pipeline_missing_final_stage_marks_failed() -> None:
    class _UnfinishedPipeline:
        async def run(self, backup: Backup):  # type: ignore[no-untyped-def]
            yield StageUpdate(
                stage=1,
                label="snapshot",
                size_bytes=10 * MB,
                file_count=1,
                duration_seconds=1,
                compression_ratio=0.1,
            )

    clock = ManualClock()
    event_log = EventLog()
    orchestrator = LifecycleOrchestrator(
        store=BackupStore(),
        sink=event_log,
        pipeline=_UnfinishedPipeline(),
        clock=clock,
    )

    await orchestrator.create_backup()
    await clock.advance(0)

    failed = orchestrator.list_backups()[0]
    assert failed.status == STATUS_FAILED
    assert failed.message == "finalize stage failed: pipeline ended without a final stage"
    assert failed.size_bytes == 10 * MB


@pytest.mark.asyncio
async def test_create_backup_with_record_removed_midway_reports_failure_without_record() -> None:
    orchestrator, clock, event_log = _orchestrator()
    operation = await orchestrator.create_backup()
    await clock.advance(1.0)

    orchestrator.store.remove(operation.backup_id)
    await clock.advance(1.0)

    assert orchestrator.list_backups() == ()
    assert event_log.names()[-1] == BACKUP_FAILED
    assert event_log.events()[-1].payload["message"] == "backup was removed while it was being created"
    assert orchestrator.in_flight_creation is None


@pytest.mark.asyncio
async def test_status_distribution_matches_listing_throughout_creation() -> None:
    orchestrator, clock, _ = _orchestrator(backups=[_backup(1), _backup(2, status=STATUS_FAILED)])

    await orchestrator.create_backup()
    for _ in range(4):
        aggregates = orchestrator.get_aggregates()
        assert sum(aggregates.status_distribution.values()) == len(orchestrator.list_backups())
        await clock.advance(1.0)

    assert orchestrator.get_aggregates().status_distribution[STATUS_COMPLETED] == 2


@pytest.mark.asyncio
async def test_delete_backup_keeps_record_visible_until_confirmation() -> None:
    orchestrator, clock, event_log = _orchestrator(backups=[_backup(1)])

    operation = await orchestrator.delete_backup(1)

    assert [backup.id for backup in orchestrator.list_backups()] == [1]
    assert event_log.names() == [DELETE_STARTED]
    assert orchestrator.pending_deletes == frozenset({1})

    await clock.advance(1.0)
    assert [backup.id for backup in orchestrator.list_backups()] == [1]

    await clock.advance(0.5)
    assert orchestrator.list_backups() == ()
    assert event_log.names() == [DELETE_STARTED, DELETE_SUCCEEDED]
    assert operation.done
    assert orchestrator.pending_deletes == frozenset()

    with pytest.raises(NotFoundError):
        await orchestrator.delete_backup(1)


@pytest.mark.asyncio
async def test_delete_backup_twice_while_pending_returns_existing_operation() -> None:
    orchestrator, clock, event_log = _orchestrator(backups=[_backup(1)])

    first = await orchestrator.delete_backup(1)
    second = await orchestrator.delete_backup(1)

    assert second is first
    assert event_log.names() == [DELETE_STARTED]

    await clock.advance(1.5)
    assert event_log.names() == [DELETE_STARTED, DELETE_SUCCEEDED]


@pytest.mark.asyncio
async def test_delete_backup_with_unknown_id_raises_not_found() -> None:
    orchestrator, _, event_log = _orchestrator(backups=[_backup(1)])

    with pytest.raises(NotFoundError, match="backup 42 not found"):
        await orchestrator.delete_backup(42)

    assert event_log.events() == []


@pytest.mark.asyncio
async def test_delete_backup_of_in_flight_creation_raises_conflict() -> None:
    orchestrator, clock, _ = _orchestrator()
    operation = await orchestrator.create_backup()

    with pytest.raises(ConflictError, match="cannot be deleted yet"):
        await orchestrator.delete_backup(operation.backup_id)

    await clock.advance(3.0)
    await orchestrator.delete_backup(operation.backup_id)
    await clock.advance(1.5)
    assert orchestrator.list_backups() == ()


@pytest.mark.asyncio
async def test_delete_backup_runs_alongside_in_flight_creation() -> None:
    orchestrator, clock, _ = _orchestrator(backups=[_backup(1)])
    creation = await orchestrator.create_backup()

    await orchestrator.delete_backup(1)
    await clock.advance(1.5)

    backups = orchestrator.list_backups()
    assert [backup.id for backup in backups] == [creation.backup_id]
    assert backups[0].status == STATUS_IN_PROGRESS

    await clock.advance(1.5)
    assert orchestrator.list_backups()[0].status == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_restore_backup_emits_started_then_succeeded_without_touching_store() -> None:
    orchestrator, clock, event_log = _orchestrator(backups=[_backup(1)])
    snapshot = orchestrator.list_backups()

    operation = await orchestrator.restore_backup(1)

    assert event_log.names() == [RESTORE_STARTED]
    await clock.advance(1.0)
    assert event_log.names() == [RESTORE_STARTED]

    await clock.advance(1.0)
    assert event_log.names() == [RESTORE_STARTED, RESTORE_SUCCEEDED]
    assert operation.done
    assert orchestrator.list_backups() == snapshot


@pytest.mark.asyncio
async def test_restore_backup_with_unknown_id_raises_not_found() -> None:
    orchestrator, _, _ = _orchestrator()

    with pytest.raises(NotFoundError):
        await orchestrator.restore_backup(5)


@pytest.mark.asyncio
async def test_restore_backup_of_failed_backup_is_allowed_by_default() -> None:
    orchestrator, clock, event_log = _orchestrator(backups=[_backup(1, status=STATUS_FAILED)])

    await orchestrator.restore_backup(1)
    await clock.advance(2.0)

    assert event_log.names() == [RESTORE_STARTED, RESTORE_SUCCEEDED]


@pytest.mark.asyncio
async def test_restore_backup_requiring_completed_rejects_failed_backup() -> None:
    orchestrator, _, event_log = _orchestrator(
        backups=[_backup(1, status=STATUS_FAILED), _backup(2)],
        config=LifecycleConfig(restore_requires_completed=True),
    )

    with pytest.raises(ConflictError, match="only Completed backups can be restored"):
        await orchestrator.restore_backup(1)
    await orchestrator.restore_backup(2)

    assert event_log.names() == [RESTORE_STARTED]


@pytest.mark.asyncio
async def test_wait_idle_returns_once_every_operation_finished() -> None:
    orchestrator, clock, _ = _orchestrator(backups=[_backup(1)])
    await orchestrator.create_backup()
    await orchestrator.restore_backup(1)
    assert orchestrator.has_pending_operations

    await clock.advance(3.0)
    await asyncio.wait_for(orchestrator.wait_idle(), timeout=1.0)

    assert not orchestrator.has_pending_operations


class _UnavailableSink(EventLog):
    def __init__(self, *, failing_kinds: frozenset[str]) -> None:
        super().__init__()
        self.failing_kinds = failing_kinds

    def emit(self, event: LifecycleEvent) -> None:
        if event.kind in self.failing_kinds:
            raise RuntimeError("toast widget unavailable")
        super().emit(event)


def _orchestrator_with_sink(
    sink: EventLog, *, backups: Sequence[Backup] = ()
) -> tuple[LifecycleOrchestrator, ManualClock]:
    clock = ManualClock()
    orchestrator = LifecycleOrchestrator(
        store=BackupStore(backups),
        sink=sink,
        pipeline=SimulatedBackupPipeline(clock=clock, stage_delay_seconds=1.0),
        clock=clock,
    )
    return orchestrator, clock


@pytest.mark.asyncio
async def test_create_backup_with_failing_sink_still_completes() -> None:
    sink = _UnavailableSink(failing_kinds=frozenset({KIND_PROGRESS, KIND_SUCCEEDED}))
    orchestrator, clock = _orchestrator_with_sink(sink)

    operation = await orchestrator.create_backup()
    await clock.advance(3.0)

    backup = orchestrator.list_backups()[0]
    assert backup.status == STATUS_COMPLETED
    assert backup.message == ""
    assert sink.names() == [BACKUP_CREATED]
    assert operation.done
    assert orchestrator.in_flight_creation is None


@pytest.mark.asyncio
async def test_commands_with_failing_sink_return_operations() -> None:
    sink = _UnavailableSink(failing_kinds=frozenset({KIND_STARTED}))
    orchestrator, clock = _orchestrator_with_sink(sink, backups=[_backup(1)])

    created = await orchestrator.create_backup()
    deleted = await orchestrator.delete_backup(1)
    await clock.advance(3.0)

    assert created.done
    assert deleted.done
    assert [backup.status for backup in orchestrator.list_backups()] == [STATUS_COMPLETED]
    assert sink.names() == [BACKUP_PROGRESS, DELETE_SUCCEEDED, BACKUP_PROGRESS, BACKUP_COMPLETED]
