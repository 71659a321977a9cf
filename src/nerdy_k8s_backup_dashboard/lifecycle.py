from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Mapping
from contextlib import aclosing
from dataclasses import dataclass, field
import logging
from typing import Any
import uuid

from .aggregation import Aggregates, compute_aggregates
from .clock import Clock
from .errors import BackupStageError, ConflictError, NotFoundError, error_message
from .events import (
    BACKUP_COMPLETED,
    BACKUP_CREATED,
    BACKUP_FAILED,
    BACKUP_PROGRESS,
    DELETE_FAILED,
    DELETE_STARTED,
    DELETE_SUCCEEDED,
    KIND_FAILED,
    KIND_PROGRESS,
    KIND_STARTED,
    KIND_SUCCEEDED,
    RESTORE_STARTED,
    RESTORE_SUCCEEDED,
    EventSink,
    LifecycleEvent,
)
from .models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    TYPE_FULL,
    Backup,
    BackupDetails,
    BackupStateError,
)
from .pipeline import BackupPipeline
from .store import BackupStore

logger = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_RESTORE = "restore"
ACTION_DELETE = "delete"


@dataclass(frozen=True)
class LifecycleConfig:
    restore_delay_seconds: float = 2.0
    delete_confirmation_seconds: float = 1.5
    restore_requires_completed: bool = False
    backup_type: str = TYPE_FULL
    name_prefix: str = "backup"


@dataclass(frozen=True)
class BackupOperation:
    operation_id: str
    backup_id: int
    action: str
    task: asyncio.Task[None] = field(compare=False, repr=False)

    @property
    def done(self) -> bool:
        return self.task.done()


class LifecycleOrchestrator:
    """Runs create, restore and delete commands against a ``BackupStore``.

    Each command checks its preconditions before its first suspension point,
    so a rejected command raises ``ConflictError`` or ``NotFoundError`` and
    leaves the store untouched. Accepted commands return a ``BackupOperation``
    immediately and finish in a background task; their outcome is reported
    only through the event sink and the store.

    Only one creation runs at a time. Restore and delete run freely alongside
    it, except that the backup being created cannot be deleted until it
    reaches a terminal status, and a delete already pending for an id is
    returned again instead of being started twice.
    """

    def __init__(
        self,
        *,
        store: BackupStore,
        sink: EventSink,
        pipeline: BackupPipeline,
        clock: Clock,
        config: LifecycleConfig | None = None,
    ) -> None:
        self.store = store
        self.sink = sink
        self.pipeline = pipeline
        self.clock = clock
        self.config = config or LifecycleConfig()
        self._creating: BackupOperation | None = None
        self._pending_deletes: dict[int, BackupOperation] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight_creation(self) -> int | None:
        return self._creating.backup_id if self._creating else None

    @property
    def has_pending_operations(self) -> bool:
        return bool(self._tasks)

    @property
    def pending_deletes(self) -> frozenset[int]:
        return frozenset(self._pending_deletes)

    def list_backups(self) -> tuple[Backup, ...]:
        return self.store.list()

    def get_aggregates(self, bucket_by: str = "month") -> Aggregates:
        return compute_aggregates(self.store.list(), bucket_by=bucket_by)

    async def create_backup(self) -> BackupOperation:
        if self._creating is not None:
            logger.warning("Rejected backup creation while backup %s is in flight", self._creating.backup_id)
            raise ConflictError(f"backup {self._creating.backup_id} is still being created")

        created_at = self.clock.now()
        backup = Backup(
            id=self.store.next_id(),
            name=f"{self.config.name_prefix}-{int(created_at.timestamp() * 1000)}",
            status=STATUS_PENDING,
            backup_type=self.config.backup_type,
            size_bytes=0,
            created_at=created_at,
            details=BackupDetails(),
        )
        self.store.insert(backup)
        backup = self.store.update(backup.id, status=STATUS_IN_PROGRESS)

        operation_id = _new_operation_id()
        operation = BackupOperation(
            operation_id=operation_id,
            backup_id=backup.id,
            action=ACTION_CREATE,
            task=self._spawn(self._run_creation(operation_id, backup)),
        )
        self._creating = operation
        logger.info("Started backup %s (%s)", backup.id, backup.name)
        self._emit(
            operation_id,
            backup.id,
            kind=KIND_STARTED,
            name=BACKUP_CREATED,
            payload={"name": backup.name, "status": backup.status, **backup.metrics()},
        )
        return operation

    async def restore_backup(self, backup_id: int) -> BackupOperation:
        backup = self.store.get(backup_id)
        if self.config.restore_requires_completed and backup.status != STATUS_COMPLETED:
            raise ConflictError(f"backup {backup_id} is {backup.status}; only Completed backups can be restored")

        operation_id = _new_operation_id()
        operation = BackupOperation(
            operation_id=operation_id,
            backup_id=backup_id,
            action=ACTION_RESTORE,
            task=self._spawn(self._run_restore(operation_id, backup)),
        )
        logger.info("Restoring backup %s (%s)", backup_id, backup.name)
        self._emit(
            operation_id,
            backup_id,
            kind=KIND_STARTED,
            name=RESTORE_STARTED,
            payload={"name": backup.name, "status": backup.status},
        )
        return operation

    async def delete_backup(self, backup_id: int) -> BackupOperation:
        backup = self.store.get(backup_id)
        pending = self._pending_deletes.get(backup_id)
        if pending is not None:
            logger.debug("Delete of backup %s already pending as %s", backup_id, pending.operation_id)
            return pending
        if self._creating is not None and self._creating.backup_id == backup_id:
            raise ConflictError(f"backup {backup_id} is still being created and cannot be deleted yet")

        operation_id = _new_operation_id()
        operation = BackupOperation(
            operation_id=operation_id,
            backup_id=backup_id,
            action=ACTION_DELETE,
            task=self._spawn(self._run_delete(operation_id, backup_id)),
        )
        self._pending_deletes[backup_id] = operation
        logger.info("Deleting backup %s (%s)", backup_id, backup.name)
        self._emit(
            operation_id,
            backup_id,
            kind=KIND_STARTED,
            name=DELETE_STARTED,
            payload={"name": backup.name, "status": backup.status},
        )
        return operation

    async def wait_idle(self) -> None:
        """Wait until every accepted operation has finished.

        With a ``ManualClock`` this only returns once the clock has been
        advanced past every pending delay.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_creation(self, operation_id: str, backup: Backup) -> None:
        try:
            async with aclosing(self.pipeline.run(backup)) as updates:
                async for update in updates:
                    if update.final:
                        completed = self.store.update(backup.id, status=STATUS_COMPLETED, **update.as_changes())
                        logger.info("Backup %s completed", backup.id)
                        self._emit(
                            operation_id,
                            backup.id,
                            kind=KIND_SUCCEEDED,
                            name=BACKUP_COMPLETED,
                            payload={"stage": update.stage, "status": completed.status, **completed.metrics()},
                        )
                        return

                    current = self.store.update(backup.id, **update.as_changes())
                    logger.debug("Backup %s reached %s stage", backup.id, update.label)
                    self._emit(
                        operation_id,
                        backup.id,
                        kind=KIND_PROGRESS,
                        name=BACKUP_PROGRESS,
                        payload={"stage": update.stage, "label": update.label, **current.metrics()},
                    )
            raise BackupStageError(stage="finalize", reason="pipeline ended without a final stage")
        except BackupStageError as error:
            self._fail_creation(operation_id, backup.id, str(error))
        except NotFoundError:
            self._fail_creation(operation_id, backup.id, "backup was removed while it was being created")
        except Exception as error:  # pylint: disable=broad-except
            logger.exception("Backup %s failed unexpectedly", backup.id)
            self._fail_creation(operation_id, backup.id, f"unexpected backup failure: {error_message(error)}")
        finally:
            self._creating = None

    def _fail_creation(self, operation_id: str, backup_id: int, message: str) -> None:
        payload: dict[str, Any] = {"message": message}
        try:
            failed = self.store.update(backup_id, status=STATUS_FAILED, message=message)
        except NotFoundError:
            logger.warning("Backup %s vanished before it could be marked failed", backup_id)
        except BackupStateError as error:
            logger.warning("Backup %s could not be marked failed: %s", backup_id, error)
            return
        else:
            payload.update(status=failed.status, **failed.metrics())

        logger.warning("Backup %s failed: %s", backup_id, message)
        self._emit(operation_id, backup_id, kind=KIND_FAILED, name=BACKUP_FAILED, payload=payload)

    async def _run_restore(self, operation_id: str, backup: Backup) -> None:
        await self.clock.sleep(self.config.restore_delay_seconds)
        logger.info("Backup %s restored", backup.id)
        self._emit(
            operation_id,
            backup.id,
            kind=KIND_SUCCEEDED,
            name=RESTORE_SUCCEEDED,
            payload={"name": backup.name},
        )

    async def _run_delete(self, operation_id: str, backup_id: int) -> None:
        try:
            await self.clock.sleep(self.config.delete_confirmation_seconds)
            try:
                removed = self.store.remove(backup_id)
            except NotFoundError as error:
                logger.warning("Backup %s was already gone at delete confirmation", backup_id)
                self._emit(
                    operation_id,
                    backup_id,
                    kind=KIND_FAILED,
                    name=DELETE_FAILED,
                    payload={"message": str(error)},
                )
                return
            logger.info("Backup %s deleted", backup_id)
            self._emit(
                operation_id,
                backup_id,
                kind=KIND_SUCCEEDED,
                name=DELETE_SUCCEEDED,
                payload={"name": removed.name},
            )
        finally:
            self._pending_deletes.pop(backup_id, None)

    def _spawn(self, coroutine: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _emit(
        self,
        operation_id: str,
        backup_id: int,
        *,
        kind: str,
        name: str,
        payload: Mapping[str, Any],
    ) -> None:
        event = LifecycleEvent(
            operation_id=operation_id,
            backup_id=backup_id,
            kind=kind,
            name=name,
            emitted_at=self.clock.now(),
            payload=dict(payload),
        )
        # Sink failures never change the outcome of the operation that emitted.
        try:
            self.sink.emit(event)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Event sink failed for %s on backup %s", name, backup_id)


def _new_operation_id() -> str:
    return uuid.uuid4().hex
