from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
import logging
import random
from typing import Any, Protocol

from .clock import Clock
from .errors import SimulatedFailure
from .models import Backup, BackupDetails
from .units import MB

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageUpdate:
    stage: int
    label: str
    size_bytes: int
    file_count: int
    duration_seconds: int
    compression_ratio: float
    final: bool = False

    def metrics(self) -> dict[str, Any]:
        return {
            "size_bytes": self.size_bytes,
            "file_count": self.file_count,
            "duration_seconds": self.duration_seconds,
            "compression_ratio": self.compression_ratio,
        }

    def as_changes(self) -> dict[str, Any]:
        return {
            "size_bytes": self.size_bytes,
            "details": BackupDetails(
                duration_seconds=self.duration_seconds,
                file_count=self.file_count,
                compression_ratio=self.compression_ratio,
            ),
        }


FailurePredicate = Callable[[Backup, StageUpdate], bool]

DEFAULT_STAGES: tuple[StageUpdate, ...] = (
    StageUpdate(
        stage=1,
        label="snapshot",
        size_bytes=800 * MB,
        file_count=400,
        duration_seconds=5 * 60,
        compression_ratio=0.30,
    ),
    StageUpdate(
        stage=2,
        label="transfer",
        size_bytes=1500 * MB,
        file_count=800,
        duration_seconds=10 * 60,
        compression_ratio=0.45,
    ),
    StageUpdate(
        stage=3,
        label="finalize",
        size_bytes=2100 * MB,
        file_count=1200,
        duration_seconds=15 * 60,
        compression_ratio=0.60,
        final=True,
    ),
)


class BackupPipeline(Protocol):
    """Produces the metric updates of one backup run.

    Implementations yield updates in stage order, mark the last one ``final``,
    and raise ``BackupStageError`` when a stage cannot complete.
    """

    def run(self, backup: Backup) -> AsyncIterator[StageUpdate]: ...


def never_fail(_backup: Backup, _update: StageUpdate) -> bool:
    return False


def random_failures(rate: float, rng: random.Random | None = None) -> FailurePredicate:
    if not 0.0 <= rate <= 1.0:
        raise ValueError("failure rate must be between 0 and 1")
    generator = rng or random.Random()

    def _should_fail(_backup: Backup, _update: StageUpdate) -> bool:
        return rate > 0.0 and generator.random() < rate

    return _should_fail


def fail_at_stage(stage: int) -> FailurePredicate:
    def _should_fail(_backup: Backup, update: StageUpdate) -> bool:
        return update.stage == stage

    return _should_fail


class SimulatedBackupPipeline:
    def __init__(
        self,
        *,
        clock: Clock,
        stage_delay_seconds: float = 1.0,
        stages: Sequence[StageUpdate] = DEFAULT_STAGES,
        should_fail: FailurePredicate = never_fail,
    ) -> None:
        if stage_delay_seconds < 0:
            raise ValueError("stage_delay_seconds must be >= 0")
        _validate_stages(stages)
        self.clock = clock
        self.stage_delay_seconds = stage_delay_seconds
        self.stages = tuple(stages)
        self.should_fail = should_fail

    async def run(self, backup: Backup) -> AsyncIterator[StageUpdate]:
        for update in self.stages:
            await self.clock.sleep(self.stage_delay_seconds)
            if self.should_fail(backup, update):
                logger.info("Injecting failure into %s stage of backup %s", update.label, backup.id)
                raise SimulatedFailure(stage=update.label, reason="simulated backup failure")
            yield update


def _validate_stages(stages: Sequence[StageUpdate]) -> None:
    if not stages:
        raise ValueError("a pipeline needs at least one stage")
    if not stages[-1].final or any(update.final for update in stages[:-1]):
        raise ValueError("only the last stage may be final")

    for previous, current in zip(stages, stages[1:]):
        if current.stage <= previous.stage:
            raise ValueError("stage numbers must increase")
        before = previous.metrics()
        after = current.metrics()
        if any(after[name] < value for name, value in before.items()):
            raise ValueError(f"stage {current.stage} metrics must not decrease")
