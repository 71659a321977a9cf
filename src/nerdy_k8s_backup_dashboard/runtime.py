from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass
import logging
import threading
from typing import Any, TypeVar

from .clock import Clock, SystemClock
from .config import AppConfig
from .events import EventBus, EventLog
from .lifecycle import BackupOperation, LifecycleOrchestrator
from .models import Backup
from .pipeline import SimulatedBackupPipeline, never_fail, random_failures
from .seed import load_seed_backups
from .store import BackupStore

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 5.0
T = TypeVar("T")


@dataclass(frozen=True)
class ClusterSession:
    cluster: str
    orchestrator: LifecycleOrchestrator
    event_bus: EventBus
    event_log: EventLog


def build_session(
    cluster: str,
    config: AppConfig,
    *,
    clock: Clock | None = None,
    seed_backups: Sequence[Backup] | None = None,
) -> ClusterSession:
    resolved_clock = clock or SystemClock()
    backups = load_seed_backups(config.seed_file) if seed_backups is None else list(seed_backups)

    event_bus = EventBus()
    event_log = EventLog(max_events=config.event_log_size)
    event_bus.subscribe(event_log)

    pipeline = SimulatedBackupPipeline(
        clock=resolved_clock,
        stage_delay_seconds=config.stage_delay_seconds,
        should_fail=random_failures(config.failure_rate) if config.failure_rate > 0 else never_fail,
    )
    orchestrator = LifecycleOrchestrator(
        store=BackupStore(backups),
        sink=event_bus,
        pipeline=pipeline,
        clock=resolved_clock,
        config=config.lifecycle_config(),
    )
    logger.info("Initialized backup session for cluster %s with %d backup(s)", cluster, len(backups))
    return ClusterSession(cluster=cluster, orchestrator=orchestrator, event_bus=event_bus, event_log=event_log)


class DashboardRuntime:
    """Owns one session per cluster and the event loop their operations run on.

    The loop runs in a daemon thread so synchronous callers such as a
    Streamlit script can submit commands and keep rendering while backups
    progress in the background.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        session_factory: Callable[[str, AppConfig], ClusterSession] = build_session,
        command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.config = config
        self.command_timeout_seconds = command_timeout_seconds
        self._session_factory = session_factory
        self._sessions: dict[str, ClusterSession] = {}
        self._lock = threading.Lock()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="nkbd-event-loop", daemon=True)
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and self._loop.is_running()

    def session(self, cluster: str) -> ClusterSession:
        with self._lock:
            if cluster not in self._sessions:
                self._sessions[cluster] = self._session_factory(cluster, self.config)
            return self._sessions[cluster]

    def create_backup(self, cluster: str) -> BackupOperation:
        return self.submit(self.session(cluster).orchestrator.create_backup())

    def restore_backup(self, cluster: str, backup_id: int) -> BackupOperation:
        return self.submit(self.session(cluster).orchestrator.restore_backup(backup_id))

    def delete_backup(self, cluster: str, backup_id: int) -> BackupOperation:
        return self.submit(self.session(cluster).orchestrator.delete_backup(backup_id))

    def wait_idle(self, cluster: str, timeout: float | None = None) -> None:
        self.submit(self.session(cluster).orchestrator.wait_idle(), timeout=timeout)

    def submit(self, coroutine: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        future = asyncio.run_coroutine_threadsafe(coroutine, self._loop)
        return future.result(timeout=timeout if timeout is not None else self.command_timeout_seconds)

    @property
    def closed(self) -> bool:
        return self._loop.is_closed()

    def close(self) -> None:
        if self._loop.is_closed():
            return
        if self._thread.is_alive():
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=self.command_timeout_seconds)
        if self._thread.is_alive():
            logger.warning("Dashboard event loop did not stop within %.1fs", self.command_timeout_seconds)
            return

        # The loop thread has exited, so the remaining tasks can be drained here.
        pending = asyncio.all_tasks(self._loop)
        for task in pending:
            task.cancel()
        if pending:
            self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        self._loop.close()
        logger.info("Stopped dashboard event loop, cancelled %d pending task(s)", len(pending))

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()
