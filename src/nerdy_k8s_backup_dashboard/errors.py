from __future__ import annotations


class BackupDashboardError(RuntimeError):
    """Base class for backup lifecycle failures."""


class ConflictError(BackupDashboardError):
    """Raised when a command collides with an operation that is already running."""


class NotFoundError(BackupDashboardError):
    """Raised when a command targets a backup id that is not in the store."""

    def __init__(self, backup_id: int) -> None:
        super().__init__(f"backup {backup_id} not found")
        self.backup_id = backup_id


class BackupStageError(BackupDashboardError):
    """A creation stage that did not finish; the message is what the backup record keeps."""

    def __init__(self, *, stage: str, reason: str) -> None:
        self.stage = stage
        self.reason = reason.strip() or "no reason given"
        super().__init__(f"{stage} stage failed: {self.reason}")


class SimulatedFailure(BackupStageError):
    """Injected failure of a simulated pipeline stage."""


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
