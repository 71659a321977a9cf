from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import logging
import os

from .lifecycle import LifecycleConfig

_TRUE_VALUES = {"1", "true", "yes", "on"}
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


def _env_optional_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value).expanduser() if value else None


@dataclass(frozen=True)
class AppConfig:
    stage_delay_seconds: float = field(default_factory=lambda: _env_float("NKBD_STAGE_DELAY_SECONDS", "1.0"))
    restore_delay_seconds: float = field(default_factory=lambda: _env_float("NKBD_RESTORE_DELAY_SECONDS", "2.0"))
    delete_confirmation_seconds: float = field(
        default_factory=lambda: _env_float("NKBD_DELETE_CONFIRMATION_SECONDS", "1.5")
    )
    failure_rate: float = field(default_factory=lambda: _env_float("NKBD_FAILURE_RATE", "0.0"))
    restore_requires_completed: bool = field(default_factory=lambda: _env_flag("NKBD_RESTORE_REQUIRES_COMPLETED"))
    seed_file: Path | None = field(default_factory=lambda: _env_optional_path("NKBD_SEED_FILE"))
    kubeconfig_path: str = field(default_factory=lambda: os.getenv("NKBD_KUBECONFIG_PATH", "~/.kube/config"))
    event_log_size: int = field(default_factory=lambda: int(os.getenv("NKBD_EVENT_LOG_SIZE", "200")))
    log_level: str = field(default_factory=lambda: os.getenv("NKBD_LOG_LEVEL", "INFO"))

    def __post_init__(self) -> None:
        for name in ("stage_delay_seconds", "restore_delay_seconds", "delete_confirmation_seconds"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if not 0.0 <= self.failure_rate <= 1.0:
            raise ValueError("failure_rate must be between 0 and 1")
        if self.event_log_size <= 0:
            raise ValueError("event_log_size must be positive")

    def lifecycle_config(self) -> LifecycleConfig:
        return LifecycleConfig(
            restore_delay_seconds=self.restore_delay_seconds,
            delete_confirmation_seconds=self.delete_confirmation_seconds,
            restore_requires_completed=self.restore_requires_completed,
        )


def configure_logging(level: str) -> None:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level!r}")
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger("nerdy_k8s_backup_dashboard").setLevel(resolved)
