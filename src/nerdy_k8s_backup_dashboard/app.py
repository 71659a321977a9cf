from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
import time

import streamlit as st

from nerdy_k8s_backup_dashboard.clusters import cluster_options
from nerdy_k8s_backup_dashboard.config import AppConfig, configure_logging
from nerdy_k8s_backup_dashboard.errors import BackupDashboardError
from nerdy_k8s_backup_dashboard.events import (
    BACKUP_COMPLETED,
    BACKUP_CREATED,
    BACKUP_FAILED,
    BACKUP_PROGRESS,
    DELETE_FAILED,
    DELETE_STARTED,
    DELETE_SUCCEEDED,
    RESTORE_STARTED,
    RESTORE_SUCCEEDED,
    LifecycleEvent,
)
from nerdy_k8s_backup_dashboard.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    Backup,
)
from nerdy_k8s_backup_dashboard.runtime import DashboardRuntime
from nerdy_k8s_backup_dashboard.units import GB, format_duration, format_percentage, format_size

_STATUS_ICONS = {
    STATUS_COMPLETED: "✅",
    STATUS_FAILED: "❌",
    STATUS_IN_PROGRESS: "🔄",
    STATUS_PENDING: "⏳",
}

_EVENT_MESSAGES = {
    BACKUP_CREATED: ("info", "Creating new backup {name}..."),
    BACKUP_PROGRESS: ("info", "Backup {backup_id}: {label} stage finished ({size})."),
    BACKUP_COMPLETED: ("success", "Backup {backup_id} created successfully!"),
    BACKUP_FAILED: ("error", "Failed to create backup {backup_id}: {message}"),
    RESTORE_STARTED: ("info", "Restoring backup {name}..."),
    RESTORE_SUCCEEDED: ("success", "Backup {name} restored successfully!"),
    DELETE_STARTED: ("info", "Deleting backup {name}..."),
    DELETE_SUCCEEDED: ("success", "Backup {name} deleted successfully!"),
    DELETE_FAILED: ("error", "Failed to delete backup {backup_id}: {message}"),
}

_AUTO_REFRESH_SECONDS = 1.0


def _build_backup_rows(backups: Iterable[Backup]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for backup in backups:
        details = backup.details
        rows.append(
            {
                "id": str(backup.id),
                "name": backup.name,
                "status": f"{_STATUS_ICONS.get(backup.status, '')} {backup.status}".strip(),
                "type": backup.backup_type,
                "size": format_size(backup.size_bytes),
                "created": backup.created_at.strftime("%Y-%m-%d %H:%M"),
                "duration": format_duration(details.duration_seconds) if details else "",
                "files": f"{details.file_count:,}" if details else "",
                "compression": format_percentage(details.compression_ratio) if details else "",
                "message": backup.message,
            }
        )
    return rows


def _build_status_rows(distribution: dict[str, int]) -> list[dict[str, object]]:
    return [{"status": status, "count": count} for status, count in distribution.items()]


def _build_storage_rows(trend: Sequence[tuple[str, int]]) -> list[dict[str, object]]:
    return [{"period": period, "size_gb": round(total / GB, 2)} for period, total in trend]


def _format_last_backup(value: datetime | None) -> str:
    if value is None:
        return "Never"
    return value.strftime("%Y-%m-%d %H:%M")


def _event_message(event: LifecycleEvent) -> tuple[str, str]:
    level, template = _EVENT_MESSAGES.get(event.name, ("info", "{name_of_event} for backup {backup_id}."))
    payload = dict(event.payload)
    values = {
        "backup_id": event.backup_id,
        "name": payload.get("name", f"#{event.backup_id}"),
        "label": payload.get("label", f"stage {payload.get('stage', '?')}"),
        "size": format_size(int(payload.get("size_bytes", 0))),
        "message": payload.get("message", "unknown error"),
        "name_of_event": event.name,
    }
    return level, template.format(**values)


def _default_cluster_index(options: Sequence[str], preferred: str | None) -> int:
    if preferred and preferred in options:
        return list(options).index(preferred)
    return 0


@st.cache_resource
def _get_runtime() -> DashboardRuntime:
    config = AppConfig()
    configure_logging(config.log_level)
    return DashboardRuntime(config)


def _event_key(event: LifecycleEvent) -> tuple[str, str, object]:
    # Progress events share an operation and name; the stage tells them apart.
    return event.operation_id, event.name, event.payload.get("stage")


def _unseen_events(events: Sequence[LifecycleEvent], seen_keys: set[tuple[str, str, object]]) -> list[LifecycleEvent]:
    unseen = [event for event in events if _event_key(event) not in seen_keys]
    seen_keys.update(_event_key(event) for event in unseen)
    return unseen


def _prune_seen_keys(events: Sequence[LifecycleEvent], seen_keys: set[tuple[str, str, object]]) -> None:
    # Keys of operations that rolled out of the event log can never match again.
    live_operations = {event.operation_id for event in events}
    seen_keys.difference_update({key for key in seen_keys if key[0] not in live_operations})


def _render_events(events: Sequence[LifecycleEvent]) -> None:
    seen_by_cluster = st.session_state.setdefault("seen_event_keys", {})
    seen_keys = seen_by_cluster.setdefault(st.session_state.selected_cluster, set())
    for event in _unseen_events(events, seen_keys):
        level, message = _event_message(event)
        st.toast(message, icon="✅" if level == "success" else ("❌" if level == "error" else "ℹ️"))
    _prune_seen_keys(events, seen_keys)

    st.subheader("Recent Events")
    if not events:
        st.info("No backup activity yet.")
        return
    for event in reversed(events[-10:]):
        level, message = _event_message(event)
        timestamp = event.emitted_at.strftime("%H:%M:%S")
        getattr(st, level)(f"{timestamp} {message}")


def main() -> None:
    st.set_page_config(page_title="K8s Backup Dashboard", layout="wide")
    runtime = _get_runtime()

    st.title("K8s Backup Dashboard")
    options = cluster_options(runtime.config.kubeconfig_path)
    selected_cluster = st.sidebar.selectbox(
        "Cluster",
        options=options,
        index=_default_cluster_index(options, st.session_state.get("selected_cluster")),
    )
    st.session_state.selected_cluster = selected_cluster

    session = runtime.session(selected_cluster)
    orchestrator = session.orchestrator
    creating = orchestrator.in_flight_creation is not None

    if st.button("Create Backup", type="primary", disabled=creating):
        try:
            operation = runtime.create_backup(selected_cluster)
            st.info(f"Backup {operation.backup_id} started.")
        except BackupDashboardError as error:
            st.warning(str(error))

    aggregates = orchestrator.get_aggregates()
    metric_columns = st.columns(4)
    metric_columns[0].metric("Total Backups", aggregates.total_backups)
    metric_columns[1].metric("Last Backup", _format_last_backup(aggregates.last_backup_at))
    metric_columns[2].metric("Failed Backups", aggregates.status_distribution[STATUS_FAILED])
    metric_columns[3].metric("Total Size", format_size(aggregates.total_size_bytes))

    chart_columns = st.columns(2)
    chart_columns[0].subheader("Backup Status")
    chart_columns[0].bar_chart(_build_status_rows(aggregates.status_distribution), x="status", y="count")
    chart_columns[1].subheader("Storage Usage")
    chart_columns[1].bar_chart(_build_storage_rows(aggregates.storage_trend), x="period", y="size_gb")

    st.subheader("Recent Backups")
    backups = orchestrator.list_backups()
    if backups:
        st.dataframe(_build_backup_rows(backups), use_container_width=True, hide_index=True)
    else:
        st.info("No backups yet. Create one to populate this table.")

    pending_deletes = orchestrator.pending_deletes
    for backup in backups:
        columns = st.columns([4, 1, 1])
        columns[0].write(f"{_STATUS_ICONS.get(backup.status, '')} {backup.name}")
        if columns[1].button("Restore", key=f"restore-{selected_cluster}-{backup.id}"):
            try:
                runtime.restore_backup(selected_cluster, backup.id)
            except BackupDashboardError as error:
                st.warning(str(error))
        if columns[2].button(
            "Delete",
            key=f"delete-{selected_cluster}-{backup.id}",
            disabled=backup.id in pending_deletes or backup.id == orchestrator.in_flight_creation,
        ):
            try:
                runtime.delete_backup(selected_cluster, backup.id)
            except BackupDashboardError as error:
                st.warning(str(error))

    _render_events(session.event_log.events())

    if orchestrator.has_pending_operations:
        time.sleep(_AUTO_REFRESH_SECONDS)
        st.rerun()


if __name__ == "__main__":
    main()
