from __future__ import annotations

from pathlib import Path
import logging

from kubernetes import config

from .errors import error_message

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_NAMES = ("production", "staging", "development")


class ClusterDiscoveryError(RuntimeError):
    """Raised when the cluster list cannot be read from kubeconfig."""


def list_context_names(kubeconfig_path: str | None = None) -> list[str]:
    """Cluster names offered by kubeconfig, one per context, sorted."""
    kubeconfig_file = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, _active = config.list_kube_config_contexts(config_file=kubeconfig_file)
    except Exception as error:  # pylint: disable=broad-except
        location = kubeconfig_file or "the default kubeconfig location"
        raise ClusterDiscoveryError(
            f"Could not read clusters from {location}: {error_message(error)}."
        ) from error
    return sorted({context["name"] for context in contexts or ()})


def cluster_options(kubeconfig_path: str | None = None) -> list[str]:
    """Cluster names for the selector: kubeconfig contexts, else the built-in defaults."""
    try:
        names = list_context_names(kubeconfig_path)
    except ClusterDiscoveryError as error:
        logger.warning("%s Falling back to default cluster names.", error)
        return list(DEFAULT_CLUSTER_NAMES)
    return names or list(DEFAULT_CLUSTER_NAMES)


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if not kubeconfig_path or not kubeconfig_path.strip():
        return None
    return str(Path(kubeconfig_path.strip()).expanduser())
