"""
Scope decisions: which namespaces are scanned, which pods are candidates and
which container of a pod gets probed. Everything here is pure.
"""

from enum import Enum
from typing import Iterable, List, Optional

from .config import ScannerConfig

REPLICA_SET_KIND = "ReplicaSet"


class SkipReason(Enum):
    TERMINATING = "terminating"
    CRITICAL_LABEL = "critical_label"
    NO_CONTROLLER = "no_controller"


def _name(obj) -> str:
    # Accept bare names as well as V1Namespace objects
    if isinstance(obj, str):
        return obj
    return obj.metadata.name


def select_namespaces(namespaces: Iterable, cfg: ScannerConfig) -> List[str]:
    """Names of namespaces that are in scope and not protected, in listing order"""
    targets = []
    for ns in namespaces:
        name = _name(ns)
        if cfg.is_protected_namespace(name):
            continue
        if cfg.namespace_in_scope(name):
            targets.append(name)
    return targets


def has_critical_labels(labels: Optional[dict], cfg: ScannerConfig) -> bool:
    labels = labels or {}
    return any(labels.get(key) == value for key, value in cfg.critical_labels)


def replica_set_owner(pod) -> Optional[str]:
    """Name of the ReplicaSet that owns the pod, if any"""
    for ref in pod.metadata.owner_references or []:
        if ref.kind == REPLICA_SET_KIND:
            return ref.name
    return None


def skip_reason(pod, cfg: ScannerConfig) -> Optional[SkipReason]:
    if pod.metadata.deletion_timestamp is not None:
        return SkipReason.TERMINATING
    if has_critical_labels(pod.metadata.labels, cfg):
        return SkipReason.CRITICAL_LABEL
    if replica_set_owner(pod) is None:
        return SkipReason.NO_CONTROLLER
    return None


def should_skip_pod(pod, cfg: ScannerConfig) -> bool:
    return skip_reason(pod, cfg) is not None


def get_main_container(pod, cfg: ScannerConfig) -> Optional[str]:
    """
    Pick the container to probe.

    The annotation named by cfg.main_container_annotation wins when it names
    an existing container, then the first container whose name contains
    cfg.main_container_marker, then the first container.
    """
    containers = (pod.spec.containers or []) if pod.spec else []
    if not containers:
        return None

    wanted = (pod.metadata.annotations or {}).get(cfg.main_container_annotation)
    if wanted:
        for c in containers:
            if c.name == wanted:
                return c.name

    marker = cfg.main_container_marker.lower()
    if marker:
        for c in containers:
            if marker in c.name.lower():
                return c.name

    return containers[0].name
