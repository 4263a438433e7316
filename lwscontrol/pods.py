"""Pod helpers: readiness, restarts and injected environment variables."""

from __future__ import annotations

from typing import Optional

from lwscontrol.utils import (
    GROUP_INDEX_LABEL_KEY,
    LWS_GROUP_SIZE,
    LWS_LEADER_ADDRESS,
    SET_NAME_LABEL_KEY,
    SIZE_ANNOTATION_KEY,
    WORKER_INDEX_LABEL_KEY,
)

POD_RUNNING = "Running"
POD_PENDING = "Pending"
POD_READY = "Ready"
CONDITION_TRUE = "True"


def _labels(pod: dict) -> dict:
    return (pod.get("metadata") or {}).get("labels") or {}


def _annotations(pod: dict) -> dict:
    return (pod.get("metadata") or {}).get("annotations") or {}


def container_restarted(pod: dict) -> bool:
    """True if a running or pending pod has any restarted container."""
    status = pod.get("status") or {}
    if status.get("phase") not in (POD_RUNNING, POD_PENDING):
        return False
    statuses = (status.get("initContainerStatuses") or []) + (
        status.get("containerStatuses") or []
    )
    return any(stat.get("restartCount", 0) > 0 for stat in statuses)


def pod_deleted(pod: dict) -> bool:
    """True if the pod carries a deletion timestamp."""
    return (pod.get("metadata") or {}).get("deletionTimestamp") is not None


def leader_pod(pod: dict) -> bool:
    """True if the pod is the leader of its group."""
    return _labels(pod).get(WORKER_INDEX_LABEL_KEY) == "0"


def get_pod_condition(status: Optional[dict], condition_type: str) -> Optional[dict]:
    """Return the condition of the given type from a pod status, or None."""
    if status is None:
        return None
    for condition in status.get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def get_pod_ready_condition(status: Optional[dict]) -> Optional[dict]:
    """Return the Ready condition of a pod status, or None."""
    return get_pod_condition(status, POD_READY)


def is_pod_ready(pod: dict) -> bool:
    """True if the pod's Ready condition is True."""
    condition = get_pod_ready_condition(pod.get("status") or {})
    return condition is not None and condition.get("status") == CONDITION_TRUE


def pod_running_and_ready(pod: dict) -> bool:
    """True if the pod is in the Running phase and marked ready."""
    status = pod.get("status") or {}
    return status.get("phase") == POD_RUNNING and is_pod_ready(pod)


def _object_ref(pod: dict) -> str:
    meta = pod.get("metadata") or {}
    namespace, name = meta.get("namespace", ""), meta.get("name", "")
    return f"{namespace}/{name}" if namespace else name


def _add_env_vars_if_not_exists(container: dict, *env_vars: dict) -> None:
    """Put ``env_vars`` first, then keep existing entries whose names are new."""
    new_env = list(env_vars)
    for env in container.get("env") or []:
        if all(existing["name"] != env["name"] for existing in new_env):
            new_env.append(env)
    container["env"] = new_env


def add_lws_variables(pod: dict) -> None:
    """Inject the leader address and group size variables into every container.

    Raises ValueError when a required label or annotation is missing.
    """
    labels = _labels(pod)
    ref = _object_ref(pod)
    if SET_NAME_LABEL_KEY not in labels:
        raise ValueError(
            "Failure constructing environment variables, "
            f"no name label found for pod {ref}"
        )
    if GROUP_INDEX_LABEL_KEY not in labels:
        raise ValueError(
            "Failure constructing environment variables, "
            f"no group index label found for pod {ref}"
        )
    spec = pod.setdefault("spec", {})
    namespace = (pod.get("metadata") or {}).get("namespace", "")
    leader_address = {
        "name": LWS_LEADER_ADDRESS,
        "value": (
            f"{labels[SET_NAME_LABEL_KEY]}-{labels[GROUP_INDEX_LABEL_KEY]}"
            f".{spec.get('subdomain', '')}.{namespace}"
        ),
    }
    annotations = _annotations(pod)
    if SIZE_ANNOTATION_KEY not in annotations:
        raise ValueError(
            "Failure constructing environment variables, "
            f"no size annotation found for pod {ref}"
        )
    group_size = {"name": LWS_GROUP_SIZE, "value": annotations[SIZE_ANNOTATION_KEY]}

    for container in (spec.get("containers") or []) + (
        spec.get("initContainers") or []
    ):
        _add_env_vars_if_not_exists(container, dict(leader_address), dict(group_size))