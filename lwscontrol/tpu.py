"""TPU environment variables and annotations for leader/worker groups."""

from __future__ import annotations

import math
import re
from fractions import Fraction
from typing import Optional

from lwscontrol.statefulset import get_parent_name_and_ordinal
from lwscontrol.utils import (
    SUBGROUP_INDEX_LABEL_KEY,
    SUBGROUP_SIZE_ANNOTATION_KEY,
    WORKER_INDEX_LABEL_KEY,
)

TPU_RESOURCE_NAME = "google.com/tpu"
TPU_WORKER_HOSTNAMES = "TPU_WORKER_HOSTNAMES"
TPU_WORKER_ID = "TPU_WORKER_ID"
TPU_NAME = "TPU_NAME"
LEADER_REQUESTS_TPUS_ANNOTATION_KEY = "leaderworkerset.sigs.k8s.io/leader-requests-tpus"

_QUANTITY = re.compile(
    r"^([+-]?(?:\d+\.?\d*|\.\d+))(?:([eE][+-]?\d+)|([a-zA-Z]*))$"
)
_SUFFIXES = {
    "": Fraction(1),
    "n": Fraction(1, 10**9),
    "u": Fraction(1, 10**6),
    "m": Fraction(1, 10**3),
    "k": Fraction(10**3),
    "M": Fraction(10**6),
    "G": Fraction(10**9),
    "T": Fraction(10**12),
    "P": Fraction(10**15),
    "E": Fraction(10**18),
    "Ki": Fraction(2**10),
    "Mi": Fraction(2**20),
    "Gi": Fraction(2**30),
    "Ti": Fraction(2**40),
    "Pi": Fraction(2**50),
    "Ei": Fraction(2**60),
}


def _quantity_value(quantity: object) -> int:
    """Return a resource quantity as an integer, rounded up."""
    if isinstance(quantity, bool):
        raise ValueError(f"invalid quantity: {quantity!r}")
    if isinstance(quantity, int):
        return quantity
    if isinstance(quantity, float):
        return math.ceil(quantity)
    match = _QUANTITY.match(str(quantity).strip())
    if match is None:
        raise ValueError(f"invalid quantity: {quantity!r}")
    number, exponent, suffix = match.groups()
    amount = Fraction(number)
    if exponent:
        amount *= Fraction(10) ** int(exponent[1:])
    else:
        try:
            amount *= _SUFFIXES[suffix or ""]
        except KeyError:
            raise ValueError(f"invalid quantity suffix: {quantity!r}") from None
    return math.ceil(amount)


def _num_tpus_requested(container: dict) -> int:
    resources = container.get("resources") or {}
    for section in ("limits", "requests"):
        quantities = resources.get(section) or {}
        if TPU_RESOURCE_NAME in quantities:
            value = _quantity_value(quantities[TPU_RESOURCE_NAME])
            if value != 0:
                return value
    return 0


def _containers_request_tpus(containers: list) -> bool:
    return any(_num_tpus_requested(container) != 0 for container in containers)


def pod_requests_tpus(pod_spec: dict) -> bool:
    """True if any container or init container of the pod spec requests TPUs."""
    return _containers_request_tpus(
        pod_spec.get("containers") or []
    ) or _containers_request_tpus(pod_spec.get("initContainers") or [])


def get_container_requesting_tpus(spec: dict) -> Optional[dict]:
    """Return the (first) container that requests TPUs, or None.

    Only one container of a pod is expected to request TPUs. The returned
    dictionary is the container inside ``spec`` itself.
    """
    for container in (spec.get("containers") or []) + (
        spec.get("initContainers") or []
    ):
        if _num_tpus_requested(container) != 0:
            return container
    return None


def _has_tpu_env(container: dict) -> bool:
    return any(
        env.get("name") in (TPU_WORKER_HOSTNAMES, TPU_WORKER_ID)
        for env in container.get("env") or []
    )


def _truncated_mod(a: int, b: int) -> int:
    """Remainder with the sign of the dividend."""
    return int(math.fmod(a, b))


def _append_tpu_env(
    container: dict, hostnames: list[str], worker_id: int, leader_name: str
) -> None:
    container["env"] = list(container.get("env") or []) + [
        {"name": TPU_WORKER_HOSTNAMES, "value": ",".join(hostnames)},
        {"name": TPU_WORKER_ID, "value": str(worker_id)},
        {"name": TPU_NAME, "value": leader_name},
    ]


def _meta(pod: dict) -> tuple[dict, dict, str]:
    meta = pod.get("metadata") or {}
    return meta.get("labels") or {}, meta.get("annotations") or {}, meta.get("name", "")


def add_tpu_variables_subgroup(pod: dict) -> None:
    """Add TPU variables to a pod that belongs to a subgroup.

    Raises ValueError when the subgroup size, subgroup index or worker index
    cannot be parsed, or when the parent name cannot be derived.
    """
    spec = pod.setdefault("spec", {})
    container = get_container_requesting_tpus(spec)
    if container is None or _has_tpu_env(container):
        return

    labels, annotations, pod_name = _meta(pod)
    leader_name = pod_name
    subgroup_size = int(annotations.get(SUBGROUP_SIZE_ANNOTATION_KEY, ""))
    subgroup_index = int(labels.get(SUBGROUP_INDEX_LABEL_KEY, ""))
    worker_index = int(labels.get(WORKER_INDEX_LABEL_KEY, ""))
    leader_requests = annotations.get(LEADER_REQUESTS_TPUS_ANNOTATION_KEY) == "true"
    subdomain = spec.get("subdomain", "")

    if leader_requests:
        tpu_worker_id = _truncated_mod(worker_index, subgroup_size)
    else:
        tpu_worker_id = _truncated_mod(worker_index - 1, subgroup_size)

    start = subgroup_size * subgroup_index + 1
    end = subgroup_size * (subgroup_index + 1)
    hostnames: list[str] = []

    if labels.get(WORKER_INDEX_LABEL_KEY) == "0":
        # The leader requests TPUs, so it is part of the hostnames.
        hostnames.append(f"{leader_name}.{subdomain}")
        end -= 1
    else:
        leader_name, _ = get_parent_name_and_ordinal(pod_name)
        if not leader_name:
            raise ValueError(f"parsing parent name from pod {pod_name}")
        if leader_requests and subgroup_index == 0:
            # Subgroup 0 holds the leader, shifting its hostnames left by one.
            end -= 1
            hostnames.append(f"{leader_name}.{subdomain}")
        elif leader_requests:
            # Later subgroups shift along with the first one.
            start -= 1
            end -= 1

    hostnames.extend(f"{leader_name}-{i}.{subdomain}" for i in range(start, end + 1))
    _append_tpu_env(container, hostnames, tpu_worker_id, leader_name)


def add_tpu_variables(pod: dict, size: int) -> None:
    """Add TPU related environment variables to the TPU-requesting container.

    Raises ValueError when a worker pod's parent name cannot be derived.
    """
    _, annotations, pod_name = _meta(pod)
    if SUBGROUP_SIZE_ANNOTATION_KEY in annotations:
        add_tpu_variables_subgroup(pod)
        return

    spec = pod.setdefault("spec", {})
    container = get_container_requesting_tpus(spec)
    if container is None or _has_tpu_env(container):
        return

    labels, _, _ = _meta(pod)
    subdomain = spec.get("subdomain", "")
    leader_name = pod_name
    tpu_worker_id = 0
    hostnames: list[str] = []
    if labels.get(WORKER_INDEX_LABEL_KEY) == "0":
        # A leader that requests TPUs gets TPU_WORKER_ID=0.
        hostnames.append(f"{leader_name}.{subdomain}")
    else:
        leader_name, tpu_worker_id = get_parent_name_and_ordinal(pod_name)
        if not leader_name:
            raise ValueError(f"parsing parent name from pod {pod_name}")
        if annotations.get(LEADER_REQUESTS_TPUS_ANNOTATION_KEY) == "true":
            hostnames.append(f"{leader_name}.{subdomain}")
        else:
            # The leader is not a TPU worker, so worker ids start at 0.
            tpu_worker_id -= 1

    hostnames.extend(f"{leader_name}-{i}.{subdomain}" for i in range(1, size))
    _append_tpu_env(container, hostnames, tpu_worker_id, leader_name)


def add_tpu_annotations(leader_pod: dict, annotations: dict) -> None:
    """Mark ``annotations`` when the leader pod requests TPUs."""
    if pod_requests_tpus(leader_pod.get("spec") or {}):
        annotations[LEADER_REQUESTS_TPUS_ANNOTATION_KEY] = "true"