"""StatefulSet helpers."""

from __future__ import annotations

import re

_STATEFUL_POD = re.compile(r"(.*)-([0-9]+)\Z")
_INT32_MAX = 2**31 - 1


def get_parent_name_and_ordinal(name: str) -> tuple[str, int]:
    """Split a StatefulSet pod name into its parent name and ordinal.

    A name not produced by a StatefulSet yields ``("", -1)``.
    """
    match = _STATEFUL_POD.search(name)
    if match is None:
        return "", -1
    parent, digits = match.group(1), match.group(2)
    ordinal = int(digits)
    if ordinal > _INT32_MAX:
        ordinal = -1
    return parent, ordinal


def statefulset_ready(sts: dict) -> bool:
    """A StatefulSet is ready when all replicas exist at the current revision."""
    status = sts.get("status") or {}
    return sts["spec"]["replicas"] == status.get("replicas", 0) and status.get(
        "currentRevision", ""
    ) == status.get("updateRevision", "")