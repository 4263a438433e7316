"""Shared helpers and well-known label, annotation and environment keys.

Kubernetes objects are handled as plain dictionaries shaped like their
API JSON form (``metadata``, ``spec``, ``status`` with camelCase keys).
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Callable, Optional, Sequence, TypeVar

T = TypeVar("T")

_PREFIX = "leaderworkerset.sigs.k8s.io/"

SET_NAME_LABEL_KEY = _PREFIX + "name"
GROUP_INDEX_LABEL_KEY = _PREFIX + "group-index"
WORKER_INDEX_LABEL_KEY = _PREFIX + "worker-index"
GROUP_UNIQUE_HASH_LABEL_KEY = _PREFIX + "group-key"
TEMPLATE_REVISION_HASH_KEY = _PREFIX + "template-revision-hash"
SUBGROUP_INDEX_LABEL_KEY = _PREFIX + "subgroup-index"

SIZE_ANNOTATION_KEY = _PREFIX + "size"
REPLICAS_ANNOTATION_KEY = _PREFIX + "replicas"
LEADER_POD_NAME_ANNOTATION_KEY = _PREFIX + "leader-name"
EXCLUSIVE_KEY_ANNOTATION_KEY = _PREFIX + "exclusive-topology"
SUBGROUP_SIZE_ANNOTATION_KEY = _PREFIX + "subgroup-size"
SUBGROUP_EXCLUSIVE_KEY_ANNOTATION_KEY = _PREFIX + "subgroup-exclusive-topology"
SUBDOMAIN_POLICY_ANNOTATION_KEY = _PREFIX + "subdomainPolicy"

LWS_LEADER_ADDRESS = "LWS_LEADER_ADDRESS"
LWS_GROUP_SIZE = "LWS_GROUP_SIZE"

SUBDOMAIN_SHARED = "Shared"
SUBDOMAIN_UNIQUE_PER_REPLICA = "UniquePerReplica"


def sha1_hash(s: str) -> str:
    """Return the 40 character hex SHA-1 digest of ``s``."""
    return hashlib.sha1(s.encode("utf-8")).hexdigest()


def non_zero_value(value: int) -> int:
    """Clamp negative values to zero."""
    return max(value, 0)


def _template_text(template: Optional[dict]) -> str:
    if template is None:
        return "nil"
    return json.dumps(template, sort_keys=True, separators=(",", ":"))


def leader_worker_template_hash(lws: dict) -> str:
    """Hash the leader and worker templates (and a non-shared subdomain policy)."""
    spec = lws["spec"]
    template = spec.get("leaderWorkerTemplate") or {}
    text = _template_text(template.get("leaderTemplate")) + _template_text(
        template.get("workerTemplate")
    )
    network = spec.get("networkConfig")
    if network is None or network["subdomainPolicy"] == SUBDOMAIN_SHARED:
        return sha1_hash(text)
    return sha1_hash(text + network["subdomainPolicy"])


def sort_by_index(
    index_func: Callable[[T], int], items: Sequence[T], length: int
) -> list[Optional[T]]:
    """Place each item at the position ``index_func`` gives it.

    The result always has ``length`` slots; empty slots hold ``None``.
    Items whose index cannot be determined (``index_func`` raises
    ``ValueError``, ``KeyError`` or ``TypeError``) or falls outside the
    range are skipped.
    """
    result: list[Optional[T]] = [None] * length
    for item in items:
        try:
            index = index_func(item)
        except (ValueError, KeyError, TypeError):
            continue
        if 0 <= index < length:
            result[index] = item
    return result