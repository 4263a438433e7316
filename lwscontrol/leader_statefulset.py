"""Desired state of the leader StatefulSet of a LeaderWorkerSet."""

from __future__ import annotations

import copy
from typing import Any

from lwscontrol.utils import (
    EXCLUSIVE_KEY_ANNOTATION_KEY,
    REPLICAS_ANNOTATION_KEY,
    SET_NAME_LABEL_KEY,
    SIZE_ANNOTATION_KEY,
    SUBDOMAIN_POLICY_ANNOTATION_KEY,
    SUBDOMAIN_UNIQUE_PER_REPLICA,
    SUBGROUP_EXCLUSIVE_KEY_ANNOTATION_KEY,
    SUBGROUP_SIZE_ANNOTATION_KEY,
    TEMPLATE_REVISION_HASH_KEY,
    WORKER_INDEX_LABEL_KEY,
    leader_worker_template_hash,
)

PARALLEL_POD_MANAGEMENT = "Parallel"
ROLLING_UPDATE_STRATEGY = "RollingUpdate"


def _pod_template(lws: dict) -> dict:
    template = lws["spec"]["leaderWorkerTemplate"]
    chosen = template.get("leaderTemplate")
    if chosen is None:
        chosen = template.get("workerTemplate") or {}
    return copy.deepcopy(chosen)


def _pod_annotations(lws: dict) -> dict[str, str]:
    spec = lws["spec"]
    template = spec["leaderWorkerTemplate"]
    lws_annotations = (lws.get("metadata") or {}).get("annotations") or {}

    annotations = {SIZE_ANNOTATION_KEY: str(int(template["size"]))}
    if lws_annotations.get(EXCLUSIVE_KEY_ANNOTATION_KEY):
        annotations[EXCLUSIVE_KEY_ANNOTATION_KEY] = lws_annotations[
            EXCLUSIVE_KEY_ANNOTATION_KEY
        ]
    subgroup_policy = template.get("subGroupPolicy")
    if subgroup_policy is not None:
        annotations[SUBGROUP_SIZE_ANNOTATION_KEY] = str(
            int(subgroup_policy["subGroupSize"])
        )
        if lws_annotations.get(SUBGROUP_EXCLUSIVE_KEY_ANNOTATION_KEY):
            annotations[SUBGROUP_EXCLUSIVE_KEY_ANNOTATION_KEY] = lws_annotations[
                SUBGROUP_EXCLUSIVE_KEY_ANNOTATION_KEY
            ]
    network = spec.get("networkConfig")
    if network is not None and network.get("subdomainPolicy") == SUBDOMAIN_UNIQUE_PER_REPLICA:
        annotations[SUBDOMAIN_POLICY_ANNOTATION_KEY] = SUBDOMAIN_UNIQUE_PER_REPLICA
    return annotations


def construct_leader_statefulset_apply_configuration(
    lws: dict, partition: int, replicas: int
) -> dict[str, Any]:
    """Build the apply configuration of the leader StatefulSet.

    The pod template is the leader template, or the worker template when no
    leader template is given; the set's own labels and annotations are merged
    into it. The LeaderWorkerSet itself is left unchanged.
    """
    meta = lws["metadata"]
    spec = lws["spec"]
    name, namespace = meta["name"], meta.get("namespace", "")
    template_hash = leader_worker_template_hash(lws)

    pod_template = _pod_template(lws)
    pod_meta = pod_template.setdefault("metadata", {})
    pod_meta["labels"] = {
        **(pod_meta.get("labels") or {}),
        WORKER_INDEX_LABEL_KEY: "0",
        SET_NAME_LABEL_KEY: name,
        TEMPLATE_REVISION_HASH_KEY: template_hash,
    }
    pod_meta["annotations"] = {
        **(pod_meta.get("annotations") or {}),
        **_pod_annotations(lws),
    }

    rollout = spec.get("rolloutStrategy") or {}
    rolling = rollout.get("rollingUpdateConfiguration") or {}

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {
                SET_NAME_LABEL_KEY: name,
                TEMPLATE_REVISION_HASH_KEY: template_hash,
            },
            "annotations": {REPLICAS_ANNOTATION_KEY: str(int(spec["replicas"]))},
        },
        "spec": {
            "serviceName": name,
            "replicas": replicas,
            "podManagementPolicy": PARALLEL_POD_MANAGEMENT,
            "template": pod_template,
            "updateStrategy": {
                "type": rollout.get("type", ROLLING_UPDATE_STRATEGY),
                "rollingUpdate": {
                    "maxUnavailable": copy.deepcopy(rolling.get("maxUnavailable", 0)),
                    "partition": partition,
                },
            },
            "selector": {
                "matchLabels": {
                    SET_NAME_LABEL_KEY: name,
                    WORKER_INDEX_LABEL_KEY: "0",
                }
            },
        },
    }


def template_updated(sts: dict, lws: dict) -> bool:
    """True if the StatefulSet was built from different templates than the set's."""
    labels = (sts.get("metadata") or {}).get("labels") or {}
    return labels.get(TEMPLATE_REVISION_HASH_KEY, "") != leader_worker_template_hash(lws)