"""Reconciliation of leader and worker pods of a LeaderWorkerSet."""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

from lwscontrol.client import (
    PROPAGATION_FOREGROUND,
    Client,
    NotFoundError,
    create_headless_service_if_not_exists,
    owner_reference,
)
from lwscontrol.pods import container_restarted, is_pod_ready, leader_pod, pod_deleted
from lwscontrol.statefulset import get_parent_name_and_ordinal
from lwscontrol.tpu import add_tpu_annotations
from lwscontrol.utils import (
    EXCLUSIVE_KEY_ANNOTATION_KEY,
    GROUP_INDEX_LABEL_KEY,
    GROUP_UNIQUE_HASH_LABEL_KEY,
    LEADER_POD_NAME_ANNOTATION_KEY,
    SET_NAME_LABEL_KEY,
    SIZE_ANNOTATION_KEY,
    SUBDOMAIN_SHARED,
    SUBDOMAIN_UNIQUE_PER_REPLICA,
    SUBGROUP_EXCLUSIVE_KEY_ANNOTATION_KEY,
    SUBGROUP_SIZE_ANNOTATION_KEY,
    TEMPLATE_REVISION_HASH_KEY,
    WORKER_INDEX_LABEL_KEY,
)

log = logging.getLogger(__name__)

PARALLEL_POD_MANAGEMENT = "Parallel"
RECREATE_GROUP_ON_POD_RESTART = "RecreateGroupOnPodRestart"
LEADER_READY_STARTUP_POLICY = "LeaderReady"


def _meta(obj: dict) -> dict:
    return obj.get("metadata") or {}


def _labels(obj: dict) -> dict:
    return _meta(obj).get("labels") or {}


def _annotations(obj: dict) -> dict:
    return _meta(obj).get("annotations") or {}


def _subdomain_policy(lws: dict) -> Optional[str]:
    network = lws["spec"].get("networkConfig")
    if network is None:
        return None
    return network.get("subdomainPolicy")


class PodReconciler:
    """Creates worker StatefulSets for leader pods and handles group restarts."""

    def __init__(self, client: Client) -> None:
        self.client = client

    def reconcile(self, namespace: str, name: str) -> None:
        """Bring the group of the named pod to its desired state.

        Raises ValueError when the pod lacks the set name or worker index label.
        """
        try:
            pod = self.client.get("Pod", namespace, name)
        except NotFoundError:
            return

        labels = _labels(pod)
        lws_name = labels.get(SET_NAME_LABEL_KEY, "")
        if not lws_name:
            raise ValueError(
                f"{SET_NAME_LABEL_KEY} label is unexpected missing"
            )
        if WORKER_INDEX_LABEL_KEY not in labels:
            raise ValueError(
                f"{WORKER_INDEX_LABEL_KEY} label is unexpected missing"
            )

        pod_namespace = _meta(pod).get("namespace", "")
        try:
            lws = self.client.get("LeaderWorkerSet", pod_namespace, lws_name)
        except NotFoundError:
            # The set is most likely gone; its pods are garbage collected.
            return

        if self.handle_restart_policy(pod, lws):
            log.debug("restarting the group")
            return

        # Worker pods are only reconciled for the restart policy.
        if not leader_pod(pod):
            return

        pod_name = _meta(pod)["name"]
        if _subdomain_policy(lws) == SUBDOMAIN_UNIQUE_PER_REPLICA:
            create_headless_service_if_not_exists(
                self.client,
                lws,
                pod_name,
                {
                    SET_NAME_LABEL_KEY: _meta(lws)["name"],
                    GROUP_INDEX_LABEL_KEY: labels.get(GROUP_INDEX_LABEL_KEY, ""),
                },
                pod,
            )

        # A leader being deleted must not get a worker StatefulSet, or an
        # all-or-nothing restart could race with its creation.
        if pod_deleted(pod):
            log.debug("skip creating the worker sts since the leader pod is being deleted")
            return

        spec = lws["spec"]
        if int(spec["leaderWorkerTemplate"]["size"]) == 1:
            return

        if spec.get("startupPolicy") == LEADER_READY_STARTUP_POLICY and not is_pod_ready(pod):
            log.debug("defer the creation of the worker statefulset: leader pod not ready")
            return

        statefulset = construct_worker_statefulset_apply_configuration(pod, lws)

        lws_annotations = _annotations(lws)
        if EXCLUSIVE_KEY_ANNOTATION_KEY in lws_annotations:
            if not (pod.get("spec") or {}).get("nodeName"):
                log.debug("Pod %r is not scheduled yet", pod_name)
                return
            self.set_node_selector_for_worker_pods(
                pod, statefulset, lws_annotations[EXCLUSIVE_KEY_ANNOTATION_KEY]
            )

        try:
            set_controller_reference_with_statefulset(pod, statefulset)
        except ValueError:
            log.exception("Setting controller reference.")
            return

        lws_namespace = _meta(lws).get("namespace", "")
        try:
            self.client.get("StatefulSet", lws_namespace, pod_name)
        except NotFoundError:
            self.client.create(statefulset)
        log.debug("Worker Reconcile completed.")

    def handle_restart_policy(self, pod: dict, lws: dict) -> bool:
        """Delete the group's leader when a member restarted or was deleted.

        Returns True when the leader is deleted or already being deleted.
        """
        template = lws["spec"]["leaderWorkerTemplate"]
        if template.get("restartPolicy") != RECREATE_GROUP_ON_POD_RESTART:
            return False
        if not container_restarted(pod) and not pod_deleted(pod):
            return False

        if leader_pod(pod):
            leader = pod
        else:
            pod_name = _meta(pod).get("name", "")
            leader_name, ordinal = get_parent_name_and_ordinal(pod_name)
            if ordinal == -1:
                raise ValueError(f"parsing pod name for pod {pod_name}")
            leader = self.client.get("Pod", _meta(pod).get("namespace", ""), leader_name)

        if pod_deleted(leader):
            return True
        self.client.delete(leader, propagation_policy=PROPAGATION_FOREGROUND)
        return True

    def set_node_selector_for_worker_pods(
        self, pod: dict, sts: dict, topology_key: str
    ) -> None:
        """Pin the worker pods to the leader's topology domain."""
        topology_value = self.topology_value_from_pod(pod, topology_key)
        pod_spec = sts["spec"]["template"].setdefault("spec", {})
        selector = pod_spec.get("nodeSelector") or {}
        selector[topology_key] = topology_value
        pod_spec["nodeSelector"] = selector

    def topology_value_from_pod(self, pod: dict, topology_key: str) -> str:
        """Return the topology label value of the node the pod runs on.

        A missing node yields an empty string; a node without the label
        raises ValueError.
        """
        node_name = (pod.get("spec") or {}).get("nodeName", "")
        try:
            node = self.client.get("Node", _meta(pod).get("namespace", ""), node_name)
        except NotFoundError:
            log.warning("getting node %s: not found", node_name)
            return ""
        node_labels = _labels(node)
        if topology_key not in node_labels:
            raise ValueError(f"node does not have topology label: {topology_key}")
        return node_labels[topology_key]


def set_controller_reference_with_statefulset(owner: dict, sts: dict) -> None:
    """Append a controller owner reference to ``owner`` on the StatefulSet."""
    reference = owner_reference(owner)
    metadata = sts.setdefault("metadata", {})
    metadata["ownerReferences"] = list(metadata.get("ownerReferences") or []) + [
        reference
    ]


def construct_worker_statefulset_apply_configuration(
    leader_pod: dict, lws: dict
) -> dict[str, Any]:
    """Build the worker StatefulSet configuration for a leader pod."""
    leader_labels = _labels(leader_pod)
    leader_meta = _meta(leader_pod)
    leader_name = leader_meta.get("name", "")
    lws_name = _meta(lws)["name"]
    lws_annotations = _annotations(lws)
    template = lws["spec"]["leaderWorkerTemplate"]

    selector = {
        GROUP_INDEX_LABEL_KEY: leader_labels.get(GROUP_INDEX_LABEL_KEY, ""),
        SET_NAME_LABEL_KEY: lws_name,
        GROUP_UNIQUE_HASH_LABEL_KEY: leader_labels.get(GROUP_UNIQUE_HASH_LABEL_KEY, ""),
    }
    labels = {
        **selector,
        TEMPLATE_REVISION_HASH_KEY: leader_labels.get(TEMPLATE_REVISION_HASH_KEY, ""),
    }

    annotations = {
        SIZE_ANNOTATION_KEY: str(int(template["size"])),
        LEADER_POD_NAME_ANNOTATION_KEY: leader_name,
    }
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
    add_tpu_annotations(leader_pod, annotations)

    pod_template = copy.deepcopy(template.get("workerTemplate") or {})
    pod_meta = pod_template.setdefault("metadata", {})
    pod_meta["labels"] = {**(pod_meta.get("labels") or {}), **labels}
    pod_meta["annotations"] = {**(pod_meta.get("annotations") or {}), **annotations}

    policy = _subdomain_policy(lws)
    service_name = lws_name if policy in (None, SUBDOMAIN_SHARED) else leader_name

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": leader_name,
            "namespace": leader_meta.get("namespace", ""),
            "labels": dict(labels),
        },
        "spec": {
            "serviceName": service_name,
            "replicas": int(template["size"]) - 1,
            "podManagementPolicy": PARALLEL_POD_MANAGEMENT,
            "template": pod_template,
            "ordinals": {"start": 1},
            "selector": {"matchLabels": dict(selector)},
        },
    }


def pod_event_filter(obj: dict) -> bool:
    """True for pods and StatefulSets that belong to a LeaderWorkerSet."""
    if obj.get("kind") in ("Pod", "StatefulSet"):
        return SET_NAME_LABEL_KEY in _labels(obj)
    return False