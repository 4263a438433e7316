"""Reconciliation of LeaderWorkerSets: leader StatefulSet, services and status."""

from __future__ import annotations

import logging
from typing import Optional, Union

from lwscontrol.client import (
    Client,
    EventRecorder,
    NotFoundError,
    create_headless_service_if_not_exists,
)
from lwscontrol.conditions import ConditionType, make_condition, set_conditions
from lwscontrol.leader_statefulset import (
    construct_leader_statefulset_apply_configuration,
    template_updated,
)
from lwscontrol.pod_controller import set_controller_reference_with_statefulset
from lwscontrol.pods import pod_running_and_ready
from lwscontrol.statefulset import statefulset_ready
from lwscontrol.utils import (
    GROUP_INDEX_LABEL_KEY,
    REPLICAS_ANNOTATION_KEY,
    SET_NAME_LABEL_KEY,
    SUBDOMAIN_SHARED,
    TEMPLATE_REVISION_HASH_KEY,
    WORKER_INDEX_LABEL_KEY,
    leader_worker_template_hash,
    non_zero_value,
    sort_by_index,
)

log = logging.getLogger(__name__)

API_GROUP_VERSION = "leaderworkerset.x-k8s.io/v1"
LWS_KIND = "LeaderWorkerSet"
LWS_OWNER_KEY = ".metadata.controller"
FIELD_MANAGER = "lws"
FAILED_CREATE = "FailedCreate"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


def _meta(obj: Optional[dict]) -> dict:
    return (obj or {}).get("metadata") or {}


def _labels(obj: Optional[dict]) -> dict:
    return _meta(obj).get("labels") or {}


def _group_index(obj: dict) -> int:
    return int(_labels(obj).get(GROUP_INDEX_LABEL_KEY, ""))


def value_from_int_or_percent(
    value: Union[int, str, None], total: int, round_up: bool
) -> int:
    """Resolve an integer or a percentage string against ``total``.

    Percentages are rounded up or down as asked. Any other string raises
    ValueError.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"invalid value for IntOrString: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.endswith("%"):
            raise ValueError(
                f"invalid value for IntOrString: invalid type: string is not a percentage: {value!r}"
            )
        try:
            percent = int(value[:-1])
        except ValueError:
            raise ValueError(f"invalid value {value!r}") from None
        scaled = percent * total
        return -(-scaled // 100) if round_up else scaled // 100
    raise ValueError(f"invalid value for IntOrString: {value!r}")


def lws_owner_index(obj: dict) -> list[str]:
    """Index value of a StatefulSet: its controlling LeaderWorkerSet's name, if any."""
    owner = next(
        (
            ref
            for ref in _meta(obj).get("ownerReferences") or []
            if ref.get("controller")
        ),
        None,
    )
    if owner is None:
        return []
    if owner.get("apiVersion") != API_GROUP_VERSION or owner.get("kind") != LWS_KIND:
        return []
    return [owner["name"]]


class LeaderWorkerSetReconciler:
    """Keeps the leader StatefulSet, headless service and status of a set current."""

    def __init__(self, client: Client, recorder: EventRecorder) -> None:
        self.client = client
        self.recorder = recorder

    def reconcile(self, namespace: str, name: str) -> None:
        """Bring the named LeaderWorkerSet to its desired state."""
        try:
            lws = self.client.get(LWS_KIND, namespace, name)
        except NotFoundError:
            return

        partition, replicas = self.rolling_update_parameters(lws)
        self.ssa_with_statefulset(lws, partition, replicas)

        try:
            self._reconcile_headless_services(lws)
        except Exception as err:
            log.error("Creating headless service: %s", err)
            self.recorder.event(
                lws,
                EVENT_WARNING,
                FAILED_CREATE,
                f"Failed to create headless service for error: {err}",
            )
            raise

        self.update_status(lws)
        log.debug("Leader Reconcile completed.")

    def _reconcile_headless_services(self, lws: dict) -> None:
        network = lws["spec"].get("networkConfig")
        if network is None or network.get("subdomainPolicy") == SUBDOMAIN_SHARED:
            name = _meta(lws)["name"]
            create_headless_service_if_not_exists(
                self.client, lws, name, {SET_NAME_LABEL_KEY: name}, lws
            )

    def rolling_update_parameters(self, lws: dict) -> tuple[int, int]:
        """Return the partition and replica count for the leader StatefulSet.

        During a rolling update the partition moves from the last index down
        to zero by the allowed unavailability; replicas may burst by maxSurge
        and are reclaimed as unready groups become ready. At rest the
        partition is zero and replicas equal the set's replicas.
        """
        spec = lws["spec"]
        meta = _meta(lws)
        lws_replicas = int(spec["replicas"])

        try:
            sts = self.client.get("StatefulSet", meta.get("namespace", ""), meta["name"])
        except NotFoundError:
            # Not created yet: everything is updated, replicas unchanged.
            return 0, lws_replicas

        sts_spec = sts.get("spec") or {}
        sts_replicas = int(sts_spec.get("replicas", 0))
        rolling = (spec.get("rolloutStrategy") or {}).get(
            "rollingUpdateConfiguration"
        ) or {}
        max_surge = min(
            value_from_int_or_percent(rolling.get("maxSurge", 0), lws_replicas, True),
            lws_replicas,
        )
        burst_replicas = lws_replicas + max_surge

        def want_replicas(unready: int) -> int:
            if unready <= max_surge:
                # Release burst replicas gradually as unready ones catch up.
                return lws_replicas + non_zero_value(unready - 1)
            return burst_replicas

        if template_updated(sts, lws):
            # A new rolling update: scale first, then roll.
            return min(lws_replicas, sts_replicas), want_replicas(lws_replicas)

        partition = int(
            ((sts_spec.get("updateStrategy") or {}).get("rollingUpdate") or {}).get(
                "partition", 0
            )
        )
        if partition == 0 and sts_replicas == lws_replicas:
            return 0, lws_replicas

        continuous_ready, lws_unready = self.iterate_replicas(lws, sts_replicas)

        annotations = _meta(sts).get("annotations") or {}
        original_replicas = int(annotations.get(REPLICAS_ANNOTATION_KEY, ""))
        if original_replicas != lws_replicas:
            return min(partition, burst_replicas), want_replicas(lws_unready)

        rolling_step = value_from_int_or_percent(
            rolling.get("maxUnavailable", 0), lws_replicas, False
        )
        # Keep within maxUnavailable while burst replicas are being reclaimed.
        rolling_step += max_surge - (burst_replicas - sts_replicas)

        return (
            min(partition, non_zero_value(sts_replicas - rolling_step - continuous_ready)),
            want_replicas(lws_unready),
        )

    def ssa_with_statefulset(self, lws: dict, partition: int, replicas: int) -> dict:
        """Apply the leader StatefulSet, taking over conflicting fields."""
        config = construct_leader_statefulset_apply_configuration(lws, partition, replicas)
        set_controller_reference_with_statefulset(lws, config)
        return self.client.apply(config, field_manager=FIELD_MANAGER, force=True)

    def update_conditions(self, lws: dict) -> bool:
        """Refresh ready/updated counts and conditions; return whether anything changed."""
        meta = _meta(lws)
        name, namespace = meta["name"], meta.get("namespace", "")
        spec = lws["spec"]
        replicas = int(spec["replicas"])
        leader_pods = self.client.list(
            "Pod", namespace, {SET_NAME_LABEL_KEY: name, WORKER_INDEX_LABEL_KEY: "0"}
        )

        template_hash = leader_worker_template_hash(lws)
        no_worker_sts = int(spec["leaderWorkerTemplate"]["size"]) == 1
        ready_count = updated_count = 0
        updated_non_burst = current_non_burst = updated_and_ready = 0

        for pod in leader_pods:
            index = _group_index(pod)
            non_burst = index < replicas
            if non_burst:
                current_non_burst += 1

            sts: Optional[dict] = None
            if not no_worker_sts:
                sts = self.client.get("StatefulSet", namespace, _meta(pod)["name"])

            ready = (no_worker_sts or statefulset_ready(sts)) and pod_running_and_ready(pod)
            if ready:
                ready_count += 1
            updated = (
                no_worker_sts
                or _labels(sts).get(TEMPLATE_REVISION_HASH_KEY, "") == template_hash
            ) and _labels(pod).get(TEMPLATE_REVISION_HASH_KEY, "") == template_hash
            if updated:
                updated_count += 1
                if non_burst:
                    updated_non_burst += 1
            if ready and updated and non_burst:
                updated_and_ready += 1

        status = lws.setdefault("status", {})
        update_status = False
        if status.get("readyReplicas", 0) != ready_count:
            status["readyReplicas"] = ready_count
            update_status = True
        if status.get("updatedReplicas", 0) != updated_count:
            status["updatedReplicas"] = updated_count
            update_status = True

        if updated_non_burst < current_non_burst:
            conditions = [
                make_condition(ConditionType.PROGRESSING),
                make_condition(ConditionType.UPGRADE_IN_PROGRESS),
            ]
        elif updated_and_ready == replicas:
            conditions = [make_condition(ConditionType.AVAILABLE)]
        else:
            conditions = [make_condition(ConditionType.PROGRESSING)]

        update_condition = set_conditions(lws, conditions)
        if update_condition:
            first = conditions[0]
            self.recorder.event(
                lws,
                EVENT_NORMAL,
                first["reason"],
                first["message"]
                + f", with {ready_count} groups ready of total {replicas} groups",
            )
        return update_status or update_condition

    def update_status(self, lws: dict) -> None:
        """Refresh the set's status and store it when something changed."""
        meta = _meta(lws)
        name, namespace = meta["name"], meta.get("namespace", "")
        sts = self.client.get("StatefulSet", namespace, name)

        status = lws.setdefault("status", {})
        changed = False
        replicas = int((sts.get("status") or {}).get("replicas", 0))
        if status.get("replicas", 0) != replicas:
            status["replicas"] = replicas
            changed = True

        if not status.get("hpaPodSelector"):
            selector = {SET_NAME_LABEL_KEY: name, WORKER_INDEX_LABEL_KEY: "0"}
            status["hpaPodSelector"] = ",".join(
                f"{key}={value}" for key, value in sorted(selector.items())
            )
            changed = True

        if self.update_conditions(lws) or changed:
            self.client.update_status(lws)

    def iterate_replicas(self, lws: dict, sts_replicas: int) -> tuple[int, int]:
        """Return the continuous ready replicas counted from the last index down,
        and the unready replicas below the set's replica count."""
        meta = _meta(lws)
        name, namespace = meta["name"], meta.get("namespace", "")
        spec = lws["spec"]
        lws_replicas = int(spec["replicas"])

        leader_pods = self.client.list(
            "Pod", namespace, {SET_NAME_LABEL_KEY: name, WORKER_INDEX_LABEL_KEY: "0"}
        )
        sorted_pods = sort_by_index(_group_index, leader_pods, sts_replicas)
        statefulsets = self.client.list("StatefulSet", namespace, {SET_NAME_LABEL_KEY: name})
        sorted_sts = sort_by_index(_group_index, statefulsets, sts_replicas)

        template_hash = leader_worker_template_hash(lws)
        no_worker_sts = int(spec["leaderWorkerTemplate"]["size"]) == 1

        def replica_ready(index: int) -> bool:
            nominated = f"{name}-{index}"
            pod, sts = sorted_pods[index], sorted_sts[index]
            # A missing or rebuilding leader pod or worker set is not ready.
            if _meta(pod).get("name") != nominated:
                return False
            if not no_worker_sts and _meta(sts).get("name") != nominated:
                return False
            if not (
                _labels(pod).get(TEMPLATE_REVISION_HASH_KEY, "") == template_hash
                and pod_running_and_ready(pod)
            ):
                return False
            if no_worker_sts:
                return True
            return _labels(sts).get(
                TEMPLATE_REVISION_HASH_KEY, ""
            ) == template_hash and statefulset_ready(sts)

        skip = False
        continuous_ready = lws_unready = 0
        for index in range(sts_replicas - 1, -1, -1):
            ready = replica_ready(index)
            skip = skip or not ready
            if ready and not skip:
                continuous_ready += 1
            if not ready and index < lws_replicas:
                lws_unready += 1
        return continuous_ready, lws_unready