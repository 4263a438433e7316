import pytest

from lwscontrol.pods import (
    add_lws_variables,
    container_restarted,
    get_pod_condition,
    get_pod_ready_condition,
    is_pod_ready,
    leader_pod,
    pod_deleted,
    pod_running_and_ready,
)
from lwscontrol.utils import (
    GROUP_INDEX_LABEL_KEY,
    SET_NAME_LABEL_KEY,
    SIZE_ANNOTATION_KEY,
    WORKER_INDEX_LABEL_KEY,
)


@pytest.mark.parametrize(
    "status, want",
    [
        ({"phase": "Running", "initContainerStatuses": [{"restartCount": 1}]}, True),
        ({"phase": "Pending", "initContainerStatuses": [{"restartCount": 1}]}, True),
        ({"phase": "Running", "containerStatuses": [{"restartCount": 1}]}, True),
        ({"phase": "Failed"}, False),
        (
            {
                "phase": "Running",
                "initContainerStatuses": [{"restartCount": 0}],
                "containerStatuses": [{"restartCount": 0}],
            },
            False,
        ),
    ],
)
def test_container_restarted(status, want):
    assert container_restarted({"status": status}) is want


def make_pod_with_labels(set_name, group_index, worker_index, namespace, size):
    name = f"{set_name}-{group_index}"
    if worker_index:
        name = f"{name}-{worker_index}"
    return {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {
                SET_NAME_LABEL_KEY: set_name,
                GROUP_INDEX_LABEL_KEY: group_index,
                WORKER_INDEX_LABEL_KEY: worker_index or "0",
            },
            "annotations": {SIZE_ANNOTATION_KEY: str(size)},
        },
        "spec": {
            "subdomain": set_name,
            "containers": [
                {"name": "leader", "env": [{"name": "EXTRA", "value": "x"}]}
            ],
            "initContainers": [{"name": "init"}],
        },
    }


@pytest.mark.parametrize(
    "pod, address, size",
    [
        (make_pod_with_labels("test-sample", "0", "", "default", 3), "test-sample-0.test-sample.default", 3),
        (make_pod_with_labels("test-sample", "0", "1", "default", 3), "test-sample-0.test-sample.default", 3),
        (make_pod_with_labels("test-sample", "1", "", "default", 2), "test-sample-1.test-sample.default", 2),
        (make_pod_with_labels("test-sample", "1", "3", "default", 2), "test-sample-1.test-sample.default", 2),
        (make_pod_with_labels("test-sample", "1", "3", "lws", 2), "test-sample-1.test-sample.lws", 2),
    ],
)
def test_add_lws_variables(pod, address, size):
    add_lws_variables(pod)
    containers = pod["spec"]["containers"] + pod["spec"]["initContainers"]
    assert len(containers) == 2
    for container in containers:
        assert container["env"][0] == {"name": "LWS_LEADER_ADDRESS", "value": address}
        assert container["env"][1] == {"name": "LWS_GROUP_SIZE", "value": str(size)}


def test_add_lws_variables_keeps_other_env_and_replaces_existing():
    pod = make_pod_with_labels("test-sample", "0", "", "default", 3)
    pod["spec"]["containers"][0]["env"].append({"name": "LWS_GROUP_SIZE", "value": "9"})
    add_lws_variables(pod)
    add_lws_variables(pod)
    assert pod["spec"]["containers"][0]["env"] == [
        {"name": "LWS_LEADER_ADDRESS", "value": "test-sample-0.test-sample.default"},
        {"name": "LWS_GROUP_SIZE", "value": "3"},
        {"name": "EXTRA", "value": "x"},
    ]


@pytest.mark.parametrize(
    "remove, message",
    [
        (("labels", SET_NAME_LABEL_KEY), "no name label"),
        (("labels", GROUP_INDEX_LABEL_KEY), "no group index label"),
        (("annotations", SIZE_ANNOTATION_KEY), "no size annotation"),
    ],
)
def test_add_lws_variables_missing_metadata(remove, message):
    pod = make_pod_with_labels("test-sample", "0", "", "default", 3)
    del pod["metadata"][remove[0]][remove[1]]
    with pytest.raises(ValueError, match=message):
        add_lws_variables(pod)


def test_pod_deleted_and_leader():
    pod = {"metadata": {"labels": {WORKER_INDEX_LABEL_KEY: "0"}}}
    assert leader_pod(pod) is True
    assert pod_deleted(pod) is False
    pod["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    assert pod_deleted(pod) is True
    assert leader_pod({"metadata": {"labels": {WORKER_INDEX_LABEL_KEY: "2"}}}) is False


def test_pod_conditions():
    ready = {"type": "Ready", "status": "True"}
    status = {"phase": "Running", "conditions": [{"type": "Scheduled", "status": "True"}, ready]}
    assert get_pod_condition(status, "Scheduled") == {"type": "Scheduled", "status": "True"}
    assert get_pod_ready_condition(status) == ready
    assert get_pod_condition(None, "Ready") is None
    assert get_pod_condition({"conditions": []}, "Ready") is None


@pytest.mark.parametrize(
    "status, ready, running_and_ready",
    [
        ({"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]}, True, True),
        ({"phase": "Pending", "conditions": [{"type": "Ready", "status": "True"}]}, True, False),
        ({"phase": "Running", "conditions": [{"type": "Ready", "status": "False"}]}, False, False),
        ({"phase": "Running"}, False, False),
    ],
)
def test_readiness(status, ready, running_and_ready):
    pod = {"status": status}
    assert is_pod_ready(pod) is ready
    assert pod_running_and_ready(pod) is running_and_ready