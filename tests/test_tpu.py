import pytest

from lwscontrol.tpu import (
    LEADER_REQUESTS_TPUS_ANNOTATION_KEY,
    add_tpu_annotations,
    add_tpu_variables,
    add_tpu_variables_subgroup,
    get_container_requesting_tpus,
    pod_requests_tpus,
)
from lwscontrol.utils import (
    SUBGROUP_INDEX_LABEL_KEY,
    SUBGROUP_SIZE_ANNOTATION_KEY,
    WORKER_INDEX_LABEL_KEY,
)


def make_leader_pod_spec():
    return {"containers": [{"name": "worker", "image": "busybox"}]}


def make_leader_pod_spec_with_tpu_resource():
    return {
        "containers": [
            {
                "name": "worker",
                "image": "busybox",
                "resources": {"limits": {"google.com/tpu": "4"}},
            }
        ],
        "subdomain": "default",
    }


def make_leader_pod_spec_with_tpu_resource_multiple_containers():
    return {
        "containers": [
            {
                "name": "worker",
                "image": "busybox",
                "resources": {"limits": {"google.com/tpu": "4"}},
            },
            {
                "name": "leader",
                "image": "nginx:1.14.2",
                "ports": [{"containerPort": 8080, "protocol": "TCP"}],
            },
        ],
        "subdomain": "default",
    }


def make_pod(name, labels, annotations=None, spec=None):
    return {
        "metadata": {
            "name": name,
            "namespace": "default",
            "labels": labels,
            "annotations": annotations or {},
        },
        "spec": spec if spec is not None else make_leader_pod_spec_with_tpu_resource(),
    }


def env_values(pod):
    return [env["value"] for env in pod["spec"]["containers"][0]["env"]]


@pytest.mark.parametrize(
    "pod, size, hostnames, worker_id, tpu_name",
    [
        (
            make_pod("test-sample-1", {WORKER_INDEX_LABEL_KEY: "0"}),
            1,
            "test-sample-1.default",
            "0",
            "test-sample-1",
        ),
        (
            make_pod(
                "test-sample-1-3",
                {WORKER_INDEX_LABEL_KEY: "3"},
                {LEADER_REQUESTS_TPUS_ANNOTATION_KEY: "true"},
            ),
            5,
            "test-sample-1.default,test-sample-1-1.default,test-sample-1-2.default,"
            "test-sample-1-3.default,test-sample-1-4.default",
            "3",
            "test-sample-1",
        ),
    ],
)
def test_add_tpu_variables(pod, size, hostnames, worker_id, tpu_name):
    add_tpu_variables(pod, size)
    assert env_values(pod) == [hostnames, worker_id, tpu_name]


def test_add_tpu_variables_leader_without_tpus_shifts_ids():
    pod = make_pod("test-sample-1-3", {WORKER_INDEX_LABEL_KEY: "3"})
    add_tpu_variables(pod, 5)
    hostnames, worker_id, name = env_values(pod)
    assert hostnames.split(",") == [
        "test-sample-1-1.default",
        "test-sample-1-2.default",
        "test-sample-1-3.default",
        "test-sample-1-4.default",
    ]
    assert worker_id == "2"
    assert name == "test-sample-1"


def test_add_tpu_variables_is_idempotent():
    pod = make_pod("test-sample-1", {WORKER_INDEX_LABEL_KEY: "0"})
    add_tpu_variables(pod, 3)
    first = list(pod["spec"]["containers"][0]["env"])
    add_tpu_variables(pod, 3)
    assert pod["spec"]["containers"][0]["env"] == first


def test_add_tpu_variables_without_tpu_container_leaves_pod():
    pod = make_pod("test-sample-1", {WORKER_INDEX_LABEL_KEY: "0"}, spec=make_leader_pod_spec())
    add_tpu_variables(pod, 3)
    assert "env" not in pod["spec"]["containers"][0]


def test_add_tpu_variables_bad_worker_name():
    pod = make_pod("worker", {WORKER_INDEX_LABEL_KEY: "2"})
    with pytest.raises(ValueError):
        add_tpu_variables(pod, 3)


@pytest.mark.parametrize(
    "pod, hostnames, worker_id, tpu_name",
    [
        (
            make_pod(
                "test-sample-1-3",
                {WORKER_INDEX_LABEL_KEY: "3", SUBGROUP_INDEX_LABEL_KEY: "0"},
                {
                    LEADER_REQUESTS_TPUS_ANNOTATION_KEY: "true",
                    SUBGROUP_SIZE_ANNOTATION_KEY: "5",
                },
            ),
            "test-sample-1.default,test-sample-1-1.default,test-sample-1-2.default,"
            "test-sample-1-3.default,test-sample-1-4.default",
            "3",
            "test-sample-1",
        ),
        (
            make_pod(
                "test-sample-1-7",
                {WORKER_INDEX_LABEL_KEY: "7", SUBGROUP_INDEX_LABEL_KEY: "1"},
                {
                    LEADER_REQUESTS_TPUS_ANNOTATION_KEY: "true",
                    SUBGROUP_SIZE_ANNOTATION_KEY: "4",
                },
            ),
            "test-sample-1-4.default,test-sample-1-5.default,"
            "test-sample-1-6.default,test-sample-1-7.default",
            "3",
            "test-sample-1",
        ),
        (
            make_pod(
                "test-sample-1-5",
                {WORKER_INDEX_LABEL_KEY: "5", SUBGROUP_INDEX_LABEL_KEY: "1"},
                {SUBGROUP_SIZE_ANNOTATION_KEY: "4"},
            ),
            "test-sample-1-5.default,test-sample-1-6.default,"
            "test-sample-1-7.default,test-sample-1-8.default",
            "0",
            "test-sample-1",
        ),
    ],
)
def test_add_tpu_variables_subgroup(pod, hostnames, worker_id, tpu_name):
    add_tpu_variables_subgroup(pod)
    assert env_values(pod) == [hostnames, worker_id, tpu_name]


def test_add_tpu_variables_dispatches_to_subgroup():
    pod = make_pod(
        "test-sample-1-5",
        {WORKER_INDEX_LABEL_KEY: "5", SUBGROUP_INDEX_LABEL_KEY: "1"},
        {SUBGROUP_SIZE_ANNOTATION_KEY: "4"},
    )
    add_tpu_variables(pod, 100)
    assert env_values(pod)[0] == (
        "test-sample-1-5.default,test-sample-1-6.default,"
        "test-sample-1-7.default,test-sample-1-8.default"
    )


def test_add_tpu_variables_subgroup_missing_index():
    pod = make_pod(
        "test-sample-1-5",
        {WORKER_INDEX_LABEL_KEY: "5"},
        {SUBGROUP_SIZE_ANNOTATION_KEY: "4"},
    )
    with pytest.raises(ValueError):
        add_tpu_variables_subgroup(pod)


@pytest.mark.parametrize(
    "spec, expected",
    [
        (
            make_leader_pod_spec_with_tpu_resource(),
            {
                "name": "worker",
                "image": "busybox",
                "resources": {"limits": {"google.com/tpu": "4"}},
            },
        ),
        (
            make_leader_pod_spec_with_tpu_resource_multiple_containers(),
            {
                "name": "worker",
                "image": "busybox",
                "resources": {"limits": {"google.com/tpu": "4"}},
            },
        ),
        (make_leader_pod_spec(), None),
    ],
)
def test_get_container_requesting_tpus(spec, expected):
    assert get_container_requesting_tpus(spec) == expected


def test_get_container_requesting_tpus_from_init_containers_and_requests():
    spec = {
        "containers": [{"name": "main"}],
        "initContainers": [
            {"name": "init", "resources": {"requests": {"google.com/tpu": 4}}}
        ],
    }
    assert get_container_requesting_tpus(spec)["name"] == "init"
    assert pod_requests_tpus(spec) is True


def test_zero_tpu_quantity_does_not_count():
    spec = {"containers": [{"name": "main", "resources": {"limits": {"google.com/tpu": "0"}}}]}
    assert pod_requests_tpus(spec) is False


def test_add_tpu_annotations():
    annotations = {}
    add_tpu_annotations({"spec": make_leader_pod_spec_with_tpu_resource()}, annotations)
    assert annotations == {LEADER_REQUESTS_TPUS_ANNOTATION_KEY: "true"}

    untouched = {}
    add_tpu_annotations({"spec": make_leader_pod_spec()}, untouched)
    assert untouched == {}