# lwscontrol

`lwscontrol` holds the reconciliation logic for a *LeaderWorkerSet*. A LeaderWorkerSet is a set of replica groups. Each group has one leader pod and a fixed number of worker pods.

All objects are plain Python dictionaries shaped like Kubernetes API objects (`apiVersion`, `kind`, `metadata`, `spec`, `status`, with camelCase keys). The reconcilers read and write them through a `Client`. The package ships `lwscontrol.client.Client`, which is an in-memory object store.

## Modules

- **`lwscontrol.lws_controller`**
  - `LeaderWorkerSetReconciler(client, recorder)` reconciles one set with `reconcile(namespace, name)`. It works out the partition and replica count for a rolling update, including `maxSurge` bursting and the gradual reclaiming of burst replicas (`rolling_update_parameters`). It applies the leader statefulset with field manager `lws` (`ssa_with_statefulset`). When the set has no network config, or its subdomain policy is `Shared`, it creates the shared headless service. Finally it refreshes `status`: replicas, ready and updated replicas, the HPA pod selector, and the conditions (`update_status`, `update_conditions`, `iterate_replicas`). A condition change is recorded as an event.
  - `value_from_int_or_percent(value, total, round_up)` resolves an integer, or a percentage string such as `"25%"`, against `total`.
  - `lws_owner_index(obj)` returns the name of a statefulset's controlling LeaderWorkerSet.
- **`lwscontrol.pod_controller`**
  - `PodReconciler(client)` reconciles one pod with `reconcile(namespace, name)`. Under `RecreateGroupOnPodRestart` it deletes the group's leader when a member restarted or was deleted. For a leader pod it does three things:
    - It creates a per-group headless service when the subdomain policy is `UniquePerReplica`.
    - It creates the worker statefulset when the group size is above 1. It waits for a ready leader under the `LeaderReady` startup policy.
    - With exclusive topology placement, it pins the workers to the leader node's topology label.
  - `construct_worker_statefulset_apply_configuration(leader_pod, lws)` builds the worker statefulset.
  - `set_controller_reference_with_statefulset(owner, sts)` adds a controller owner reference to a statefulset.
  - `pod_event_filter(obj)` tells whether a pod or statefulset belongs to a LeaderWorkerSet.
- **`lwscontrol.leader_statefulset`**
  - `construct_leader_statefulset_apply_configuration(lws, partition, replicas)` builds the leader statefulset.
  - `template_updated(sts, lws)` tells whether the templates changed.
- **`lwscontrol.conditions`**
  - `ConditionType` names the conditions: `Available`, `Progressing` and `UpgradeInProgress`.
  - `make_condition`, `set_condition`, `set_conditions` and `exclusive_condition_types` keep `Available` from being true together with `Progressing` or `UpgradeInProgress`.
- **`lwscontrol.client`**
  - `Client` is an in-memory store with `get`, `list` (label matching), `create`, `delete` (cascading unless the policy is `Orphan`), `apply` (merge, with field-manager conflicts unless `force`) and `update_status`.
  - A missing object raises `NotFoundError`.
  - `EventRecorder` collects `Event` records.
  - `owner_reference(owner)` builds a controller owner reference.
  - `create_headless_service_if_not_exists(...)` creates a headless service unless one already exists.
- **`lwscontrol.pods`**
  - `container_restarted`, `pod_deleted`, `leader_pod`, `pod_running_and_ready`, `is_pod_ready`, `get_pod_condition` and `get_pod_ready_condition` inspect a pod.
  - `add_lws_variables(pod)` injects `LWS_LEADER_ADDRESS` and `LWS_GROUP_SIZE` into every container.
- **`lwscontrol.tpu`**
  - `pod_requests_tpus` and `get_container_requesting_tpus` find TPU requests.
  - `add_tpu_variables` and `add_tpu_variables_subgroup` set `TPU_WORKER_HOSTNAMES`, `TPU_WORKER_ID` and `TPU_NAME`.
  - `add_tpu_annotations` marks a leader that requests TPUs.
- **`lwscontrol.statefulset`**
  - `get_parent_name_and_ordinal(name)` splits a statefulset pod name into its parent name and ordinal.
  - `statefulset_ready(sts)` tells whether a statefulset is ready.
- **`lwscontrol.utils`**
  - `sha1_hash`, `non_zero_value`, `leader_worker_template_hash` and `sort_by_index` are small helpers.
  - The module also holds the label, annotation and environment-variable keys.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from lwscontrol.statefulset import get_parent_name_and_ordinal
from lwscontrol.utils import sort_by_index

get_parent_name_and_ordinal("lws-samples-132")   # ("lws-samples", 132)
get_parent_name_and_ordinal("lws-samples1")      # ("", -1)

sort_by_index(lambda i: i, [3, 1, 0], 4)         # [0, 1, None, 3]
```

Reconciling a set against the in-memory store:

```python
from lwscontrol.client import Client, EventRecorder
from lwscontrol.lws_controller import LeaderWorkerSetReconciler

client = Client()
client.create({
    "apiVersion": "leaderworkerset.x-k8s.io/v1",
    "kind": "LeaderWorkerSet",
    "metadata": {"name": "my-set", "namespace": "default"},
    "spec": {
        "replicas": 2,
        "leaderWorkerTemplate": {
            "size": 3,
            "workerTemplate": {"spec": {"containers": [{"name": "worker", "image": "nginx"}]}},
        },
    },
})
recorder = EventRecorder()
LeaderWorkerSetReconciler(client, recorder).reconcile("default", "my-set")

client.get("StatefulSet", "default", "my-set")["spec"]["replicas"]   # 2
client.get("Service", "default", "my-set")["spec"]["clusterIP"]      # "None"
recorder.events[0].reason                                            # "GroupsAreProgressing"
```

If the object to reconcile does not exist, `reconcile` returns quietly. Any other failure is raised as an exception.

## What it does not do

- There is no command-line program.
- There is no watch loop or controller manager. Nothing calls `reconcile` by itself, so you call it for each object that changed.
- There is no connection to a real Kubernetes API server. `Client` keeps objects in memory only.
- There are no admission webhooks, defaulting or validation of LeaderWorkerSet specs.
- Pods are not created from statefulsets. Statefulset status and pod status must be set by the caller.