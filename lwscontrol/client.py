"""An in-memory object store with the operations the controllers use."""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

log = logging.getLogger(__name__)

CLUSTER_SCOPED_KINDS = frozenset({"Node", "Namespace"})

PROPAGATION_FOREGROUND = "Foreground"
PROPAGATION_BACKGROUND = "Background"
PROPAGATION_ORPHAN = "Orphan"


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f'{kind} "{where}" not found')


def _deep_merge(target: dict, patch: dict) -> dict:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


class Client:
    """Objects are plain API-shaped dictionaries keyed by kind, namespace and name."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str, str], dict] = {}
        self._managers: dict[tuple[str, str, str], str] = {}

    @staticmethod
    def _key(kind: str, namespace: str, name: str) -> tuple[str, str, str]:
        if kind in CLUSTER_SCOPED_KINDS:
            namespace = ""
        return kind, namespace or "", name

    def _key_of(self, obj: dict) -> tuple[str, str, str]:
        kind = obj.get("kind")
        if not kind:
            raise ValueError("object has no kind")
        meta = obj.get("metadata") or {}
        name = meta.get("name")
        if not name:
            raise ValueError("object has no name")
        return self._key(kind, meta.get("namespace", ""), name)

    def get(self, kind: str, namespace: str, name: str) -> dict:
        """Return a copy of the stored object; raise NotFoundError if absent."""
        key = self._key(kind, namespace, name)
        try:
            return copy.deepcopy(self._objects[key])
        except KeyError:
            raise NotFoundError(*key) from None

    def list(self, kind: str, namespace: str, labels: Optional[dict] = None) -> list[dict]:
        """Return copies of objects of ``kind`` in ``namespace`` matching ``labels``."""
        wanted = labels or {}
        _, namespace, _ = self._key(kind, namespace, "")
        found = []
        for (obj_kind, obj_ns, _), obj in self._objects.items():
            if obj_kind != kind or obj_ns != namespace:
                continue
            obj_labels = (obj.get("metadata") or {}).get("labels") or {}
            if all(obj_labels.get(k) == v for k, v in wanted.items()):
                found.append(copy.deepcopy(obj))
        return sorted(found, key=lambda o: o["metadata"]["name"])

    def create(self, obj: dict) -> dict:
        """Store a new object and return a copy of it as stored."""
        key = self._key_of(obj)
        if key in self._objects:
            raise ValueError(f'{key[0]} "{key[2]}" already exists')
        stored = copy.deepcopy(obj)
        stored["metadata"].setdefault("uid", str(uuid.uuid4()))
        self._objects[key] = stored
        return copy.deepcopy(stored)

    def _dependents(self, uid: str) -> list[tuple[str, str, str]]:
        return [
            key
            for key, obj in self._objects.items()
            if any(
                ref.get("uid") == uid
                for ref in (obj.get("metadata") or {}).get("ownerReferences") or []
            )
        ]

    def _remove(self, key: tuple[str, str, str], cascade: bool) -> None:
        obj = self._objects.pop(key, None)
        self._managers.pop(key, None)
        if obj is None or not cascade:
            return
        uid = obj["metadata"].get("uid")
        if uid:
            for dependent in self._dependents(uid):
                self._remove(dependent, cascade)

    def delete(self, obj: dict, propagation_policy: Optional[str] = None) -> None:
        """Delete an object; dependents go too unless the policy is Orphan."""
        key = self._key_of(obj)
        if key not in self._objects:
            raise NotFoundError(*key)
        self._remove(key, cascade=propagation_policy != PROPAGATION_ORPHAN)

    def apply(self, obj: dict, field_manager: str, force: bool = False) -> dict:
        """Create or merge ``obj`` on behalf of ``field_manager``.

        Applying over an object owned by another manager raises ValueError
        unless ``force`` is set, in which case ownership moves over.
        """
        key = self._key_of(obj)
        current = self._objects.get(key)
        if current is None:
            stored = self.create(obj)
        else:
            owner = self._managers.get(key)
            if owner is not None and owner != field_manager and not force:
                raise ValueError(
                    f'apply conflict on {key[0]} "{key[2]}": managed by "{owner}"'
                )
            _deep_merge(current, obj)
            stored = copy.deepcopy(current)
        self._managers[key] = field_manager
        return stored

    def update_status(self, obj: dict) -> dict:
        """Replace the status of a stored object and return it."""
        key = self._key_of(obj)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(*key)
        current["status"] = copy.deepcopy(obj.get("status") or {})
        return copy.deepcopy(current)


@dataclass(frozen=True)
class Event:
    """One recorded event."""

    kind: str
    namespace: str
    name: str
    event_type: str
    reason: str
    message: str


@dataclass
class EventRecorder:
    """Collects events raised against objects."""

    events: list = field(default_factory=list)

    def event(self, obj: dict, event_type: str, reason: str, message: str) -> Event:
        meta = obj.get("metadata") or {}
        recorded = Event(
            kind=obj.get("kind", ""),
            namespace=meta.get("namespace", ""),
            name=meta.get("name", ""),
            event_type=event_type,
            reason=reason,
            message=message,
        )
        self.events.append(recorded)
        return recorded


def owner_reference(owner: dict) -> dict:
    """Build a controller owner reference pointing at ``owner``."""
    meta = owner.get("metadata") or {}
    missing = [
        field_name
        for field_name, value in (
            ("apiVersion", owner.get("apiVersion")),
            ("kind", owner.get("kind")),
            ("name", meta.get("name")),
        )
        if not value
    ]
    if missing:
        raise ValueError(f"owner is missing {', '.join(missing)}")
    return {
        "apiVersion": owner["apiVersion"],
        "kind": owner["kind"],
        "name": meta["name"],
        "uid": meta.get("uid", ""),
        "blockOwnerDeletion": True,
        "controller": True,
    }


def create_headless_service_if_not_exists(
    client: Client, lws: dict, service_name: str, selector: dict, owner: dict
) -> None:
    """Create a headless service in the set's namespace unless one exists."""
    namespace = (lws.get("metadata") or {}).get("namespace", "")
    try:
        client.get("Service", namespace, service_name)
        return
    except NotFoundError:
        pass
    service: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": service_name,
            "namespace": namespace,
            "ownerReferences": [owner_reference(owner)],
        },
        "spec": {
            "clusterIP": "None",
            "selector": dict(selector),
            "publishNotReadyAddresses": True,
        },
    }
    log.debug("Creating headless service %s/%s", namespace, service_name)
    client.create(service)