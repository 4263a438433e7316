"""Status conditions of a LeaderWorkerSet."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"


class ConditionType(str, Enum):
    """Condition types a LeaderWorkerSet reports."""

    AVAILABLE = "Available"
    PROGRESSING = "Progressing"
    UPGRADE_IN_PROGRESS = "UpgradeInProgress"


_DETAILS = {
    ConditionType.AVAILABLE: ("AllGroupsReady", "All replicas are ready"),
    ConditionType.UPGRADE_IN_PROGRESS: (
        "GroupsAreUpgrading",
        "Rolling Upgrade is in progress",
    ),
    ConditionType.PROGRESSING: ("GroupsAreProgressing", "Replicas are progressing"),
}

_EXCLUSIVE_PAIRS = frozenset(
    {
        frozenset({ConditionType.AVAILABLE.value, ConditionType.PROGRESSING.value}),
        frozenset(
            {ConditionType.AVAILABLE.value, ConditionType.UPGRADE_IN_PROGRESS.value}
        ),
    }
)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def make_condition(condition_type: ConditionType | str) -> dict:
    """Build a true condition of the given type; unknown types mean Progressing."""
    try:
        kind = ConditionType(condition_type)
    except ValueError:
        kind = ConditionType.PROGRESSING
    reason, message = _DETAILS[kind]
    return {
        "type": kind.value,
        "status": CONDITION_TRUE,
        "lastTransitionTime": _now(),
        "reason": reason,
        "message": message,
    }


def exclusive_condition_types(condition1: dict, condition2: dict) -> bool:
    """True if the two conditions may not both be true at once."""
    pair = frozenset({condition1.get("type"), condition2.get("type")})
    return pair in _EXCLUSIVE_PAIRS


def set_condition(lws: dict, new_condition: dict) -> bool:
    """Merge ``new_condition`` into the set's status; return whether it changed."""
    new_condition = dict(new_condition)
    new_condition["lastTransitionTime"] = _now()
    status = lws.setdefault("status", {})
    conditions = status.get("conditions") or []
    found = False
    should_update = False

    for i, current in enumerate(conditions):
        if new_condition.get("type") == current.get("type"):
            if new_condition.get("status") != current.get("status"):
                conditions[i] = dict(new_condition)
                should_update = True
            found = True
        elif (
            exclusive_condition_types(current, new_condition)
            and new_condition.get("status") == CONDITION_TRUE
            and current.get("status") == CONDITION_TRUE
        ):
            # Mutually exclusive conditions cannot both stay true.
            current["status"] = CONDITION_FALSE
            should_update = True

    if new_condition.get("status") == CONDITION_TRUE and not found:
        conditions.append(dict(new_condition))
        should_update = True

    status["conditions"] = conditions
    return should_update


def set_conditions(lws: dict, conditions: Iterable[dict]) -> bool:
    """Apply conditions in order until one changes the status.

    Once a condition has changed the status, later ones are not applied.
    """
    should_update = False
    for condition in conditions:
        should_update = should_update or set_condition(lws, condition)
    return should_update