"""Classification of unit state transitions into change events."""

from datetime import datetime

from svcwatch.models import (
    ACTIVE,
    DISABLED,
    ENABLED,
    FAILED,
    ChangeEvent,
    ChangeKind,
    Snapshot,
    UnitRecord,
)

# Substates systemd may report while a unit is nominally active but not yet settled.
TRANSITIONAL_SUBSTATES = frozenset({"start", "start-pre", "start-post", "auto-restart", "reload"})
# Leaving active from one of these is an aborted start, not a stop.
STARTING_SUBSTATES = frozenset({"start", "start-pre", "start-post"})

_PRIORITY = list(ChangeKind)


def is_settled_active(record: UnitRecord) -> bool:
    """Check if a unit is active and out of any transitional substate."""
    return record.active_state == ACTIVE and record.sub_state not in TRANSITIONAL_SUBSTATES


def classify(old: UnitRecord | None, new: UnitRecord | None) -> list[ChangeKind]:
    """
    Map an (old, new) pair of unit states to the change kinds it represents.

    Rules are evaluated independently so one transition can yield several
    kinds (for example Stopped and Disabled in the same tick). Failed
    supersedes Stopped. A unit that drops out of active while still in a
    start substate was never reported Started, so it is Changed rather than
    Stopped. The result is ordered by reporting priority.
    """
    if old is None and new is None:
        return []
    if old is None:
        return [ChangeKind.ADDED]
    if new is None:
        return [ChangeKind.REMOVED]

    kinds: list[ChangeKind] = []

    failed = new.active_state == FAILED and old.active_state != FAILED
    if failed:
        kinds.append(ChangeKind.FAILED)

    if not is_settled_active(old) and is_settled_active(new):
        kinds.append(ChangeKind.STARTED)
    elif (
        old.active_state == ACTIVE
        and new.active_state != ACTIVE
        and old.sub_state not in STARTING_SUBSTATES
        and not failed
    ):
        kinds.append(ChangeKind.STOPPED)

    if old.enabled_state != new.enabled_state:
        if new.enabled_state == ENABLED:
            kinds.append(ChangeKind.ENABLED)
        elif new.enabled_state == DISABLED:
            kinds.append(ChangeKind.DISABLED)
        else:
            kinds.append(ChangeKind.CHANGED)

    if not kinds and (
        old.active_state != new.active_state or old.sub_state != new.sub_state
    ):
        kinds.append(ChangeKind.CHANGED)

    return kinds


def primary_kind(kinds: list[ChangeKind]) -> ChangeKind | None:
    """Return the single most specific kind from a classify() result."""
    if not kinds:
        return None
    return min(kinds, key=_PRIORITY.index)


def diff_snapshots(
    old: Snapshot,
    new: Snapshot,
    observed_at: datetime,
    *,
    offline: bool = False,
) -> list[ChangeEvent]:
    """
    Classify every unit in the union of two snapshots.

    Keys of the old snapshot come first in their order, followed by keys only
    present in the new one. Each classified kind becomes one event.
    """
    keys = list(old)
    keys.extend(key for key in new if key not in old)

    events: list[ChangeEvent] = []
    for key in keys:
        before = old.get(key)
        after = new.get(key)
        for kind in classify(before, after):
            scope, name = key
            events.append(
                ChangeEvent(
                    kind=kind,
                    scope=scope,
                    name=name,
                    old_state=before,
                    new_state=after,
                    observed_at=observed_at,
                    offline=offline,
                )
            )
    return events
