"""Data models for svcwatch."""

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType

ACTIVE = "active"
INACTIVE = "inactive"
FAILED = "failed"

ENABLED = "enabled"
DISABLED = "disabled"
STATIC = "static"


class Scope(Enum):
    """Which service manager instance owns a unit."""

    SYSTEM = "system"
    USER = "user"


class ChangeKind(Enum):
    """Semantic kind of a detected change, in reporting priority order."""

    ADDED = "Added"
    REMOVED = "Removed"
    FAILED = "Failed"
    STARTED = "Started"
    STOPPED = "Stopped"
    ENABLED = "Enabled"
    DISABLED = "Disabled"
    CHANGED = "Changed"


UnitKey = tuple[Scope, str]


@dataclass(slots=True, frozen=True)
class UnitRecord:
    """Immutable state of one service unit at one observation instant."""

    name: str
    active_state: str  # 'active', 'inactive', 'failed', 'activating', ...
    sub_state: str  # 'running', 'dead', 'exited', ...
    enabled_state: str = STATIC
    scope: Scope = Scope.SYSTEM
    description: str = ""

    @property
    def key(self) -> UnitKey:
        """Identity of the unit across snapshots."""
        return (self.scope, self.name)

    @property
    def is_user(self) -> bool:
        return self.scope is Scope.USER


class Snapshot(Mapping[UnitKey, UnitRecord]):
    """
    Read-only mapping of (scope, name) to UnitRecord.

    A snapshot is never mutated after construction; every poll builds a new one.
    Iteration follows insertion order.

    `scopes` records which scopes were actually listed. A covered scope with
    no units is an empty listing, while an uncovered scope was never observed.
    When not given it is derived from the unit keys.
    """

    __slots__ = ("_units", "_scopes")

    def __init__(
        self,
        units: Mapping[UnitKey, UnitRecord] | None = None,
        scopes: Iterable[Scope] | None = None,
    ) -> None:
        self._units = MappingProxyType(dict(units or {}))
        if scopes is None:
            scopes = (scope for scope, _ in self._units)
        self._scopes = frozenset(scopes)

    def __getitem__(self, key: UnitKey) -> UnitRecord:
        return self._units[key]

    def __iter__(self) -> Iterator[UnitKey]:
        return iter(self._units)

    def __len__(self) -> int:
        return len(self._units)

    def __repr__(self) -> str:
        return f"Snapshot({len(self._units)} units)"

    @property
    def scopes(self) -> frozenset[Scope]:
        """Scopes whose units this snapshot covers."""
        return self._scopes

    def records(self) -> list[UnitRecord]:
        """Return all records in insertion order."""
        return list(self._units.values())

    def for_scope(self, scope: Scope) -> "Snapshot":
        """Return the subset of this snapshot belonging to one scope."""
        return Snapshot(
            {key: rec for key, rec in self._units.items() if key[0] is scope},
            scopes={scope} & self._scopes,
        )

    def merge(self, *others: "Snapshot") -> "Snapshot":
        """Return a new snapshot combining this one with others (later wins)."""
        combined = dict(self._units)
        scopes = set(self._scopes)
        for other in others:
            combined.update(other.items())
            scopes.update(other.scopes)
        return Snapshot(combined, scopes=scopes)


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """One classified change of a unit between two snapshots."""

    kind: ChangeKind
    scope: Scope
    name: str
    old_state: UnitRecord | None
    new_state: UnitRecord | None
    observed_at: datetime
    offline: bool = False  # Detected while the watcher was not running

    @property
    def key(self) -> UnitKey:
        return (self.scope, self.name)

    def describe(self) -> str:
        """Return a one-line human readable summary of the change."""
        prefix = f"{self.name} (user)" if self.scope is Scope.USER else self.name
        if self.kind is ChangeKind.ADDED:
            return f"{prefix} was added"
        if self.kind is ChangeKind.REMOVED:
            return f"{prefix} was removed"
        if self.kind in (ChangeKind.ENABLED, ChangeKind.DISABLED):
            return f"{prefix} is now {self.kind.value.lower()}"
        new = self.new_state
        if new is None:
            return f"{prefix} changed"
        if self.kind is ChangeKind.CHANGED and self.old_state is not None:
            old = self.old_state
            if old.enabled_state != new.enabled_state:
                return f"{prefix} is now {new.enabled_state}"
        return f"{prefix} is now {new.active_state} ({new.sub_state})"
