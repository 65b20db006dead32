"""Game mode: temporarily stop a user-chosen list of services."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from svcwatch.actions import ActionError, ActionExecutor, ActionVerb
from svcwatch.changelog import ChangeLog
from svcwatch.coordinator import WatcherCoordinator
from svcwatch.models import ACTIVE, Scope, Snapshot
from svcwatch.store import GAMEMODE_KEY, JsonStore

logger = logging.getLogger(__name__)

GAME_MODE = "Game Mode"

# Services that are usually safe to stop for a while, with a reason shown to the user.
OPTIMIZABLE_SERVICES: tuple[tuple[str, str], ...] = (
    (r"^cups(-browsed)?\.service$", "Printing service"),
    (r"^bluetooth\.service$", "Bluetooth support"),
    (r"^ModemManager\.service$", "Mobile broadband modems"),
    (r"^avahi-daemon\.service$", "Local network discovery"),
    (r"^packagekit\.service$", "Background package updates"),
    (r"^fwupd\.service$", "Firmware update daemon"),
    (r"^geoclue\.service$", "Location services"),
    (r"^colord\.service$", "Color profile management"),
    (r"^(tracker-miner-fs-3|tracker-miner-fs|baloo_file)\.service$", "File indexing"),
    (r"^(snapd|flatpak-system-helper)\.service$", "Background app store updates"),
    (r"^thermald\.service$", "Thermal throttling daemon"),
    (r"^smartd\.service$", "Disk health monitoring"),
)


def recommend_services(snapshot: Snapshot) -> list[dict[str, str]]:
    """Propose stop-list entries for units present in the snapshot."""
    patterns = [(re.compile(pattern), hint) for pattern, hint in OPTIMIZABLE_SERVICES]
    seen: set[str] = set()
    recommended = []
    for record in snapshot.records():
        if record.name in seen:
            continue
        for pattern, hint in patterns:
            if pattern.match(record.name):
                recommended.append({"name": record.name, "hint": hint})
                seen.add(record.name)
                break
    return recommended


@dataclass(slots=True)
class GameModeState:
    """Persisted game mode settings and session."""

    is_on: bool = False
    services_to_stop: list[dict[str, str]] = field(default_factory=list)
    stopped: list[dict[str, Any]] = field(default_factory=list)  # {'unit': str, 'user': bool}
    hints: dict[str, str] = field(default_factory=dict)
    configured: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GameModeState":
        data = data or {}
        return cls(
            is_on=bool(data.get("is_on", False)),
            services_to_stop=list(data.get("services_to_stop") or []),
            stopped=list(data.get("stopped") or []),
            hints=dict(data.get("hints") or {}),
            configured=bool(data.get("configured", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_on": self.is_on,
            "services_to_stop": self.services_to_stop,
            "stopped": self.stopped,
            "hints": self.hints,
            "configured": self.configured,
        }

    @property
    def names(self) -> list[str]:
        return [entry["name"] for entry in self.services_to_stop]


class GameMode:
    """
    Stops the running services of the stop list and restores them later.

    Mutations go through ActionExecutor.run_batch, so the watcher does not
    report them as detected changes.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        coordinator: WatcherCoordinator,
        store: JsonStore | None = None,
        changelog: ChangeLog | None = None,
    ) -> None:
        self._executor = executor
        self._coordinator = coordinator
        self._store = store
        self._changelog = changelog
        self._state = GameModeState.from_dict(store.get(GAMEMODE_KEY) if store else None)

    @property
    def state(self) -> GameModeState:
        return self._state

    def ensure_configured(self) -> None:
        """Fill the stop list from recommendations the first time only."""
        if self._state.configured:
            return
        self._state.services_to_stop = recommend_services(self._coordinator.snapshot())
        self._state.configured = True
        self._save()

    def reset(self) -> None:
        """Replace the stop list with the recommendations, keeping user hints."""
        self._state.services_to_stop = recommend_services(self._coordinator.snapshot())
        self._state.configured = True
        self._save()
        self._log("Reset list to defaults", ok=True)

    def clear(self) -> None:
        self._state.services_to_stop = []
        self._state.configured = True
        self._save()
        self._log("Cleared stop list", ok=True)

    def add(self, name: str, hint: str = "User-added service") -> None:
        if name in self._state.names:
            return
        self._state.services_to_stop.append({"name": name, "hint": hint})
        self._state.configured = True
        self._save()
        self._log(f"{name} to Game Mode", ok=True, action="Add")

    def remove(self, name: str) -> None:
        before = len(self._state.services_to_stop)
        self._state.services_to_stop = [e for e in self._state.services_to_stop if e["name"] != name]
        if len(self._state.services_to_stop) == before:
            return
        self._state.configured = True
        self._save()
        self._log(f"{name} from Game Mode", ok=True, action="Remove")

    def set_hint(self, name: str, hint: str) -> None:
        """Attach a user note to a service; an empty hint removes it."""
        hint = hint.strip()
        if hint:
            self._state.hints[name] = hint
        else:
            self._state.hints.pop(name, None)
        self._save()

    def activate(self) -> list[str]:
        """
        Stop every listed service that is currently running.

        Returns:
            Names of the services that were stopped.
        """
        if self._state.is_on:
            return [entry["unit"] for entry in self._state.stopped]

        self._coordinator.refresh()
        wanted = set(self._state.names)
        running = [
            rec
            for rec in self._coordinator.snapshot().records()
            if rec.name in wanted and rec.active_state == ACTIVE
        ]

        stopped: list[dict[str, Any]] = []
        try:
            for scope in (Scope.SYSTEM, Scope.USER):
                names = [rec.name for rec in running if rec.scope is scope]
                if names:
                    self._executor.run_batch(scope, ActionVerb.STOP, names)
                    stopped.extend({"unit": name, "user": scope is Scope.USER} for name in names)
        except ActionError as e:
            self._log("Activation failed", ok=False, error=e)
            if stopped:
                # Keep the session so the services that did stop can be restored
                self._state.is_on = True
                self._state.stopped = stopped
                self._save()
            raise

        self._state.is_on = True
        self._state.stopped = stopped
        self._save()
        if stopped:
            self._log(f"Stopped {len(stopped)} services", ok=True)
        else:
            self._log("No running services to stop", ok=True)
        return [entry["unit"] for entry in stopped]

    def deactivate(self) -> list[str]:
        """
        Start again the services game mode stopped that are still inactive.

        Returns:
            Names of the services that were started.
        """
        if not self._state.is_on:
            return []

        self._coordinator.refresh()
        current = self._coordinator.snapshot()
        to_start: dict[Scope, list[str]] = {Scope.SYSTEM: [], Scope.USER: []}
        for entry in self._state.stopped:
            scope = Scope.USER if entry.get("user") else Scope.SYSTEM
            record = current.get((scope, entry["unit"]))
            if record is not None and record.active_state != ACTIVE:
                to_start[scope].append(record.name)

        started: list[str] = []
        try:
            for scope, names in to_start.items():
                if names:
                    self._executor.run_batch(scope, ActionVerb.START, names)
                    started.extend(names)
        except ActionError as e:
            self._log("Deactivation failed", ok=False, error=e)
            raise

        self._state.is_on = False
        self._state.stopped = []
        self._save()
        if started:
            self._log(f"Restored {len(started)} services", ok=True)
        else:
            self._log("No services needed to be restored", ok=True)
        return started

    def _save(self) -> None:
        if self._store is not None:
            self._store.set(GAMEMODE_KEY, self._state.to_dict())

    def _log(self, message: str, ok: bool, error: Exception | None = None, action: str = GAME_MODE) -> None:
        if self._changelog is not None:
            self._changelog.record_action(action, message, ok, error)
