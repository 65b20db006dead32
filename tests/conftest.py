"""Shared fixtures for svcwatch tests."""

import subprocess
import threading

import pytest

from svcwatch.client import QueryError
from svcwatch.config import WatcherConfig
from svcwatch.models import Scope, UnitRecord


class FakeClient:
    """In-memory ServiceManagerClient whose state tests edit directly."""

    def __init__(self) -> None:
        self.units: dict[Scope, dict[str, tuple[str, str, str]]] = {
            Scope.SYSTEM: {},
            Scope.USER: {},
        }
        self.failing: set[Scope] = set()
        self.fetch_count = 0
        # When set, fetch_units blocks on it after signalling `entered`
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def set(
        self,
        name: str,
        active: str,
        sub: str,
        enabled: str = "enabled",
        scope: Scope = Scope.SYSTEM,
    ) -> None:
        self.units[scope][name] = (active, sub, enabled)

    def remove(self, name: str, scope: Scope = Scope.SYSTEM) -> None:
        del self.units[scope][name]

    def fetch_units(self, scope: Scope) -> list[UnitRecord]:
        self.fetch_count += 1
        if self.gate is not None:
            self.entered.set()
            self.gate.wait(timeout=5.0)
        if scope in self.failing:
            raise QueryError(f"{scope.value} query failed", stderr="Failed to connect to bus")
        return [
            UnitRecord(name=name, active_state=active, sub_state=sub, scope=scope)
            for name, (active, sub, _) in self.units[scope].items()
        ]

    def fetch_unit_files(self, scope: Scope) -> dict[str, str]:
        if scope in self.failing:
            raise QueryError(f"{scope.value} query failed")
        return {name: enabled for name, (_, _, enabled) in self.units[scope].items()}


class FakeSystemctl:
    """
    Stand-in for subprocess.run that applies start/stop/enable/disable to a FakeClient.

    Unit names listed in `failing_units` make the call exit non-zero.
    """

    def __init__(self, client: FakeClient) -> None:
        self.client = client
        self.calls: list[list[str]] = []
        self.failing_units: set[str] = set()

    def __call__(self, cmd, capture_output=True, text=True, timeout=None):
        self.calls.append(list(cmd))
        args = list(cmd[1:])
        scope = Scope.SYSTEM
        if args and args[0] == "--user":
            scope = Scope.USER
            args = args[1:]
        verb, names = args[0], args[1:]
        bad = [n for n in names if n in self.failing_units]
        if bad:
            return subprocess.CompletedProcess(
                cmd, 1, "", f"Failed to {verb} {bad[0]}: Access denied\n"
            )
        for name in names:
            active, sub, enabled = self.client.units[scope].get(name, ("inactive", "dead", "disabled"))
            if verb == "start" or verb == "restart":
                active, sub = "active", "running"
            elif verb == "stop":
                active, sub = "inactive", "dead"
            elif verb == "enable":
                enabled = "enabled"
            elif verb == "disable":
                enabled = "disabled"
            self.client.set(name, active, sub, enabled, scope=scope)
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def fake_client() -> FakeClient:
    """A FakeClient with a few system and user services."""
    client = FakeClient()
    client.set("sshd.service", "active", "running", "enabled")
    client.set("cups.service", "active", "running", "enabled")
    client.set("foo.service", "inactive", "dead", "disabled")
    client.set("syncthing.service", "active", "running", "enabled", scope=Scope.USER)
    return client


@pytest.fixture
def fake_systemctl(fake_client, monkeypatch) -> FakeSystemctl:
    """Route svcwatch.actions' subprocess.run to a FakeSystemctl."""
    runner = FakeSystemctl(fake_client)
    monkeypatch.setattr("svcwatch.actions.subprocess.run", runner)
    return runner


@pytest.fixture
def system_only(tmp_path) -> WatcherConfig:
    """Config watching only system services, sequentially."""
    return WatcherConfig(
        poll_interval=0.1,
        scopes=[Scope.SYSTEM],
        concurrent_scopes=False,
        store_path=tmp_path / "state.json",
    )


@pytest.fixture
def both_scopes(tmp_path) -> WatcherConfig:
    """Config watching system and user services concurrently."""
    return WatcherConfig(
        poll_interval=0.1,
        store_path=tmp_path / "state.json",
    )
