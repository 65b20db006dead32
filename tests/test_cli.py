"""Tests for the svcwatch command line interface."""

from datetime import datetime, timezone

import pytest
from typer.testing import CliRunner

from svcwatch import cli
from svcwatch.changelog import ChangeLog
from svcwatch.cli import app, format_event, format_export
from svcwatch.models import ChangeEvent, ChangeKind, Scope, UnitRecord
from svcwatch.store import JsonStore

runner = CliRunner()


@pytest.fixture
def env(tmp_path, monkeypatch, fake_client):
    """Point config and state at tmp_path and systemctl queries at the fake client."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.setenv("SVCWATCH_STORE", str(tmp_path / "state.json"))
    monkeypatch.delenv("SVCWATCH_CONFIG", raising=False)
    monkeypatch.delenv("SVCWATCH_POLL_INTERVAL", raising=False)
    monkeypatch.setattr(cli, "SystemctlClient", lambda timeout=None: fake_client)
    return tmp_path


def test_format_event():
    """Test one event renders as a single line with kind and scope."""
    new = UnitRecord("syncthing.service", "failed", "failed", scope=Scope.USER)
    event = ChangeEvent(
        ChangeKind.FAILED,
        Scope.USER,
        "syncthing.service",
        None,
        new,
        datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
    )

    line = format_event(event)

    assert "Failed" in line
    assert "user" in line
    assert line.endswith("syncthing.service (user) is now failed (failed)")


def test_format_export():
    """Test the export table layout."""
    text = format_export(
        [
            UnitRecord("sshd.service", "active", "running", "enabled"),
            UnitRecord("syncthing.service", "inactive", "dead", "disabled", scope=Scope.USER),
        ]
    )
    lines = text.splitlines()

    assert lines[0] == f"{'UNIT':<50}{'ACTIVE':<15}ENABLED"
    assert lines[1] == "-" * 75
    assert lines[2] == f"{'sshd.service':<50}{'active':<15}enabled"
    assert lines[3] == f"{'syncthing.service (user)':<50}{'inactive':<15}disabled"
    assert text.endswith("\n")


def test_version(env):
    """Test the version command prints something."""
    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert result.output.strip()


def test_invalid_config_exits(env):
    """Test a broken config file is reported with exit code 2."""
    path = env / "bad.json"
    path.write_text("{oops")

    result = runner.invoke(app, ["--config", str(path), "version"])

    assert result.exit_code == 2
    assert "Cannot read config file" in result.output


def test_list(env):
    """Test list prints every unit and a summary."""
    result = runner.invoke(app, ["list"])

    assert result.exit_code == 0
    assert "sshd.service\tactive(running)\tenabled\tsystem" in result.output
    assert "syncthing.service\tactive(running)\tenabled\tuser" in result.output
    assert "4 services, 3 running, 3 enabled, 0 failed" in result.output


def test_list_user_only(env):
    """Test --user limits the listing to user services."""
    result = runner.invoke(app, ["list", "--user"])

    assert "syncthing.service" in result.output
    assert "sshd.service" not in result.output


def test_list_reports_query_errors(env, fake_client):
    """Test a failing scope is reported while the other is still listed."""
    fake_client.failing.add(Scope.USER)

    result = runner.invoke(app, ["list"])

    assert result.exit_code == 0
    assert "Failed to list user services" in result.output
    assert "sshd.service" in result.output


def test_export(env):
    """Test export writes the table to the given file."""
    target = env / "services.txt"

    result = runner.invoke(app, ["export", str(target)])

    assert result.exit_code == 0
    content = target.read_text()
    assert content.startswith("UNIT")
    assert "syncthing.service (user)" in content
    assert "Exported 4 services" in result.output


class TestActions:
    """Tests for start/stop/enable/disable/restart commands."""

    def test_start_success_is_logged(self, env, fake_systemctl):
        """Test a successful start runs systemctl and records a log entry."""
        result = runner.invoke(app, ["start", "foo.service"])

        assert result.exit_code == 0
        assert fake_systemctl.calls == [["systemctl", "start", "foo.service"]]
        entry = ChangeLog(JsonStore(env / "state.json")).entries[0]
        assert (entry.action, entry.service_name, entry.status) == ("Start", "foo.service", "Success")

    def test_user_flag(self, env, fake_systemctl):
        """Test --user targets the user manager."""
        result = runner.invoke(app, ["stop", "--user", "syncthing.service"])

        assert result.exit_code == 0
        assert fake_systemctl.calls == [["systemctl", "--user", "stop", "syncthing.service"]]

    def test_failure_exits_nonzero(self, env, fake_systemctl):
        """Test a failing action prints systemctl's error and exits 1."""
        fake_systemctl.failing_units.add("cups.service")

        result = runner.invoke(app, ["disable", "cups.service"])

        assert result.exit_code == 1
        assert "Failed to disable cups.service: Access denied" in result.output
        entry = ChangeLog(JsonStore(env / "state.json")).entries[0]
        assert entry.status == "Failed"

    def test_invalid_name(self, env, fake_systemctl):
        """Test an unsafe unit name is refused without running systemctl."""
        result = runner.invoke(app, ["restart", "foo;reboot"])

        assert result.exit_code == 1
        assert fake_systemctl.calls == []


class TestChanges:
    """Tests for the changes command."""

    def test_empty(self, env):
        """Test an empty log says so."""
        result = runner.invoke(app, ["changes"])

        assert result.exit_code == 0
        assert "No changes recorded." in result.output

    def test_grouped_output_and_filters(self, env):
        """Test entries are shown under their age group and can be searched."""
        log = ChangeLog(JsonStore(env / "state.json"))
        log.record_action("Start", "foo.service", ok=True)
        log.record_action("Stop", "cups.service", ok=False, error="Access denied")

        result = runner.invoke(app, ["changes"])
        assert "Today" in result.output
        assert "foo.service" in result.output
        assert "error: Access denied" in result.output

        result = runner.invoke(app, ["changes", "--search", "cups"])
        assert "cups.service" in result.output
        assert "foo.service" not in result.output

        result = runner.invoke(app, ["changes", "-f", "Success"])
        assert "foo.service" in result.output
        assert "cups.service" not in result.output

    def test_clear(self, env):
        """Test --clear empties the log."""
        ChangeLog(JsonStore(env / "state.json")).record_action("Start", "foo.service", ok=True)

        result = runner.invoke(app, ["changes", "--clear"])

        assert result.exit_code == 0
        assert ChangeLog(JsonStore(env / "state.json")).entries == []


class TestGameModeCommands:
    """Tests for the gamemode sub-commands."""

    def test_status_shows_recommendations(self, env):
        """Test the first status call proposes a stop list."""
        result = runner.invoke(app, ["gamemode", "status"])

        assert result.exit_code == 0
        assert "Game Mode: off" in result.output
        assert "cups.service\tPrinting service" in result.output

    def test_on_and_off(self, env, fake_systemctl, fake_client):
        """Test game mode stops and later restores listed services."""
        result = runner.invoke(app, ["gamemode", "on"])
        assert result.exit_code == 0
        assert "stopped 1 services" in result.output
        assert fake_client.units[Scope.SYSTEM]["cups.service"][0] == "inactive"

        result = runner.invoke(app, ["gamemode", "off"])
        assert result.exit_code == 0
        assert "restored 1 services" in result.output
        assert fake_client.units[Scope.SYSTEM]["cups.service"][0] == "active"

    def test_add_hint_remove(self, env):
        """Test editing the list and hints from the command line."""
        runner.invoke(app, ["gamemode", "add", "sshd.service", "--hint", "remote access"])
        runner.invoke(app, ["gamemode", "hint", "sshd.service", "only at home"])

        result = runner.invoke(app, ["gamemode", "status"])
        assert "sshd.service\tonly at home" in result.output

        runner.invoke(app, ["gamemode", "remove", "sshd.service"])
        result = runner.invoke(app, ["gamemode", "status"])
        assert "sshd.service" not in result.output

    def test_on_failure(self, env, fake_systemctl):
        """Test an activation error is printed and exits 1."""
        fake_systemctl.failing_units.add("cups.service")

        result = runner.invoke(app, ["gamemode", "on"])

        assert result.exit_code == 1
        assert "Error activating Game Mode" in result.output


def test_watch_requires_systemd(env, monkeypatch):
    """Test watch refuses to run without systemd."""
    monkeypatch.setattr(cli, "has_systemd", lambda: False)

    result = runner.invoke(app, ["watch"])

    assert result.exit_code == 1
    assert "systemd does not appear to be running" in result.output
