"""svcwatch command line interface."""

import logging
import threading
from collections.abc import Iterable
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Optional

import typer

from svcwatch.actions import ActionError, ActionExecutor, ActionVerb
from svcwatch.changelog import AGE_GROUPS, ChangeLog
from svcwatch.client import QueryError, SystemctlClient, has_systemd
from svcwatch.config import WatcherConfig, load_config
from svcwatch.coordinator import WatcherCoordinator
from svcwatch.gamemode import GameMode
from svcwatch.models import ChangeEvent, Scope, Snapshot, UnitRecord
from svcwatch.snapshot import build_snapshot, snapshot_from_dict, snapshot_to_dict, summarize
from svcwatch.store import SNAPSHOT_KEY, JsonStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(
    name="svcwatch",
    add_completion=False,
    no_args_is_help=True,
    help="Watch systemd services for changes and manage them.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
gamemode_app = typer.Typer(help="Temporarily stop a list of services.", no_args_is_help=True)
app.add_typer(gamemode_app, name="gamemode")


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging for command line use."""
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def _version() -> str:
    try:
        return _pkg_version("svcwatch")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _config(ctx: typer.Context) -> WatcherConfig:
    return ctx.obj["config"]


def _scope_for(user: bool) -> Scope:
    return Scope.USER if user else Scope.SYSTEM


def format_event(event: ChangeEvent) -> str:
    """Format one change event as a single output line."""
    when = event.observed_at.astimezone().strftime("%H:%M:%S")
    return f"{when}  {event.kind.value:<9}{event.scope.value:<8}{event.describe()}"


def format_export(records: Iterable[UnitRecord]) -> str:
    """Render units as a fixed-width text table for export."""
    lines = [f"{'UNIT':<50}{'ACTIVE':<15}ENABLED", "-" * 75]
    for rec in records:
        name = f"{rec.name} (user)" if rec.is_user else rec.name
        lines.append(f"{name:<50}{rec.active_state:<15}{rec.enabled_state}")
    return "\n".join(lines) + "\n"


def _fetch_current(config: WatcherConfig, scopes: list[Scope]) -> Snapshot:
    client = SystemctlClient(timeout=config.query_timeout)
    snapshot = Snapshot()
    for scope in scopes:
        try:
            snapshot = snapshot.merge(
                build_snapshot(scope, client.fetch_units(scope), client.fetch_unit_files(scope))
            )
        except QueryError as e:
            typer.echo(f"Failed to list {scope.value} services: {e}", err=True)
    return snapshot


def _selected_scopes(config: WatcherConfig, user: bool, system: bool) -> list[Scope]:
    if user and not system:
        return [Scope.USER]
    if system and not user:
        return [Scope.SYSTEM]
    return list(config.scopes)


@app.callback()
def _root(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to a JSON config file"),
):
    configure_logging(logging.DEBUG if verbose else logging.INFO)
    try:
        config = load_config(config_path)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)
    ctx.obj = {"config": config}


@app.command()
def version():
    """Show version."""
    typer.echo(_version())


@app.command()
def watch(
    ctx: typer.Context,
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Seconds between polls"),
    offline: bool = typer.Option(True, "--offline/--no-offline", help="Report changes made while not watching"),
):
    """Print service changes as they happen until interrupted."""
    config = _config(ctx)
    if interval is not None:
        config = config.model_copy(update={"poll_interval": max(0.1, interval)})
    if not has_systemd():
        typer.echo("systemd does not appear to be running on this system.", err=True)
        raise typer.Exit(code=1)

    store = JsonStore(config.store_path)
    changelog = ChangeLog(store, limit=config.change_log_limit)
    coordinator = WatcherCoordinator(SystemctlClient(timeout=config.query_timeout), config)

    if offline:
        persisted = snapshot_from_dict(store.get(SNAPSHOT_KEY))
        if persisted.scopes:
            events = coordinator.detect_offline_changes(persisted)
            changelog.record_events(events)
            for event in events:
                typer.echo(f"{format_event(event)}  (while closed)")
        store.delete(SNAPSHOT_KEY)

    def _print(events: list[ChangeEvent]) -> None:
        for event in events:
            typer.echo(format_event(event))

    coordinator.subscribe(changelog)
    coordinator.start(_print)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        coordinator.close()
        snapshot = coordinator.snapshot()
        if snapshot.scopes:
            store.set(SNAPSHOT_KEY, snapshot_to_dict(snapshot))


@app.command("list")
def list_services(
    ctx: typer.Context,
    user: bool = typer.Option(False, "--user", help="Only user services"),
    system: bool = typer.Option(False, "--system", help="Only system services"),
):
    """List services with their active and boot-time state."""
    config = _config(ctx)
    snapshot = _fetch_current(config, _selected_scopes(config, user, system))
    for rec in sorted(snapshot.records(), key=lambda r: (r.scope.value, r.name)):
        typer.echo(f"{rec.name}\t{rec.active_state}({rec.sub_state})\t{rec.enabled_state}\t{rec.scope.value}")
    stats = summarize(snapshot)
    typer.echo(
        f"{stats['total']} services, {stats['running']} running, "
        f"{stats['enabled']} enabled, {stats['failed']} failed",
        err=True,
    )


@app.command()
def export(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="File to write"),
    user: bool = typer.Option(False, "--user", help="Only user services"),
    system: bool = typer.Option(False, "--system", help="Only system services"),
):
    """Export the service list to a text file."""
    config = _config(ctx)
    snapshot = _fetch_current(config, _selected_scopes(config, user, system))
    if not snapshot:
        typer.echo("Nothing to export.", err=True)
        raise typer.Exit(code=1)
    records = sorted(snapshot.records(), key=lambda r: (r.scope.value, r.name))
    path.write_text(format_export(records))
    typer.echo(f"Exported {len(records)} services to {path}")


def _run_action(ctx: typer.Context, verb: ActionVerb, units: list[str], user: bool) -> None:
    config = _config(ctx)
    changelog = ChangeLog(JsonStore(config.store_path), limit=config.change_log_limit)
    executor = ActionExecutor()
    action = verb.value.capitalize()
    try:
        executor.run_action(_scope_for(user), verb, units)
    except ActionError as e:
        changelog.record_action(action, " ".join(units), ok=False, error=e)
        typer.echo(f"Failed to {verb.value} {' '.join(units)}: {e}", err=True)
        raise typer.Exit(code=1)
    changelog.record_action(action, " ".join(units), ok=True)
    typer.echo(f"{verb.value}: {' '.join(units)}")


@app.command()
def enable(
    ctx: typer.Context,
    units: list[str] = typer.Argument(...),
    user: bool = typer.Option(False, "--user"),
):
    """Enable services at boot."""
    _run_action(ctx, ActionVerb.ENABLE, units, user)


@app.command()
def disable(
    ctx: typer.Context,
    units: list[str] = typer.Argument(...),
    user: bool = typer.Option(False, "--user"),
):
    """Disable services at boot."""
    _run_action(ctx, ActionVerb.DISABLE, units, user)


@app.command()
def start(
    ctx: typer.Context,
    units: list[str] = typer.Argument(...),
    user: bool = typer.Option(False, "--user"),
):
    """Start services."""
    _run_action(ctx, ActionVerb.START, units, user)


@app.command()
def stop(
    ctx: typer.Context,
    units: list[str] = typer.Argument(...),
    user: bool = typer.Option(False, "--user"),
):
    """Stop services."""
    _run_action(ctx, ActionVerb.STOP, units, user)


@app.command()
def restart(
    ctx: typer.Context,
    units: list[str] = typer.Argument(...),
    user: bool = typer.Option(False, "--user"),
):
    """Restart services."""
    _run_action(ctx, ActionVerb.RESTART, units, user)


@app.command()
def changes(
    ctx: typer.Context,
    search: str = typer.Option("", "--search", "-s", help="Filter by service or action"),
    kind: str = typer.Option("all", "--filter", "-f", help="Action or status to show, e.g. Detected"),
    clear: bool = typer.Option(False, "--clear", help="Delete all log entries"),
):
    """Show the change log grouped by age."""
    config = _config(ctx)
    changelog = ChangeLog(JsonStore(config.store_path), limit=config.change_log_limit)
    if clear:
        changelog.clear()
        typer.echo("Change log cleared.")
        return

    wanted = changelog.filter(search, kind)
    if not wanted:
        typer.echo("No changes recorded.")
        return
    groups = changelog.group_by_age(wanted)
    for group in AGE_GROUPS:
        entries = groups[group]
        if not entries:
            continue
        typer.echo(group)
        for entry in entries:
            line = f"  {entry.time.astimezone():%Y-%m-%d %H:%M}  {entry.action:<10}{entry.service_name}  [{entry.status}]"
            if entry.error:
                line += f"  error: {entry.error}"
            typer.echo(line)


def _game_mode(ctx: typer.Context) -> GameMode:
    config = _config(ctx)
    store = JsonStore(config.store_path)
    coordinator = WatcherCoordinator(SystemctlClient(timeout=config.query_timeout), config)
    executor = ActionExecutor(coordinator)
    mode = GameMode(executor, coordinator, store, ChangeLog(store, limit=config.change_log_limit))
    coordinator.refresh()
    mode.ensure_configured()
    return mode


@gamemode_app.command("on")
def gamemode_on(ctx: typer.Context):
    """Stop the running services on the game mode list."""
    mode = _game_mode(ctx)
    try:
        stopped = mode.activate()
    except ActionError as e:
        typer.echo(f"Error activating Game Mode: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Game Mode active, stopped {len(stopped)} services")
    for name in stopped:
        typer.echo(f"  {name}")


@gamemode_app.command("off")
def gamemode_off(ctx: typer.Context):
    """Restore the services game mode stopped."""
    mode = _game_mode(ctx)
    try:
        started = mode.deactivate()
    except ActionError as e:
        typer.echo(f"Error deactivating Game Mode: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Game Mode off, restored {len(started)} services")


@gamemode_app.command("status")
def gamemode_status(ctx: typer.Context):
    """Show the game mode list and session."""
    state = _game_mode(ctx).state
    typer.echo(f"Game Mode: {'on' if state.is_on else 'off'}")
    for entry in state.services_to_stop:
        hint = state.hints.get(entry["name"]) or entry.get("hint", "")
        typer.echo(f"  {entry['name']}\t{hint}")
    if state.is_on:
        typer.echo(f"Stopped this session: {', '.join(e['unit'] for e in state.stopped) or 'none'}")


@gamemode_app.command("add")
def gamemode_add(ctx: typer.Context, name: str, hint: str = typer.Option("User-added service", "--hint")):
    """Add a service to the game mode list."""
    _game_mode(ctx).add(name, hint)


@gamemode_app.command("remove")
def gamemode_remove(ctx: typer.Context, name: str):
    """Remove a service from the game mode list."""
    _game_mode(ctx).remove(name)


@gamemode_app.command("hint")
def gamemode_hint(ctx: typer.Context, name: str, text: str = typer.Argument("")):
    """Attach a note to a service on the list (empty text removes it)."""
    _game_mode(ctx).set_hint(name, text)


@gamemode_app.command("reset")
def gamemode_reset(ctx: typer.Context):
    """Reset the game mode list to the recommended services."""
    _game_mode(ctx).reset()
    typer.echo("Game Mode list has been reset to defaults.")


def main() -> None:
    """Entry point for svcwatch."""
    app()


if __name__ == "__main__":
    main()
