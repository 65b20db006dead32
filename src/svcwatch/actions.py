"""Mutating systemctl commands (enable, disable, start, stop, restart)."""

import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from svcwatch.client import systemctl_command
from svcwatch.coordinator import WatcherCoordinator
from svcwatch.models import Scope

logger = logging.getLogger(__name__)

UNIT_NAME_RE = re.compile(r"^[a-zA-Z0-9._@][a-zA-Z0-9.\-_@]*$")


class ActionVerb(Enum):
    """Mutations the action boundary can issue."""

    ENABLE = "enable"
    DISABLE = "disable"
    START = "start"
    STOP = "stop"
    RESTART = "restart"


class ActionError(RuntimeError):
    """A mutation failed; the message carries systemctl's stderr verbatim."""

    def __init__(
        self,
        message: str,
        verb: ActionVerb | None = None,
        units: Sequence[str] = (),
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.verb = verb
        self.units = list(units)
        self.stderr = stderr


@dataclass(slots=True, frozen=True)
class ActionResult:
    """Outcome of a successful mutation."""

    scope: Scope
    verb: ActionVerb
    units: tuple[str, ...]
    output: str


def validate_unit_name(name: str) -> str:
    """Return name unchanged if it is a safe unit name, else raise ActionError."""
    if not UNIT_NAME_RE.match(name):
        raise ActionError(f"Invalid service name format: {name}", units=[name])
    return name


class ActionExecutor:
    """
    Issues mutations through systemctl, singly or batched.

    Batches run with the attached coordinator paused so that the watcher does
    not report the caller's own changes as detected ones. Failures are never
    retried.
    """

    def __init__(
        self,
        coordinator: WatcherCoordinator | None = None,
        timeout: float | None = 60.0,
        executable: str = "systemctl",
    ) -> None:
        self._coordinator = coordinator
        self._timeout = timeout
        self._executable = executable

    def run_action(self, scope: Scope, verb: ActionVerb, units: Sequence[str]) -> ActionResult:
        """
        Run `systemctl [--user] <verb> <units...>` once.

        Raises:
            ActionError: On an invalid unit name, a missing systemctl, a timeout
                or a non-zero exit.
        """
        if not units:
            raise ActionError(f"No units given to {verb.value}", verb=verb)
        names = [validate_unit_name(name) for name in units]
        cmd = systemctl_command(scope, verb.value, *names, executable=self._executable)
        logger.info(f"Running {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self._timeout)
        except FileNotFoundError as e:
            raise ActionError(f"{self._executable} not found", verb=verb, units=names) from e
        except subprocess.TimeoutExpired as e:
            raise ActionError(
                f"{verb.value} {' '.join(names)} timed out after {self._timeout}s",
                verb=verb,
                units=names,
            ) from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.warning(f"{verb.value} {' '.join(names)} failed: {stderr}")
            raise ActionError(
                stderr or result.stdout.strip() or f"exit status {result.returncode}",
                verb=verb,
                units=names,
                stderr=stderr,
            )
        return ActionResult(
            scope=scope,
            verb=verb,
            units=tuple(names),
            output=(result.stdout or result.stderr or "").strip(),
        )

    def run_batch(self, scope: Scope, verb: ActionVerb, units: Sequence[str]) -> ActionResult:
        """
        Run one mutation over many units with change reporting paused.

        The coordinator's snapshots are refreshed before reporting resumes,
        including after a failure that may have applied part of the batch.
        """
        if self._coordinator is None:
            return self.run_action(scope, verb, units)
        with self._coordinator.paused():
            try:
                return self.run_action(scope, verb, units)
            finally:
                self._coordinator.refresh()

    def enable(self, unit: str, scope: Scope = Scope.SYSTEM) -> ActionResult:
        return self.run_batch(scope, ActionVerb.ENABLE, [unit])

    def disable(self, unit: str, scope: Scope = Scope.SYSTEM) -> ActionResult:
        return self.run_batch(scope, ActionVerb.DISABLE, [unit])

    def start(self, unit: str, scope: Scope = Scope.SYSTEM) -> ActionResult:
        return self.run_batch(scope, ActionVerb.START, [unit])

    def stop(self, unit: str, scope: Scope = Scope.SYSTEM) -> ActionResult:
        return self.run_batch(scope, ActionVerb.STOP, [unit])

    def restart(self, unit: str, scope: Scope = Scope.SYSTEM) -> ActionResult:
        return self.run_batch(scope, ActionVerb.RESTART, [unit])
