"""Service manager queries over the systemctl command line tool."""

import json
import logging
import os
import subprocess
from enum import Enum
from typing import Protocol

import psutil

from svcwatch.models import Scope, UnitRecord

logger = logging.getLogger(__name__)

SYSTEMD_RUNTIME_DIR = "/run/systemd/system"


class QueryError(RuntimeError):
    """A service manager query failed or returned unusable output."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class QueryKind(Enum):
    """Read-only queries understood by the process boundary."""

    LIST_UNITS = "list-units"
    LIST_UNIT_FILES = "list-unit-files"


_QUERY_ARGS: dict[QueryKind, list[str]] = {
    QueryKind.LIST_UNITS: [
        "list-units",
        "--type=service",
        "--all",
        "--no-pager",
        "--plain",
        "--output=json",
    ],
    QueryKind.LIST_UNIT_FILES: [
        "list-unit-files",
        "--type=service",
        "--no-pager",
        "--plain",
        "--output=json",
    ],
}


class ServiceManagerClient(Protocol):
    """Read side of a service manager, one call per scope and listing."""

    def fetch_units(self, scope: Scope) -> list[UnitRecord]: ...

    def fetch_unit_files(self, scope: Scope) -> dict[str, str]: ...


def systemctl_command(scope: Scope, *args: str, executable: str = "systemctl") -> list[str]:
    """Build a systemctl argv for the given scope."""
    cmd = [executable]
    if scope is Scope.USER:
        cmd.append("--user")
    cmd.extend(args)
    return cmd


class SystemctlClient:
    """
    ServiceManagerClient backed by `systemctl --output=json`.

    Each fetch spawns one systemctl process and blocks until it exits or the
    timeout expires. Failures of any kind surface as QueryError.
    """

    def __init__(self, timeout: float | None = 15.0, executable: str = "systemctl") -> None:
        """
        Initialize the SystemctlClient.

        Args:
            timeout: Seconds to wait for each systemctl call. None waits forever.
            executable: systemctl binary name or absolute path.
        """
        self._timeout = timeout
        self._executable = executable

    def run_query(self, scope: Scope, query: QueryKind) -> str:
        """Run one read-only query and return its stdout."""
        cmd = systemctl_command(scope, *_QUERY_ARGS[query], executable=self._executable)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as e:
            raise QueryError(f"{self._executable} not found") from e
        except subprocess.TimeoutExpired as e:
            raise QueryError(f"{' '.join(cmd)} timed out after {self._timeout}s") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise QueryError(
                f"{' '.join(cmd)} exited with {result.returncode}: {stderr or 'no output'}",
                stderr=stderr,
            )
        return result.stdout.strip()

    def fetch_units(self, scope: Scope) -> list[UnitRecord]:
        """List loaded service units for a scope (enablement not filled in)."""
        rows = _parse_json_rows(self.run_query(scope, QueryKind.LIST_UNITS), "unit")
        return [
            UnitRecord(
                name=row["unit"],
                active_state=str(row.get("active") or "unknown"),
                sub_state=str(row.get("sub") or "unknown"),
                scope=scope,
                description=str(row.get("description") or ""),
            )
            for row in rows
        ]

    def fetch_unit_files(self, scope: Scope) -> dict[str, str]:
        """Map unit file name to its boot-time enablement state."""
        rows = _parse_json_rows(self.run_query(scope, QueryKind.LIST_UNIT_FILES), "unit_file")
        return {row["unit_file"]: str(row.get("state") or "") for row in rows}


def _parse_json_rows(stdout: str, key_field: str) -> list[dict]:
    """Parse systemctl JSON output into a list of row dicts keyed by key_field."""
    if not stdout:
        # systemctl prints "[]" for an empty listing; nothing at all is not valid
        raise QueryError("empty output from systemctl")
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise QueryError(f"malformed systemctl output: {e}") from e
    if not isinstance(data, list):
        raise QueryError(f"expected a JSON array from systemctl, got {type(data).__name__}")
    rows = []
    for row in data:
        if not isinstance(row, dict) or not isinstance(row.get(key_field), str):
            raise QueryError(f"systemctl row without '{key_field}': {row!r}")
        rows.append(row)
    return rows


def has_systemd() -> bool:
    """Check whether systemd is the running init system."""
    if os.path.isdir(SYSTEMD_RUNTIME_DIR):
        return True
    try:
        return psutil.Process(1).name() == "systemd"
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        logger.debug("Could not inspect PID 1", exc_info=True)
        return False
