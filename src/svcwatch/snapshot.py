"""Build and serialize per-scope snapshots."""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from svcwatch.models import ACTIVE, ENABLED, FAILED, STATIC, Scope, Snapshot, UnitRecord

logger = logging.getLogger(__name__)


def build_snapshot(
    scope: Scope,
    units: Iterable[UnitRecord],
    unit_files: Mapping[str, str],
) -> Snapshot:
    """
    Merge live unit records with unit file enablement into one snapshot.

    Enablement is looked up by exact unit name and defaults to "static" when
    the unit has no unit file entry. Pure: the same inputs always produce an
    equal snapshot.
    """
    merged: dict[tuple[Scope, str], UnitRecord] = {}
    for unit in units:
        enabled_state = unit_files.get(unit.name) or STATIC
        record = replace(unit, enabled_state=enabled_state, scope=scope)
        merged[record.key] = record
    return Snapshot(merged, scopes={scope})


def summarize(snapshot: Snapshot) -> dict[str, int]:
    """Count total, running, enabled and failed units in a snapshot."""
    records = snapshot.records()
    return {
        "total": len(records),
        "running": sum(1 for r in records if r.active_state == ACTIVE),
        "enabled": sum(1 for r in records if r.enabled_state == ENABLED),
        "failed": sum(1 for r in records if r.active_state == FAILED),
    }


def snapshot_to_dict(snapshot: Snapshot) -> dict[str, Any]:
    """Convert a snapshot to a JSON-friendly dict."""
    return {
        "scopes": sorted(scope.value for scope in snapshot.scopes),
        "units": [
            {
                "name": rec.name,
                "scope": rec.scope.value,
                "active": rec.active_state,
                "sub": rec.sub_state,
                "enabled": rec.enabled_state,
                "description": rec.description,
            }
            for rec in snapshot.records()
        ],
    }


def snapshot_from_dict(data: Mapping[str, Any] | None) -> Snapshot:
    """
    Rebuild a snapshot persisted by snapshot_to_dict.

    Entries that cannot be read are skipped so that a damaged file degrades to
    fewer offline events instead of failing startup. Data without a "scopes"
    list covers the scopes its units belong to.
    """
    if not data:
        return Snapshot()
    scopes: set[Scope] | None = None
    if isinstance(data.get("scopes"), list):
        scopes = set()
        for value in data["scopes"]:
            try:
                scopes.add(Scope(value))
            except ValueError:
                logger.warning(f"Skipping unknown persisted scope: {value!r}")
    units: dict[tuple[Scope, str], UnitRecord] = {}
    for entry in data.get("units") or []:
        try:
            record = UnitRecord(
                name=str(entry["name"]),
                active_state=str(entry["active"]),
                sub_state=str(entry["sub"]),
                enabled_state=str(entry.get("enabled") or STATIC),
                scope=Scope(entry["scope"]),
                description=str(entry.get("description") or ""),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Skipping unreadable persisted unit entry: {entry!r}")
            continue
        units[record.key] = record
    return Snapshot(units, scopes=scopes)
