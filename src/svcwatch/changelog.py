"""Bounded, persisted log of detected changes and user actions."""

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from svcwatch.models import ChangeEvent
from svcwatch.store import CHANGES_KEY, JsonStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 500

DETECTED = "Detected"
WHILE_CLOSED = "While closed"
SUCCESS = "Success"
FAILED = "Failed"

AGE_GROUPS = ("Today", "Yesterday", "Last 7 Days", "Last 30 Days", "Older")


@dataclass(slots=True, frozen=True)
class LogEntry:
    """One line of the change log."""

    action: str  # 'Detected', 'Start', 'Stop', 'Game Mode', ...
    service_name: str
    status: str  # 'Success', 'Failed', 'Detected', 'While closed'
    timestamp: str  # ISO 8601, UTC
    error: str | None = None

    @property
    def time(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)


class ChangeLog:
    """
    Newest-first list of log entries, capped at a fixed size.

    Can be subscribed to a WatcherCoordinator directly: calling the instance
    with a batch records one Detected entry per event.
    """

    def __init__(self, store: JsonStore | None = None, limit: int = DEFAULT_LIMIT) -> None:
        self._store = store
        self._limit = max(1, limit)
        self._lock = threading.Lock()
        self._entries: list[LogEntry] = self._load()

    def __call__(self, events: list[ChangeEvent]) -> None:
        self.record_events(events)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def record_events(self, events: list[ChangeEvent]) -> None:
        """Record a batch of detected (or offline) change events."""
        new_entries = [
            LogEntry(
                action=event.kind.value if event.offline else DETECTED,
                service_name=event.describe(),
                status=WHILE_CLOSED if event.offline else DETECTED,
                timestamp=event.observed_at.astimezone(timezone.utc).isoformat(),
            )
            for event in events
        ]
        self._add(new_entries)

    def record_action(
        self,
        action: str,
        target: str,
        ok: bool,
        error: Exception | str | None = None,
    ) -> LogEntry:
        """Record a user initiated action and its outcome."""
        entry = LogEntry(
            action=action,
            service_name=target,
            status=SUCCESS if ok else FAILED,
            timestamp=datetime.now(timezone.utc).isoformat(),
            error=str(error) if error is not None else None,
        )
        self._add([entry])
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._save()

    def filter(self, term: str = "", kind: str = "all") -> list[LogEntry]:
        """
        Return entries matching a search term and an action/status filter.

        The term matches service name or action, case-insensitively. A kind of
        "all" disables the second filter; otherwise the kind must occur in the
        entry's action or status.
        """
        term = term.lower()
        result = []
        for entry in self.entries:
            if term and term not in entry.service_name.lower() and term not in entry.action.lower():
                continue
            if kind != "all" and kind not in entry.action and kind not in entry.status:
                continue
            result.append(entry)
        return result

    def group_by_age(
        self,
        entries: list[LogEntry] | None = None,
        now: datetime | None = None,
    ) -> dict[str, list[LogEntry]]:
        """
        Bucket entries into Today / Yesterday / Last 7 Days / Last 30 Days / Older.

        Day boundaries are local midnight. Defaults to all entries of the log.
        """
        if entries is None:
            entries = self.entries
        now = (now or datetime.now(timezone.utc)).astimezone()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        bounds = [
            ("Today", today),
            ("Yesterday", today - timedelta(days=1)),
            ("Last 7 Days", today - timedelta(days=7)),
            ("Last 30 Days", today - timedelta(days=30)),
        ]
        groups: dict[str, list[LogEntry]] = {name: [] for name in AGE_GROUPS}
        for entry in entries:
            when = entry.time.astimezone()
            for name, start in bounds:
                if when >= start:
                    groups[name].append(entry)
                    break
            else:
                groups["Older"].append(entry)
        return groups

    def _add(self, new_entries: list[LogEntry]) -> None:
        if not new_entries:
            return
        with self._lock:
            # Newest first, as if each entry of the batch were prepended in turn
            self._entries = (new_entries[::-1] + self._entries)[: self._limit]
            self._save()

    def _load(self) -> list[LogEntry]:
        if self._store is None:
            return []
        entries = []
        for raw in self._store.get(CHANGES_KEY, []) or []:
            try:
                entries.append(LogEntry(**raw))
            except TypeError:
                logger.warning(f"Dropping malformed change log entry: {raw!r}")
        return entries[: self._limit]

    def _save(self) -> None:
        if self._store is not None:
            self._store.set(CHANGES_KEY, [asdict(entry) for entry in self._entries])
