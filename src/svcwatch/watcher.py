"""Per-scope watcher holding the previous snapshot and diffing against it."""

import logging
from datetime import datetime, timezone
from enum import Enum

from svcwatch.classifier import diff_snapshots
from svcwatch.client import QueryError, ServiceManagerClient
from svcwatch.models import ChangeEvent, Scope, Snapshot
from svcwatch.snapshot import build_snapshot

logger = logging.getLogger(__name__)


class InitializationError(QueryError):
    """The baseline snapshot for a scope could not be fetched."""


class WatcherState(Enum):
    """Lifecycle states of a ScopedWatcher."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    POLLING = "polling"
    STOPPED = "stopped"


class ScopedWatcher:
    """
    Owns the last known snapshot of one scope and diffs each new poll against it.

    A failed fetch never replaces the stored snapshot: an empty or partial
    listing from a broken query would otherwise look like every unit was
    removed (or, for the baseline, added).
    """

    def __init__(self, scope: Scope, client: ServiceManagerClient) -> None:
        self._scope = scope
        self._client = client
        self._state = WatcherState.UNINITIALIZED
        self._snapshot: Snapshot | None = None
        self._consecutive_failures = 0
        self._last_error: QueryError | None = None

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def snapshot(self) -> Snapshot | None:
        """The current baseline; immutable, replaced wholesale on each tick."""
        return self._snapshot

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_error(self) -> QueryError | None:
        return self._last_error

    def fetch(self) -> Snapshot:
        """Query the service manager and build a fresh snapshot for this scope."""
        units = self._client.fetch_units(self._scope)
        unit_files = self._client.fetch_unit_files(self._scope)
        return build_snapshot(self._scope, units, unit_files)

    def initialize(self) -> bool:
        """
        Fetch the baseline snapshot.

        Returns:
            True once a baseline is stored, False if the fetch failed (the
            watcher stays uninitialized and may be retried) or it was stopped.
        """
        if self._state is WatcherState.STOPPED:
            return False
        if self._state is not WatcherState.UNINITIALIZED:
            return True
        try:
            snapshot = self._fetch_baseline()
        except InitializationError as e:
            self._record_failure(e)
            return False

        self._snapshot = snapshot
        self._state = WatcherState.INITIALIZED
        self._record_success()
        logger.info(f"{self._scope.value} watcher initialized with {len(snapshot)} units")
        return True

    def tick(self, now: datetime | None = None) -> list[ChangeEvent]:
        """
        Poll once and return the classified changes since the previous poll.

        Uninitialized watchers retry initialization instead and report nothing.
        """
        if self._state is WatcherState.STOPPED:
            return []
        if self._state is WatcherState.UNINITIALIZED:
            self.initialize()
            return []

        try:
            new_snapshot = self.fetch()
        except QueryError as e:
            self._record_failure(e)
            return []
        # stop() may have run while the fetch was blocked
        if self._state is WatcherState.STOPPED:
            return []

        observed_at = now or datetime.now(timezone.utc)
        events = diff_snapshots(self._snapshot, new_snapshot, observed_at)
        self._snapshot = new_snapshot
        self._state = WatcherState.POLLING
        self._record_success()
        return events

    def reconcile(self, persisted: Snapshot, now: datetime | None = None) -> list[ChangeEvent]:
        """
        Diff a snapshot saved by an earlier session against the current baseline.

        Returns nothing when the saved snapshot never covered this scope, since
        every current unit would otherwise look added.
        """
        if self._snapshot is None:
            return []
        if self._scope not in persisted.scopes:
            logger.debug(f"No saved {self._scope.value} services to compare against")
            return []
        observed_at = now or datetime.now(timezone.utc)
        return diff_snapshots(
            persisted.for_scope(self._scope),
            self._snapshot,
            observed_at,
            offline=True,
        )

    def stop(self) -> None:
        self._state = WatcherState.STOPPED

    def _fetch_baseline(self) -> Snapshot:
        try:
            return self.fetch()
        except InitializationError:
            raise
        except QueryError as e:
            raise InitializationError(
                f"could not initialize {self._scope.value} watcher: {e}",
                stderr=e.stderr,
            ) from e

    def _record_failure(self, error: QueryError) -> None:
        self._consecutive_failures += 1
        self._last_error = error
        if self._consecutive_failures == 1:
            logger.warning(f"{self._scope.value} poll failed: {error}")
        else:
            logger.debug(
                f"{self._scope.value} poll failed ({self._consecutive_failures} in a row): {error}"
            )

    def _record_success(self) -> None:
        if self._consecutive_failures:
            logger.info(
                f"{self._scope.value} poll recovered after {self._consecutive_failures} failures"
            )
        self._consecutive_failures = 0
        self._last_error = None
