"""Polling coordinator driving the per-scope watchers."""

import logging
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone

from svcwatch.client import ServiceManagerClient
from svcwatch.config import WatcherConfig
from svcwatch.models import ChangeEvent, Scope, Snapshot
from svcwatch.watcher import ScopedWatcher

logger = logging.getLogger(__name__)

Subscriber = Callable[[list[ChangeEvent]], None]


class WatcherCoordinator:
    """
    Periodically polls every watched scope and publishes change batches.

    Runs in a separate daemon thread. Each poll ticks all scope watchers and
    hands the merged batch to subscribers. While paused, polling continues and
    snapshots stay current, but batches are dropped.
    """

    def __init__(
        self,
        client: ServiceManagerClient,
        config: WatcherConfig | None = None,
    ) -> None:
        """
        Initialize the WatcherCoordinator.

        Args:
            client: Service manager used by every scope watcher.
            config: Poll interval, scopes and concurrency. Defaults apply if None.
        """
        config = config or WatcherConfig()
        self._poll_rate = config.poll_interval
        self._concurrent = config.concurrent_scopes
        self._watchers = {scope: ScopedWatcher(scope, client) for scope in config.scopes}
        self._tick_locks = {scope: threading.Lock() for scope in self._watchers}
        self._emit_lock = threading.RLock()
        self._subscribers: list[Subscriber] = []
        self._pause_depth = 0
        self._pause_epoch = 0  # Bumped by every pause() and resume()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the polling thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_paused(self) -> bool:
        """Check if change batches are currently suppressed."""
        return self._pause_depth > 0

    @property
    def scopes(self) -> list[Scope]:
        """Get the watched scopes in polling order."""
        return list(self._watchers)

    def watcher(self, scope: Scope) -> ScopedWatcher:
        """Get the watcher for one scope."""
        return self._watchers[scope]

    def subscribe(self, handler: Subscriber) -> Callable[[], None]:
        """
        Register a handler for change batches.

        Returns:
            A callable that removes the handler again.
        """
        with self._emit_lock:
            self._subscribers.append(handler)

        def unsubscribe() -> None:
            with self._emit_lock:
                if handler in self._subscribers:
                    self._subscribers.remove(handler)

        return unsubscribe

    def start(self, subscriber: Subscriber | None = None) -> None:
        """
        Start the polling thread, optionally subscribing a handler first.

        Raises:
            RuntimeError: If a stopped thread has not exited yet (its stop()
                timed out while a poll was in flight).
        """
        if subscriber is not None:
            self.subscribe(subscriber)
        if self.is_running:
            if self._stop_event.is_set():
                raise RuntimeError("Previous polling thread is still finishing a poll")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="WatcherCoordinator",
        )
        self._thread.start()
        logger.info(f"Watching {', '.join(s.value for s in self._watchers)} services every {self._poll_rate}s")

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the polling thread.

        No batch is delivered after this returns, even if a poll was still in
        flight; that poll's result is discarded.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        with self._emit_lock:
            self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Polling thread did not exit in time; it will stop after its current poll")
        # Keep a live thread referenced so start() cannot run a second loop beside it
        if thread is None or not thread.is_alive():
            self._thread = None

    def close(self, timeout: float | None = 5.0) -> None:
        """Stop polling for good; the scope watchers cannot be restarted."""
        self.stop(timeout=timeout)
        for watcher in self._watchers.values():
            watcher.stop()

    def pause(self) -> None:
        """Suppress change batches until the matching resume()."""
        with self._emit_lock:
            self._pause_depth += 1
            self._pause_epoch += 1
            logger.debug(f"Watcher paused (depth {self._pause_depth})")

    def resume(self) -> None:
        """Undo one pause(); extra calls are ignored."""
        with self._emit_lock:
            if self._pause_depth == 0:
                return
            self._pause_depth -= 1
            self._pause_epoch += 1
            logger.debug(f"Watcher resumed (depth {self._pause_depth})")

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Context manager form of pause()/resume() for bulk mutations."""
        self.pause()
        try:
            yield
        finally:
            self.resume()

    def tick_once(self, now: datetime | None = None) -> list[ChangeEvent]:
        """
        Run one poll cycle over all scopes and publish its batch.

        A scope whose previous tick is still in flight is skipped for this
        cycle rather than queued.

        Returns:
            The batch computed by this cycle, whether or not it was delivered.
        """
        return self._cycle(now, wait=False)

    def refresh(self, now: datetime | None = None) -> list[ChangeEvent]:
        """
        Like tick_once(), but waits for in-flight ticks instead of skipping.

        Used after bulk mutations, while paused, so the stored snapshots
        absorb the caller's own changes before reporting resumes.
        """
        return self._cycle(now, wait=True)

    def detect_offline_changes(
        self,
        persisted: Snapshot,
        now: datetime | None = None,
    ) -> list[ChangeEvent]:
        """
        Compare a snapshot saved by a previous session with the live state.

        Initializes the scope watchers if needed. The returned batch is not
        published to subscribers. Scopes that cannot be initialized are skipped.
        """
        events: list[ChangeEvent] = []
        for scope, watcher in self._watchers.items():
            with self._tick_locks[scope]:
                if not watcher.initialize():
                    logger.warning(f"Skipping offline check for {scope.value} services: no baseline")
                    continue
                events.extend(watcher.reconcile(persisted, now))
        if events:
            logger.info(f"{len(events)} changes happened while not watching")
        return events

    def snapshot(self) -> Snapshot:
        """Return the merged last known snapshot of all initialized scopes."""
        snapshots = [w.snapshot for w in self._watchers.values() if w.snapshot is not None]
        return Snapshot().merge(*snapshots)

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self.tick_once()
            except Exception:
                logger.exception("Unexpected error during poll")

            # Wait for poll_rate seconds or until stop is requested
            self._stop_event.wait(timeout=self._poll_rate)

    def _cycle(self, now: datetime | None, wait: bool) -> list[ChangeEvent]:
        now = now or datetime.now(timezone.utc)
        with self._emit_lock:
            epoch = self._pause_epoch
        scopes = list(self._watchers)
        if self._concurrent and len(scopes) > 1:
            with ThreadPoolExecutor(max_workers=len(scopes), thread_name_prefix="svcwatch-tick") as pool:
                batches = list(pool.map(lambda scope: self._tick_scope(scope, now, wait), scopes))
        else:
            batches = [self._tick_scope(scope, now, wait) for scope in scopes]

        events = [event for batch in batches for event in batch]
        self._emit(events, epoch)
        return events

    def _tick_scope(self, scope: Scope, now: datetime, wait: bool = False) -> list[ChangeEvent]:
        lock = self._tick_locks[scope]
        if not lock.acquire(blocking=wait):
            logger.debug(f"{scope.value} tick still in flight, skipping")
            return []
        try:
            return self._watchers[scope].tick(now)
        except Exception:
            logger.exception(f"Unexpected error polling {scope.value} services")
            return []
        finally:
            lock.release()

    def _emit(self, events: list[ChangeEvent], epoch: int) -> None:
        if not events:
            return
        with self._emit_lock:
            if self._stop_event.is_set():
                logger.debug(f"Discarding {len(events)} events after stop")
                return
            # Also drop cycles that overlapped a pause
            if self._pause_depth or epoch != self._pause_epoch:
                logger.debug(f"Suppressing {len(events)} events while paused")
                return
            for handler in list(self._subscribers):
                try:
                    handler(list(events))
                except Exception:
                    logger.exception("Change subscriber failed")
