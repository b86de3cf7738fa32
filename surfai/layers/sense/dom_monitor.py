"""
DOM Monitor - Background change detection.

A daemon thread that periodically captures the page, diffs it against
the previous capture and publishes every non-empty ChangeSet to
subscribers. It only ever reads from the tab, pauses while the session
is navigating or acting, and recovers on its own from failed captures.
"""

from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, TYPE_CHECKING
import logging
import queue
import threading

from surfai.core.errors import Disconnected, DriverError, StaleCapture
from surfai.layers.sense.dom_snapshot import ChangeSet, DomSnapshot, SnapshotEngine, diff

if TYPE_CHECKING:
    from surfai.core.config import SessionConfig
    from surfai.reporters.flight_recorder import FlightRecorder

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ChangeSet, DomSnapshot], None]

_CLOSED = object()


class ChangeSubscription:
    """
    An independent stream of ChangeSets.

    Iterating blocks until the next ChangeSet arrives and ends when the
    subscription is closed or the monitor stops. Every call to
    ``DomMonitor.subscribe()`` starts a fresh stream. A subscriber that
    falls behind by more than ``maxsize`` ChangeSets loses the oldest ones;
    ``dropped`` counts them.

    Example:
        >>> with session.subscribe_changes() as changes:
        ...     for change in changes:
        ...         print(change)
    """

    def __init__(self, monitor: "DomMonitor", maxsize: int = 256):
        self._monitor = monitor
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._put_lock = threading.Lock()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, item: object) -> None:
        with self._put_lock:
            while True:
                try:
                    self._queue.put_nowait(item)
                    return
                except queue.Full:
                    pass
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def _publish(self, changes: ChangeSet) -> None:
        if not self._closed:
            self._offer(changes)

    def _finish(self) -> None:
        if not self._closed:
            self._closed = True
            self._offer(_CLOSED)

    def __iter__(self) -> "ChangeSubscription":
        return self

    def __next__(self) -> ChangeSet:
        item = self._queue.get()
        if item is _CLOSED:
            self._offer(_CLOSED)
            raise StopIteration
        return item

    def get(self, timeout: Optional[float] = None) -> Optional[ChangeSet]:
        """Next ChangeSet, or None on timeout or once the stream has ended."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._offer(_CLOSED)
            return None
        return item

    def close(self) -> None:
        self._monitor.unsubscribe(self)

    def __enter__(self) -> "ChangeSubscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class DomMonitor:
    """
    Polls the page in the background and publishes ChangeSets.

    Example:
        >>> monitor = DomMonitor(snapshots, config, lock)
        >>> monitor.start()
        >>> subscription = monitor.subscribe()
        >>> first_change = next(subscription)
        >>> monitor.stop()
    """

    def __init__(
        self,
        snapshots: SnapshotEngine,
        config: "SessionConfig",
        lock: Optional[threading.RLock] = None,
        recorder: Optional["FlightRecorder"] = None,
        on_fatal: Optional[Callable[[Disconnected], None]] = None,
    ):
        """
        Initialize the monitor.

        Args:
            snapshots: Snapshot engine bound to the session's adapter
            config: Poll interval, size threshold and stale-capture limit
            lock: The session's tab lock; held for each capture
            recorder: Optional FlightRecorder for changes and errors
            on_fatal: Called once from the monitor thread on Disconnected
        """
        self.snapshots = snapshots
        self.config = config
        self.lock = lock or threading.RLock()
        self.recorder = recorder
        self.on_fatal = on_fatal

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pause_count = 0
        self._pause_lock = threading.Lock()
        self._baseline: Optional[DomSnapshot] = None
        self._subscriptions: List[ChangeSubscription] = []
        self._listeners: List[ChangeListener] = []
        self._subs_lock = threading.Lock()
        self._stopped = False
        self.stale_failures = 0
        self.last_url: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_paused(self) -> bool:
        with self._pause_lock:
            return self._pause_count > 0

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name="surfai-dom-monitor", daemon=True)
        self._thread.start()
        logger.debug("DOM monitor started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop polling, end every subscription and wait for the thread."""
        self._stop.set()
        self._stopped = True
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        with self._subs_lock:
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._finish()

    def pause(self) -> None:
        with self._pause_lock:
            self._pause_count += 1

    def resume(self) -> None:
        with self._pause_lock:
            self._pause_count = max(0, self._pause_count - 1)

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Suspend captures for the duration of the block."""
        self.pause()
        try:
            yield
        finally:
            self.resume()

    def rebase(self, snapshot: Optional[DomSnapshot]) -> None:
        """Use snapshot as the comparison baseline for the next poll."""
        with self.lock:
            self._baseline = snapshot
            if snapshot is not None:
                self.last_url = snapshot.url

    def subscribe(self) -> ChangeSubscription:
        subscription = ChangeSubscription(self, self.config.change_buffer)
        with self._subs_lock:
            if self._stopped:
                subscription._finish()
                return subscription
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: ChangeSubscription) -> None:
        with self._subs_lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription._finish()

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback run on the monitor thread for each ChangeSet."""
        self._listeners.append(listener)

    def poll_once(self) -> Optional[ChangeSet]:
        """
        Capture, diff and publish once.

        Returns:
            The published ChangeSet, or None if nothing was published

        Raises:
            Disconnected: The browser is gone
        """
        if self.is_paused:
            return None
        if not self.lock.acquire(timeout=self.config.poll_interval):
            return None
        try:
            if self.is_paused or self._stop.is_set():
                return None
            try:
                snapshot = self.snapshots.capture()
            except StaleCapture as e:
                self._resync(e)
                return None

            self.stale_failures = 0
            baseline, self._baseline = self._baseline, snapshot
            self.last_url = snapshot.url
            if baseline is None:
                return None

            changes = diff(baseline, snapshot, self.config.monitor_min_area)
            if changes.is_empty:
                return None
            self._publish(changes, snapshot)
            return changes
        finally:
            self.lock.release()

    def _resync(self, error: StaleCapture) -> None:
        self.stale_failures += 1
        self._baseline = None
        logger.warning("Stale capture (%d in a row): %s", self.stale_failures, error.reason)
        try:
            self.last_url = self.snapshots.driver.current_url()
        except Disconnected:
            raise
        except DriverError as e:
            logger.debug("Could not read URL while resynchronising: %s", e)

        if self.stale_failures == self.config.max_stale_captures:
            logger.error(
                "DOM monitor failed %d consecutive captures on %s",
                self.stale_failures, self.last_url,
            )
            if self.recorder:
                self.recorder.log_error(
                    f"{self.stale_failures} consecutive stale captures on {self.last_url}", error
                )

    def _publish(self, changes: ChangeSet, snapshot: DomSnapshot) -> None:
        logger.debug("Publishing change set %s", changes)
        if self.recorder:
            self.recorder.log_change(changes, snapshot.url)
        for listener in list(self._listeners):
            try:
                listener(changes, snapshot)
            except Exception:
                logger.exception("Change listener %r failed", listener)
        with self._subs_lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._publish(changes)

    def _run(self) -> None:
        while not self._stop.wait(self.config.poll_interval):
            try:
                self.poll_once()
            except Disconnected as e:
                logger.error("Browser disconnected, stopping DOM monitor: %s", e)
                if self.recorder:
                    self.recorder.log_error("Browser disconnected during monitoring", e)
                self._stop.set()
                self._stopped = True
                with self._subs_lock:
                    subscriptions, self._subscriptions = self._subscriptions, []
                for subscription in subscriptions:
                    subscription._finish()
                if self.on_fatal:
                    self.on_fatal(e)
                break
        logger.debug("DOM monitor stopped")
