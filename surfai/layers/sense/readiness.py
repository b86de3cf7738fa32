"""
Page Readiness Detector - Knowing when a dynamic page is done.

A page is settled when the browser reports the load as complete, no
fetch/XHR requests are in flight, and consecutive DOM snapshots stop
changing (ignoring invisible and tiny nodes) for at least the settle
window, so content inserted by timers shortly after load is waited for.
Pages that never stop changing are accepted as "mostly stable" after a
ceiling instead of failing; only a load that never completes is a
timeout.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING
from urllib.parse import urldefrag
import logging
import threading
import time

from surfai.core.errors import (
    Disconnected,
    DriverError,
    ReadinessTimeout,
    SessionClosed,
    StaleCapture,
)
from surfai.layers.sense.dom_snapshot import DomSnapshot, SnapshotEngine, diff

if TYPE_CHECKING:
    from surfai.core.browser_driver import BrowserDriver
    from surfai.core.config import SessionConfig
    from surfai.reporters.flight_recorder import FlightRecorder

logger = logging.getLogger(__name__)

LOAD_PROBE_SCRIPT = """
return {
    readyState: document.readyState,
    url: location.href,
    pending: (typeof window.__surfaiPending === 'number') ? window.__surfaiPending : 0
};
"""


class ReadinessVerdict(Enum):
    SETTLED = "settled"
    MOSTLY_STABLE = "mostly_stable"


@dataclass
class LoadProbe:
    """One reading of the document's load state."""
    ready_state: str
    url: str
    pending: int

    @property
    def loaded(self) -> bool:
        return self.ready_state == "complete"

    @classmethod
    def from_result(cls, result: Any) -> "LoadProbe":
        if not isinstance(result, dict):
            return cls(ready_state="loading", url="", pending=0)
        try:
            pending = int(result.get("pending") or 0)
        except (TypeError, ValueError):
            pending = 0
        return cls(
            ready_state=str(result.get("readyState", "loading")),
            url=str(result.get("url", "")),
            pending=max(0, pending),
        )


@dataclass
class ReadinessReport:
    """Outcome of a readiness wait."""
    verdict: ReadinessVerdict
    snapshot: DomSnapshot
    url: str
    polls: int
    elapsed: float
    reason: str = ""

    @property
    def settled(self) -> bool:
        return self.verdict is ReadinessVerdict.SETTLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "url": self.url,
            "polls": self.polls,
            "elapsed": round(self.elapsed, 3),
            "nodes": len(self.snapshot),
            "reason": self.reason,
        }


def is_fragment_change(before: Optional[str], after: Optional[str]) -> bool:
    """True when two URLs differ only in their #fragment."""
    if not before or not after or before == after:
        return False
    return urldefrag(before)[0] == urldefrag(after)[0]


class PageReadinessDetector:
    """
    Polls the page until it settles.

    Example:
        >>> detector = PageReadinessDetector(adapter, snapshots, config)
        >>> adapter.navigate("https://example.com")
        >>> report = detector.wait_until_settled("https://example.com")
        >>> report.verdict
        <ReadinessVerdict.SETTLED: 'settled'>
    """

    def __init__(
        self,
        driver: "BrowserDriver",
        snapshots: SnapshotEngine,
        config: "SessionConfig",
        cancel_event: Optional[threading.Event] = None,
        recorder: Optional["FlightRecorder"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the detector.

        Args:
            driver: Browser adapter to probe
            snapshots: Snapshot engine sharing the same adapter
            config: Poll interval, confirmations, navigation timeout and ceiling
            cancel_event: Set by Session.close() to abort the wait
            recorder: Optional FlightRecorder for absorbed errors
            clock: Monotonic clock
        """
        self.driver = driver
        self.snapshots = snapshots
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.recorder = recorder
        self.clock = clock

    def probe(self) -> LoadProbe:
        return LoadProbe.from_result(self.driver.evaluate(LOAD_PROBE_SCRIPT))

    def wait_until_settled(
        self,
        url: Optional[str] = None,
        previous_url: Optional[str] = None,
    ) -> ReadinessReport:
        """
        Block until the page is settled or mostly stable.

        Args:
            url: The URL that was navigated to (for reporting)
            previous_url: URL before the navigation; a fragment-only change
                needs a single quiet poll and no settle window

        Returns:
            ReadinessReport with the final snapshot

        Raises:
            ReadinessTimeout: Load did not complete within navigation_budget
            SessionClosed: The session was closed while waiting
            Disconnected: The browser went away
        """
        config = self.config
        start = self.clock()
        required = config.settle_confirmations
        window = config.settle_window
        if is_fragment_change(previous_url, url):
            required, window = 1, 0.0

        baseline: Optional[DomSnapshot] = None
        last_snapshot: Optional[DomSnapshot] = None
        last_probe: Optional[LoadProbe] = None
        loaded_at: Optional[float] = None
        quiet_since: Optional[float] = None
        quiet_polls = 0
        polls = 0

        while True:
            if self.cancel_event.is_set():
                raise SessionClosed("readiness wait cancelled")
            polls += 1

            try:
                probe = self.probe()
                snapshot = self.snapshots.capture()
            except Disconnected:
                raise
            except (DriverError, StaleCapture) as e:
                logger.debug("Readiness poll %d absorbed error: %s", polls, e)
                if self.recorder:
                    self.recorder.log_warning(f"Readiness poll {polls} failed: {e}")
                baseline = None
                quiet_polls = 0
                quiet_since = None if loaded_at is None else self.clock()
            else:
                last_probe = probe
                last_snapshot = snapshot
                if probe.loaded:
                    polled_at = self.clock()
                    if loaded_at is None:
                        loaded_at = quiet_since = polled_at
                        if previous_url is not None and is_fragment_change(previous_url, probe.url):
                            required, window = 1, 0.0
                    if baseline is not None:
                        changes = diff(baseline, snapshot, config.monitor_min_area)
                        if changes.is_empty and probe.pending == 0:
                            quiet_polls += 1
                        else:
                            quiet_polls = 0
                            quiet_since = polled_at
                            logger.debug("Poll %d: changes %s, pending %d", polls, changes, probe.pending)
                    baseline = snapshot
                    quiet_for = polled_at - quiet_since
                    if quiet_polls >= required and quiet_for >= window:
                        return self._report(
                            ReadinessVerdict.SETTLED, snapshot, probe, polls, start,
                            f"{quiet_polls} quiet poll(s) over {quiet_for:.2f}s",
                        )
                else:
                    baseline = None
                    quiet_polls = 0
                    if loaded_at is not None:
                        quiet_since = self.clock()

            now = self.clock()
            if loaded_at is None:
                if now - start >= config.navigation_budget:
                    ready_state = last_probe.ready_state if last_probe else None
                    raise ReadinessTimeout(
                        url or (last_probe.url if last_probe else ""),
                        now - start,
                        ready_state=ready_state,
                        snapshot_age=last_snapshot.age(now) if last_snapshot else None,
                    )
            elif now - loaded_at >= config.stability_ceiling:
                if last_snapshot is None:
                    raise ReadinessTimeout(url or "", now - start, ready_state="complete")
                reason = "page kept changing"
                if last_probe is not None and last_probe.pending:
                    reason = f"{last_probe.pending} request(s) still pending"
                logger.info("Page %s accepted as mostly stable: %s", url or last_snapshot.url, reason)
                return self._report(
                    ReadinessVerdict.MOSTLY_STABLE, last_snapshot, last_probe, polls, start, reason
                )

            if self.cancel_event.wait(config.poll_interval):
                raise SessionClosed("readiness wait cancelled")

    def _report(
        self,
        verdict: ReadinessVerdict,
        snapshot: DomSnapshot,
        probe: Optional[LoadProbe],
        polls: int,
        start: float,
        reason: str,
    ) -> ReadinessReport:
        return ReadinessReport(
            verdict=verdict,
            snapshot=snapshot,
            url=(probe.url if probe and probe.url else snapshot.url),
            polls=polls,
            elapsed=self.clock() - start,
            reason=reason,
        )
