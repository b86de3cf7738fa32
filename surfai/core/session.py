"""
Session - One browser tab, driven safely.

The Session is the caller-facing entry point. It owns the adapter, the
page state, the background monitor and the running log, serializes every
operation against its tab, and enforces which operations are allowed in
which state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Union
import logging
import threading
import time

from surfai.core.browser_driver import BrowserDriver, SeleniumDriver
from surfai.core.config import SessionConfig
from surfai.core.errors import (
    ConfigurationError,
    Disconnected,
    DriverError,
    ElementNotFound,
    InvalidSessionState,
    ReadinessTimeout,
    SessionClosed,
    StaleCapture,
    SurfaiError,
)
from surfai.core.storage_state import (
    SessionValidation,
    StorageState,
    clear_storage_state,
    extract_storage_state,
    inject_storage_state,
    same_origin,
    validate_session,
)
from surfai.layers.action.highlighter import (
    ElementHighlight,
    clear_highlights,
    draw_highlights,
    find_highlight,
    number_elements,
)
from surfai.layers.action.interaction import Action, InteractionEngine, InteractionResult
from surfai.layers.intelligence.element_classifier import (
    ElementClassifier,
    ElementDescriptor,
    ElementRole,
    find_by_role,
    find_by_text,
    page_stats,
)
from surfai.layers.sense.dom_monitor import ChangeSubscription, DomMonitor
from surfai.layers.sense.dom_snapshot import ChangeSet, DomSnapshot, SnapshotEngine, diff
from surfai.layers.sense.readiness import PageReadinessDetector, ReadinessReport, ReadinessVerdict
from surfai.reporters.flight_recorder import FlightRecorder

logger = logging.getLogger(__name__)


class SessionState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    NAVIGATING = "navigating"
    SETTLED = "settled"
    INTERACTING = "interacting"
    DISCONNECTED = "disconnected"


class PageReadiness(Enum):
    LOADING = "loading"
    SETTLED = "settled"
    UNKNOWN = "unknown"


@dataclass
class PageState:
    """What the session knows about the page in its tab."""
    url: str = ""
    readiness: PageReadiness = PageReadiness.UNKNOWN
    last_snapshot: Optional[DomSnapshot] = None
    last_settled_at: Optional[float] = None
    verdict: Optional[ReadinessVerdict] = None
    last_error: Optional[SurfaiError] = None

    def begin_navigation(self, url: str) -> None:
        self.url = url
        self.readiness = PageReadiness.LOADING
        self.verdict = None
        self.last_error = None

    def mark_settled(self, report: ReadinessReport, at: float) -> None:
        """Readiness only moves forward: LOADING to SETTLED within a navigation."""
        if self.readiness is not PageReadiness.LOADING:
            raise InvalidSessionState("mark page settled", self.readiness.value, PageReadiness.LOADING.value)
        self.readiness = PageReadiness.SETTLED
        self.url = report.url
        self.verdict = report.verdict
        self.last_snapshot = report.snapshot
        self.last_settled_at = at


@dataclass
class NavigationResult:
    """Outcome of navigate_smart()."""
    url: str
    requested_url: str
    verdict: ReadinessVerdict
    polls: int
    duration_ms: float
    reason: str
    node_count: int
    element_count: int

    @property
    def settled(self) -> bool:
        return self.verdict is ReadinessVerdict.SETTLED

    @property
    def load_quality(self) -> str:
        if self.node_count == 0:
            return "minimal"
        if self.verdict is ReadinessVerdict.SETTLED:
            return "excellent"
        return "good"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "requested_url": self.requested_url,
            "verdict": self.verdict.value,
            "polls": self.polls,
            "duration_ms": round(self.duration_ms, 1),
            "reason": self.reason,
            "node_count": self.node_count,
            "element_count": self.element_count,
            "load_quality": self.load_quality,
        }


_ACTIVE: FrozenSet[SessionState] = frozenset({
    SessionState.OPEN, SessionState.NAVIGATING, SessionState.SETTLED, SessionState.INTERACTING,
})
_NAVIGABLE: FrozenSet[SessionState] = frozenset({
    SessionState.OPEN, SessionState.NAVIGATING, SessionState.SETTLED,
})
_SETTLED_ONLY: FrozenSet[SessionState] = frozenset({SessionState.SETTLED})


class Session:
    """
    A browser tab with smart navigation, element discovery and resilient actions.

    Example:
        >>> with Session(SessionConfig(headless=True)) as session:
        ...     session.navigate_smart("https://example.com")
        ...     search = session.find_by_role("text_input")[0]
        ...     session.act(search.descriptor_id, Action.type("surfai"))
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        driver: Optional[BrowserDriver] = None,
        recorder: Optional[FlightRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize a session. Nothing is started until open().

        Args:
            config: Session configuration (defaults to SessionConfig())
            driver: Browser adapter (defaults to a SeleniumDriver)
            recorder: Running log (defaults to an in-memory FlightRecorder,
                or one writing to config.report_dir)
            clock: Monotonic clock shared by every component
        """
        self.config = config or SessionConfig()
        self.driver = driver or SeleniumDriver(self.config)
        self.recorder = recorder or FlightRecorder(
            output_dir=self.config.report_dir, max_entries=self.config.max_record_entries
        )
        self.clock = clock

        self.state = SessionState.CLOSED
        self.page = PageState()

        # Serializes every operation against the tab, monitor captures included
        self._lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self._opened = False
        self._released = False

        self.snapshots = SnapshotEngine(self.driver, self.config, clock)
        self.classifier = ElementClassifier(min_area=self.config.classify_min_area)
        self.readiness = PageReadinessDetector(
            self.driver, self.snapshots, self.config, self._cancel, self.recorder, clock
        )
        self.interactions = InteractionEngine(
            self.driver, self.snapshots, self.config, self._cancel, self.recorder, clock
        )
        self.monitor = DomMonitor(
            self.snapshots, self.config, self._lock, self.recorder, on_fatal=self._on_disconnect
        )
        self.monitor.add_listener(self._on_changes)

        self._elements: List[ElementDescriptor] = []
        self._elements_snapshot: Optional[DomSnapshot] = None
        self._highlights: List[ElementHighlight] = []

    # Lifecycle

    def open(self) -> "Session":
        """Claim a browser tab and start the monitor."""
        with self._state_lock:
            if self._released or self.state is not SessionState.CLOSED:
                raise InvalidSessionState("open", self.state.value, "a new, unopened session")
        with self._lock:
            self.driver.open_tab()
            self._opened = True
            self._set_state(SessionState.OPEN)
        if self.config.monitor_enabled:
            self.monitor.start()
        self.recorder.log_info("Session opened", headless=self.config.headless)
        logger.info("Session opened")
        return self

    @classmethod
    def demo_open(cls, config: Optional[SessionConfig] = None, **kwargs: Any) -> "Session":
        """Open a session with a visible browser window."""
        if config is None:
            config = SessionConfig.demo()
        else:
            config = config.with_overrides(headless=False, demo_mode=True)
        return cls(config, **kwargs).open()

    def close(self) -> None:
        """
        Release the tab and stop all background work.

        Idempotent, and valid from every state. In-flight readiness waits
        and retry backoffs are cancelled before the adapter is released.
        """
        with self._state_lock:
            if self._released:
                return
            self._released = True
        self._cancel.set()
        self.monitor.stop()

        with self._lock:
            try:
                if self._opened:
                    self.driver.close_tab()
            except SurfaiError as e:
                logger.warning("Error while closing browser tab: %s", e)
                self.recorder.log_warning(f"Error while closing browser tab: {e}")
            finally:
                self._set_state(SessionState.CLOSED, force=True)
                self.page.readiness = PageReadiness.UNKNOWN

        self.recorder.log_info("Session closed")
        if self.config.report_dir:
            try:
                path = self.recorder.save()
                logger.info("Flight record saved to %s", path)
            except OSError as e:
                logger.warning("Could not save flight record: %s", e)
        logger.info("Session closed")

    def __enter__(self) -> "Session":
        if self.state is SessionState.CLOSED and not self._released:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def closed(self) -> bool:
        return self._released

    # Navigation

    def navigate_smart(self, url: str) -> NavigationResult:
        """
        Navigate and wait until the page has settled.

        Returns:
            NavigationResult with the readiness verdict

        Raises:
            ReadinessTimeout: The page never finished loading; the session
                stays NAVIGATING and the call may be retried
            Disconnected: The browser is gone; only close() remains valid
        """
        self._require("navigate", _NAVIGABLE)
        with self.monitor.paused(), self._lock:
            self._require("navigate", _NAVIGABLE)
            previous_url = self.page.url or None
            start = self.clock()
            self._begin_navigation(url)
            try:
                self.driver.navigate(url)
                report = self.readiness.wait_until_settled(url, previous_url)
            except Disconnected as e:
                self._on_disconnect(e)
                raise
            except (ReadinessTimeout, DriverError) as e:
                self.page.last_error = e
                logger.error("Navigation to %s failed: %s", url, e)
                self.recorder.log_error(f"Navigation to {url} failed", e)
                raise

            elements = self._settle(report)
            result = NavigationResult(
                url=report.url,
                requested_url=url,
                verdict=report.verdict,
                polls=report.polls,
                duration_ms=(self.clock() - start) * 1000,
                reason=report.reason,
                node_count=len(report.snapshot),
                element_count=len(elements),
            )
        logger.info(
            "Navigation completed: %s | Quality: %s | %.0fms | %s",
            result.url, result.load_quality, result.duration_ms, result.reason,
        )
        return result

    # Elements

    def get_elements(self) -> List[ElementDescriptor]:
        """Classified interactable elements of the settled page."""
        self._require("get elements", _SETTLED_ONLY)
        with self._lock:
            return list(self._elements)

    def find_by_text(self, text: str) -> List[ElementDescriptor]:
        return find_by_text(self.get_elements(), text)

    def find_by_role(self, role: Union[ElementRole, str]) -> List[ElementDescriptor]:
        return find_by_role(self.get_elements(), role)

    def page_stats(self) -> Dict[str, Any]:
        self._require("read page stats", _SETTLED_ONLY)
        with self._lock:
            snapshot = self._elements_snapshot
            elements = list(self._elements)
        stats = page_stats(snapshot, elements)
        stats["verdict"] = self.page.verdict.value if self.page.verdict else None
        return stats

    def wait_for_element(
        self,
        text: Optional[str] = None,
        role: Optional[Union[ElementRole, str]] = None,
        timeout: float = 10.0,
    ) -> Optional[ElementDescriptor]:
        """
        Poll until an element matching text and/or role appears.

        Returns:
            The best match, or None if nothing matched within timeout
        """
        if text is None and role is None:
            raise ValueError("wait_for_element needs text or role")
        deadline = self.clock() + timeout
        while True:
            self._require("wait for element", _SETTLED_ONLY)
            with self._lock:
                try:
                    self._refresh_elements(self.snapshots.capture())
                except StaleCapture as e:
                    logger.debug("Capture failed while waiting for element: %s", e)
                except Disconnected as e:
                    self._on_disconnect(e)
                    raise
                candidates = list(self._elements)
            if role is not None:
                candidates = find_by_role(candidates, role)
            if text is not None:
                candidates = find_by_text(candidates, text)
            if candidates:
                return candidates[0]
            if self.clock() >= deadline:
                return None
            if self._cancel.wait(self.config.poll_interval):
                raise SessionClosed("wait_for_element cancelled")

    # Interaction

    def act(self, descriptor_id: str, action: Action) -> InteractionResult:
        """
        Perform an action on a classified element.

        Returns:
            InteractionResult; if the action navigated, the new page has
            already settled when this returns

        Raises:
            ElementNotFound: The element is gone
            InteractionFailed: Retries exhausted
            Disconnected: The browser is gone; only close() remains valid
        """
        self._require("act", _SETTLED_ONLY)
        with self.monitor.paused(), self._lock:
            self._require("act", _SETTLED_ONLY)
            self._set_state(SessionState.INTERACTING)
            try:
                result = self.interactions.act(descriptor_id, action)
            except Disconnected as e:
                self._on_disconnect(e)
                raise
            except SessionClosed:
                raise
            except SurfaiError:
                self._record_screenshot(f"{action.name}_{descriptor_id}_failed")
                self._set_state(SessionState.SETTLED)
                raise

            if result.noop:
                self._record_screenshot(f"{action.name}_{descriptor_id}_noop")

            if result.navigated:
                previous_url = self.page.url or None
                self._begin_navigation(result.url)
                try:
                    report = self.readiness.wait_until_settled(result.url, previous_url)
                except Disconnected as e:
                    self._on_disconnect(e)
                    raise
                except ReadinessTimeout as e:
                    self.page.last_error = e
                    self.recorder.log_error(f"Page after {action.name} did not load", e)
                    raise
                self._settle(report)
            else:
                latest = self.snapshots.latest
                if latest is not None:
                    self._refresh_elements(latest)
                self._set_state(SessionState.SETTLED)
        return result

    def subscribe_changes(self) -> ChangeSubscription:
        """A fresh, endless stream of ChangeSets from the background monitor."""
        self._require("subscribe to changes", _ACTIVE)
        if not self.config.monitor_enabled:
            raise ConfigurationError("the DOM monitor is disabled for this session")
        return self.monitor.subscribe()

    # Supplementary operations

    def screenshot(self) -> bytes:
        """PNG of the current viewport."""
        self._require("take a screenshot", _ACTIVE)
        with self._lock:
            return self._guarded(self.driver.screenshot)

    def current_url(self) -> str:
        self._require("read the URL", _ACTIVE)
        with self._lock:
            return self._guarded(self.driver.current_url)

    def export_storage_state(self) -> StorageState:
        """Cookies plus local and session storage of the current page."""
        self._require("export storage state", _SETTLED_ONLY)
        with self._lock:
            return self._guarded(lambda: extract_storage_state(self.driver))

    def import_storage_state(self, state: StorageState, reload: bool = True) -> Optional[NavigationResult]:
        """
        Restore an exported StorageState and reload so the site sees it.

        Navigates to the state's URL first when the tab is on another origin.

        Returns:
            The NavigationResult of the last navigation made, if any
        """
        self._require("import storage state", _NAVIGABLE)
        result = None
        if self.state is not SessionState.SETTLED or not same_origin(self.page.url, state.url):
            result = self.navigate_smart(state.url)
        with self._lock:
            written = self._guarded(lambda: inject_storage_state(self.driver, state))
        self.recorder.log_info(f"Imported {written} storage items for {state.origin}")
        if reload:
            result = self.navigate_smart(self.page.url or state.url)
        return result

    def clear_storage_state(self) -> None:
        """Clear cookies and web storage of the current origin."""
        self._require("clear storage state", _SETTLED_ONLY)
        with self._lock:
            self._guarded(lambda: clear_storage_state(self.driver))
        self.recorder.log_info(f"Cleared storage state for {self.page.url}")

    def validate_session(self, success_indicators: List[str]) -> SessionValidation:
        """
        Check that the page shows signs of a logged-in session.

        Args:
            success_indicators: CSS selectors, page text, localStorage keys
                or cookie fragments; any single match makes the session valid

        Returns:
            SessionValidation, truthy when valid
        """
        self._require("validate session", _SETTLED_ONLY)
        with self._lock:
            result = self._guarded(lambda: validate_session(self.driver, success_indicators))
        self.recorder.log_info(
            f"Session validation {'passed' if result.valid else 'failed'}",
            matched=result.matched, total=result.total,
        )
        return result

    # Numbered highlights

    def highlight_elements(self, role: Optional[Union[ElementRole, str]] = None) -> List[ElementHighlight]:
        """
        Draw numbered overlays over the current elements.

        Numbers stay valid for click_number()/type_in_number() until the
        next highlight or navigation.

        Args:
            role: Only number elements with this role
        """
        elements = self.get_elements()
        if role is not None:
            elements = find_by_role(elements, role)
        highlights = number_elements(elements)
        with self._lock:
            self._guarded(lambda: draw_highlights(self.driver, highlights))
            self._highlights = highlights
        return list(highlights)

    def clear_highlights(self) -> int:
        """Remove the overlays and forget their numbers."""
        self._require("clear highlights", _ACTIVE)
        with self._lock:
            removed = self._guarded(lambda: clear_highlights(self.driver))
            self._highlights = []
        return removed

    @property
    def highlights(self) -> List[ElementHighlight]:
        return list(self._highlights)

    def click_number(self, number: int) -> InteractionResult:
        """Click the element shown with this number by highlight_elements()."""
        return self.act(self._highlighted(number).descriptor_id, Action.click())

    def type_in_number(self, number: int, text: str, clear: bool = True) -> InteractionResult:
        """Type into the element shown with this number by highlight_elements()."""
        return self.act(self._highlighted(number).descriptor_id, Action.type(text, clear=clear))

    # Internals

    def _require(self, operation: str, allowed: FrozenSet[SessionState]) -> None:
        with self._state_lock:
            state = self.state
            released = self._released
        if state is SessionState.DISCONNECTED:
            raise InvalidSessionState(operation, state.value, "only close() is valid after a disconnect")
        if released:
            raise InvalidSessionState(operation, "closed")
        if state not in allowed:
            raise InvalidSessionState(operation, state.value, ", ".join(sorted(s.value for s in allowed)))

    def _set_state(self, state: SessionState, force: bool = False) -> None:
        with self._state_lock:
            if self.state is SessionState.DISCONNECTED and not force:
                return
            if self.state is not state:
                logger.debug("Session %s -> %s", self.state.value, state.value)
            self.state = state

    def _guarded(self, operation: Callable[[], Any]) -> Any:
        try:
            return operation()
        except Disconnected as e:
            self._on_disconnect(e)
            raise

    def _highlighted(self, number: int) -> ElementHighlight:
        highlight = find_highlight(self._highlights, number)
        if highlight is None:
            raise ElementNotFound(f"#{number}")
        return highlight

    def _record_screenshot(self, name: str) -> None:
        """Attach a viewport screenshot to the latest flight record entry (tab lock held)."""
        if not self.recorder.screenshots_dir:
            return
        try:
            self.recorder.capture_screenshot(name, self.driver.screenshot())
        except Disconnected as e:
            self._on_disconnect(e)
        except (DriverError, OSError) as e:
            logger.warning("Could not capture screenshot %s: %s", name, e)

    def _begin_navigation(self, url: str) -> None:
        self._set_state(SessionState.NAVIGATING)
        self.page.begin_navigation(url)
        self.recorder.log_navigation(url)

    def _settle(self, report: ReadinessReport) -> List[ElementDescriptor]:
        self.page.mark_settled(report, self.clock())
        self._highlights = []
        self._elements = self.classifier.classify(report.snapshot)
        self._elements_snapshot = report.snapshot
        self.monitor.rebase(report.snapshot)
        self.recorder.log_readiness(report)
        self._set_state(SessionState.SETTLED)
        return self._elements

    def _refresh_elements(self, snapshot: DomSnapshot) -> None:
        """Bring the element list up to date with snapshot (tab lock held)."""
        previous = self._elements_snapshot
        if previous is snapshot:
            return
        if previous is None:
            self._elements = self.classifier.classify(snapshot)
        else:
            changes = diff(previous, snapshot)
            if changes:
                self._elements = self.classifier.reclassify(self._elements, snapshot, changes)
        self._elements_snapshot = snapshot
        self.page.last_snapshot = snapshot
        self.monitor.rebase(snapshot)

    def _on_changes(self, changes: ChangeSet, snapshot: DomSnapshot) -> None:
        # Runs on the monitor thread with the tab lock held
        if self._elements_snapshot is None:
            return
        full = diff(self._elements_snapshot, snapshot)
        if full:
            self._elements = self.classifier.reclassify(self._elements, snapshot, full)
        self._elements_snapshot = snapshot
        self.page.last_snapshot = snapshot

    def _on_disconnect(self, error: Disconnected) -> None:
        with self._state_lock:
            if self._released or self.state is SessionState.DISCONNECTED:
                return
            self.state = SessionState.DISCONNECTED
        self.page.last_error = error
        self.page.readiness = PageReadiness.UNKNOWN
        logger.error("Browser disconnected: %s", error)
        self.recorder.log_error("Browser disconnected", error)
        self.monitor.stop()

    def __repr__(self) -> str:
        return f"<Session state={self.state.value} url={self.page.url!r}>"
