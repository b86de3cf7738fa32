"""
Interaction Engine - Resilient actions against a mutating page.

Every action resolves its target by stable key against a fresh enough
snapshot, performs it through the adapter, and then verifies that it had
an effect. Engine-level failures are retried with backoff, re-resolving
the target each time because the page may have changed in between.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING
import logging
import threading
import time

from surfai.core.errors import (
    Disconnected,
    DriverError,
    ElementNotFound,
    InteractionFailed,
    SessionClosed,
    StaleCapture,
)
from surfai.layers.sense.dom_snapshot import DomSnapshot, NodeDescriptor, SnapshotEngine, diff

if TYPE_CHECKING:
    from surfai.core.browser_driver import BrowserDriver
    from surfai.core.config import SessionConfig
    from surfai.reporters.flight_recorder import FlightRecorder

logger = logging.getLogger(__name__)


class ActionKind(Enum):
    CLICK = "click"
    TYPE = "type"
    HOVER = "hover"
    SCREENSHOT_OF = "screenshot_of"


@dataclass(frozen=True)
class Action:
    """
    What to do with an element.

    Example:
        >>> Action.click()
        >>> Action.type("hello world")
    """
    kind: ActionKind
    text: str = ""
    clear: bool = True

    @classmethod
    def click(cls) -> "Action":
        return cls(ActionKind.CLICK)

    @classmethod
    def type(cls, text: str, clear: bool = True) -> "Action":
        return cls(ActionKind.TYPE, text=text, clear=clear)

    @classmethod
    def hover(cls) -> "Action":
        return cls(ActionKind.HOVER)

    @classmethod
    def screenshot_of(cls) -> "Action":
        return cls(ActionKind.SCREENSHOT_OF)

    @property
    def name(self) -> str:
        return self.kind.value


class InteractionState(Enum):
    RESOLVING = "resolving"
    ACTING = "acting"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class InteractionResult:
    """Result of a completed action."""
    descriptor_id: str
    action: Action
    state: InteractionState
    attempts: int
    verified: bool
    navigated: bool = False
    noop: bool = False
    data: Optional[bytes] = None
    duration_ms: float = 0.0
    url: str = ""
    snapshot: Optional[DomSnapshot] = None
    history: List[InteractionState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is InteractionState.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "descriptor_id": self.descriptor_id,
            "action": self.action.name,
            "state": self.state.value,
            "attempts": self.attempts,
            "verified": self.verified,
            "navigated": self.navigated,
            "noop": self.noop,
            "duration_ms": round(self.duration_ms, 1),
            "url": self.url,
        }


@dataclass
class _Verification:
    ok: bool
    reason: str = ""
    navigated: bool = False
    noop: bool = False
    verified: bool = True
    url: str = ""


class InteractionEngine:
    """
    Perform actions with re-resolution, retries and verification.

    Example:
        >>> engine = InteractionEngine(adapter, snapshots, config)
        >>> result = engine.act(search_box.descriptor_id, Action.type("surfai"))
        >>> result.verified
        True
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
        Initialize the interaction engine.

        Args:
            driver: Browser adapter performing the actions
            snapshots: Snapshot engine used for resolution
            config: Retry policy and grace periods
            cancel_event: Set by Session.close() to abort backoff waits
            recorder: Optional FlightRecorder for attempts and verification failures
            clock: Monotonic clock
        """
        self.driver = driver
        self.snapshots = snapshots
        self.config = config
        self.cancel_event = cancel_event or threading.Event()
        self.recorder = recorder
        self.clock = clock

    def act(self, descriptor_id: str, action: Action) -> InteractionResult:
        """
        Resolve, perform and verify an action.

        Args:
            descriptor_id: Stable key of the target element
            action: The action to perform

        Returns:
            InteractionResult in state DONE

        Raises:
            ElementNotFound: The element is gone (never retried)
            InteractionFailed: The retry policy was exhausted
            SessionClosed: The session closed mid-action
            Disconnected: The browser went away
        """
        policy = self.config.retry
        start = self.clock()
        history: List[InteractionState] = []
        last_reason = "no attempt made"
        url_before = self._url_or(None)

        for attempt in range(1, policy.max_attempts + 1):
            self._check_cancelled()

            history.append(InteractionState.RESOLVING)
            try:
                node, before = self.resolve(descriptor_id, force_fresh=attempt > 1)
            except StaleCapture as e:
                last_reason = f"could not capture page: {e.reason}"
                self._log_attempt(descriptor_id, action, attempt, False, last_reason)
                self._backoff(attempt, policy.max_attempts)
                continue
            if url_before is None:
                url_before = before.url

            history.append(InteractionState.ACTING)
            try:
                data = self._perform(node, action)
            except Disconnected:
                raise
            except DriverError as e:
                last_reason = str(e)
                logger.info("%s on %s failed (attempt %d/%d): %s",
                            action.name, descriptor_id, attempt, policy.max_attempts, e)
                self._log_attempt(descriptor_id, action, attempt, False, last_reason)
                self._backoff(attempt, policy.max_attempts)
                continue
            self._log_attempt(descriptor_id, action, attempt, True)

            history.append(InteractionState.VERIFYING)
            check = self._verify(descriptor_id, node, action, before, url_before, data)
            if check.ok:
                history.append(InteractionState.DONE)
                if check.noop:
                    logger.warning("Click on %s had no observable effect", descriptor_id)
                    if self.recorder:
                        self.recorder.log_warning(
                            f"No-op click on {descriptor_id}", descriptor_id=descriptor_id
                        )
                return InteractionResult(
                    descriptor_id=descriptor_id,
                    action=action,
                    state=InteractionState.DONE,
                    attempts=attempt,
                    verified=check.verified,
                    navigated=check.navigated,
                    noop=check.noop,
                    data=data,
                    duration_ms=(self.clock() - start) * 1000,
                    url=check.url or before.url,
                    snapshot=self.snapshots.latest,
                    history=history,
                )

            last_reason = check.reason
            logger.info("Verification of %s on %s failed: %s", action.name, descriptor_id, check.reason)
            if self.recorder:
                self.recorder.log_verification_failure(descriptor_id, action.name, attempt, check.reason)
            self._backoff(attempt, policy.max_attempts)

        history.append(InteractionState.FAILED)
        if self.recorder:
            self.recorder.log_error(
                f"{action.name} on {descriptor_id} failed after {policy.max_attempts} attempts: {last_reason}"
            )
        raise InteractionFailed(
            descriptor_id,
            attempts=policy.max_attempts,
            last_reason=last_reason,
            snapshot_age=self.snapshots.age(),
        )

    def resolve(self, descriptor_id: str, force_fresh: bool = False) -> Tuple[NodeDescriptor, DomSnapshot]:
        """
        Find the node for a stable key in a fresh enough snapshot.

        The latest snapshot is reused only if it is younger than the
        staleness tolerance and still contains the key.

        Raises:
            ElementNotFound: The key is absent from a fresh capture
            StaleCapture: The page could not be captured
        """
        snapshot = self.snapshots.latest
        age = self.snapshots.age()
        fresh_enough = (
            snapshot is not None
            and age is not None
            and age <= self.config.retry.staleness_tolerance
            and descriptor_id in snapshot
        )
        if force_fresh or not fresh_enough:
            snapshot = self.snapshots.capture()

        node = snapshot.get(descriptor_id)
        if node is None:
            raise ElementNotFound(descriptor_id, snapshot_age=snapshot.age(self.clock()))
        return node, snapshot

    def _perform(self, node: NodeDescriptor, action: Action) -> Optional[bytes]:
        kind = action.kind
        if kind is ActionKind.CLICK:
            self.driver.click(node.selector)
        elif kind is ActionKind.TYPE:
            self.driver.type_text(node.selector, action.text, clear=action.clear)
        elif kind is ActionKind.HOVER:
            self.driver.hover(node.selector)
        elif kind is ActionKind.SCREENSHOT_OF:
            return self.driver.element_screenshot(node.selector)
        return None

    def _verify(
        self,
        descriptor_id: str,
        node: NodeDescriptor,
        action: Action,
        before: DomSnapshot,
        url_before: Optional[str],
        data: Optional[bytes],
    ) -> _Verification:
        kind = action.kind
        if kind is ActionKind.CLICK:
            return self._verify_click(before, url_before)
        if kind is ActionKind.TYPE:
            return self._verify_type(descriptor_id, node, action.text)
        if kind is ActionKind.SCREENSHOT_OF:
            if not data:
                return _Verification(ok=False, reason="element screenshot was empty")
        return _Verification(ok=True)

    def _verify_click(self, before: DomSnapshot, url_before: Optional[str]) -> _Verification:
        """A click counts if the URL changed or the DOM mutated within the grace period."""
        deadline = self.clock() + self.config.click_grace_period
        transitioning = False
        while True:
            url = self._url_or(url_before)
            if url_before is not None and url != url_before:
                return _Verification(ok=True, navigated=True, url=url)
            try:
                after = self.snapshots.capture()
            except StaleCapture:
                # Capture failing right after a click usually means a page transition
                transitioning = True
            else:
                transitioning = False
                if diff(before, after, self.config.monitor_min_area):
                    return _Verification(ok=True, url=after.url)

            if self.clock() >= deadline:
                if transitioning:
                    # Still no readable DOM: treat as a navigation so the caller waits for readiness
                    return _Verification(ok=True, navigated=True, url=url or url_before or "")
                return _Verification(ok=True, noop=True, verified=False, url=url or "")
            self._wait(self.config.poll_interval)

    def _verify_type(self, descriptor_id: str, node: NodeDescriptor, text: str) -> _Verification:
        """Typed text must show up in the field, allowing for debounced re-renders."""
        deadline = self.clock() + self.config.verify_grace_period
        selector = node.selector
        value = ""
        while True:
            try:
                value = self.driver.read_value(selector)
            except Disconnected:
                raise
            except DriverError as e:
                logger.debug("Reading value of %s failed: %s", descriptor_id, e)
                selector = self._reresolve_selector(descriptor_id, selector)
            else:
                if text in value or " ".join(text.split()) in " ".join(value.split()):
                    return _Verification(ok=True)

            if self.clock() >= deadline:
                return _Verification(
                    ok=False,
                    reason=f"field value {value[:60]!r} does not contain typed text",
                )
            self._wait(self.config.poll_interval)

    def _reresolve_selector(self, descriptor_id: str, fallback: str) -> str:
        try:
            node = self.snapshots.capture().get(descriptor_id)
        except StaleCapture:
            return fallback
        return node.selector if node is not None else fallback

    def _url_or(self, default: Optional[str]) -> Optional[str]:
        try:
            return self.driver.current_url()
        except Disconnected:
            raise
        except DriverError as e:
            logger.debug("Could not read current URL: %s", e)
            return default

    def _log_attempt(
        self, descriptor_id: str, action: Action, attempt: int, success: bool, error: Optional[str] = None
    ) -> None:
        if self.recorder:
            self.recorder.log_action_attempt(descriptor_id, action.name, attempt, success, error)

    def _backoff(self, attempt: int, max_attempts: int) -> None:
        if attempt >= max_attempts:
            return
        self._wait(self.config.retry.delay_for(attempt))

    def _wait(self, seconds: float) -> None:
        if self.cancel_event.wait(seconds):
            raise SessionClosed("interaction cancelled")

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise SessionClosed("interaction cancelled")
