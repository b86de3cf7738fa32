"""
Errors - The SurfAI exception hierarchy.

Every failure a caller can observe is a ``SurfaiError``. Exceptions raised
by the browser engine are translated into ``DriverError`` at the adapter
boundary and never leak past it.
"""

from enum import Enum
from typing import Optional


class SurfaiError(Exception):
    """Base class for all SurfAI errors."""


class ConfigurationError(SurfaiError):
    """Raised when a configuration value is out of range or unknown."""


class DriverErrorKind(Enum):
    """Why the browser adapter failed."""
    CRASHED = "crashed"
    DISCONNECTED = "disconnected"
    SCRIPT_ERROR = "script_error"
    NOT_INTERACTABLE = "not_interactable"
    OCCLUDED = "occluded"
    STALE_ELEMENT = "stale_element"
    NO_SUCH_ELEMENT = "no_such_element"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class DriverError(SurfaiError):
    """
    A failure reported by the browser adapter.

    Every kind except ``DISCONNECTED`` is transient: the same operation
    may succeed on a later attempt against a fresh snapshot.
    """

    def __init__(self, kind: DriverErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"[{kind.value}] {self.message}")

    @property
    def transient(self) -> bool:
        return self.kind is not DriverErrorKind.DISCONNECTED


class Disconnected(DriverError):
    """The browser process or its session is gone for good."""

    def __init__(self, message: str = "browser session lost"):
        super().__init__(DriverErrorKind.DISCONNECTED, message)


class StaleCapture(SurfaiError):
    """A DOM capture could not be completed (tab crashed, navigated mid-capture)."""

    def __init__(self, reason: str, cause: Optional[DriverError] = None):
        self.reason = reason
        self.cause = cause
        super().__init__(f"Stale capture: {reason}")


class ReadinessTimeout(SurfaiError):
    """The page load event did not fire within the navigation budget."""

    def __init__(
        self,
        url: str,
        elapsed: float,
        ready_state: Optional[str] = None,
        snapshot_age: Optional[float] = None,
    ):
        self.url = url
        self.elapsed = elapsed
        self.ready_state = ready_state
        self.snapshot_age = snapshot_age
        super().__init__(
            f"Page {url} did not finish loading after {elapsed:.1f}s "
            f"(readyState={ready_state or 'unknown'})"
        )


class ElementNotFound(SurfaiError):
    """The descriptor id no longer resolves to a node, even after a fresh capture."""

    def __init__(self, descriptor_id: str, snapshot_age: Optional[float] = None):
        self.descriptor_id = descriptor_id
        self.snapshot_age = snapshot_age
        super().__init__(f"Element {descriptor_id} not found in current page")


class InteractionFailed(SurfaiError):
    """An action exhausted its retry policy."""

    def __init__(
        self,
        descriptor_id: str,
        attempts: int,
        last_reason: str,
        snapshot_age: Optional[float] = None,
    ):
        self.descriptor_id = descriptor_id
        self.attempts = attempts
        self.last_reason = last_reason
        self.snapshot_age = snapshot_age
        super().__init__(
            f"Interaction with {descriptor_id} failed after {attempts} attempts: {last_reason}"
        )


class InvalidSessionState(SurfaiError):
    """The operation is not allowed in the session's current state."""

    def __init__(self, operation: str, state: str, allowed: str = ""):
        self.operation = operation
        self.state = state
        message = f"Cannot {operation} while session is {state}"
        if allowed:
            message += f" (allowed from: {allowed})"
        super().__init__(message)


class SessionClosed(SurfaiError):
    """Work was cancelled because the session was closed."""
