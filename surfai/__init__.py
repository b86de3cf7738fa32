"""
SurfAI - Resilient Browser Sessions for Dynamic Pages

Smart navigation that knows when a page has settled, selector-free
element discovery, and actions that survive DOM mutation.
"""

__version__ = "0.1.0"

from surfai.core.session import Session, SessionState, NavigationResult
from surfai.core.config import SessionConfig, RetryPolicy
from surfai.core.errors import (
    SurfaiError,
    ConfigurationError,
    DriverError,
    Disconnected,
    ReadinessTimeout,
    StaleCapture,
    ElementNotFound,
    InteractionFailed,
    InvalidSessionState,
    SessionClosed,
)
from surfai.layers.action.interaction import Action, InteractionResult
from surfai.layers.intelligence.element_classifier import ElementDescriptor, ElementRole

__all__ = [
    "Session",
    "SessionState",
    "NavigationResult",
    "SessionConfig",
    "RetryPolicy",
    "Action",
    "InteractionResult",
    "ElementDescriptor",
    "ElementRole",
    "SurfaiError",
    "ConfigurationError",
    "DriverError",
    "Disconnected",
    "ReadinessTimeout",
    "StaleCapture",
    "ElementNotFound",
    "InteractionFailed",
    "InvalidSessionState",
    "SessionClosed",
    "__version__",
]
