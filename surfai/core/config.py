"""
Session Configuration - Tunables for readiness, retries and capture.

All timings are in seconds.
"""

from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple

from surfai.core.errors import ConfigurationError


@dataclass
class RetryPolicy:
    """
    How often and how patiently an action is retried.

    Example:
        >>> policy = RetryPolicy(max_attempts=4, backoff=(0.1, 0.3))
        >>> policy.delay_for(3)
        0.3
    """
    max_attempts: int = 3
    backoff: Tuple[float, ...] = (0.1, 0.25, 0.5)
    staleness_tolerance: float = 0.5

    def __post_init__(self):
        self.backoff = tuple(float(b) for b in self.backoff)
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if any(b < 0 for b in self.backoff):
            raise ConfigurationError("backoff delays must be non-negative")
        if self.staleness_tolerance < 0:
            raise ConfigurationError("staleness_tolerance must be non-negative")

    def delay_for(self, retry: int) -> float:
        """Delay before the given retry (1-based); the last entry repeats."""
        if not self.backoff or retry < 1:
            return 0.0
        return self.backoff[min(retry, len(self.backoff)) - 1]


@dataclass
class SessionConfig:
    """
    Everything a Session needs to know before it opens a tab.

    Example:
        >>> config = SessionConfig(navigation_budget=20.0)
        >>> demo = SessionConfig.demo()
        >>> demo.headless
        False
    """
    # Browser
    headless: bool = True
    demo_mode: bool = False
    viewport_width: int = 1280
    viewport_height: int = 720
    user_agent: Optional[str] = None

    # Readiness
    poll_interval: float = 0.25
    settle_confirmations: int = 1
    # Seconds without any change, counted from load completion or the last
    # observed change, before a page can settle
    settle_window: float = 2.5
    navigation_budget: float = 30.0
    stability_ceiling: float = 10.0

    # Interaction
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    click_grace_period: float = 1.0
    verify_grace_period: float = 1.0

    # Capture and classification
    classify_min_area: float = 4.0
    monitor_min_area: float = 1.0
    max_nodes: int = 3000
    max_text_length: int = 200

    # Reactive monitor
    monitor_enabled: bool = True
    max_stale_captures: int = 3
    # ChangeSets buffered per subscription; the oldest are dropped first
    change_buffer: int = 256

    # Flight record output; None keeps the log in memory only
    report_dir: Optional[str] = None
    max_record_entries: int = 10000

    def __post_init__(self):
        if isinstance(self.retry, dict):
            self.retry = RetryPolicy(**self.retry)
        positive = ("poll_interval", "navigation_budget", "stability_ceiling")
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        non_negative = (
            "settle_window", "click_grace_period", "verify_grace_period",
            "classify_min_area", "monitor_min_area",
        )
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative")
        if self.settle_confirmations < 1:
            raise ConfigurationError("settle_confirmations must be at least 1")
        if self.max_nodes < 1 or self.max_text_length < 1:
            raise ConfigurationError("capture limits must be at least 1")
        if self.max_stale_captures < 1:
            raise ConfigurationError("max_stale_captures must be at least 1")
        if self.change_buffer < 1 or self.max_record_entries < 1:
            raise ConfigurationError("change_buffer and max_record_entries must be at least 1")
        if self.settle_window >= self.stability_ceiling:
            raise ConfigurationError("settle_window must be shorter than stability_ceiling")
        if self.viewport_width < 1 or self.viewport_height < 1:
            raise ConfigurationError("viewport must be at least 1x1")

    @classmethod
    def demo(cls, **overrides: Any) -> "SessionConfig":
        """A visible, full-HD browser for live demonstrations."""
        base = dict(headless=False, demo_mode=True, viewport_width=1920, viewport_height=1080)
        base.update(overrides)
        return cls(**base)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    def with_overrides(self, **changes: Any) -> "SessionConfig":
        return replace(self, **changes)
