"""Core module - Session, configuration and the browser adapter."""

from surfai.core.session import Session
from surfai.core.config import SessionConfig, RetryPolicy
from surfai.core.browser_driver import BrowserDriver, SeleniumDriver

__all__ = ["Session", "SessionConfig", "RetryPolicy", "BrowserDriver", "SeleniumDriver"]
