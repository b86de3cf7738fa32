"""
Driver Factory - Chrome WebDriver creation for SurfAI sessions.

Builds a Chrome instance from a ``SessionConfig`` and installs the
network instrumentation that readiness detection relies on.
"""

from typing import Optional, TYPE_CHECKING
import logging

from selenium import webdriver
from selenium.webdriver.chrome.options import Options as ChromeOptions

if TYPE_CHECKING:
    from surfai.core.config import SessionConfig

logger = logging.getLogger(__name__)

WebDriverType = webdriver.Chrome

# Counts in-flight fetch/XHR requests in window.__surfaiPending. Installed
# before any page script runs, so it survives every navigation.
INSTRUMENTATION_SCRIPT = r"""
(() => {
    if (window.__surfaiInstrumented) return;
    window.__surfaiInstrumented = true;
    window.__surfaiPending = 0;
    const done = () => { window.__surfaiPending = Math.max(0, window.__surfaiPending - 1); };

    if (window.fetch) {
        const originalFetch = window.fetch;
        window.fetch = function() {
            window.__surfaiPending++;
            return originalFetch.apply(this, arguments).then(
                (response) => { done(); return response; },
                (error) => { done(); throw error; }
            );
        };
    }

    const originalSend = XMLHttpRequest.prototype.send;
    XMLHttpRequest.prototype.send = function() {
        window.__surfaiPending++;
        this.addEventListener('loadend', done, {once: true});
        return originalSend.apply(this, arguments);
    };

    Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
})();
"""


def build_options(config: "SessionConfig") -> ChromeOptions:
    """Translate a session config into Chrome options."""
    options = ChromeOptions()

    if config.headless:
        options.add_argument("--headless=new")

    options.add_argument(f"--window-size={config.viewport_width},{config.viewport_height}")
    if config.user_agent:
        options.add_argument(f"--user-agent={config.user_agent}")

    # Common stability options
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_argument("--disable-extensions")
    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    options.add_experimental_option("useAutomationExtension", False)

    if config.demo_mode:
        options.add_argument("--disable-infobars")
        options.add_argument("--start-maximized")

    # Readiness is decided by SurfAI, not by driver.get()
    options.page_load_strategy = "eager"
    return options


def create_driver(
    config: "SessionConfig",
    options: Optional[ChromeOptions] = None,
) -> WebDriverType:
    """
    Create a Chrome WebDriver for one session.

    Args:
        config: Session configuration
        options: Pre-built Chrome options; built from config when omitted

    Returns:
        A Chrome WebDriver with request instrumentation installed

    Example:
        >>> driver = create_driver(SessionConfig(headless=True))
        >>> driver.get("https://example.com")
    """
    driver = webdriver.Chrome(options=options or build_options(config))
    driver.set_page_load_timeout(config.navigation_budget)
    install_instrumentation(driver)
    return driver


def install_instrumentation(driver: WebDriverType) -> None:
    """Register the pending-request counter for every new document."""
    driver.execute_cdp_cmd(
        "Page.addScriptToEvaluateOnNewDocument",
        {"source": INSTRUMENTATION_SCRIPT},
    )
    logger.debug("Request instrumentation installed")
