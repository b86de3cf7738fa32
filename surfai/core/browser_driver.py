"""
Browser Driver Adapter - The one seam between SurfAI and the browser engine.

The core only ever talks to ``BrowserDriver``. ``SeleniumDriver`` is the
concrete adapter: it owns a single Chrome tab, runs the capture script and
translates every Selenium exception into a ``DriverError``.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, TYPE_CHECKING
import logging

from selenium.common.exceptions import (
    ElementClickInterceptedException,
    ElementNotInteractableException,
    InvalidElementStateException,
    InvalidSessionIdException,
    JavascriptException,
    NoSuchElementException,
    NoSuchWindowException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.common.action_chains import ActionChains
from selenium.webdriver.common.by import By
from urllib3.exceptions import HTTPError as TransportError

from surfai.core.errors import Disconnected, DriverError, DriverErrorKind

if TYPE_CHECKING:
    from selenium.webdriver.remote.webdriver import WebDriver
    from selenium.webdriver.remote.webelement import WebElement
    from surfai.core.config import SessionConfig

logger = logging.getLogger(__name__)


# Walks the live DOM once and returns every rendered element in document
# order. Geometry, visibility and a bounded text sample are taken in the
# same pass so a snapshot describes a single instant.
CAPTURE_SCRIPT = r"""
const maxNodes = arguments[0];
const maxText = arguments[1];
const SKIP = new Set(['SCRIPT', 'STYLE', 'NOSCRIPT', 'TEMPLATE', 'META', 'LINK', 'BR', 'HEAD', 'TITLE']);
const ATTRS = ['id', 'class', 'role', 'name', 'type', 'placeholder', 'aria-label',
               'title', 'href', 'value', 'alt', 'data-testid', 'onclick', 'tabindex',
               'contenteditable', 'disabled', 'checked', 'multiple'];

const isVisible = (el, rect) => {
    if (rect.width <= 0 || rect.height <= 0) return false;
    if (el.checkVisibility) return el.checkVisibility({checkOpacity: true, checkVisibilityCSS: true});
    const style = window.getComputedStyle(el);
    return style.visibility !== 'hidden' && style.display !== 'none' && style.opacity !== '0';
};

const getStableSelector = (el) => {
    if (el.id) {
        if (!/^\d/.test(el.id)) return '#' + CSS.escape(el.id);
        return '[id="' + CSS.escape(el.id) + '"]';
    }
    for (let attr of ['data-testid', 'data-id', 'data-automation']) {
        let val = el.getAttribute(attr);
        if (val) return '[' + attr + '="' + CSS.escape(val) + '"]';
    }
    try {
        const path = [];
        let cur = el;
        while (cur && cur.nodeType === Node.ELEMENT_NODE && cur.tagName !== 'HTML') {
            let part = cur.tagName.toLowerCase();
            if (cur.id && !/^\d/.test(cur.id)) {
                path.unshift(part + '#' + CSS.escape(cur.id));
                break;
            }
            let sibling = cur;
            let nth = 1;
            while (sibling = sibling.previousElementSibling) {
                if (sibling.tagName === cur.tagName) nth++;
            }
            path.unshift(part + ':nth-of-type(' + nth + ')');
            cur = cur.parentElement;
        }
        return path.join(' > ');
    } catch (e) {
        return el.tagName.toLowerCase();
    }
};

const repeated = new Map();
const isRepeatedRow = (el) => {
    if (repeated.has(el)) return repeated.get(el);
    let result = false;
    const parent = el.parentElement;
    if (parent) {
        for (const sibling of parent.children) {
            if (sibling !== el && sibling.tagName === el.tagName) { result = true; break; }
        }
    }
    repeated.set(el, result);
    return result;
};

// Label of the nearest enclosing list row, so identical controls in
// different rows stay distinguishable when rows come and go.
const getRowLabel = (el) => {
    let cur = el.parentElement;
    while (cur && cur !== document.body && cur.tagName !== 'HTML') {
        if (isRepeatedRow(cur)) {
            if (cur.id && !/^\d/.test(cur.id)) return '';
            const label = cur.getAttribute('data-testid') || cur.getAttribute('aria-label')
                || (cur.innerText || cur.textContent || '').trim();
            return label.substring(0, 64);
        }
        cur = cur.parentElement;
    }
    return '';
};

const getAncestry = (el) => {
    const chain = [];
    let cur = el.parentElement;
    while (cur && cur.tagName !== 'HTML') {
        let part = cur.tagName.toLowerCase();
        if (cur.id && !/^\d/.test(cur.id)) part += '#' + cur.id;
        chain.unshift(part);
        cur = cur.parentElement;
    }
    return chain;
};

const nodes = [];
const root = document.body || document.documentElement;
const all = root ? root.querySelectorAll('*') : [];
for (const el of all) {
    if (nodes.length >= maxNodes) break;
    if (SKIP.has(el.tagName)) continue;
    if (el.closest('[data-surfai-highlight]')) continue;
    const rect = el.getBoundingClientRect();
    const attrs = {};
    for (const name of ATTRS) {
        const val = el.getAttribute(name);
        if (val !== null) attrs[name] = val.substring(0, 150);
    }
    if ('value' in el && typeof el.value === 'string' && el.tagName !== 'BUTTON') {
        attrs['value'] = el.value.substring(0, 150);
    }
    nodes.push({
        tag: el.tagName.toLowerCase(),
        attributes: attrs,
        rect: {x: rect.left, y: rect.top, width: rect.width, height: rect.height},
        visible: isVisible(el, rect),
        text: (el.innerText || el.textContent || '').trim().substring(0, maxText),
        ancestry: getAncestry(el),
        selector: getStableSelector(el),
        row: getRowLabel(el),
    });
}
return {url: location.href, readyState: document.readyState, nodes: nodes};
"""

SCROLL_INTO_VIEW_SCRIPT = """
var rect = arguments[0].getBoundingClientRect();
var inView = rect.top >= 0 && rect.left >= 0 &&
    rect.bottom <= (window.innerHeight || document.documentElement.clientHeight) &&
    rect.right <= (window.innerWidth || document.documentElement.clientWidth);
if (!inView) arguments[0].scrollIntoView({block: 'center', inline: 'center'});
"""

# Substrings in WebDriverException messages that mean the session is gone.
_DISCONNECT_MARKERS = (
    "disconnected",
    "chrome not reachable",
    "invalid session id",
    "session deleted",
    "no such window",
    "target window already closed",
    "connection refused",
    "max retries exceeded",
)


def translate_exception(exc: BaseException) -> DriverError:
    """Map a Selenium (or transport) exception onto a DriverError."""
    if isinstance(exc, DriverError):
        return exc
    message = str(exc).strip() or exc.__class__.__name__
    if isinstance(exc, (InvalidSessionIdException, NoSuchWindowException, ConnectionError, TransportError)):
        return Disconnected(message)
    lowered = message.lower()
    if any(marker in lowered for marker in _DISCONNECT_MARKERS):
        return Disconnected(message)
    if "tab crashed" in lowered or "page crash" in lowered:
        return DriverError(DriverErrorKind.CRASHED, message)
    if isinstance(exc, JavascriptException):
        return DriverError(DriverErrorKind.SCRIPT_ERROR, message)
    if isinstance(exc, StaleElementReferenceException):
        return DriverError(DriverErrorKind.STALE_ELEMENT, message)
    if isinstance(exc, ElementClickInterceptedException):
        return DriverError(DriverErrorKind.OCCLUDED, message)
    if isinstance(exc, (ElementNotInteractableException, InvalidElementStateException)):
        return DriverError(DriverErrorKind.NOT_INTERACTABLE, message)
    if isinstance(exc, NoSuchElementException):
        return DriverError(DriverErrorKind.NO_SUCH_ELEMENT, message)
    if isinstance(exc, TimeoutException):
        return DriverError(DriverErrorKind.TIMEOUT, message)
    return DriverError(DriverErrorKind.UNKNOWN, message)


class BrowserDriver(ABC):
    """
    Abstract browser tab used by every SurfAI component.

    Implementations must raise ``DriverError`` (or ``Disconnected``) and
    nothing else. Element actions address nodes by CSS selector; callers
    never receive live element handles.
    """

    @abstractmethod
    def open_tab(self) -> None:
        """Start the browser (if needed) and claim a tab."""

    @abstractmethod
    def close_tab(self) -> None:
        """Release the tab and any browser process it owns."""

    @abstractmethod
    def navigate(self, url: str) -> None:
        """Issue a navigation; returns before the page is ready."""

    @abstractmethod
    def evaluate(self, script: str, *args: Any) -> Any:
        """Run JavaScript in the page and return its JSON-compatible result."""

    @abstractmethod
    def capture_dom(self, max_nodes: int = 3000, max_text_length: int = 200) -> Dict[str, Any]:
        """
        Serialize the current DOM.

        Returns:
            ``{"url": str, "readyState": str, "nodes": [dict, ...]}``
        """

    @abstractmethod
    def screenshot(self) -> bytes:
        """PNG of the visible viewport."""

    @abstractmethod
    def current_url(self) -> str:
        """URL of the tab right now."""

    @abstractmethod
    def click(self, selector: str) -> None:
        """Click the element matching selector."""

    @abstractmethod
    def type_text(self, selector: str, text: str, clear: bool = True) -> None:
        """Focus the element matching selector and type text into it."""

    @abstractmethod
    def hover(self, selector: str) -> None:
        """Move the pointer over the element matching selector."""

    @abstractmethod
    def read_value(self, selector: str) -> str:
        """Current value (inputs) or text (everything else) of an element."""

    @abstractmethod
    def element_screenshot(self, selector: str) -> bytes:
        """PNG of a single element."""

    @abstractmethod
    def get_cookies(self) -> List[Dict[str, Any]]:
        """All cookies visible to the current page."""

    @abstractmethod
    def add_cookie(self, cookie: Dict[str, Any]) -> None:
        """Install a cookie for the current domain."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether a tab is currently held."""


class SeleniumDriver(BrowserDriver):
    """
    Chrome adapter built on Selenium WebDriver.

    Example:
        >>> adapter = SeleniumDriver(SessionConfig())
        >>> adapter.open_tab()
        >>> adapter.navigate("https://example.com")
        >>> page = adapter.capture_dom()
        >>> adapter.close_tab()
    """

    def __init__(
        self,
        config: "SessionConfig",
        factory: Optional[Callable[["SessionConfig"], "WebDriver"]] = None,
    ):
        """
        Initialize the adapter.

        Args:
            config: Session configuration (headless, viewport, user agent)
            factory: Callable building the WebDriver; defaults to create_driver
        """
        self.config = config
        self._factory = factory
        self._driver: Optional["WebDriver"] = None

    @property
    def driver(self) -> "WebDriver":
        if self._driver is None:
            raise Disconnected("no tab is open")
        return self._driver

    @property
    def is_open(self) -> bool:
        return self._driver is not None

    @contextmanager
    def _translating(self, operation: str) -> Iterator[None]:
        try:
            yield
        except DriverError:
            raise
        except (WebDriverException, ConnectionError, TransportError) as e:
            error = translate_exception(e)
            logger.debug("%s failed: %s", operation, error)
            raise error from e

    def open_tab(self) -> None:
        if self._driver is not None:
            return
        if self._factory is None:
            from surfai.core.driver_factory import create_driver
            self._factory = create_driver
        with self._translating("open_tab"):
            self._driver = self._factory(self.config)
        logger.info("Browser tab opened (headless=%s)", self.config.headless)

    def close_tab(self) -> None:
        driver, self._driver = self._driver, None
        if driver is None:
            return
        with self._translating("close_tab"):
            driver.quit()
        logger.info("Browser tab closed")

    def navigate(self, url: str) -> None:
        with self._translating("navigate"):
            try:
                self.driver.get(url)
            except TimeoutException:
                # Page load strategy may still time out on huge documents;
                # readiness detection decides what happens next.
                logger.debug("driver.get(%s) timed out, continuing", url)

    def evaluate(self, script: str, *args: Any) -> Any:
        with self._translating("evaluate"):
            return self.driver.execute_script(script, *args)

    def capture_dom(self, max_nodes: int = 3000, max_text_length: int = 200) -> Dict[str, Any]:
        with self._translating("capture_dom"):
            result = self.driver.execute_script(CAPTURE_SCRIPT, max_nodes, max_text_length)
        if not isinstance(result, dict) or "nodes" not in result:
            raise DriverError(DriverErrorKind.SCRIPT_ERROR, "capture script returned no data")
        return result

    def screenshot(self) -> bytes:
        with self._translating("screenshot"):
            return self.driver.get_screenshot_as_png()

    def current_url(self) -> str:
        with self._translating("current_url"):
            return self.driver.current_url

    def _find(self, selector: str) -> "WebElement":
        element = self.driver.find_element(By.CSS_SELECTOR, selector)
        self.driver.execute_script(SCROLL_INTO_VIEW_SCRIPT, element)
        return element

    def click(self, selector: str) -> None:
        with self._translating("click"):
            self._find(selector).click()

    def type_text(self, selector: str, text: str, clear: bool = True) -> None:
        with self._translating("type_text"):
            element = self._find(selector)
            if clear:
                if element.get_attribute("contenteditable") in ("", "true"):
                    self.driver.execute_script("arguments[0].textContent = '';", element)
                else:
                    element.clear()
            element.send_keys(text)

    def hover(self, selector: str) -> None:
        with self._translating("hover"):
            ActionChains(self.driver).move_to_element(self._find(selector)).perform()

    def read_value(self, selector: str) -> str:
        with self._translating("read_value"):
            element = self.driver.find_element(By.CSS_SELECTOR, selector)
            value = element.get_property("value")
            if value is None:
                value = element.text
            return str(value)

    def element_screenshot(self, selector: str) -> bytes:
        with self._translating("element_screenshot"):
            return self._find(selector).screenshot_as_png

    def get_cookies(self) -> List[Dict[str, Any]]:
        with self._translating("get_cookies"):
            return list(self.driver.get_cookies())

    def add_cookie(self, cookie: Dict[str, Any]) -> None:
        with self._translating("add_cookie"):
            self.driver.add_cookie(cookie)
