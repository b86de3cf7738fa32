"""
Shared fixtures: a scripted, in-memory browser adapter.

FakeDriver plays back a list of page frames. Every poll reads the load
probe and then captures the DOM; each capture advances to the next frame
and the last frame repeats forever.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pytest

from surfai.core.browser_driver import BrowserDriver
from surfai.core.config import RetryPolicy, SessionConfig
from surfai.core.errors import Disconnected, DriverError, DriverErrorKind
from surfai.core.storage_state import VALIDATE_SESSION_SCRIPT
from surfai.layers.action.highlighter import CLEAR_HIGHLIGHTS_SCRIPT, HIGHLIGHT_SCRIPT
from surfai.layers.sense.readiness import LOAD_PROBE_SCRIPT


def node(tag: str, text: str = "", visible: bool = True, width: float = 120.0, height: float = 30.0,
         ancestry=("body",), selector: Optional[str] = None, row: str = "", **attrs: str) -> Dict[str, Any]:
    """Build a raw capture record; underscores in attribute names become dashes."""
    attributes = {name.replace("_", "-"): value for name, value in attrs.items()}
    return {
        "tag": tag,
        "attributes": attributes,
        "rect": {"x": 0, "y": 0, "width": width if visible else 0, "height": height if visible else 0},
        "visible": visible,
        "text": text,
        "ancestry": list(ancestry),
        "selector": selector or (f"#{attributes['id']}" if "id" in attributes else tag),
        "row": row,
    }


@dataclass
class Frame:
    url: str
    nodes: List[Dict[str, Any]]
    ready_state: str = "complete"
    pending: int = 0


@dataclass
class FakeDriver(BrowserDriver):
    frames: List[Frame] = field(default_factory=list)
    index: int = 0
    opened: bool = False
    open_count: int = 0
    close_count: int = 0
    disconnected: bool = False
    navigations: List[str] = field(default_factory=list)
    routes: Dict[str, List[Frame]] = field(default_factory=dict)
    capture_failures: List[DriverError] = field(default_factory=list)
    action_failures: Dict[str, List[DriverError]] = field(default_factory=dict)
    values: Dict[str, str] = field(default_factory=dict)
    accept_typing: bool = True
    on_click: Optional[Callable[["FakeDriver", str], None]] = None
    actions: List[tuple] = field(default_factory=list)
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    storage: Dict[str, Dict[str, str]] = field(default_factory=lambda: {"local": {}, "session": {}})
    captures: int = 0
    calls: int = 0
    highlighted: List[Dict[str, Any]] = field(default_factory=list)

    # Page playback

    @property
    def frame(self) -> Frame:
        return self.frames[min(self.index, len(self.frames) - 1)]

    def load(self, frames: List[Frame]) -> None:
        self.frames = list(frames)
        self.index = 0

    def _shows(self, indicator: str) -> bool:
        """Selector-by-id, page text, localStorage key or cookie fragment."""
        nodes = self.frame.nodes
        if any(indicator == "#" + n["attributes"].get("id", "") for n in nodes):
            return True
        if any(indicator in n["text"] for n in nodes):
            return True
        cookies = "; ".join(f"{c['name']}={c['value']}" for c in self.cookies)
        return indicator in self.storage["local"] or indicator in cookies

    def _check(self) -> None:
        self.calls += 1
        if self.disconnected:
            raise Disconnected("chrome not reachable")

    # BrowserDriver

    @property
    def is_open(self) -> bool:
        return self.opened

    def open_tab(self) -> None:
        self._check()
        self.opened = True
        self.open_count += 1

    def close_tab(self) -> None:
        self.opened = False
        self.close_count += 1

    def navigate(self, url: str) -> None:
        self._check()
        self.navigations.append(url)
        if url in self.routes:
            self.load(self.routes[url])

    def evaluate(self, script: str, *args: Any) -> Any:
        self._check()
        if script == LOAD_PROBE_SCRIPT:
            frame = self.frame
            return {"readyState": frame.ready_state, "url": frame.url, "pending": frame.pending}
        if script == HIGHLIGHT_SCRIPT:
            self.highlighted = list(args[0])
            return len(self.highlighted)
        if script == CLEAR_HIGHLIGHTS_SCRIPT:
            removed, self.highlighted = len(self.highlighted), []
            return removed
        if script == VALIDATE_SESSION_SCRIPT:
            return {"matched": [i for i in args[0] if self._shows(i)], "total": len(args[0])}
        if "localStorage: dump" in script:
            return {
                "url": self.frame.url,
                "userAgent": "FakeDriver/1.0",
                "localStorage": dict(self.storage["local"]),
                "sessionStorage": dict(self.storage["session"]),
            }
        if "setItem" in script:
            self.storage["local"].update(args[0])
            self.storage["session"].update(args[1])
            return len(args[0]) + len(args[1])
        if "localStorage.clear" in script:
            self.storage = {"local": {}, "session": {}}
            self.cookies = []
            return True
        return None

    def capture_dom(self, max_nodes: int = 3000, max_text_length: int = 200) -> Dict[str, Any]:
        self._check()
        self.captures += 1
        if self.capture_failures:
            raise self.capture_failures.pop(0)
        frame = self.frame
        self.index += 1
        return {"url": frame.url, "readyState": frame.ready_state, "nodes": frame.nodes[:max_nodes]}

    def screenshot(self) -> bytes:
        self._check()
        return b"\x89PNG viewport"

    def current_url(self) -> str:
        self._check()
        return self.frame.url

    def _act(self, name: str, selector: str) -> None:
        self._check()
        self.actions.append((name, selector))
        failures = self.action_failures.get(name)
        if failures:
            raise failures.pop(0)

    def click(self, selector: str) -> None:
        self._act("click", selector)
        if self.on_click:
            self.on_click(self, selector)

    def type_text(self, selector: str, text: str, clear: bool = True) -> None:
        self._act("type", selector)
        if self.accept_typing:
            self.values[selector] = text if clear else self.values.get(selector, "") + text

    def hover(self, selector: str) -> None:
        self._act("hover", selector)

    def read_value(self, selector: str) -> str:
        self._check()
        return self.values.get(selector, "")

    def element_screenshot(self, selector: str) -> bytes:
        self._act("screenshot", selector)
        return b"\x89PNG element"

    def get_cookies(self) -> List[Dict[str, Any]]:
        self._check()
        return list(self.cookies)

    def add_cookie(self, cookie: Dict[str, Any]) -> None:
        self._check()
        self.cookies.append(dict(cookie))


def stale(message: str = "stale element reference") -> DriverError:
    return DriverError(DriverErrorKind.STALE_ELEMENT, message)


def occluded(message: str = "element click intercepted") -> DriverError:
    return DriverError(DriverErrorKind.OCCLUDED, message)


SEARCH_PAGE = [
    node("h1", "Welcome", ancestry=("body", "main")),
    node("input", ancestry=("body", "main", "form"), selector="form > input",
         type="search", placeholder="Search", value=""),
    node("button", "Go", ancestry=("body", "main", "form"), id="go"),
    node("a", "About us", ancestry=("body", "nav"), href="/about"),
]


@pytest.fixture
def fast_config():
    """Config with timings small enough for unit tests."""
    return SessionConfig(
        poll_interval=0.01,
        settle_window=0.0,
        navigation_budget=0.5,
        stability_ceiling=0.2,
        click_grace_period=0.05,
        verify_grace_period=0.05,
        retry=RetryPolicy(max_attempts=3, backoff=(0.0,), staleness_tolerance=0.5),
        monitor_enabled=False,
    )


@pytest.fixture
def driver():
    fake = FakeDriver()
    fake.load([Frame("https://example.test/", SEARCH_PAGE)])
    return fake


def todo_rows(names: List[str]) -> List[Dict[str, Any]]:
    """A todo list whose rows each hold the same unnamed destroy button."""
    rows = []
    for position, name in enumerate(names, 1):
        rows.append(node("li", name, ancestry=("body", "ul"), selector=f"li:nth-of-type({position})"))
        rows.append(node("button", ancestry=("body", "ul", "li"), row=name,
                         selector=f"li:nth-of-type({position}) > button", class_="destroy"))
    return rows
