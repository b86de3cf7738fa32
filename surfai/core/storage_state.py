"""
Storage State - Carrying a logged-in browser state between sessions.

Cookies plus localStorage and sessionStorage, exported from one session
and imported into another so a login only has to happen once.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, TYPE_CHECKING
from urllib.parse import urlparse
import json
import logging

from surfai.core.errors import DriverError, DriverErrorKind

if TYPE_CHECKING:
    from surfai.core.browser_driver import BrowserDriver

logger = logging.getLogger(__name__)

READ_STORAGE_SCRIPT = """
const dump = (store) => {
    const out = {};
    try {
        for (let i = 0; i < store.length; i++) {
            const key = store.key(i);
            out[key] = store.getItem(key);
        }
    } catch (e) {}
    return out;
};
return {
    url: location.href,
    userAgent: navigator.userAgent,
    localStorage: dump(window.localStorage),
    sessionStorage: dump(window.sessionStorage)
};
"""

WRITE_STORAGE_SCRIPT = """
const local = arguments[0] || {};
const session = arguments[1] || {};
for (const [k, v] of Object.entries(local)) window.localStorage.setItem(k, v);
for (const [k, v] of Object.entries(session)) window.sessionStorage.setItem(k, v);
return Object.keys(local).length + Object.keys(session).length;
"""

CLEAR_STORAGE_SCRIPT = """
try { window.localStorage.clear(); } catch (e) {}
try { window.sessionStorage.clear(); } catch (e) {}
document.cookie.split(';').forEach((c) => {
    const name = c.split('=')[0].trim();
    if (name) document.cookie = name + '=; expires=Thu, 01 Jan 1970 00:00:00 GMT; path=/';
});
return true;
"""

VALIDATE_SESSION_SCRIPT = """
const indicators = arguments[0] || [];
const text = document.body ? document.body.textContent : '';
const matched = [];
for (const indicator of indicators) {
    let found = false;
    try { found = document.querySelector(indicator) !== null; } catch (e) {}
    if (!found) found = text.includes(indicator);
    if (!found) {
        try { found = window.localStorage.getItem(indicator) !== null; } catch (e) {}
    }
    if (!found) found = document.cookie.includes(indicator);
    if (found) matched.push(indicator);
}
return {matched: matched, total: indicators.length};
"""

# Keys WebDriver accepts in add_cookie()
COOKIE_FIELDS = ("name", "value", "path", "domain", "secure", "httpOnly", "expiry", "sameSite")


@dataclass
class StorageState:
    """
    A portable snapshot of a site's client-side state.

    Example:
        >>> state = session.export_storage_state()
        >>> state.save("login.json")
        >>> other.import_storage_state(StorageState.load("login.json"))
    """
    url: str
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    local_storage: Dict[str, str] = field(default_factory=dict)
    session_storage: Dict[str, str] = field(default_factory=dict)
    user_agent: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def origin(self) -> str:
        parsed = urlparse(self.url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def domain(self) -> str:
        return urlparse(self.url).hostname or ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "cookies": self.cookies,
            "local_storage": self.local_storage,
            "session_storage": self.session_storage,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageState":
        return cls(
            url=data["url"],
            cookies=list(data.get("cookies") or []),
            local_storage=dict(data.get("local_storage") or {}),
            session_storage=dict(data.get("session_storage") or {}),
            user_agent=data.get("user_agent"),
            timestamp=data.get("timestamp") or datetime.now().isoformat(),
        )

    def save(self, path: str) -> str:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    @classmethod
    def load(cls, path: str) -> "StorageState":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


def same_origin(a: str, b: str) -> bool:
    pa, pb = urlparse(a), urlparse(b)
    return (pa.scheme, pa.netloc) == (pb.scheme, pb.netloc)


def extract_storage_state(driver: "BrowserDriver") -> StorageState:
    """Read cookies and web storage from the page currently open."""
    data = driver.evaluate(READ_STORAGE_SCRIPT)
    if not isinstance(data, dict):
        raise DriverError(DriverErrorKind.SCRIPT_ERROR, "storage script returned no data")
    state = StorageState(
        url=str(data.get("url", "")),
        cookies=driver.get_cookies(),
        local_storage={str(k): str(v) for k, v in (data.get("localStorage") or {}).items()},
        session_storage={str(k): str(v) for k, v in (data.get("sessionStorage") or {}).items()},
        user_agent=data.get("userAgent"),
    )
    logger.info(
        "Extracted %d cookies, %d localStorage and %d sessionStorage items from %s",
        len(state.cookies), len(state.local_storage), len(state.session_storage), state.url,
    )
    return state


def inject_storage_state(driver: "BrowserDriver", state: StorageState) -> int:
    """
    Write a StorageState into the page currently open.

    The page must already be on the state's origin; cookies for other
    domains are skipped by the browser.

    Returns:
        Number of cookies and storage items written
    """
    written = 0
    for cookie in state.cookies:
        payload = {k: v for k, v in cookie.items() if k in COOKIE_FIELDS}
        try:
            driver.add_cookie(payload)
            written += 1
        except DriverError as e:
            if not e.transient:
                raise
            logger.warning("Skipping cookie %s: %s", cookie.get("name"), e)
    written += int(driver.evaluate(WRITE_STORAGE_SCRIPT, state.local_storage, state.session_storage) or 0)
    logger.info("Injected %d storage items into %s", written, state.origin)
    return written


def clear_storage_state(driver: "BrowserDriver") -> None:
    """Clear web storage and script-visible cookies of the current origin."""
    driver.evaluate(CLEAR_STORAGE_SCRIPT)


@dataclass
class SessionValidation:
    """Which success indicators were found on the current page."""
    matched: List[str]
    total: int

    @property
    def valid(self) -> bool:
        return self.total == 0 or bool(self.matched)

    def __bool__(self) -> bool:
        return self.valid


def validate_session(driver: "BrowserDriver", success_indicators: Iterable[str]) -> SessionValidation:
    """
    Check that a restored session is really logged in.

    Each indicator may be a CSS selector, text on the page, a localStorage
    key or part of a cookie. The session is valid if any indicator matches;
    no indicators at all counts as valid.
    """
    indicators = [str(i) for i in success_indicators]
    if not indicators:
        return SessionValidation(matched=[], total=0)
    data = driver.evaluate(VALIDATE_SESSION_SCRIPT, indicators)
    if not isinstance(data, dict):
        raise DriverError(DriverErrorKind.SCRIPT_ERROR, "validation script returned no data")
    result = SessionValidation(matched=[str(m) for m in data.get("matched") or []], total=len(indicators))
    logger.info("Session validation matched %d of %d indicators", len(result.matched), result.total)
    return result
