import threading
import time
from dataclasses import replace

import pytest

from surfai import Action, ConfigurationError, Session, SessionState
from surfai.core.config import RetryPolicy
from surfai.core.errors import (
    Disconnected,
    ElementNotFound,
    InteractionFailed,
    InvalidSessionState,
    ReadinessTimeout,
    SessionClosed,
)
from surfai.core.session import PageReadiness
from surfai.core.storage_state import StorageState
from surfai.layers.intelligence.element_classifier import ElementRole
from surfai.layers.sense.readiness import ReadinessVerdict
from surfai.reporters.flight_recorder import FlightRecorder

from conftest import SEARCH_PAGE, FakeDriver, Frame, node, occluded, stale

URL = "https://example.test/"


@pytest.fixture
def session(driver, fast_config):
    session = Session(fast_config, driver=driver)
    yield session
    session.close()


def test_navigate_smart_settles_and_classifies(session, driver):
    """Navigation returns a verdict and leaves the session SETTLED with elements."""
    session.open()
    result = session.navigate_smart(URL)

    assert session.state is SessionState.SETTLED
    assert result.settled
    assert result.load_quality == "excellent"
    assert result.node_count == 4
    assert result.element_count == 3
    assert driver.navigations == [URL]
    assert session.page.readiness is PageReadiness.SETTLED
    assert [e.label for e in session.get_elements()] == ["Search", "Go", "About us"]


def test_operations_require_the_right_state(session):
    """Elements and actions are only available on a settled page."""
    with pytest.raises(InvalidSessionState):
        session.navigate_smart(URL)

    session.open()
    with pytest.raises(InvalidSessionState):
        session.get_elements()
    with pytest.raises(InvalidSessionState):
        session.act("anything", Action.click())
    with pytest.raises(InvalidSessionState):
        session.open()


def test_close_is_idempotent_and_releases_once(driver, fast_config):
    """close() twice releases the tab exactly once."""
    session = Session(fast_config, driver=driver).open()
    session.navigate_smart(URL)

    session.close()
    session.close()

    assert driver.close_count == 1
    assert session.state is SessionState.CLOSED
    assert session.closed
    with pytest.raises(InvalidSessionState):
        session.navigate_smart(URL)
    with pytest.raises(InvalidSessionState):
        session.open()


def test_close_without_open_never_touches_browser(driver, fast_config):
    """A session that never opened has nothing to release."""
    Session(fast_config, driver=driver).close()
    assert driver.close_count == 0
    assert driver.open_count == 0


def test_context_manager_opens_and_closes(driver, fast_config):
    """The with-block opens the tab and always closes it."""
    with Session(fast_config, driver=driver) as session:
        assert session.state is SessionState.OPEN
        session.navigate_smart(URL)
    assert driver.close_count == 1
    assert session.state is SessionState.CLOSED


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not reached in time"
        time.sleep(0.005)


def in_background(operation):
    """Run operation on a thread; returns the thread and a dict for its outcome."""
    outcome = {}

    def run():
        try:
            outcome["result"] = operation()
        except Exception as e:
            outcome["error"] = e

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, outcome


def test_close_cancels_navigation_wait(driver, fast_config):
    """close() from another thread ends a readiness wait long before its next poll."""
    config = replace(fast_config, poll_interval=5.0, navigation_budget=30.0, stability_ceiling=30.0)
    session = Session(config, driver=driver).open()
    thread, outcome = in_background(lambda: session.navigate_smart(URL))
    wait_until(lambda: driver.captures >= 1)

    started = time.monotonic()
    session.close()
    calls_at_close = driver.calls
    thread.join(2.0)

    assert time.monotonic() - started < 1.0
    assert isinstance(outcome.get("error"), SessionClosed)
    assert driver.calls == calls_at_close
    assert driver.captures == 1
    assert driver.close_count == 1


def test_close_cancels_retry_backoff(driver, fast_config):
    """close() interrupts a long backoff and no further attempt is made."""
    config = replace(fast_config, retry=RetryPolicy(max_attempts=3, backoff=(5.0,)))
    session = Session(config, driver=driver).open()
    session.navigate_smart(URL)
    go = session.find_by_role("button")[0]
    driver.action_failures["click"] = [occluded() for _ in range(3)]
    thread, outcome = in_background(lambda: session.act(go.descriptor_id, Action.click()))
    wait_until(lambda: len(driver.actions) >= 1)

    started = time.monotonic()
    session.close()
    calls_at_close = driver.calls
    thread.join(2.0)

    assert time.monotonic() - started < 1.0
    assert isinstance(outcome.get("error"), SessionClosed)
    assert driver.calls == calls_at_close
    assert driver.actions == [("click", "#go")]
    assert session.state is SessionState.CLOSED


def test_readiness_timeout_leaves_session_navigating(session, driver):
    """A page that never loads raises and can be navigated again."""
    driver.load([Frame(URL, SEARCH_PAGE, ready_state="loading")])
    session.open()

    with pytest.raises(ReadinessTimeout):
        session.navigate_smart(URL)
    assert session.state is SessionState.NAVIGATING
    assert isinstance(session.page.last_error, ReadinessTimeout)

    driver.load([Frame(URL, SEARCH_PAGE)])
    assert session.navigate_smart(URL).settled
    assert session.page.last_error is None


def test_disconnect_allows_only_close(session, driver):
    """After a disconnect every operation but close() is rejected."""
    session.open()
    session.navigate_smart(URL)
    search = session.find_by_role("text_input")[0]
    driver.disconnected = True

    with pytest.raises(Disconnected):
        session.act(search.descriptor_id, Action.type("hello"))

    assert session.state is SessionState.DISCONNECTED
    assert isinstance(session.page.last_error, Disconnected)
    with pytest.raises(InvalidSessionState) as exc:
        session.get_elements()
    assert "only close()" in str(exc.value)
    with pytest.raises(InvalidSessionState):
        session.navigate_smart(URL)

    session.close()
    assert session.state is SessionState.CLOSED
    assert driver.close_count == 1


def test_act_types_and_refreshes_elements(session, driver):
    """A successful action returns the session to SETTLED."""
    session.open()
    session.navigate_smart(URL)
    search = session.find_by_text("search")[0]

    result = session.act(search.descriptor_id, Action.type("surfai"))

    assert result.verified
    assert session.state is SessionState.SETTLED
    assert driver.values["form > input"] == "surfai"


def test_failed_action_returns_to_settled(session, driver):
    """Interaction errors surface but the page remains usable."""
    session.open()
    session.navigate_smart(URL)

    with pytest.raises(ElementNotFound):
        session.act("0000000000000000", Action.click())
    assert session.state is SessionState.SETTLED


def test_click_navigation_settles_new_page(session, driver):
    """An action that navigates waits for the new page before returning."""
    about = "https://example.test/about"
    session.open()
    session.navigate_smart(URL)
    link = session.find_by_role(ElementRole.LINK)[0]
    driver.on_click = lambda d, selector: d.load([Frame(about, [node("h1", "About"), node("a", "Home", href="/")])])

    result = session.act(link.descriptor_id, Action.click())

    assert result.navigated
    assert session.state is SessionState.SETTLED
    assert session.page.url == about
    assert [e.label for e in session.get_elements()] == ["Home"]


def test_same_url_reload_after_click_is_waited_for(driver, fast_config):
    """A click whose page reload leaves the DOM unreadable settles the reloaded page."""
    config = replace(fast_config, click_grace_period=0.0)
    session = Session(config, driver=driver).open()
    session.navigate_smart(URL)
    go = session.find_by_role("button")[0]
    saved = node("a", "Saved", href="/saved")

    def reload(d, selector):
        d.capture_failures.append(stale("context destroyed"))
        d.load([Frame(URL, SEARCH_PAGE + [saved])])

    driver.on_click = reload
    try:
        result = session.act(go.descriptor_id, Action.click())

        assert result.navigated
        assert session.state is SessionState.SETTLED
        assert session.page.readiness is PageReadiness.SETTLED
        assert session.find_by_text("Saved")
    finally:
        session.close()


def test_page_stats_and_wait_for_element(session, driver):
    """Stats include the verdict; wait_for_element polls for late elements."""
    session.open()
    session.navigate_smart(URL)

    stats = session.page_stats()
    assert stats["verdict"] == ReadinessVerdict.SETTLED.value
    assert stats["interactive_elements"] == 3

    driver.frames.append(Frame(URL, SEARCH_PAGE + [node("button", "Accept cookies", id="accept")]))
    found = session.wait_for_element(text="Accept", role="button", timeout=1.0)
    assert found is not None and found.label == "Accept cookies"
    assert session.wait_for_element(text="Nope", timeout=0.05) is None
    with pytest.raises(ValueError):
        session.wait_for_element()


def test_storage_state_round_trip(driver, fast_config, tmp_path):
    """Exported cookies and storage are restored into a fresh session."""
    driver.cookies = [{"name": "sid", "value": "abc", "domain": "example.test", "path": "/", "sameSite": "Lax"}]
    driver.storage["local"]["theme"] = "dark"
    with Session(fast_config, driver=driver) as session:
        session.navigate_smart(URL)
        state = session.export_storage_state()
    path = state.save(str(tmp_path / "login.json"))

    target = FakeDriver()
    target.load([Frame(URL, SEARCH_PAGE)])
    with Session(fast_config, driver=target) as session:
        result = session.import_storage_state(StorageState.load(path))

    assert result.settled
    assert target.cookies == [{"name": "sid", "value": "abc", "domain": "example.test", "path": "/", "sameSite": "Lax"}]
    assert target.storage["local"] == {"theme": "dark"}
    assert target.navigations == [URL, URL]


def test_subscribe_changes_requires_monitor(session):
    """Subscribing with the monitor disabled is a configuration error."""
    session.open()
    with pytest.raises(ConfigurationError):
        session.subscribe_changes()


def test_monitor_updates_elements_in_background(driver, fast_config):
    """Background ChangeSets reach subscribers and the element list."""
    config = replace(fast_config, monitor_enabled=True)
    with Session(config, driver=driver) as session:
        session.navigate_smart(URL)
        with session.subscribe_changes() as changes:
            driver.frames.append(Frame(URL, SEARCH_PAGE + [node("button", "Load more", id="more")]))
            change = changes.get(timeout=2.0)

        assert change is not None and len(change.added) == 1
        assert "Load more" in [e.label for e in session.get_elements()]
    assert changes.closed


def test_demo_open_uses_visible_browser(driver):
    """demo_open forces a headed browser."""
    session = Session.demo_open(driver=driver)
    try:
        assert not session.config.headless
        assert session.config.demo_mode
        assert session.state is SessionState.OPEN
    finally:
        session.close()


def test_report_dir_saves_flight_record(driver, fast_config, tmp_path):
    """With report_dir set, close() writes the flight record."""
    config = replace(fast_config, report_dir=str(tmp_path))
    recorder = FlightRecorder(output_dir=str(tmp_path), run_name="run")
    with Session(config, driver=driver, recorder=recorder) as session:
        session.navigate_smart(URL)

    assert (tmp_path / "run" / "flight_record.json").exists()
    assert len(recorder.entries_of("readiness")) == 1


def test_numbered_highlights_drive_actions(session, driver):
    """Elements are numbered on the page and can be acted on by number."""
    session.open()
    session.navigate_smart(URL)

    highlights = session.highlight_elements()

    assert [(h.number, h.label) for h in highlights] == [(1, "Search"), (2, "Go"), (3, "About us")]
    assert [item["selector"] for item in driver.highlighted] == ["form > input", "#go", "a"]
    session.type_in_number(1, "surfai")
    session.click_number(2)
    assert driver.values["form > input"] == "surfai"
    assert driver.actions[-1] == ("click", "#go")
    with pytest.raises(ElementNotFound):
        session.click_number(9)


def test_highlights_filter_by_role_and_reset(session, driver):
    """A role filter renumbers from 1; clearing or navigating forgets the numbers."""
    session.open()
    session.navigate_smart(URL)

    buttons = session.highlight_elements(role="button")
    assert [(h.number, h.label) for h in buttons] == [(1, "Go")]
    assert session.clear_highlights() == 1
    assert driver.highlighted == []
    with pytest.raises(ElementNotFound):
        session.click_number(1)

    session.highlight_elements()
    session.navigate_smart(URL)
    assert session.highlights == []


def test_validate_session_checks_indicators(session, driver):
    """Any matching selector, text, storage key or cookie makes the session valid."""
    driver.cookies = [{"name": "sid", "value": "abc"}]
    driver.storage["local"]["auth_token"] = "t"
    session.open()
    session.navigate_smart(URL)

    assert session.validate_session(["#go"])
    assert session.validate_session(["Sign out", "auth_token"]).matched == ["auth_token"]
    assert session.validate_session(["sid=abc"]).valid
    failed = session.validate_session(["Sign out", "#logout"])
    assert not failed
    assert failed.total == 2
    assert session.validate_session([]).valid
    assert "Session validation failed" in [e.message for e in session.recorder.entries_of("info")]


def test_clear_storage_state_empties_cookies_and_storage(session, driver):
    """clear_storage_state wipes the origin's client state and logs it."""
    driver.cookies = [{"name": "sid", "value": "abc"}]
    driver.storage["local"]["theme"] = "dark"
    driver.storage["session"]["draft"] = "x"
    session.open()
    session.navigate_smart(URL)

    session.clear_storage_state()

    assert driver.cookies == []
    assert driver.storage == {"local": {}, "session": {}}
    assert session.recorder.entries_of("info")[-1].message == f"Cleared storage state for {URL}"


def test_noop_and_failed_actions_attach_screenshots(driver, fast_config, tmp_path):
    """With a report directory, no-op and failed actions carry a viewport screenshot."""
    recorder = FlightRecorder(output_dir=str(tmp_path), run_name="run")
    with Session(fast_config, driver=driver, recorder=recorder) as session:
        session.navigate_smart(URL)
        go = session.find_by_role("button")[0].descriptor_id

        session.act(go, Action.click())
        driver.action_failures["click"] = [occluded() for _ in range(3)]
        with pytest.raises(InteractionFailed):
            session.act(go, Action.click())

    noop = recorder.entries_of("warning")[0].screenshot_path
    failed = recorder.entries_of("error")[-1].screenshot_path
    assert noop == str(tmp_path / "run" / "screenshots" / f"click_{go}_noop.png")
    assert failed == str(tmp_path / "run" / "screenshots" / f"click_{go}_failed.png")
    with open(failed, "rb") as f:
        assert f.read() == b"\x89PNG viewport"
