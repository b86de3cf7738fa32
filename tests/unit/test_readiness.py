import threading
from dataclasses import replace

import pytest

from surfai.core.config import SessionConfig
from surfai.core.errors import Disconnected, ReadinessTimeout, SessionClosed
from surfai.layers.sense.dom_snapshot import SnapshotEngine
from surfai.layers.sense.readiness import (
    LoadProbe,
    PageReadinessDetector,
    ReadinessVerdict,
    is_fragment_change,
)
from surfai.reporters.flight_recorder import FlightRecorder

from conftest import SEARCH_PAGE, Frame, node, stale

URL = "https://example.test/"
BANNER = node("div", "We use cookies", id="cookie-banner", width=800, height=80)


def make_detector(driver, config, **kwargs):
    return PageReadinessDetector(driver, SnapshotEngine(driver, config), config, **kwargs)


def test_settles_on_stable_loaded_page(driver, fast_config):
    """A loaded page with no requests settles after two identical snapshots."""
    report = make_detector(driver, fast_config).wait_until_settled(URL)

    assert report.verdict is ReadinessVerdict.SETTLED
    assert report.settled
    assert report.polls == 2
    assert len(report.snapshot) == len(SEARCH_PAGE)
    assert report.url == URL


def test_never_settles_before_load_completes(driver, fast_config):
    """Identical DOMs do not count while readyState is not complete."""
    driver.load([Frame(URL, SEARCH_PAGE, ready_state="loading")] * 3 + [Frame(URL, SEARCH_PAGE)])

    report = make_detector(driver, fast_config).wait_until_settled(URL)

    # three loading polls, one baseline, one quiet poll
    assert report.polls == 5
    assert report.snapshot.ready_state == "complete"


def test_deferred_banner_is_in_settled_snapshot(driver, fast_config):
    """Settling waits for in-flight requests and the content they render."""
    driver.load([Frame(URL, SEARCH_PAGE, pending=1)] * 3 + [Frame(URL, SEARCH_PAGE + [BANNER])])

    report = make_detector(driver, fast_config).wait_until_settled(URL)

    assert report.settled
    texts = [n.text for n in report.snapshot]
    assert "We use cookies" in texts


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TickingEvent(threading.Event):
    """Cancel event whose waits advance a FakeClock instead of sleeping."""

    def __init__(self, clock):
        super().__init__()
        self.clock = clock

    def wait(self, timeout=None):
        self.clock.now += timeout or 0.0
        return self.is_set()


def test_timer_banner_is_awaited_with_default_config(driver):
    """A banner inserted 2s after load is in the settled snapshot, then a full quiet window follows."""
    config = SessionConfig()
    clock = FakeClock()
    # one frame per 0.25s poll; the banner shows up at t=2.0
    driver.load([Frame(URL, SEARCH_PAGE)] * 8 + [Frame(URL, SEARCH_PAGE + [BANNER])])
    detector = PageReadinessDetector(
        driver, SnapshotEngine(driver, config, clock), config,
        cancel_event=TickingEvent(clock), clock=clock,
    )

    report = detector.wait_until_settled(URL)

    assert report.settled
    assert any(n.text == "We use cookies" for n in report.snapshot)
    assert report.elapsed == pytest.approx(2.0 + config.settle_window)
    assert report.polls == 19


def test_confirmations_restart_after_a_change(driver, fast_config):
    """Any change resets the run of quiet polls."""
    config = replace(fast_config, settle_confirmations=3)
    driver.load([Frame(URL, SEARCH_PAGE)] * 2 + [Frame(URL, SEARCH_PAGE + [BANNER])])

    report = make_detector(driver, config).wait_until_settled(URL)

    assert report.polls == 6
    assert any(n.text == "We use cookies" for n in report.snapshot)


def test_fragment_change_needs_single_quiet_poll(driver, fast_config):
    """A hash-only route change settles after one quiet poll."""
    config = replace(fast_config, settle_confirmations=3)
    driver.load([Frame("https://example.test/app#/b", SEARCH_PAGE)])

    report = make_detector(driver, config).wait_until_settled(
        "https://example.test/app#/b", previous_url="https://example.test/app#/a"
    )

    assert report.polls == 2


def test_load_that_never_completes_times_out(driver, fast_config):
    """ReadinessTimeout carries the last readyState when load never completes."""
    config = replace(fast_config, navigation_budget=0.05)
    driver.load([Frame(URL, SEARCH_PAGE, ready_state="interactive")])

    with pytest.raises(ReadinessTimeout) as exc:
        make_detector(driver, config).wait_until_settled(URL)

    assert exc.value.ready_state == "interactive"
    assert exc.value.url == URL
    assert exc.value.snapshot_age is not None


def test_constantly_changing_page_is_mostly_stable(driver, fast_config):
    """A page that never stops changing is accepted after the ceiling."""
    config = replace(fast_config, stability_ceiling=0.05)
    driver.load([Frame(URL, [node("span", f"12:00:{i:03d}", id="clock")]) for i in range(1000)])

    report = make_detector(driver, config).wait_until_settled(URL)

    assert report.verdict is ReadinessVerdict.MOSTLY_STABLE
    assert not report.settled
    assert report.reason == "page kept changing"


def test_requests_that_never_drain_are_mostly_stable(driver, fast_config):
    """A background poller keeps the page from settling but not from loading."""
    config = replace(fast_config, stability_ceiling=0.05)
    driver.load([Frame(URL, SEARCH_PAGE, pending=2)])

    report = make_detector(driver, config).wait_until_settled(URL)

    assert report.verdict is ReadinessVerdict.MOSTLY_STABLE
    assert "2 request(s)" in report.reason


def test_stale_capture_is_absorbed(driver, fast_config):
    """A failed capture resets the baseline and is recorded, not raised."""
    driver.capture_failures.append(stale("context destroyed"))
    recorder = FlightRecorder()

    report = make_detector(driver, fast_config, recorder=recorder).wait_until_settled(URL)

    assert report.settled
    assert report.polls == 3
    assert len(recorder.entries_of("warning")) == 1


def test_disconnect_propagates(driver, fast_config):
    """Disconnected ends the wait immediately."""
    driver.disconnected = True
    with pytest.raises(Disconnected):
        make_detector(driver, fast_config).wait_until_settled(URL)


def test_cancelled_wait_raises_session_closed(driver, fast_config):
    """Setting the cancel event aborts the wait."""
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(SessionClosed):
        make_detector(driver, fast_config, cancel_event=cancel).wait_until_settled(URL)
    assert driver.captures == 0


def test_fragment_change_detection():
    """Only URLs that differ in their fragment alone count."""
    assert is_fragment_change("https://a.test/app#/one", "https://a.test/app#/two")
    assert is_fragment_change("https://a.test/app", "https://a.test/app#top")
    assert not is_fragment_change("https://a.test/app#/one", "https://a.test/other#/one")
    assert not is_fragment_change("https://a.test/app", "https://a.test/app")
    assert not is_fragment_change(None, "https://a.test/app")


def test_load_probe_tolerates_bad_results():
    """Garbage from the probe script reads as still loading."""
    assert not LoadProbe.from_result(None).loaded
    probe = LoadProbe.from_result({"readyState": "complete", "url": URL, "pending": "n/a"})
    assert probe.loaded
    assert probe.pending == 0

