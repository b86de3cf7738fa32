import pytest

from surfai.core.errors import Disconnected, DriverError, DriverErrorKind, StaleCapture
from surfai.layers.sense.dom_snapshot import DomSnapshot, SnapshotEngine, build_nodes, diff

from conftest import SEARCH_PAGE, Frame, node, todo_rows


def make_snapshot(nodes, url="https://example.test/", at=0.0):
    return DomSnapshot(url=url, captured_at=at, nodes=build_nodes(nodes))


def test_diff_of_snapshot_with_itself_is_empty():
    """diff(S, S) is empty, whether S is the same object or an equal capture."""
    first = make_snapshot(SEARCH_PAGE)
    second = make_snapshot(SEARCH_PAGE, at=1.0)

    assert diff(first, first).is_empty
    assert diff(first, second).is_empty
    assert not diff(second, first)


def test_recapture_of_unchanged_page_keeps_stable_keys(driver, fast_config):
    """Two captures of the same page share every stable key."""
    engine = SnapshotEngine(driver, fast_config)
    before = engine.capture()
    after = engine.capture()

    assert before.keys() == after.keys()
    assert len(before) == len(SEARCH_PAGE)
    assert diff(before, after).is_empty


def test_stable_keys_survive_reordering():
    """Reordering siblings is not reported as add/remove."""
    rows = [
        node("li", "Milk", ancestry=("body", "ul")),
        node("li", "Eggs", ancestry=("body", "ul")),
        node("li", "Bread", ancestry=("body", "ul")),
    ]
    before = make_snapshot(rows)
    after = make_snapshot(list(reversed(rows)))

    assert before.keys() == after.keys()
    assert diff(before, after).is_empty


def test_identical_rows_get_distinct_keys():
    """Nodes with the same signature are told apart by occurrence."""
    snapshot = make_snapshot([node("li", "Row"), node("li", "Row"), node("li", "Row")])
    assert len(snapshot.keys()) == 3


def test_deleting_first_row_keeps_keys_of_the_others():
    """Identical controls in other rows keep their keys when a row is removed."""
    before = make_snapshot(todo_rows(["Milk", "Eggs", "Bread"]))
    after = make_snapshot(todo_rows(["Eggs", "Bread"]))
    milk, milk_destroy, _, eggs_destroy = before.nodes[:4]

    changes = diff(before, after)

    assert changes.removed == {milk.stable_key, milk_destroy.stable_key}
    assert not changes.added and not changes.mutated
    assert after.get(eggs_destroy.stable_key).selector == "li:nth-of-type(1) > button"


def test_replaced_node_with_same_attributes_keeps_its_key():
    """A node rebuilt with identical attributes is still the same element."""
    before = make_snapshot([node("input", ancestry=("body", "form"), name="q", type="text")])
    after = make_snapshot([
        node("div", "Loading finished", ancestry=("body",)),
        node("input", ancestry=("body", "form"), name="q", type="text"),
    ])

    key = before.nodes[0].stable_key
    assert key in after
    changes = diff(before, after)
    assert key not in changes.added | changes.removed | changes.mutated


def test_text_change_is_a_mutation():
    """Changing the text of an identified node mutates it in place."""
    before = make_snapshot([node("button", "Go", id="go")])
    after = make_snapshot([node("button", "Going...", id="go")])

    changes = diff(before, after)
    assert changes.mutated == {before.nodes[0].stable_key}
    assert not changes.added and not changes.removed


def test_added_and_removed_nodes():
    """New nodes are added, vanished nodes are removed."""
    banner = node("div", "Cookie banner", id="banner", width=800, height=60)
    before = make_snapshot(SEARCH_PAGE)
    after = make_snapshot(SEARCH_PAGE[1:] + [banner])

    changes = diff(before, after)
    assert changes.added == {after.nodes[-1].stable_key}
    assert changes.removed == {before.nodes[0].stable_key}
    assert changes.size == 2
    assert changes.to_dict()["added"] == [after.nodes[-1].stable_key]


def test_size_threshold_ignores_invisible_churn():
    """Invisible or tiny nodes only count when no threshold is set."""
    before = make_snapshot(SEARCH_PAGE)
    after = make_snapshot(SEARCH_PAGE + [
        node("img", visible=False, id="pixel"),
        node("span", "•", width=1, height=1, id="dot"),
    ])

    assert diff(before, after, min_area=4.0).is_empty
    assert len(diff(before, after).added) == 2


def test_visibility_toggle_is_a_mutation_even_with_threshold():
    """A node becoming hidden still counts, since it was significant before."""
    before = make_snapshot([node("div", "Toast", id="toast")])
    after = make_snapshot([node("div", "Toast", id="toast", visible=False)])

    assert diff(before, after, min_area=4.0).mutated == {before.nodes[0].stable_key}


def test_capture_failure_becomes_stale_capture(driver, fast_config):
    """Adapter failures during capture surface as StaleCapture."""
    driver.capture_failures.append(DriverError(DriverErrorKind.SCRIPT_ERROR, "Execution context was destroyed"))
    engine = SnapshotEngine(driver, fast_config)

    with pytest.raises(StaleCapture) as exc:
        engine.capture()
    assert "Execution context" in exc.value.reason
    assert engine.latest is None


def test_capture_disconnect_propagates(driver, fast_config):
    """Disconnected is never disguised as a stale capture."""
    driver.disconnected = True
    with pytest.raises(Disconnected):
        SnapshotEngine(driver, fast_config).capture()


def test_capture_records_latest_and_age(driver, fast_config):
    """The engine keeps the newest snapshot and reports its age on its clock."""
    now = [100.0]
    engine = SnapshotEngine(driver, fast_config, clock=lambda: now[0])
    snapshot = engine.capture()
    now[0] = 100.75

    assert engine.latest is snapshot
    assert engine.age() == pytest.approx(0.75)
    assert snapshot.url == "https://example.test/"
    driver.load([Frame("https://example.test/next", [])])
    assert len(engine.capture()) == 0
