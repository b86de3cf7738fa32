import json

import pytest

from surfai.layers.sense.dom_snapshot import ChangeSet
from surfai.reporters.flight_recorder import FlightRecorder


def test_failures_collect_verification_warning_and_error():
    """failures() returns only entries describing something that went wrong."""
    recorder = FlightRecorder()
    recorder.log_navigation("https://example.test/")
    recorder.log_action_attempt("k1", "click", 1, True)
    recorder.log_verification_failure("k2", "type", 1, "value is ''")
    recorder.log_warning("No-op click on k1", descriptor_id="k1")
    recorder.log_error("Browser disconnected", RuntimeError("gone"))

    failures = recorder.failures()

    assert [e.event_type for e in failures] == ["verification", "warning", "error"]
    assert failures[0].message == "Verification failed for type on k2 (attempt 1): value is ''"
    assert failures[2].data["exception"] == "gone"
    assert [e.step for e in recorder.entries] == [0, 1, 2, 3, 4]


def test_in_memory_recorder_needs_explicit_path(tmp_path):
    """Without output_dir nothing touches disk unless a path is given."""
    recorder = FlightRecorder()
    recorder.log_change(ChangeSet(added=frozenset({"a"})), "https://example.test/")

    assert recorder.capture_screenshot("step", b"png") is None
    with pytest.raises(ValueError):
        recorder.save()

    path = recorder.save(str(tmp_path / "record.json"))
    with open(path, encoding="utf-8") as f:
        record = json.load(f)
    assert record["entries"][0]["data"]["added"] == ["a"]
    assert "end_time" in record["metadata"]


def test_output_dir_stores_record_and_screenshots(tmp_path):
    """With output_dir, screenshots attach to the latest entry."""
    recorder = FlightRecorder(output_dir=str(tmp_path), run_name="run1")
    recorder.log_info("Session opened", headless=True)

    path = recorder.capture_screenshot("opened", b"\x89PNG")
    saved = recorder.save()

    assert path.endswith("run1/screenshots/opened.png")
    assert recorder.entries[-1].screenshot_path == path
    assert saved == str(tmp_path / "run1" / "flight_record.json")
    assert recorder.to_dict()["metadata"]["run_name"] == "run1"


def test_bounded_recorder_keeps_newest_entries():
    """max_entries caps memory; steps keep counting and drops are reported."""
    recorder = FlightRecorder(max_entries=3)
    for i in range(5):
        recorder.log_info(f"event {i}")

    assert [e.step for e in recorder.entries] == [2, 3, 4]
    assert recorder.dropped == 2
    assert recorder.to_dict()["metadata"]["dropped_entries"] == 2
