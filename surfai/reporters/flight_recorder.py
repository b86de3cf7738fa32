"""
Flight Recorder - The running log of a session.

Captures navigations, readiness verdicts, DOM change sets, every action
attempt and every verification failure, so callers can see what happened
even when an operation eventually succeeded.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, TYPE_CHECKING
from datetime import datetime
import json
import os
import threading

if TYPE_CHECKING:
    from surfai.layers.sense.dom_snapshot import ChangeSet
    from surfai.layers.sense.readiness import ReadinessReport


@dataclass
class LogEntry:
    """A single log entry in the flight record."""
    timestamp: datetime
    step: int
    event_type: str  # 'navigation', 'readiness', 'change', 'action', 'verification', 'warning', 'error', 'info'
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    screenshot_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "step": self.step,
            "event_type": self.event_type,
            "message": self.message,
            "data": self.data,
            "screenshot_path": self.screenshot_path,
        }


class FlightRecorder:
    """
    Records what a session did and what went wrong along the way.

    Safe to write from the monitor thread and the caller's thread at once.

    Example:
        >>> recorder = FlightRecorder()
        >>> recorder.log_navigation("https://example.com")
        >>> recorder.log_verification_failure("a1b2", "type", 1, "value is ''")
        >>> [e.message for e in recorder.failures()]
        ["Verification failed for type on a1b2 (attempt 1): value is ''"]
    """

    FAILURE_EVENTS = ("verification", "warning", "error")

    def __init__(
        self,
        output_dir: Optional[str] = None,
        run_name: Optional[str] = None,
        max_entries: Optional[int] = None,
    ):
        """
        Initialize the flight recorder.

        Args:
            output_dir: Directory for the JSON record and screenshots;
                None keeps everything in memory
            run_name: Optional name for this run
            max_entries: Keep only this many of the newest entries;
                None keeps everything
        """
        self.output_dir = output_dir
        self.run_name = run_name or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.entries: Deque[LogEntry] = deque(maxlen=max_entries)
        self.dropped = 0
        self._next_step = 0
        self.metadata: Dict[str, Any] = {
            "start_time": datetime.now().isoformat(),
            "run_name": self.run_name,
        }
        self._lock = threading.Lock()

        self.run_dir: Optional[str] = None
        self.screenshots_dir: Optional[str] = None
        if output_dir:
            self.run_dir = os.path.join(output_dir, self.run_name)
            self.screenshots_dir = os.path.join(self.run_dir, "screenshots")
            os.makedirs(self.screenshots_dir, exist_ok=True)

    def _append(self, event_type: str, message: str, data: Optional[Dict[str, Any]] = None) -> LogEntry:
        with self._lock:
            entry = LogEntry(
                timestamp=datetime.now(),
                step=self._next_step,
                event_type=event_type,
                message=message,
                data=data or {},
            )
            if self.entries.maxlen is not None and len(self.entries) == self.entries.maxlen:
                self.dropped += 1
            self._next_step += 1
            self.entries.append(entry)
            return entry

    def log_navigation(self, url: str) -> None:
        """Log a navigation event."""
        self._append("navigation", f"Navigated to {url}", {"url": url})
        self.metadata["url"] = url

    def log_readiness(self, report: "ReadinessReport") -> None:
        """Log a readiness verdict."""
        self._append(
            "readiness",
            f"Page {report.verdict.value} after {report.polls} polls ({report.elapsed:.2f}s)",
            report.to_dict(),
        )

    def log_change(self, changes: "ChangeSet", url: str = "") -> None:
        """Log a ChangeSet published by the monitor."""
        self._append("change", f"DOM changed {changes}", {"url": url, **changes.to_dict()})

    def log_action_attempt(
        self,
        descriptor_id: str,
        action: str,
        attempt: int,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Log one attempt at an action."""
        status = "ok" if success else f"failed: {error}"
        self._append(
            "action",
            f"{action} on {descriptor_id} attempt {attempt} {status}",
            {
                "descriptor_id": descriptor_id,
                "action": action,
                "attempt": attempt,
                "success": success,
                "error": error,
            },
        )

    def log_verification_failure(self, descriptor_id: str, action: str, attempt: int, reason: str) -> None:
        """Log an action that ran but could not be verified."""
        self._append(
            "verification",
            f"Verification failed for {action} on {descriptor_id} (attempt {attempt}): {reason}",
            {"descriptor_id": descriptor_id, "action": action, "attempt": attempt, "reason": reason},
        )

    def log_info(self, message: str, **data: Any) -> None:
        """Log a general information message."""
        self._append("info", message, data)

    def log_warning(self, message: str, **data: Any) -> None:
        """Log a warning."""
        self._append("warning", message, data)

    def log_error(self, message: str, exception: Optional[BaseException] = None) -> None:
        """Log an error."""
        self._append("error", message, {"exception": str(exception) if exception else None})

    def entries_of(self, event_type: str) -> List[LogEntry]:
        with self._lock:
            return [e for e in self.entries if e.event_type == event_type]

    def failures(self) -> List[LogEntry]:
        """Verification failures, warnings and errors, oldest first."""
        with self._lock:
            return [e for e in self.entries if e.event_type in self.FAILURE_EVENTS]

    def capture_screenshot(self, name: str, png: bytes) -> Optional[str]:
        """
        Store a screenshot and attach it to the latest entry.

        Returns:
            Path to saved screenshot, or None when recording in memory only
        """
        if not self.screenshots_dir or not png:
            return None
        path = os.path.join(self.screenshots_dir, f"{name}.png")
        with open(path, "wb") as f:
            f.write(png)
        with self._lock:
            if self.entries:
                self.entries[-1].screenshot_path = path
        return path

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            entries = [e.to_dict() for e in self.entries]
            metadata = dict(self.metadata, dropped_entries=self.dropped)
        return {"metadata": metadata, "entries": entries}

    def save(self, path: Optional[str] = None) -> str:
        """
        Write the flight record as JSON.

        Args:
            path: Explicit file path; defaults to <run_dir>/flight_record.json

        Returns:
            Path to the written file
        """
        if path is None:
            if not self.run_dir:
                raise ValueError("FlightRecorder has no output_dir; pass an explicit path")
            path = os.path.join(self.run_dir, "flight_record.json")
        self.metadata["end_time"] = datetime.now().isoformat()
        record = self.to_dict()
        with open(path, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2)
        return path
