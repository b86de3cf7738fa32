"""Sense Layer - Snapshots, readiness detection and change monitoring."""

from surfai.layers.sense.dom_snapshot import ChangeSet, DomSnapshot, NodeDescriptor, SnapshotEngine, diff
from surfai.layers.sense.readiness import PageReadinessDetector, ReadinessVerdict
from surfai.layers.sense.dom_monitor import DomMonitor, ChangeSubscription

__all__ = [
    "ChangeSet", "DomSnapshot", "NodeDescriptor", "SnapshotEngine", "diff",
    "PageReadinessDetector", "ReadinessVerdict", "DomMonitor", "ChangeSubscription",
]
