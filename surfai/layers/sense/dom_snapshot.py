"""
DOM Snapshot - Immutable page captures and structural diffs.

A ``DomSnapshot`` is everything SurfAI knows about the page at one
instant. Nodes are correlated across snapshots by a stable key derived
from what the node *is* (tag, ancestry, identifying attributes, the list
row it belongs to), never
from where it sits among its siblings, so reordering a list does not
look like a rebuild.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, TYPE_CHECKING
import hashlib
import json
import logging
import time

from surfai.core.errors import Disconnected, DriverError, StaleCapture

if TYPE_CHECKING:
    from surfai.core.browser_driver import BrowserDriver
    from surfai.core.config import SessionConfig

logger = logging.getLogger(__name__)

# Attributes that name a node independently of its content
IDENTITY_ATTRIBUTES = ("id", "name", "data-testid")
# Attributes describing what kind of node it is
SHAPE_ATTRIBUTES = ("role", "type")
# Content used to tell apart nodes that have no identity attributes
LABEL_ATTRIBUTES = ("aria-label", "placeholder", "title", "alt", "href")


def _md5(value: str, length: int = 16) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()[:length]


@dataclass(frozen=True)
class NodeDescriptor:
    """
    One element of a captured page.

    ``fingerprint`` changes whenever the node's content (attributes, text,
    visibility) changes. ``stable_key`` only changes when the node is
    genuinely replaced by something different. Geometry is carried for
    thresholds and classification but is part of neither.
    """
    stable_key: str
    tag: str
    attributes: Dict[str, str] = field(hash=False)
    bounding_box: Dict[str, float] = field(hash=False)
    visible: bool
    text: str
    text_hash: str
    fingerprint: str
    selector: str
    index: int
    ancestry: Tuple[str, ...] = ()
    row: str = ""

    @property
    def area(self) -> float:
        return max(0.0, self.bounding_box.get("width", 0.0)) * max(0.0, self.bounding_box.get("height", 0.0))

    def attr(self, name: str, default: str = "") -> str:
        return self.attributes.get(name, default)

    def significant(self, min_area: float) -> bool:
        """Whether the node counts for change detection at this size threshold."""
        if min_area <= 0:
            return True
        return self.visible and self.area >= min_area

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "stable_key": self.stable_key,
            "tag": self.tag,
            "attributes": dict(self.attributes),
            "bounding_box": dict(self.bounding_box),
            "visible": self.visible,
            "text": self.text,
            "fingerprint": self.fingerprint,
            "selector": self.selector,
            "index": self.index,
        }

    def __str__(self) -> str:
        text_preview = self.text[:40] + "..." if len(self.text) > 40 else self.text
        attrs = ", ".join(
            f'{k}="{v}"' for k, v in self.attributes.items() if k in ("id", "name", "type", "role")
        )
        return f"<{self.tag} {attrs}>{text_preview}</{self.tag}>"


@dataclass(frozen=True)
class DomSnapshot:
    """
    An ordered, immutable capture of the page.

    Example:
        >>> snapshot = engine.capture()
        >>> node = snapshot.get(key)
        >>> snapshot.age()
        0.01
    """
    url: str
    captured_at: float
    nodes: Tuple[NodeDescriptor, ...]
    ready_state: str = "complete"
    _index: Dict[str, NodeDescriptor] = field(
        init=False, repr=False, compare=False, hash=False, default_factory=dict
    )

    def __post_init__(self):
        object.__setattr__(self, "_index", {node.stable_key: node for node in self.nodes})

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def get(self, key: str) -> Optional[NodeDescriptor]:
        return self._index.get(key)

    def keys(self) -> FrozenSet[str]:
        return frozenset(self._index)

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since capture, on the monotonic clock."""
        return (time.monotonic() if now is None else now) - self.captured_at


@dataclass(frozen=True)
class ChangeSet:
    """Stable keys added, removed and mutated between two snapshots."""
    added: FrozenSet[str] = frozenset()
    removed: FrozenSet[str] = frozenset()
    mutated: FrozenSet[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.mutated)

    @property
    def size(self) -> int:
        return len(self.added) + len(self.removed) + len(self.mutated)

    def __bool__(self) -> bool:
        return not self.is_empty

    def touched(self) -> FrozenSet[str]:
        """Keys that exist in the newer snapshot and changed."""
        return self.added | self.mutated

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "added": sorted(self.added),
            "removed": sorted(self.removed),
            "mutated": sorted(self.mutated),
        }

    def __str__(self) -> str:
        return f"+{len(self.added)} -{len(self.removed)} ~{len(self.mutated)}"


EMPTY_CHANGESET = ChangeSet()


def diff(prev: DomSnapshot, nxt: DomSnapshot, min_area: float = 0.0) -> ChangeSet:
    """
    Compute the ChangeSet between two snapshots in a single pass over each.

    Args:
        prev: Older snapshot
        nxt: Newer snapshot
        min_area: Ignore nodes that are invisible or smaller than this
            (square pixels) on both sides. 0 compares every node.

    Returns:
        ChangeSet keyed by stable key
    """
    if prev is nxt:
        return EMPTY_CHANGESET

    added = set()
    mutated = set()
    for node in nxt.nodes:
        old = prev.get(node.stable_key)
        if old is None:
            if node.significant(min_area):
                added.add(node.stable_key)
        elif old.fingerprint != node.fingerprint:
            if old.significant(min_area) or node.significant(min_area):
                mutated.add(node.stable_key)

    removed = {
        node.stable_key
        for node in prev.nodes
        if node.stable_key not in nxt and node.significant(min_area)
    }
    if not (added or removed or mutated):
        return EMPTY_CHANGESET
    return ChangeSet(frozenset(added), frozenset(removed), frozenset(mutated))


def _signature(tag: str, ancestry: Iterable[str], attributes: Dict[str, str], text: str, row: str = "") -> str:
    parts = [tag, "/".join(ancestry)]
    parts.extend(f"{name}={attributes.get(name, '')}" for name in SHAPE_ATTRIBUTES)
    identity = [f"{name}={attributes[name]}" for name in IDENTITY_ATTRIBUTES if attributes.get(name)]
    if identity:
        parts.extend(identity)
    else:
        parts.extend(f"{name}={attributes.get(name, '')}" for name in LABEL_ATTRIBUTES)
        parts.append(text[:64])
        if row:
            parts.append(f"row={row[:64]}")
    return "|".join(parts)


def _fingerprint(tag: str, attributes: Dict[str, str], text: str, visible: bool) -> str:
    payload = json.dumps([tag, sorted(attributes.items()), text, visible], ensure_ascii=False)
    return _md5(payload, 24)


def build_nodes(raw_nodes: List[Dict[str, Any]], max_text_length: int = 200) -> Tuple[NodeDescriptor, ...]:
    """
    Turn raw capture records into NodeDescriptors with keys and fingerprints.

    Unnamed nodes inside repeated list rows are told apart by the label of
    their row, so removing one row leaves the keys of the others alone.
    Nodes that still share a signature (rows with identical content) fall
    back to their occurrence order.
    """
    occurrences: Dict[str, int] = {}
    nodes = []
    for index, raw in enumerate(raw_nodes):
        tag = str(raw.get("tag", "")).lower()
        attributes = {str(k): str(v) for k, v in (raw.get("attributes") or {}).items() if v is not None}
        text = str(raw.get("text") or "")[:max_text_length]
        visible = bool(raw.get("visible", False))
        ancestry = tuple(raw.get("ancestry") or ())
        row = str(raw.get("row") or "")
        rect = raw.get("rect") or {}
        bounding_box = {
            "x": float(rect.get("x", 0.0)),
            "y": float(rect.get("y", 0.0)),
            "width": float(rect.get("width", 0.0)),
            "height": float(rect.get("height", 0.0)),
        }

        signature = _signature(tag, ancestry, attributes, text, row)
        seen = occurrences.get(signature, 0)
        occurrences[signature] = seen + 1

        nodes.append(NodeDescriptor(
            stable_key=_md5(f"{signature}#{seen}"),
            tag=tag,
            attributes=attributes,
            bounding_box=bounding_box,
            visible=visible,
            text=text,
            text_hash=_md5(text, 12),
            fingerprint=_fingerprint(tag, attributes, text, visible),
            selector=str(raw.get("selector") or tag),
            index=index,
            ancestry=ancestry,
            row=row,
        ))
    return tuple(nodes)


class SnapshotEngine:
    """
    Captures DomSnapshots through the browser adapter.

    Keeps the most recent snapshot so other components can decide whether
    it is fresh enough to reuse.

    Example:
        >>> engine = SnapshotEngine(adapter, config)
        >>> before = engine.capture()
        >>> after = engine.capture()
        >>> changes = diff(before, after)
    """

    def __init__(
        self,
        driver: "BrowserDriver",
        config: "SessionConfig",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.driver = driver
        self.config = config
        self.clock = clock
        self._latest: Optional[DomSnapshot] = None

    @property
    def latest(self) -> Optional[DomSnapshot]:
        return self._latest

    def capture(self) -> DomSnapshot:
        """
        Capture the page as it is right now.

        Raises:
            StaleCapture: The page could not be read consistently
            Disconnected: The browser is gone
        """
        try:
            raw = self.driver.capture_dom(self.config.max_nodes, self.config.max_text_length)
        except Disconnected:
            raise
        except DriverError as e:
            raise StaleCapture(str(e), cause=e) from e

        try:
            nodes = build_nodes(raw.get("nodes") or [], self.config.max_text_length)
        except (TypeError, ValueError, AttributeError) as e:
            raise StaleCapture(f"malformed capture: {e}") from e

        snapshot = DomSnapshot(
            url=str(raw.get("url", "")),
            captured_at=self.clock(),
            nodes=nodes,
            ready_state=str(raw.get("readyState", "complete")),
        )
        self._latest = snapshot
        logger.debug("Captured %d nodes from %s", len(nodes), snapshot.url)
        return snapshot

    def age(self) -> Optional[float]:
        """Age of the latest snapshot, or None if nothing was captured yet."""
        if self._latest is None:
            return None
        return self.clock() - self._latest.captured_at
