"""
Element Classifier - Turning a snapshot into things a caller can use.

Finds the interactable elements on a page and describes each one by
role, label and confidence instead of by CSS path. Classification is a
pure function of the snapshot: no randomness, no live browser access.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
import re

from surfai.layers.sense.dom_snapshot import ChangeSet, DomSnapshot, NodeDescriptor


class ElementRole(Enum):
    BUTTON = "button"
    LINK = "link"
    TEXT_INPUT = "text_input"
    TEXT_AREA = "text_area"
    CHECKBOX = "checkbox"
    RADIO = "radio"
    DROPDOWN = "dropdown"
    FILE_UPLOAD = "file_upload"
    CLICKABLE = "clickable"
    UNKNOWN = "unknown"

    @property
    def accepts_text(self) -> bool:
        return self in (ElementRole.TEXT_INPUT, ElementRole.TEXT_AREA)


@dataclass(frozen=True)
class ElementDescriptor:
    """
    A classified element, referenced by stable key only.

    Never holds a live element handle: the selector is a best-effort hint
    that may go stale, and ``descriptor_id`` is re-resolved against a fresh
    snapshot before every interaction.
    """
    descriptor_id: str
    role: ElementRole
    confidence: float
    selector: str
    label: str
    tag: str
    index: int
    bounding_box: Dict[str, float] = field(default_factory=dict, hash=False, compare=False)
    description: str = ""
    capabilities: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "descriptor_id": self.descriptor_id,
            "role": self.role.value,
            "confidence": self.confidence,
            "selector": self.selector,
            "label": self.label,
            "tag": self.tag,
            "bounding_box": dict(self.bounding_box),
            "description": self.description,
            "capabilities": list(self.capabilities),
        }

    def __str__(self) -> str:
        return f"[{self.role.value}] {self.label or self.tag} ({self.confidence:.2f})"


# Explicit ARIA roles, highest precedence
ARIA_ROLES: Dict[str, ElementRole] = {
    "button": ElementRole.BUTTON,
    "link": ElementRole.LINK,
    "textbox": ElementRole.TEXT_INPUT,
    "searchbox": ElementRole.TEXT_INPUT,
    "checkbox": ElementRole.CHECKBOX,
    "switch": ElementRole.CHECKBOX,
    "radio": ElementRole.RADIO,
    "combobox": ElementRole.DROPDOWN,
    "listbox": ElementRole.DROPDOWN,
    "menuitem": ElementRole.CLICKABLE,
    "menuitemcheckbox": ElementRole.CHECKBOX,
    "menuitemradio": ElementRole.RADIO,
    "option": ElementRole.CLICKABLE,
    "tab": ElementRole.CLICKABLE,
    "treeitem": ElementRole.CLICKABLE,
}

TEXT_INPUT_TYPES = {
    "text", "email", "password", "search", "url", "tel", "number",
    "date", "datetime-local", "month", "week", "time",
}
BUTTON_INPUT_TYPES = {"submit", "button", "reset", "image"}

INTERACTIVE_TAGS = {"a", "button", "input", "select", "textarea", "summary"}
INTERACTIVE_ATTRIBUTES = ("role", "onclick", "tabindex", "contenteditable")

# Base confidence by how the role was determined
ARIA_CONFIDENCE = 0.95
TAG_CONFIDENCE = 0.9
LINK_CONFIDENCE = 0.85
EDITABLE_CONFIDENCE = 0.75
CLICK_HANDLER_CONFIDENCE = 0.6
UNKNOWN_CONFIDENCE = 0.2

UNLABELED_PENALTY = 0.85
DISABLED_PENALTY = 0.5

_WHITESPACE = re.compile(r"\s+")


def _clean(text: str) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _size_multiplier(area: float) -> float:
    if area < 100:
        return 0.6
    if area < 400:
        return 0.85
    return 1.0


class ElementClassifier:
    """
    Heuristic, deterministic element classification.

    Precedence: ARIA role, then tag inference, then a label from visible
    text or placeholder, then size as a confidence multiplier. Invisible and
    zero-area nodes are excluded outright.

    Example:
        >>> classifier = ElementClassifier(min_area=4.0)
        >>> elements = classifier.classify(snapshot)
        >>> elements[0].role, elements[0].label
        (<ElementRole.TEXT_INPUT: 'text_input'>, 'Search')
    """

    def __init__(self, min_area: float = 4.0, max_label_length: int = 80):
        self.min_area = min_area
        self.max_label_length = max_label_length

    def is_candidate(self, node: NodeDescriptor) -> bool:
        if not node.visible or node.area <= 0 or node.area < self.min_area:
            return False
        if node.attr("type").lower() == "hidden":
            return False
        if node.tag in INTERACTIVE_TAGS:
            return True
        return any(name in node.attributes for name in INTERACTIVE_ATTRIBUTES)

    def classify(self, snapshot: DomSnapshot) -> List[ElementDescriptor]:
        """
        Classify every interactable element of a snapshot.

        Returns:
            Descriptors ordered by confidence, then document order
        """
        elements = [self.describe(node) for node in snapshot.nodes if self.is_candidate(node)]
        return self._ordered(elements)

    def reclassify(
        self,
        previous: Iterable[ElementDescriptor],
        snapshot: DomSnapshot,
        changes: ChangeSet,
    ) -> List[ElementDescriptor]:
        """
        Update a previous classification after a ChangeSet.

        Only added and mutated nodes are re-scored; removed keys are pruned.
        Untouched elements keep their score but pick up the node's current
        position, geometry and selector.
        """
        touched = changes.added | changes.mutated
        elements: Dict[str, ElementDescriptor] = {}
        for element in previous:
            key = element.descriptor_id
            if key in changes.removed or key in touched:
                continue
            node = snapshot.get(key)
            if node is None:
                continue
            elements[key] = replace(
                element,
                index=node.index,
                selector=node.selector,
                bounding_box=dict(node.bounding_box),
            )

        for key in touched:
            node = snapshot.get(key)
            if node is not None and self.is_candidate(node):
                elements[key] = self.describe(node)
        return self._ordered(elements.values())

    @staticmethod
    def _ordered(elements: Iterable[ElementDescriptor]) -> List[ElementDescriptor]:
        return sorted(elements, key=lambda e: (-e.confidence, e.index))

    def describe(self, node: NodeDescriptor) -> ElementDescriptor:
        """Build the descriptor for a single candidate node."""
        role, base = self.infer_role(node)
        label = self.extract_label(node)

        confidence = base
        if not label and role is not ElementRole.UNKNOWN:
            confidence *= UNLABELED_PENALTY
        if "disabled" in node.attributes or node.attr("aria-disabled") == "true":
            confidence *= DISABLED_PENALTY
        confidence *= _size_multiplier(node.area)

        return ElementDescriptor(
            descriptor_id=node.stable_key,
            role=role,
            confidence=round(confidence, 3),
            selector=node.selector,
            label=label,
            tag=node.tag,
            index=node.index,
            bounding_box=dict(node.bounding_box),
            description=self.describe_text(node, role, label),
            capabilities=self.capabilities(node, role),
        )

    def infer_role(self, node: NodeDescriptor) -> Tuple[ElementRole, float]:
        """Role and base confidence for a node."""
        aria = node.attr("role").strip().lower()
        if aria in ARIA_ROLES:
            return ARIA_ROLES[aria], ARIA_CONFIDENCE

        tag = node.tag
        if tag == "input":
            input_type = node.attr("type", "text").lower() or "text"
            if input_type in TEXT_INPUT_TYPES:
                return ElementRole.TEXT_INPUT, TAG_CONFIDENCE
            if input_type == "checkbox":
                return ElementRole.CHECKBOX, TAG_CONFIDENCE
            if input_type == "radio":
                return ElementRole.RADIO, TAG_CONFIDENCE
            if input_type in BUTTON_INPUT_TYPES:
                return ElementRole.BUTTON, TAG_CONFIDENCE
            if input_type == "file":
                return ElementRole.FILE_UPLOAD, TAG_CONFIDENCE
            return ElementRole.CLICKABLE, CLICK_HANDLER_CONFIDENCE
        if tag == "textarea":
            return ElementRole.TEXT_AREA, TAG_CONFIDENCE
        if tag == "select":
            return ElementRole.DROPDOWN, TAG_CONFIDENCE
        if tag in ("button", "summary"):
            return ElementRole.BUTTON, TAG_CONFIDENCE
        if tag == "a" and node.attr("href"):
            return ElementRole.LINK, LINK_CONFIDENCE
        editable = node.attributes.get("contenteditable")
        if editable is not None and editable.lower() in ("", "true", "plaintext-only"):
            return ElementRole.TEXT_AREA, EDITABLE_CONFIDENCE
        if "onclick" in node.attributes:
            return ElementRole.CLICKABLE, CLICK_HANDLER_CONFIDENCE
        return ElementRole.UNKNOWN, UNKNOWN_CONFIDENCE

    def extract_label(self, node: NodeDescriptor) -> str:
        """First non-empty of aria-label, visible text, placeholder, title, alt, name, value."""
        candidates = (
            node.attr("aria-label"),
            node.text,
            node.attr("placeholder"),
            node.attr("title"),
            node.attr("alt"),
            node.attr("name"),
            node.attr("value") if node.attr("type").lower() in BUTTON_INPUT_TYPES else "",
        )
        for candidate in candidates:
            label = _clean(candidate)
            if label:
                if len(label) > self.max_label_length:
                    label = label[: self.max_label_length - 3].rstrip() + "..."
                return label
        return ""

    def describe_text(self, node: NodeDescriptor, role: ElementRole, label: str) -> str:
        """A one-line, human readable description of the element."""
        parts = [f"A {role.value.replace('_', ' ')} element"]
        if label:
            parts.append(f"labeled '{label}'")
        if node.attr("id"):
            parts.append(f"with ID '{node.attr('id')}'")

        input_type = node.attr("type").lower()
        if node.tag == "input":
            purposes = {
                "search": "for entering search queries",
                "email": "for entering email addresses",
                "password": "for entering passwords",
                "submit": "for submitting forms",
            }
            if input_type in purposes:
                parts.append(purposes[input_type])
            elif role is ElementRole.TEXT_INPUT:
                parts.append("for text input")
        elif node.tag == "textarea":
            parts.append("for multi-line text input")
        elif node.tag == "select":
            parts.append("for selecting from options")
        elif node.tag == "a" and node.attr("href"):
            parts.append(f"linking to '{node.attr('href')}'")
        elif role in (ElementRole.BUTTON, ElementRole.CLICKABLE):
            parts.append("that can be clicked")
        return " ".join(parts)

    def capabilities(self, node: NodeDescriptor, role: ElementRole) -> Tuple[str, ...]:
        if "disabled" in node.attributes:
            return ()
        caps = []
        if role is not ElementRole.UNKNOWN:
            caps.append("clickable")
        if role.accepts_text:
            caps.append("can_receive_text_input")
        if role is ElementRole.DROPDOWN:
            caps.append("can_select_options")
        if role is ElementRole.CHECKBOX:
            caps.append("can_check_uncheck")
        if role is ElementRole.RADIO:
            caps.append("can_select")
        if role is ElementRole.FILE_UPLOAD:
            caps.append("can_upload_files")
        caps.append("hoverable")
        return tuple(caps)


def find_by_text(elements: Iterable[ElementDescriptor], text: str) -> List[ElementDescriptor]:
    """Elements whose label contains text (case-insensitive); exact matches first."""
    needle = _clean(text).lower()
    if not needle:
        return []
    matches = [e for e in elements if needle in e.label.lower()]
    return sorted(matches, key=lambda e: (e.label.lower() != needle,))


def find_by_role(
    elements: Iterable[ElementDescriptor],
    role: Union[ElementRole, str],
) -> List[ElementDescriptor]:
    """Elements with the given role, keeping their ranking."""
    if not isinstance(role, ElementRole):
        role = ElementRole(str(role).lower())
    return [e for e in elements if e.role is role]


def page_stats(snapshot: DomSnapshot, elements: Optional[Iterable[ElementDescriptor]] = None) -> Dict[str, Any]:
    """Summary counts for a snapshot and its classification."""
    elements = list(elements) if elements is not None else ElementClassifier().classify(snapshot)
    by_role: Dict[str, int] = {}
    for element in elements:
        by_role[element.role.value] = by_role.get(element.role.value, 0) + 1
    return {
        "url": snapshot.url,
        "total_nodes": len(snapshot),
        "visible_nodes": sum(1 for n in snapshot.nodes if n.visible),
        "interactive_elements": len(elements),
        "by_role": dict(sorted(by_role.items())),
        "links": by_role.get(ElementRole.LINK.value, 0),
        "buttons": by_role.get(ElementRole.BUTTON.value, 0),
        "inputs": sum(
            by_role.get(r.value, 0) for r in (ElementRole.TEXT_INPUT, ElementRole.TEXT_AREA)
        ),
    }
