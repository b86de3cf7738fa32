"""
Element Highlighter - Numbered overlays for classified elements.

Draws a numbered, role-coloured box over every element so a person (or a
screenshot) can refer to "element 7" instead of a descriptor id. Overlays
are marked with ``data-surfai-highlight`` and skipped by the DOM capture,
so drawing them never registers as a page change.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, TYPE_CHECKING
import logging

from surfai.layers.intelligence.element_classifier import ElementDescriptor, ElementRole

if TYPE_CHECKING:
    from surfai.core.browser_driver import BrowserDriver

logger = logging.getLogger(__name__)

HIGHLIGHT_SCRIPT = r"""
const items = arguments[0] || [];
const old = document.getElementById('surfai-highlights');
if (old) old.remove();
const container = document.createElement('div');
container.id = 'surfai-highlights';
container.setAttribute('data-surfai-highlight', 'container');
container.style.cssText = 'position:fixed;top:0;left:0;width:0;height:0;pointer-events:none;z-index:2147483647;';
let drawn = 0;
for (const item of items) {
    let el = null;
    try { el = document.querySelector(item.selector); } catch (e) { continue; }
    if (!el) continue;
    const rect = el.getBoundingClientRect();
    if (rect.width <= 0 || rect.height <= 0) continue;
    const box = document.createElement('div');
    box.setAttribute('data-surfai-highlight', String(item.number));
    box.style.cssText = 'position:fixed;pointer-events:none;box-sizing:border-box;'
        + 'left:' + rect.left + 'px;top:' + rect.top + 'px;'
        + 'width:' + rect.width + 'px;height:' + rect.height + 'px;'
        + 'border:3px solid ' + item.color + ';background:rgba(255,255,255,0.1);';
    const label = document.createElement('div');
    label.setAttribute('data-surfai-highlight', 'label');
    label.textContent = String(item.number);
    label.style.cssText = 'position:absolute;top:-22px;left:-3px;padding:2px 6px;white-space:nowrap;'
        + 'font:bold 12px Arial,sans-serif;color:#fff;border-radius:3px;background:' + item.color + ';';
    box.appendChild(label);
    container.appendChild(box);
    drawn++;
}
(document.body || document.documentElement).appendChild(container);
return drawn;
"""

CLEAR_HIGHLIGHTS_SCRIPT = """
const container = document.getElementById('surfai-highlights');
if (!container) return 0;
const count = container.childElementCount;
container.remove();
return count;
"""

ROLE_COLORS: Dict[ElementRole, str] = {
    ElementRole.BUTTON: "#0000FF",
    ElementRole.TEXT_INPUT: "#00AA00",
    ElementRole.TEXT_AREA: "#9900FF",
    ElementRole.DROPDOWN: "#FF6600",
    ElementRole.LINK: "#00AAAA",
    ElementRole.CHECKBOX: "#CC0077",
    ElementRole.RADIO: "#CC0077",
    ElementRole.FILE_UPLOAD: "#996600",
}
DEFAULT_COLOR = "#FF0000"


@dataclass(frozen=True)
class ElementHighlight:
    """One numbered overlay and the element it points at."""
    number: int
    descriptor_id: str
    role: ElementRole
    label: str
    color: str
    selector: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "descriptor_id": self.descriptor_id,
            "role": self.role.value,
            "label": self.label,
            "color": self.color,
            "selector": self.selector,
        }

    def __str__(self) -> str:
        return f"[{self.number}] {self.role.value}: {self.label}"


def number_elements(elements: Iterable[ElementDescriptor]) -> List[ElementHighlight]:
    """Number elements from 1 in the order given."""
    return [
        ElementHighlight(
            number=number,
            descriptor_id=element.descriptor_id,
            role=element.role,
            label=element.label,
            color=ROLE_COLORS.get(element.role, DEFAULT_COLOR),
            selector=element.selector,
        )
        for number, element in enumerate(elements, 1)
    ]


def draw_highlights(driver: "BrowserDriver", highlights: List[ElementHighlight]) -> int:
    """
    Replace any existing overlays with the given highlights.

    Returns:
        Number of overlays actually drawn (hidden or missing elements are skipped)
    """
    items = [{"number": h.number, "selector": h.selector, "color": h.color} for h in highlights]
    drawn = int(driver.evaluate(HIGHLIGHT_SCRIPT, items) or 0)
    logger.info("Highlighted %d of %d elements", drawn, len(highlights))
    return drawn


def clear_highlights(driver: "BrowserDriver") -> int:
    """Remove all overlays; returns how many were removed."""
    return int(driver.evaluate(CLEAR_HIGHLIGHTS_SCRIPT) or 0)


def find_highlight(highlights: Iterable[ElementHighlight], number: int) -> Optional[ElementHighlight]:
    for highlight in highlights:
        if highlight.number == number:
            return highlight
    return None
