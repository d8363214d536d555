"""
UI element tree built from a uiautomator layout dump.

The dump is an XML ``<hierarchy>`` whose nested ``<node>`` elements carry the
class, resource-id, text, content-desc, clickable and bounds attributes. This
module turns it into a tree of Element objects with computed center points and
offers a clickable-element lookup over it.
"""
from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from errors import MalformedCaptureError

_BOUNDS_PATTERN = re.compile(r"\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]")


@dataclass
class Bounds:
    left: int = 0
    top: int = 0
    right: int = 0
    bottom: int = 0
    center_x: int = 0
    center_y: int = 0
    width: int = 0
    height: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "left": self.left,
            "top": self.top,
            "right": self.right,
            "bottom": self.bottom,
            "centerX": self.center_x,
            "centerY": self.center_y,
            "width": self.width,
            "height": self.height,
        }


@dataclass
class Element:
    type: str = ""
    resource_id: str = ""
    text: str = ""
    content_desc: str = ""
    clickable: bool = False
    bounds: Bounds = field(default_factory=Bounds)
    depth: int = 0
    children: List["Element"] = field(default_factory=list)

    def iter_preorder(self):
        """Yield this element and its descendants depth-first, in document order."""
        stack = [self]
        while stack:
            element = stack.pop()
            yield element
            stack.extend(reversed(element.children))

    def to_dict(self) -> Dict[str, Any]:
        root: Dict[str, Any] = {}
        stack: List[Tuple["Element", Dict[str, Any]]] = [(self, root)]
        while stack:
            element, target = stack.pop()
            target.update(
                {
                    "type": element.type,
                    "resourceId": element.resource_id,
                    "text": element.text,
                    "contentDesc": element.content_desc,
                    "clickable": element.clickable,
                    "bounds": element.bounds.to_dict(),
                    "depth": element.depth,
                    "children": [],
                }
            )
            for child in element.children:
                child_payload: Dict[str, Any] = {}
                target["children"].append(child_payload)
                stack.append((child, child_payload))
        return root


def parse_bounds(bounds_text: Optional[str]) -> Bounds:
    """Parse a ``[l,t][r,b]`` bounds string; anything unparsable gives zero bounds."""
    if not bounds_text or not isinstance(bounds_text, str):
        return Bounds()
    match = _BOUNDS_PATTERN.search(bounds_text)
    if not match:
        return Bounds()
    left, top, right, bottom = map(int, match.groups())
    return Bounds(
        left=left,
        top=top,
        right=right,
        bottom=bottom,
        center_x=(left + right) // 2,
        center_y=(top + bottom) // 2,
        width=right - left,
        height=bottom - top,
    )


def _to_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() == "true"


def _element_from_node(node: ET.Element, depth: int) -> Element:
    return Element(
        type=node.get("class") or "",
        resource_id=node.get("resource-id") or "",
        text=node.get("text") or "",
        content_desc=node.get("content-desc") or "",
        clickable=_to_bool(node.get("clickable")),
        bounds=parse_bounds(node.get("bounds")),
        depth=depth,
    )


def _find_root_node(raw: Union[str, bytes, ET.Element]) -> ET.Element:
    if isinstance(raw, ET.Element):
        root = raw
    else:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", "replace")
        if not raw or not raw.strip():
            raise MalformedCaptureError("Empty layout capture")
        try:
            root = ET.fromstring(raw)
        except ET.ParseError as parse_error:
            raise MalformedCaptureError(f"Layout XML parse error: {parse_error}")

    if root.tag == "node":
        return root
    node = root.find("node")
    if node is None:
        raise MalformedCaptureError("Invalid UI hierarchy: root node is missing")
    return node


def parse_layout(raw: Union[str, bytes, ET.Element]) -> Element:
    """
    Convert a uiautomator dump into an Element tree.

    Args:
        raw: The XML text of the dump, or an already parsed ElementTree element
            (either the ``<hierarchy>`` element or its root ``<node>``).

    Returns:
        The root Element. Child order is preserved.

    Raises:
        MalformedCaptureError: if the XML is unparsable or has no root node.
    """
    root_node = _find_root_node(raw)
    root = _element_from_node(root_node, 0)

    stack: List[Tuple[ET.Element, Element]] = [(root_node, root)]
    while stack:
        xml_node, element = stack.pop()
        for child_node in xml_node.findall("node"):
            child = _element_from_node(child_node, element.depth + 1)
            element.children.append(child)
            stack.append((child_node, child))
    return root


def find_clickable(
    root: Optional[Element],
    text: Optional[str] = None,
    content_desc: Optional[str] = None,
    resource_id: Optional[str] = None,
    class_name: Optional[str] = None,
) -> List[Element]:
    """Return clickable elements (pre-order) whose supplied fields all match exactly."""
    if root is None:
        return []
    criteria = (
        ("text", text),
        ("content_desc", content_desc),
        ("resource_id", resource_id),
        ("type", class_name),
    )
    matches = []
    for element in root.iter_preorder():
        if not element.clickable:
            continue
        if all(value is None or getattr(element, name) == value for name, value in criteria):
            matches.append(element)
    return matches
