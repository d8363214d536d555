import pytest

from conftest import LAYOUT_XML
from errors import MalformedCaptureError
from ui_elements import Bounds, find_clickable, parse_bounds, parse_layout


def test_parse_bounds_computes_center_and_size():
    bounds = parse_bounds("[100,200][300,401]")
    assert (bounds.left, bounds.top, bounds.right, bounds.bottom) == (100, 200, 300, 401)
    assert bounds.center_x == 200
    assert bounds.center_y == 300
    assert bounds.width == 200
    assert bounds.height == 201


@pytest.mark.parametrize("raw", [None, "", "garbage", "[1,2][3]"])
def test_parse_bounds_unparsable_gives_zero_bounds(raw):
    assert parse_bounds(raw) == Bounds()


def test_parse_layout_builds_tree_in_document_order():
    root = parse_layout(LAYOUT_XML)
    assert root.type == "android.widget.FrameLayout"
    assert root.depth == 0
    assert [child.text for child in root.children] == ["Settings", "Search"]
    settings_icon = root.children[0]
    assert settings_icon.clickable is True
    assert settings_icon.resource_id == "com.android.launcher:id/icon"
    assert settings_icon.depth == 1
    assert (settings_icon.bounds.center_x, settings_icon.bounds.center_y) == (160, 260)


def test_parse_layout_accepts_bytes():
    root = parse_layout(LAYOUT_XML.encode("utf-8"))
    assert len(root.children) == 2


@pytest.mark.parametrize(
    "raw",
    ["", "   ", "<hierarchy><node", "<hierarchy rotation='0'></hierarchy>"],
)
def test_parse_layout_rejects_malformed_capture(raw):
    with pytest.raises(MalformedCaptureError):
        parse_layout(raw)


def test_parse_layout_handles_deep_nesting():
    depth = 2000
    xml = "<hierarchy>" + "<node class='v' bounds='[0,0][10,10]'>" * depth + "</node>" * depth + "</hierarchy>"
    root = parse_layout(xml)
    deepest = list(root.iter_preorder())[-1]
    assert deepest.depth == depth - 1
    assert root.to_dict()["children"][0]["depth"] == 1


def test_find_clickable_matches_supplied_fields_only():
    root = parse_layout(LAYOUT_XML)
    assert [e.text for e in find_clickable(root)] == ["Settings", "Search"]
    assert [e.text for e in find_clickable(root, text="Search")] == ["Search"]
    assert [e.text for e in find_clickable(root, content_desc="Settings")] == ["Settings"]
    assert find_clickable(root, text="Settings", class_name="android.widget.EditText") == []
    assert find_clickable(None, text="Settings") == []


def test_element_to_dict_uses_camel_case():
    payload = parse_layout(LAYOUT_XML).to_dict()
    icon = payload["children"][0]
    assert icon["resourceId"] == "com.android.launcher:id/icon"
    assert icon["contentDesc"] == "Settings"
    assert icon["bounds"]["centerX"] == 160
