from __future__ import annotations

import re
import sys
import unittest
import xml.etree.ElementTree as ET
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from c4stacker import compose
from c4stacker.compose import DEFAULT_TITLE, build_stacked_svg, title_case
from c4stacker.resources import load_navigation_script
from c4stacker.stacker import DiagramRecord

SVG_NS = "http://www.w3.org/2000/svg"


def _records(*levels: str) -> dict:
    sizes = {
        "context": (400.0, 300.0),
        "container": (500.0, 400.0),
        "component": (652.0, 918.0),
        "code": (934.0, 670.0),
    }
    records = {}
    for level in levels:
        width, height = sizes[level]
        records[level] = DiagramRecord(
            level=level,
            content=f'<rect width="10" height="10"/>\n      <text x="1" y="2">{level}</text>',
            view_box=f"0 0 {width:g} {height:g}",
            width=width,
            height=height,
        )
    return records


def _layer(svg_text: str, level: str) -> str:
    match = re.search(rf'\n  <!-- {level} layer[^\n]*-->.*?\n  </g>', svg_text, re.DOTALL)
    assert match is not None, level
    return match.group(0)


class BuildStackedSVGTests(unittest.TestCase):
    def test_output_is_well_formed_and_deterministic(self) -> None:
        records = _records("context", "container", "component", "code")
        first = build_stacked_svg(records, "Test Architecture")
        second = build_stacked_svg(records, "Test Architecture")
        self.assertEqual(first, second)
        root = ET.fromstring(first)
        self.assertEqual(root.tag, f"{{{SVG_NS}}}svg")
        self.assertEqual(root.get("width"), "800")
        self.assertEqual(root.get("height"), "600")

    def test_layers_follow_level_order(self) -> None:
        svg_text = build_stacked_svg(_records("code", "context"))
        self.assertEqual(
            re.findall(r'<g id="layer-(\w+)"', svg_text),
            ["context", "container", "component", "code"],
        )
        self.assertEqual(re.findall(r'id="nav-(\w+)"', svg_text), ["context", "code"])

    def test_missing_levels_render_placeholders(self) -> None:
        svg_text = build_stacked_svg(_records("context", "container"))
        self.assertEqual(svg_text.count('id="nav-'), 2)
        self.assertNotIn("nav-component", svg_text)
        self.assertNotIn("nav-code", svg_text)
        self.assertEqual(svg_text.count("diagram not found"), 2)
        self.assertIn("Component diagram not found", svg_text)
        self.assertIn("Code diagram not found", svg_text)
        self.assertNotIn('id="diagram-component"', svg_text)

    def test_missing_level_leaves_other_layers_unchanged(self) -> None:
        full = build_stacked_svg(_records("context", "container", "component"))
        partial = build_stacked_svg(_records("context", "component"))
        for level in ("context", "component"):
            with self.subTest(level=level):
                self.assertEqual(_layer(full, level), _layer(partial, level))
        self.assertIn("Container diagram not found", _layer(partial, "container"))

    def test_script_payload_lists_existing_levels(self) -> None:
        svg_text = build_stacked_svg(_records("context", "container"))
        self.assertIn("'context': { width: 400, height: 300, ratio: 1.33 }", svg_text)
        self.assertIn("'container': { width: 500, height: 400, ratio: 1.25 }", svg_text)
        self.assertIn("const availableLevels = ['context', 'container'];", svg_text)
        data = re.search(r"const diagramData = \{\n(.*?)\n\};", svg_text, re.DOTALL)
        self.assertIsNotNone(data)
        self.assertEqual(len(data.group(1).splitlines()), 2)
        self.assertIn("function showLevel(level)", svg_text)
        self.assertIn("function resizeContainers()", svg_text)

    def test_layers_carry_view_box_and_content(self) -> None:
        svg_text = build_stacked_svg(_records("context"))
        root = ET.fromstring(svg_text)
        diagram = root.find(f".//{{{SVG_NS}}}svg[@id='diagram-context']")
        self.assertIsNotNone(diagram)
        self.assertEqual(diagram.get("viewBox"), "0 0 400 300")
        self.assertEqual(diagram.find(f"{{{SVG_NS}}}text").text, "context")
        layer = root.find(f".//{{{SVG_NS}}}g[@id='layer-context']")
        self.assertEqual(layer.get("style"), "display:none")

    def test_title_is_escaped(self) -> None:
        svg_text = build_stacked_svg(_records("context"), "R&D <Platform>")
        self.assertIn("R&amp;D &lt;Platform&gt;", svg_text)
        root = ET.fromstring(svg_text)
        self.assertEqual(root.find(f"{{{SVG_NS}}}title").text, "R&D <Platform>")

    def test_default_title_and_breadcrumb(self) -> None:
        svg_text = build_stacked_svg(_records("container", "code"))
        self.assertIn(f"<title>{DEFAULT_TITLE}</title>", svg_text)
        self.assertIn("Container Level", svg_text)

    def test_script_cdata_terminator_is_split(self) -> None:
        svg_text = build_stacked_svg(_records("context"), script="var marker = ']]>';")
        root = ET.fromstring(svg_text)
        script = root.find(f"{{{SVG_NS}}}script")
        self.assertIn("var marker = ']]>';", script.text)

    def test_css_only_has_no_script(self) -> None:
        svg_text = build_stacked_svg(_records("context", "component"), css_only=True)
        self.assertNotIn("<script", svg_text)
        self.assertNotIn("fit-toggle", svg_text)
        self.assertIn('<a href="#layer-context">', svg_text)
        self.assertIn('<a href="#layer-component">', svg_text)
        self.assertIn(".layer:target", svg_text)
        self.assertIn("#layer-context { display: inline; }", svg_text)
        ET.fromstring(svg_text)

    def test_interactive_mode_has_view_toggles(self) -> None:
        svg_text = build_stacked_svg(_records("context"))
        self.assertIn('onclick="toggleFitMode()"', svg_text)
        self.assertIn('onclick="toggleNotes()"', svg_text)
        self.assertIn("Native Size", svg_text)


class LayoutHelperTests(unittest.TestCase):
    def test_title_case(self) -> None:
        cases = {
            "context": "Context",
            "code": "Code",
            "hello world": "Hello world",
            "already Title": "Already Title",
            "": "",
            "a": "A",
        }
        for text, expected in cases.items():
            with self.subTest(text=text):
                self.assertEqual(title_case(text), expected)

    def test_button_width_never_below_minimum(self) -> None:
        self.assertGreaterEqual(compose._button_width("Code"), compose.BUTTON_MIN_WIDTH)
        self.assertGreater(
            compose._button_width("A considerably longer navigation label"), compose.BUTTON_MIN_WIDTH
        )

    def test_long_titles_shrink_to_fit(self) -> None:
        size = compose._fit_font_size("Architecture " * 20, compose.TITLE_FONT_SIZE, 748)
        self.assertLess(size, compose.TITLE_FONT_SIZE)
        self.assertGreaterEqual(size, compose.MIN_TITLE_FONT_SIZE)
        self.assertEqual(compose._fit_font_size("Short", compose.TITLE_FONT_SIZE, 748), compose.TITLE_FONT_SIZE)

    def test_heuristic_width_is_positive(self) -> None:
        self.assertGreater(compose._heuristic_width("Container", 14.0), 0)


class NavigationScriptTests(unittest.TestCase):
    def test_script_defines_engine_entry_points(self) -> None:
        script = load_navigation_script()
        for name in (
            "function showLevel(",
            "function toggleFitMode(",
            "function toggleNotes(",
            "function navigateDown(",
            "function navigateUp(",
            "function resizeContainers(",
            "function setupLinkHighlights(",
        ):
            with self.subTest(name=name):
                self.assertIn(name, script)
        self.assertNotIn("]]>", script)


if __name__ == "__main__":
    unittest.main()
