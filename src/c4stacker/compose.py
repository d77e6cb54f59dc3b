"""Fold per-level diagram records into one stacked, navigable SVG document."""
from __future__ import annotations

import re
from pathlib import Path
from typing import List, Mapping, Optional, Tuple
from xml.sax.saxutils import escape

from PIL import ImageFont

from .resources import load_navigation_script
from .stacker import LEVELS, SVG_NS, XLINK_NS, DiagramRecord

DEFAULT_TITLE = "Stacked C4 Architecture Diagrams"

CANVAS_WIDTH = 800
CANVAS_HEIGHT = 600
HEADER_HEIGHT = 80
FONT_FAMILY = "Arial, sans-serif"
TITLE_FONT_SIZE = 21.0
MIN_TITLE_FONT_SIZE = 12.0

BUTTON_X = 26
BUTTON_Y = 91
BUTTON_HEIGHT = 33
BUTTON_MIN_WIDTH = 104
BUTTON_PADDING = 13
BUTTON_GAP = 13
BUTTON_FONT_SIZE = 14.0
TOGGLE_WIDTH = 130

CONTAINER_X = 5
CONTAINER_Y = 140
DIAGRAM_INSET = 5

IDLE_FILL = "#3498db"
BORDER = "#2980b9"

GENERIC_FONT_FALLBACKS = {
    "sans-serif": ["Arial", "Helvetica", "Liberation Sans", "DejaVu Sans"],
}


class _TextMeasurer:
    """Caches Pillow fonts for label width measurement."""

    FONT_DIRS = [
        Path("/System/Library/Fonts"),
        Path("/System/Library/Fonts/Supplemental"),
        Path("/Library/Fonts"),
        Path("~/Library/Fonts").expanduser(),
        Path("/usr/share/fonts"),
        Path("/usr/local/share/fonts"),
        Path("C:/Windows/Fonts"),
    ]

    def __init__(self) -> None:
        self._font_cache: dict[Tuple[str, int], Optional[ImageFont.ImageFont]] = {}
        self._font_paths: dict[str, Optional[str]] = {}

    def font(self, size: float, family: str = FONT_FAMILY) -> Optional[ImageFont.ImageFont]:
        key_size = max(1, int(round(size)))
        cache_key = (family.lower(), key_size)
        if cache_key in self._font_cache:
            return self._font_cache[cache_key]

        candidates: List[str] = []
        for name in (part.strip().strip("'\"") for part in family.split(",")):
            for fam in GENERIC_FONT_FALLBACKS.get(name.lower(), [name]):
                resolved = self._locate_font(fam)
                if resolved:
                    candidates.append(resolved)
        candidates.append("DejaVuSans.ttf")

        font: Optional[ImageFont.ImageFont] = None
        for candidate in candidates:
            try:
                font = ImageFont.truetype(candidate, key_size)
                break
            except OSError:
                continue
        if font is None:
            try:
                font = ImageFont.load_default(size=key_size)
            except OSError:
                font = None

        self._font_cache[cache_key] = font
        return font

    def measure(self, text: str, size: float, family: str = FONT_FAMILY) -> float:
        font = self.font(size, family)
        if font is None:
            return _heuristic_width(text, size)
        return float(font.getlength(text))

    def _locate_font(self, family: str) -> Optional[str]:
        key = family.lower()
        if key in self._font_paths:
            return self._font_paths[key]
        normalized = re.sub(r"[^a-z0-9]+", "", key)
        aliases = {normalized, normalized + "mt", normalized + "regular"}
        best_match: Optional[Tuple[int, str]] = None
        if normalized:
            for directory in self.FONT_DIRS:
                if not directory.is_dir():
                    continue
                for path in directory.rglob("*.ttf"):
                    stem = re.sub(r"[^a-z0-9]+", "", path.stem.lower())
                    if stem in aliases:
                        score = 0
                    elif stem.startswith(normalized):
                        score = 1
                    else:
                        continue
                    if best_match is None or (score, str(path)) < best_match:
                        best_match = (score, str(path))
        resolved = best_match[1] if best_match else None
        self._font_paths[key] = resolved
        return resolved


_TEXT_MEASURER = _TextMeasurer()


def title_case(text: str) -> str:
    if not text:
        return text
    return text[0].upper() + text[1:]


def build_stacked_svg(
    diagrams: Mapping[str, DiagramRecord],
    title: str = DEFAULT_TITLE,
    *,
    css_only: bool = False,
    script: Optional[str] = None,
) -> str:
    """Render the stacked document for ``diagrams``.

    Layers and buttons always follow the fixed C4 level order; levels without
    a record get a placeholder layer and no button. The same records and
    title always produce byte-identical output.
    """
    present = [level for level in LEVELS if level in diagrams]
    first = present[0] if present else LEVELS[0]

    parts: List[str] = [
        _document_header(title, first, css_only),
        _navigation_buttons(present, css_only),
    ]
    if not css_only:
        parts.append(_header_controls())

    parts.append("\n\n  <!-- Diagram Layers -->\n")
    for level in LEVELS:
        record = diagrams.get(level)
        if record is None:
            parts.append(_missing_layer(level))
        else:
            parts.append(_diagram_layer(record, css_only))

    if not css_only:
        if script is None:
            script = load_navigation_script()
        parts.append(_script_block(diagrams, present, script))

    parts.append("\n\n</svg>\n")
    return "".join(parts)


def _document_header(title: str, first: str, css_only: bool) -> str:
    title_size = _fit_font_size(title, TITLE_FONT_SIZE, CANVAS_WIDTH - 2 * BUTTON_X)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<svg xmlns="{SVG_NS}"
     xmlns:xlink="{XLINK_NS}"
     width="{CANVAS_WIDTH}"
     height="{CANVAS_HEIGHT}"
     style="background: #f8f9fa; display: block;">

  <title>{escape(title)}</title>
{_style_block(first, css_only)}

  <!-- Navigation Header -->
  <rect x="0" y="0" width="100%" height="{HEADER_HEIGHT}" fill="#2c3e50"/>
  <text x="{BUTTON_X}" y="33" font-family="{FONT_FAMILY}" font-size="{_fmt(title_size)}" font-weight="bold" fill="white">
    {escape(title)}
  </text>
  <text x="{BUTTON_X}" y="59" font-family="{FONT_FAMILY}" font-size="16" fill="#ecf0f1" id="breadcrumb">
    {title_case(first)} Level
  </text>

  <!-- Navigation Buttons -->
"""


def _style_block(first: str, css_only: bool) -> str:
    rules = [
        ".nav-button { cursor: pointer; transition: fill 0.2s; }",
        f".nav-button:hover {{ fill: {BORDER}; }}",
        ".nav-active { stroke: #c0392b; stroke-width: 2; }",
        ".link-hit { cursor: pointer; }",
        ".link-highlight { fill: #f9e79f; fill-opacity: 0.6; transition: opacity 0.15s; }",
        "g.link:hover path { stroke-width: 2; }",
    ]
    if css_only:
        rules += [
            ".layer { display: none; }",
            ".layer:target { display: inline; }",
            f"#layer-{first} {{ display: inline; }}",
            f"svg:has(.layer:target) #layer-{first}:not(:target) {{ display: none; }}",
        ]
    body = "\n".join(f"    {rule}" for rule in rules)
    return f"  <style>\n{body}\n  </style>"


def _navigation_buttons(present: List[str], css_only: bool) -> str:
    chunks: List[str] = []
    x = BUTTON_X
    for level in present:
        label = title_case(level)
        width = _button_width(label)
        if css_only:
            chunks.append(
                f"""  <a href="#layer-{level}">
    <rect x="{x}" y="{BUTTON_Y}" width="{width}" height="{BUTTON_HEIGHT}" rx="4"
          fill="{IDLE_FILL}" stroke="{BORDER}" stroke-width="1"
          class="nav-button" id="nav-{level}"/>
    <text x="{x + BUTTON_PADDING}" y="113" font-family="{FONT_FAMILY}" font-size="14"
          fill="white" style="cursor:pointer; user-select: none">
      {label}
    </text>
  </a>
"""
            )
        else:
            chunks.append(
                f"""  <rect x="{x}" y="{BUTTON_Y}" width="{width}" height="{BUTTON_HEIGHT}" rx="4"
        fill="{IDLE_FILL}" stroke="{BORDER}" stroke-width="1"
        class="nav-button" onclick="showLevel('{level}')"
        id="nav-{level}"/>
  <text x="{x + BUTTON_PADDING}" y="113" font-family="{FONT_FAMILY}" font-size="14"
        fill="white" style="cursor:pointer; user-select: none"
        onclick="showLevel('{level}')">
    {label}
  </text>
"""
            )
        x += width + BUTTON_GAP
    return "".join(chunks)


def _header_controls() -> str:
    fit_x = CANVAS_WIDTH - 156
    notes_x = CANVAS_WIDTH - 300
    return f"""
  <!-- View toggles (right-aligned by the navigation script) -->
  <rect x="{notes_x}" y="{BUTTON_Y}" width="{TOGGLE_WIDTH}" height="{BUTTON_HEIGHT}" rx="4"
        fill="{IDLE_FILL}" stroke="{BORDER}" stroke-width="1"
        class="nav-button" onclick="toggleNotes()"
        id="notes-toggle"/>
  <text x="{notes_x + BUTTON_PADDING}" y="113" font-family="{FONT_FAMILY}" font-size="14"
        fill="white" style="cursor:pointer; user-select: none"
        onclick="toggleNotes()" id="notes-text">
    Hide Notes
  </text>
  <rect x="{fit_x}" y="{BUTTON_Y}" width="{TOGGLE_WIDTH}" height="{BUTTON_HEIGHT}" rx="4"
        fill="{IDLE_FILL}" stroke="{BORDER}" stroke-width="1"
        class="nav-button" onclick="toggleFitMode()"
        id="fit-toggle"/>
  <text x="{fit_x + BUTTON_PADDING}" y="113" font-family="{FONT_FAMILY}" font-size="14"
        fill="white" style="cursor:pointer; user-select: none"
        onclick="toggleFitMode()" id="fit-text">
    Native Size
  </text>

  <!-- Instructions -->
  <text x="{CANVAS_WIDTH - BUTTON_X}" y="59" font-family="{FONT_FAMILY}" font-size="13" fill="#bdc3c7" text-anchor="end" id="instructions">
    Click buttons or diagram elements to navigate
  </text>"""


def _diagram_layer(record: DiagramRecord, css_only: bool) -> str:
    level = record.level
    display = "" if css_only else ' style="display:none"'
    container_w = CANVAS_WIDTH - 2 * CONTAINER_X
    container_h = CANVAS_HEIGHT - CONTAINER_Y - 20
    return f"""
  <!-- {level} layer -->
  <g id="layer-{level}" class="layer"{display}>
    <rect x="{CONTAINER_X}" y="{CONTAINER_Y}" width="{container_w}" height="{container_h}" fill="white" stroke="#ddd" stroke-width="1" rx="5" id="container-{level}"/>
    <svg x="{CONTAINER_X + DIAGRAM_INSET}" y="{CONTAINER_Y + DIAGRAM_INSET}" width="{container_w - 2 * DIAGRAM_INSET}" height="{container_h - 2 * DIAGRAM_INSET}" viewBox={_quote(record.view_box)} preserveAspectRatio="xMidYMid meet" id="diagram-{level}">
      {record.content}
    </svg>
  </g>"""


def _missing_layer(level: str) -> str:
    return f"""
  <!-- {level} layer (not found) -->
  <g id="layer-{level}" style="display:none">
    <rect x="50" y="{CONTAINER_Y}" width="700" height="440" fill="#ecf0f1" stroke="#bdc3c7"/>
    <text x="{CANVAS_WIDTH // 2}" y="360" text-anchor="middle" font-family="{FONT_FAMILY}" font-size="16" fill="#7f8c8d">
      {title_case(level)} diagram not found
    </text>
  </g>"""


def _script_block(diagrams: Mapping[str, DiagramRecord], present: List[str], script: str) -> str:
    entries = []
    for level in present:
        record = diagrams[level]
        entries.append(
            f"  '{level}': {{ width: {record.width:.0f}, height: {record.height:.0f}, "
            f"ratio: {record.aspect_ratio:.2f} }}"
        )
    data = "const diagramData = {\n" + ",\n".join(entries) + "\n};\n\n"
    levels = "const availableLevels = [" + ", ".join(f"'{level}'" for level in present) + "];\n\n"
    # A literal "]]>" would end the CDATA section early.
    body = script.replace("]]>", "]]]]><![CDATA[>")
    return f"""

  <!-- Navigation Script (JavaScript) -->
  <script type="text/ecmascript"><![CDATA[
{data}{levels}{body}
  ]]></script>"""


def _button_width(label: str) -> int:
    measured = _TEXT_MEASURER.measure(label, BUTTON_FONT_SIZE)
    return max(BUTTON_MIN_WIDTH, int(round(measured)) + 2 * BUTTON_PADDING)


def _fit_font_size(text: str, size: float, available: float) -> float:
    width = _TEXT_MEASURER.measure(text, size)
    if width <= available or width <= 0:
        return size
    return max(MIN_TITLE_FONT_SIZE, round(size * available / width, 1))


def _heuristic_width(text: str, font_size: float) -> float:
    width = 0.0
    for ch in text:
        if ch.isspace():
            width += font_size * 0.33
        elif ch in "il":
            width += font_size * 0.3
        elif ch in "mwMW@#":
            width += font_size * 0.9
        else:
            width += font_size * 0.6
    return width


def _fmt(value: float) -> str:
    if value == int(value):
        return str(int(value))
    return f"{value:.1f}"


def _quote(value: str) -> str:
    return '"' + escape(value, {'"': "&quot;"}) + '"'
