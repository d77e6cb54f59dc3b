"""Ingest per-level C4 SVG diagrams into records ready for stacking."""
from __future__ import annotations

import logging
import math
import re
import xml.etree.ElementTree as ET
from collections import ChainMap
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union
from xml.sax.saxutils import escape

logger = logging.getLogger(__name__)

SVG_NS = "http://www.w3.org/2000/svg"
XLINK_NS = "http://www.w3.org/1999/xlink"
XML_NS = "http://www.w3.org/XML/1998/namespace"

LEVELS = ("context", "container", "component", "code")

DEFAULT_VIEW_BOX = "0 0 400 300"
DEFAULT_WIDTH = 400.0
DEFAULT_HEIGHT = 300.0

INDENT = "  "
# Fragment children line up under the inner <svg> of a stacked layer.
FRAGMENT_INDENT_LEVEL = 2

# Prefixes declared on the stacked document's root element.
AMBIENT_NAMESPACES: Dict[str, str] = {"": SVG_NS, "xlink": XLINK_NS}

WELL_KNOWN_NAMESPACES: Dict[str, str] = {
    "xlink": XLINK_NS,
    "xhtml": "http://www.w3.org/1999/xhtml",
    "sodipodi": "http://sodipodi.sourceforge.net/DTD/sodipodi-0.dtd",
    "inkscape": "http://www.inkscape.org/namespaces/inkscape",
    "rdf": "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
    "dc": "http://purl.org/dc/elements/1.1/",
    "cc": "http://creativecommons.org/ns#",
}

CLICK_HANDLER = "navigateDown()"

WHITESPACE_SENSITIVE = frozenset({"text", "tspan", "textPath", "foreignObject"})

_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_PI_RE = re.compile(r"<\?.*?\?>", re.DOTALL)
_SVG_OPEN_RE = re.compile(r"<svg(?=[\s/>]|$)")
_NS_DECL_RE = re.compile(r"\sxmlns:([A-Za-z_][\w.-]*)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")
_PREFIX_USE_RE = re.compile(
    r"</?([A-Za-z_][\w.-]*):[A-Za-z_]|\s([A-Za-z_][\w.-]*):[A-Za-z_][\w.-]*\s*="
)

_SCRIPT_RE = re.compile(r"<script(?=[\s/>])[^>]*?(?:/>|>.*?</script\s*>)", re.DOTALL)
_LINKED_GROUP_RE = re.compile(
    r"(<g(?=[\s>])[^>]*(?<!/)>)\s*"
    r"<a\s[^>]*?\bhref\s*=\s*(?:\"[^\"]*\"|'[^']*')[^>]*(?<!/)>"
    r"(.*?)</a\s*>",
    re.DOTALL,
)
_ANCHOR_OPEN_RE = re.compile(r"<a(?=[\s/>])[^>]*>")
_ANCHOR_CLOSE_RE = re.compile(r"</a\s*>")
_ONCLICK_ATTR_RE = re.compile(r"\sonclick\s*=\s*(?:\"[^\"]*\"|'[^']*')")
_STYLE_ATTR_RE = re.compile(r"(\s)style\s*=\s*([\"'])(.*?)\2", re.DOTALL)


class DiagramParseError(ValueError):
    """Raised when an input diagram cannot be turned into a record."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        file: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.file = file
        self.line = line
        self.column = column

    def __str__(self) -> str:
        return self.message


class NoDiagramsError(ValueError):
    """Raised when a directory holds no diagram matching a C4 level."""


@dataclass
class DiagramRecord:
    level: str
    content: str
    view_box: str = DEFAULT_VIEW_BOX
    width: float = DEFAULT_WIDTH
    height: float = DEFAULT_HEIGHT

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


def validate_xml(text: str, *, source: Optional[str] = None) -> None:
    """Stream ``text`` through a pull parser, failing on the first structural error."""
    parser = ET.XMLPullParser(events=("start", "end"))
    try:
        parser.feed(text)
        for _event in parser.read_events():
            pass
        parser.close()
        for _event in parser.read_events():
            pass
    except ET.ParseError as exc:
        line, column = getattr(exc, "position", (None, None))
        raise DiagramParseError(
            "E_PARSE_XML",
            f"{_label(source)}: not well-formed XML: {exc}",
            file=source,
            line=line,
            column=column,
        ) from exc


def extract_level(filename: str) -> Optional[str]:
    lower = Path(filename).name.lower()
    for level in LEVELS:
        if level in lower:
            return level
    return None


def next_level(level: str) -> Optional[str]:
    try:
        index = LEVELS.index(level)
    except ValueError:
        return None
    if index + 1 < len(LEVELS):
        return LEVELS[index + 1]
    return None


def parse_svg(
    text: str,
    level: str,
    *,
    source: Optional[str] = None,
    css_only: bool = False,
) -> DiagramRecord:
    """Read size metadata off the root ``<svg>`` tag and clean its inner fragment.

    The root tag is located textually rather than through a tree, and the
    fragment is the raw span between the end of that tag and the last
    ``</svg>`` in the document. Size attributes that are missing or do not
    parse fall back to the 400x300 defaults independently of each other.
    """
    label = _label(source)
    start = _find_root_open(text)
    if start is None:
        raise DiagramParseError("E_SVG_STRUCTURE", f"{label}: no <svg> element", file=source)
    tag_end = text.find(">", start)
    if tag_end == -1:
        raise DiagramParseError("E_SVG_STRUCTURE", f"{label}: malformed <svg> tag", file=source)
    open_tag = text[start : tag_end + 1]

    view_box = _attribute(open_tag, "viewBox")
    width = _parse_dimension(_attribute(open_tag, "width"), DEFAULT_WIDTH)
    height = _parse_dimension(_attribute(open_tag, "height"), DEFAULT_HEIGHT)

    content_start = tag_end + 1
    content_end = text.rfind("</svg>")
    if content_end == -1 or content_end < content_start:
        raise DiagramParseError("E_SVG_STRUCTURE", f"{label}: no </svg> tag", file=source)
    trailing = _PI_RE.sub("", _COMMENT_RE.sub("", text[content_end + len("</svg>") :]))
    if trailing.strip():
        raise DiagramParseError(
            "E_SVG_STRUCTURE",
            f"{label}: unexpected content after the closing </svg> tag",
            file=source,
        )
    raw_content = text[content_start:content_end]
    if not raw_content.strip():
        raise DiagramParseError("E_SVG_STRUCTURE", f"{label}: <svg> element is empty", file=source)

    namespaces = _namespace_declarations(open_tag)
    cleaned = clean_diagram_content(raw_content, level, css_only=css_only, namespaces=namespaces)
    return DiagramRecord(
        level=level,
        content=pretty_print_xml(cleaned, namespaces),
        view_box=view_box if view_box is not None else DEFAULT_VIEW_BOX,
        width=width,
        height=height,
    )


def clean_diagram_content(
    content: str,
    level: str,
    *,
    css_only: bool = False,
    namespaces: Optional[Mapping[str, str]] = None,
) -> str:
    """Strip scripts and turn ``<g><a href>...</a>`` wrappers into click targets.

    ``level`` is accepted so rewrites can target :func:`next_level`; the
    current rewrite is the same for every level.
    """
    content = _SCRIPT_RE.sub("", content)
    if css_only:
        return _remove_anchors(content, namespaces)

    def _rewrite(match: re.Match) -> str:
        return _add_click_behavior(match.group(1)) + match.group(2)

    content = _LINKED_GROUP_RE.sub(_rewrite, content)
    content = _ANCHOR_OPEN_RE.sub("", content)
    return _ANCHOR_CLOSE_RE.sub("", content)


def pretty_print_xml(content: str, namespaces: Optional[Mapping[str, str]] = None) -> str:
    """Re-indent a fragment; on any parse or serialisation failure return it unchanged."""
    try:
        root, declarations = _parse_fragment(content, namespaces)
        _indent(root, FRAGMENT_INDENT_LEVEL)
        return _serialize_fragment(root, declarations).strip()
    except (ET.ParseError, ValueError, RecursionError) as exc:
        logger.debug("leaving fragment unformatted: %s", exc)
        return content


def load_diagrams(
    directory: Union[str, Path], *, css_only: bool = False
) -> Dict[str, DiagramRecord]:
    """Collect one record per level from the ``*.svg`` files in ``directory``."""
    directory = Path(directory)
    diagrams: Dict[str, DiagramRecord] = {}
    sources: Dict[str, Path] = {}
    for path in sorted(directory.glob("*.svg")):
        level = extract_level(path.name)
        if level is None:
            logger.debug("skipping %s: no C4 level in file name", path.name)
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise DiagramParseError(
                "E_PARSE_XML", f"{path}: not valid UTF-8 text", file=str(path)
            ) from exc
        validate_xml(text, source=str(path))
        record = parse_svg(text, level, source=str(path), css_only=css_only)
        if level in diagrams:
            logger.warning("%s replaces %s as the %s diagram", path.name, sources[level].name, level)
        diagrams[level] = record
        sources[level] = path
        logger.debug(
            "loaded %s as %s (%gx%g, viewBox %s)",
            path.name,
            level,
            record.width,
            record.height,
            record.view_box,
        )

    if not diagrams:
        raise NoDiagramsError(f"no C4 SVG files found in {directory}")
    return diagrams


def _label(source: Optional[str]) -> str:
    return source or "<input>"


def _find_root_open(text: str) -> Optional[int]:
    comments = [(m.start(), m.end()) for m in _COMMENT_RE.finditer(text)]
    for match in _SVG_OPEN_RE.finditer(text):
        pos = match.start()
        if not any(begin <= pos < end for begin, end in comments):
            return pos
    return None


def _attribute(tag: str, name: str) -> Optional[str]:
    pattern = r"\s" + re.escape(name) + r"\s*=\s*(?:\"([^\"]*)\"|'([^']*)')"
    match = re.search(pattern, tag)
    if not match:
        return None
    return match.group(1) if match.group(1) is not None else match.group(2)


def _parse_dimension(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    text = value.strip()
    if text.endswith("px"):
        text = text[:-2].rstrip()
    try:
        number = float(text)
    except ValueError:
        return default
    if not math.isfinite(number) or number <= 0:
        return default
    return number


def _namespace_declarations(open_tag: str) -> Dict[str, str]:
    declarations: Dict[str, str] = {}
    for match in _NS_DECL_RE.finditer(open_tag):
        uri = match.group(2) if match.group(2) is not None else match.group(3)
        declarations[match.group(1)] = uri
    return declarations


def _add_click_behavior(tag: str) -> str:
    body = _ONCLICK_ATTR_RE.sub("", tag[:-1]).rstrip()
    style = _STYLE_ATTR_RE.search(body)
    if style is None:
        return f'{body} onclick="{CLICK_HANDLER}" style="cursor:pointer;">'
    quote = style.group(2)
    existing = style.group(3).strip().rstrip(";").strip()
    merged = f"{existing}; cursor:pointer;" if existing else "cursor:pointer;"
    body = body[: style.start()] + f"{style.group(1)}style={quote}{merged}{quote}" + body[style.end() :]
    return f'{body} onclick="{CLICK_HANDLER}">'


class _NamespaceTrackingBuilder(ET.TreeBuilder):
    """TreeBuilder that remembers which element each xmlns declaration sat on."""

    def __init__(self) -> None:
        super().__init__(insert_comments=True, insert_pis=True)
        self.declarations: Dict[ET.Element, List[Tuple[str, str]]] = {}
        self._pending: List[Tuple[str, str]] = []

    def start_ns(self, prefix, uri):
        self._pending.append((prefix or "", uri or ""))

    def start(self, tag, attrs):
        elem = super().start(tag, attrs)
        if self._pending:
            self.declarations[elem] = self._pending
            self._pending = []
        return elem


def _wrap_fragment(content: str, namespaces: Optional[Mapping[str, str]]) -> str:
    bindings: Dict[str, str] = dict(AMBIENT_NAMESPACES)
    for prefix, uri in (namespaces or {}).items():
        bindings.setdefault(prefix, uri)
    for match in _PREFIX_USE_RE.finditer(content):
        prefix = match.group(1) or match.group(2)
        if prefix in ("xml", "xmlns") or prefix in bindings:
            continue
        bindings[prefix] = WELL_KNOWN_NAMESPACES.get(prefix, f"urn:x-c4stacker:{prefix}")
    attrs = []
    for prefix, uri in bindings.items():
        name = f"xmlns:{prefix}" if prefix else "xmlns"
        attrs.append(f"{name}={_quote_attr(uri)}")
    return f"<fragment {' '.join(attrs)}>{content}</fragment>"


def _remove_anchors(content: str, namespaces: Optional[Mapping[str, str]]) -> str:
    try:
        root, declarations = _parse_fragment(content, namespaces)
        _drop_anchor_elements(root)
        return _serialize_fragment(root, declarations)
    except (ET.ParseError, ValueError, RecursionError) as exc:
        logger.debug("keeping anchors, fragment did not parse: %s", exc)
        return content


def _drop_anchor_elements(parent: ET.Element) -> None:
    previous: Optional[ET.Element] = None
    for child in list(parent):
        if isinstance(child.tag, str) and _local_name(child.tag) == "a":
            if child.tail:
                if previous is None:
                    parent.text = (parent.text or "") + child.tail
                else:
                    previous.tail = (previous.tail or "") + child.tail
            parent.remove(child)
            continue
        _drop_anchor_elements(child)
        previous = child


def _indent(elem: ET.Element, level: int) -> None:
    """Indent like :func:`ET.indent`, leaving whitespace-sensitive subtrees alone.

    Text elements, ``xml:space="preserve"`` subtrees and elements with mixed
    content keep their whitespace exactly as written.
    """
    if not len(elem) or _keeps_whitespace(elem):
        return
    child_indent = "\n" + INDENT * (level + 1)
    if not elem.text or not elem.text.strip():
        elem.text = child_indent
    for child in elem:
        _indent(child, level + 1)
        if not child.tail or not child.tail.strip():
            child.tail = child_indent
    if not child.tail.strip():
        child.tail = "\n" + INDENT * level


def _keeps_whitespace(elem: ET.Element) -> bool:
    if isinstance(elem.tag, str) and _local_name(elem.tag) in WHITESPACE_SENSITIVE:
        return True
    if elem.get(f"{{{XML_NS}}}space") == "preserve":
        return True
    if elem.text and elem.text.strip():
        return True
    return any(child.tail and child.tail.strip() for child in elem)


def _local_name(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _parse_fragment(
    content: str, namespaces: Optional[Mapping[str, str]]
) -> Tuple[ET.Element, Dict[ET.Element, List[Tuple[str, str]]]]:
    builder = _NamespaceTrackingBuilder()
    parser = ET.XMLParser(target=builder)
    parser.feed(_wrap_fragment(content, namespaces))
    root = parser.close()
    return root, builder.declarations


def _serialize_fragment(
    root: ET.Element, declarations: Mapping[ET.Element, List[Tuple[str, str]]]
) -> str:
    root_decls = declarations.get(root, [])
    inherited = [(p, u) for p, u in root_decls if AMBIENT_NAMESPACES.get(p) != u]
    scope = ChainMap(dict(root_decls), {"xml": XML_NS})
    out: List[str] = []
    if root.text:
        out.append(escape(root.text))
    for child in root:
        extra = [(p, u) for p, u in inherited if _uses_namespace(child, u)]
        _write_node(child, scope, declarations, out, extra=extra)
    return "".join(out)


def _uses_namespace(elem: ET.Element, uri: str) -> bool:
    marker = "{" + uri + "}"
    for node in elem.iter():
        if isinstance(node.tag, str) and node.tag.startswith(marker):
            return True
        if any(key.startswith(marker) for key in node.attrib):
            return True
    return False


def _write_node(
    elem: ET.Element,
    scope: ChainMap,
    declarations: Mapping[ET.Element, List[Tuple[str, str]]],
    out: List[str],
    extra: Optional[List[Tuple[str, str]]] = None,
) -> None:
    if elem.tag is ET.Comment:
        out.append(f"<!--{elem.text or ''}-->")
    elif elem.tag is ET.ProcessingInstruction:
        out.append(f"<?{elem.text or ''}?>")
    else:
        own = list(declarations.get(elem, []))
        own_prefixes = {prefix for prefix, _uri in own}
        decls = [(p, u) for p, u in (extra or []) if p not in own_prefixes] + own
        if decls:
            scope = scope.new_child(dict(decls))
        name = _qualified_name(elem.tag, scope, attribute=False)
        parts = [name]
        for prefix, uri in decls:
            parts.append(f"{'xmlns:' + prefix if prefix else 'xmlns'}={_quote_attr(uri)}")
        for key, value in elem.attrib.items():
            parts.append(f"{_qualified_name(key, scope, attribute=True)}={_quote_attr(value)}")
        out.append("<" + " ".join(parts))
        if elem.text or len(elem):
            out.append(">")
            if elem.text:
                out.append(escape(elem.text))
            for child in elem:
                _write_node(child, scope, declarations, out)
            out.append(f"</{name}>")
        else:
            out.append("/>")
    if elem.tail:
        out.append(escape(elem.tail))


def _qualified_name(name: str, scope: ChainMap, *, attribute: bool) -> str:
    if not name.startswith("{"):
        if not attribute and scope.get("", ""):
            raise ValueError(f"element <{name}> has no namespace under a default namespace")
        return name
    uri, local = name[1:].split("}", 1)
    if not attribute and scope.get("") == uri:
        return local
    prefixes = sorted(prefix for prefix in scope if prefix and scope[prefix] == uri)
    if not prefixes:
        raise ValueError(f"no prefix bound to namespace {uri}")
    return f"{prefixes[0]}:{local}"


def _quote_attr(value: str) -> str:
    return '"' + escape(value, {'"': "&quot;", "\n": "&#10;", "\r": "&#13;", "\t": "&#9;"}) + '"'
