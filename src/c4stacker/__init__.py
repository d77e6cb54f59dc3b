"""Public API for c4stacker."""
from .compose import DEFAULT_TITLE, build_stacked_svg, title_case
from .plantuml import PlantUMLError
from .stacker import (
    LEVELS,
    DiagramParseError,
    DiagramRecord,
    NoDiagramsError,
    clean_diagram_content,
    extract_level,
    load_diagrams,
    parse_svg,
    pretty_print_xml,
    validate_xml,
)

__version__ = "0.1.0"

__all__ = [
    "LEVELS",
    "DEFAULT_TITLE",
    "DiagramRecord",
    "DiagramParseError",
    "NoDiagramsError",
    "PlantUMLError",
    "build_stacked_svg",
    "clean_diagram_content",
    "extract_level",
    "load_diagrams",
    "parse_svg",
    "pretty_print_xml",
    "title_case",
    "validate_xml",
]
