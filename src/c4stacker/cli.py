"""Command-line interface for stacking C4 diagrams into one navigable SVG."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from . import __version__
from .compose import DEFAULT_TITLE, build_stacked_svg
from .plantuml import PlantUMLError, diagram_directory
from .stacker import DiagramParseError, NoDiagramsError, load_diagrams


@dataclass
class CliError(Exception):
    code: str
    message: str
    hint: Optional[str] = None
    exit_code: int = 1
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    retryable: bool = True


class UsageError(Exception):
    pass


class FriendlyArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # pragma: no cover - argparse callback
        raise UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = FriendlyArgumentParser(
        prog="c4stacker",
        description="Stack C4 context/container/component/code SVG diagrams into one navigable SVG.",
    )
    parser.add_argument("directory", nargs="?", help="Directory holding the per-level .svg (or .puml) files")
    parser.add_argument("-o", "--output", help="Output .svg path (default: stdout)")
    parser.add_argument("--title", default=DEFAULT_TITLE, help="Title shown in the document header")
    parser.add_argument(
        "--css-only",
        action="store_true",
        help="Emit a script-free document that switches layers with :target links",
    )
    parser.add_argument("--plantuml", metavar="PATH", help="PlantUML executable for .puml sources")
    parser.add_argument("--error-format", choices=["text", "json"], default="text")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("-v", "--version", action="store_true", help="Print the version and exit")
    return parser


def _configure_logging(debug: bool) -> None:
    logger = logging.getLogger("c4stacker")
    logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False


def _write_text(path: Path, content: str) -> None:
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise CliError(
            "E_IO_WRITE",
            f"failed to write output file: {path}",
            hint=str(exc),
            exit_code=4,
            file=str(path),
        )


def _error_from_exception(exc: Exception) -> CliError:
    if isinstance(exc, CliError):
        return exc
    if isinstance(exc, DiagramParseError):
        hint = "Ensure every diagram is well-formed XML with a single <svg> root element."
        return CliError(
            exc.code,
            str(exc),
            hint=hint,
            exit_code=2,
            file=exc.file,
            line=exc.line,
            column=exc.column,
        )
    if isinstance(exc, NoDiagramsError):
        return CliError(
            "E_NO_DIAGRAMS",
            str(exc),
            hint="Name files with context, container, component or code, e.g. 01-context.svg.",
            exit_code=3,
        )
    if isinstance(exc, PlantUMLError):
        return CliError(
            "E_PLANTUML",
            str(exc),
            hint=exc.output or "Install PlantUML or pass --plantuml PATH.",
            exit_code=5,
        )
    if isinstance(exc, OSError):
        return CliError(
            "E_IO_READ",
            str(exc),
            exit_code=2,
            file=exc.filename if isinstance(exc.filename, str) else None,
        )
    return CliError(
        "E_INTERNAL",
        str(exc) or exc.__class__.__name__,
        hint="Re-run with --debug to see traceback.",
        exit_code=1,
        retryable=False,
    )


def _emit_error(err: CliError, *, error_format: str) -> None:
    if error_format == "json":
        payload = {
            "ok": False,
            "code": err.code,
            "message": err.message,
            "file": err.file,
            "line": err.line,
            "column": err.column,
            "hint": err.hint,
            "retryable": err.retryable,
        }
        sys.stderr.write(json.dumps(payload) + "\n")
        return

    sys.stderr.write(f"error[{err.code}]: {err.message}\n")


def _handle_stack(args: argparse.Namespace) -> int:
    if not args.directory:
        raise CliError(
            "E_ARGS",
            "missing input directory",
            hint="Usage: c4stacker DIRECTORY [-o output.svg] [--title TEXT]",
            exit_code=2,
        )
    directory = Path(args.directory)
    if not directory.is_dir():
        raise CliError(
            "E_ARGS",
            f"input directory not found: {directory}",
            exit_code=2,
            file=str(directory),
        )

    with diagram_directory(directory, args.plantuml) as svg_dir:
        diagrams = load_diagrams(svg_dir, css_only=args.css_only)
    svg_text = build_stacked_svg(diagrams, args.title, css_only=args.css_only)

    if not args.output:
        sys.stdout.write(svg_text)
        return 0

    output_path = Path(args.output)
    _write_text(output_path, svg_text)
    print(f"Wrote {output_path}")
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()

    debug_enabled = "--debug" in raw_argv or os.getenv("C4STACKER_DEBUG") == "1"
    error_format = "text"
    if "--error-format" in raw_argv:
        idx = raw_argv.index("--error-format")
        if idx + 1 < len(raw_argv):
            error_format = raw_argv[idx + 1]

    _configure_logging(debug_enabled)

    try:
        args = parser.parse_args(raw_argv)
        error_format = args.error_format

        if args.version:
            print(f"c4stacker {__version__}")
            return 0
        return _handle_stack(args)
    except UsageError as exc:
        err = CliError(
            "E_ARGS",
            str(exc),
            hint="Usage: c4stacker DIRECTORY [-o output.svg] [--title TEXT] [--css-only]",
            exit_code=2,
        )
        _emit_error(err, error_format=error_format)
        return err.exit_code
    except Exception as exc:  # pragma: no cover - exercised in integration tests
        err = _error_from_exception(exc)
        _emit_error(err, error_format=error_format)
        if debug_enabled:
            traceback.print_exc(file=sys.stderr)
        return err.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
