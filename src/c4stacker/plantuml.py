"""Render numbered PlantUML sources to SVG before stacking."""
from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "plantuml"
MIN_NUMBERED_SOURCES = 3
RENDER_TIMEOUT = 300.0

_NUMBERED_SOURCE_RE = re.compile(r"^0[1-4]-.*\.puml$")


class PlantUMLError(RuntimeError):
    """Raised when PlantUML is unavailable or fails to render the sources."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


def has_plantuml_sources(directory: Union[str, Path]) -> bool:
    return any(Path(directory).glob("*.puml"))


def numbered_sources(directory: Union[str, Path]) -> List[Path]:
    return sorted(
        path for path in Path(directory).glob("*.puml") if _NUMBERED_SOURCE_RE.match(path.name)
    )


def resolve_executable(executable: Optional[str] = None) -> str:
    name = executable or os.getenv("C4STACKER_PLANTUML") or DEFAULT_EXECUTABLE
    resolved = shutil.which(name)
    if not resolved:
        raise PlantUMLError(f"PlantUML executable not found: {name}")
    return resolved


def render_directory(
    directory: Union[str, Path], output_dir: Union[str, Path], executable: Optional[str] = None
) -> List[Path]:
    """Render ``01-*.puml`` .. ``04-*.puml`` from ``directory`` into ``output_dir``."""
    sources = numbered_sources(directory)
    if len(sources) < MIN_NUMBERED_SOURCES:
        raise PlantUMLError(
            "expected at least 3 numbered .puml files (01-*.puml through 03-*.puml), "
            f"found {len(sources)}"
        )
    command = [resolve_executable(executable), "-tsvg", "-o", str(Path(output_dir).resolve())]
    command.extend(str(path) for path in sources)
    logger.debug("running %s", " ".join(command))
    try:
        proc = subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
            timeout=RENDER_TIMEOUT,
        )
    except subprocess.TimeoutExpired as exc:
        raise PlantUMLError(f"plantuml timed out after {RENDER_TIMEOUT:g}s") from exc
    except OSError as exc:
        raise PlantUMLError(f"failed to execute plantuml: {exc}") from exc
    output = (proc.stdout or "") + (proc.stderr or "")
    if proc.returncode != 0:
        raise PlantUMLError(f"plantuml failed with exit status {proc.returncode}", output.strip())
    return sorted(Path(output_dir).glob("*.svg"))


@contextmanager
def diagram_directory(
    directory: Union[str, Path], executable: Optional[str] = None
) -> Iterator[Path]:
    """Yield the directory holding the SVGs to stack.

    Directories with ``.puml`` sources are rendered into a temporary
    directory that is removed once the caller is done with it.
    """
    directory = Path(directory)
    if not has_plantuml_sources(directory):
        yield directory
        return
    with tempfile.TemporaryDirectory(prefix="c4stacker-") as tmp:
        rendered = render_directory(directory, tmp, executable)
        logger.debug("rendered %d SVG files into %s", len(rendered), tmp)
        yield Path(tmp)
