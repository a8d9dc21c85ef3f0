from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from ..errors import InvalidInputError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def resolve_output_path(path: PathLike, base_dir: PathLike) -> Path:
    """Absolute paths are kept; relative ones are placed under ``base_dir``
    and may not climb out of it. The parent directory is created."""
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        resolved = candidate
    else:
        base = Path(base_dir).expanduser().resolve()
        resolved = (base / candidate).resolve()
        if not resolved.is_relative_to(base):
            raise InvalidInputError(f"Output path escapes the output directory: {path}")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise InvalidInputError(f"Failed to create output directory: {resolved.parent}") from e
    logger.debug("Resolved output path %s -> %s", path, resolved)
    return resolved


def numbered_path(path: Path, index: int) -> Path:
    """``out.png`` -> ``out_<index>.png``."""
    return path.with_name(f"{path.stem}_{index}{path.suffix}")


def unique_path(path: Path, sample_count: int = 1) -> Path:
    """Return ``path`` or ``path`` with a ``-N`` suffix such that none of the
    files the generation will write already exist."""

    def taken(p: Path) -> bool:
        if sample_count > 1:
            return any(numbered_path(p, i).exists() for i in range(1, sample_count + 1))
        return p.exists()

    if not taken(path):
        return path
    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem}-{counter}{path.suffix}")
        if not taken(candidate):
            return candidate
        counter += 1


def resolve_input_path(path: PathLike) -> Path:
    p = Path(path).expanduser().resolve()
    if not p.is_file():
        raise InvalidInputError(f"Input image not found: {path}")
    return p


def display_path(path: PathLike) -> str:
    p = str(path)
    home = str(Path.home())
    if p.startswith(home):
        return "~" + p[len(home):]
    return p
