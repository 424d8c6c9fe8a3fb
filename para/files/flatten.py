"""Map hierarchical source paths onto single-segment mirror filenames."""

import os
from pathlib import Path

from para.exceptions import InvalidPathError

# Must not occur inside a path segment of any watched file.
JOINER = "->"


def flatten(source_path: str | Path, base_dir: str | Path) -> str:
    """Return the flattened mirror name of ``source_path`` relative to ``base_dir``.

    Args:
        source_path: File path (absolute, or relative to the working directory)
        base_dir: Root of the watched tree

    Returns:
        The relative path with every separator replaced by ``JOINER``,
        e.g. ``src/lib/app.py`` becomes ``src->lib->app.py``.

    Raises:
        InvalidPathError: If the path is not strictly under ``base_dir``
    """
    source = Path(os.path.abspath(source_path))
    base = Path(os.path.abspath(base_dir))

    try:
        relative = source.relative_to(base)
    except ValueError:
        raise InvalidPathError(f"{source} is not under {base}")

    parts = relative.parts
    if not parts:
        raise InvalidPathError(f"{source} is the base directory itself")
    if ".." in parts:
        raise InvalidPathError(f"{source} escapes {base}")

    return JOINER.join(parts)


def unflatten(flattened_name: str) -> Path:
    """Return the relative source path encoded in a flattened name."""
    return Path(*flattened_name.split(JOINER))
