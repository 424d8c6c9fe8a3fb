"""Glob and ignore-pattern matching for the watched source tree.

Patterns use gitignore semantics via pathspec: ``**`` matches any number
of path segments and ``*`` matches within a single segment. Every pattern is
anchored to the root of the watched tree, so ``build/*`` only matches the
top-level ``build`` directory. Brace alternatives such as ``*.{py,ts}`` are
expanded before compiling because gitignore patterns have no brace syntax.
"""

import re
from pathlib import PurePosixPath

from pathspec import PathSpec

_BRACE_PATTERN = re.compile(r"\{([^{}]*)\}")


def expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` alternatives into separate patterns.

    Example:
        >>> expand_braces("src/**/*.{py,ts}")
        ['src/**/*.py', 'src/**/*.ts']
    """
    match = _BRACE_PATTERN.search(pattern)
    if not match:
        return [pattern]

    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(f"{head}{option}{tail}"))
    return expanded


def _anchor(pattern: str) -> str:
    pattern = pattern.strip()
    if pattern.startswith("./"):
        pattern = pattern[2:]
    if not pattern.startswith("/"):
        pattern = "/" + pattern
    return pattern


def compile_patterns(patterns: list[str]) -> PathSpec:
    """Compile glob patterns into an anchored PathSpec."""
    lines = []
    for pattern in patterns:
        if not pattern or not pattern.strip():
            continue
        lines.extend(_anchor(p) for p in expand_braces(pattern))
    return PathSpec.from_lines("gitignore", lines)


class PathFilter:
    """Decide which relative paths of the watched tree are mirrored."""

    def __init__(self, glob_pattern: str, ignore_patterns: list[str] | None = None):
        self.glob_pattern = glob_pattern
        self.ignore_patterns = list(ignore_patterns or [])
        self._include = compile_patterns([glob_pattern])
        self._ignore = compile_patterns(self.ignore_patterns)

    def is_ignored(self, relative_path: str | PurePosixPath) -> bool:
        """Check a path relative to the watched root against the ignore patterns."""
        return self._ignore.match_file(self._normalize(relative_path))

    def matches(self, relative_path: str | PurePosixPath) -> bool:
        """Check whether a relative path is included and not ignored."""
        path = self._normalize(relative_path)
        return self._include.match_file(path) and not self._ignore.match_file(path)

    @staticmethod
    def _normalize(relative_path) -> str:
        return PurePosixPath(str(relative_path).replace("\\", "/")).as_posix()
