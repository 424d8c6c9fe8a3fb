"""Per-source-tree instance state: where the mirror, ledger and journal live."""

import hashlib
import os
import re
from dataclasses import dataclass
from pathlib import Path

from para.config import ParaConfig
from para.files.filters import PathFilter

DEFAULT_HOME = Path("~/.para")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def para_home() -> Path:
    """Per-user state root; ``PARA_HOME`` overrides ``~/.para``."""
    return Path(os.environ.get("PARA_HOME") or DEFAULT_HOME).expanduser()


def instance_key(source_dir: Path) -> str:
    """Directory name for the instance tracking ``source_dir``.

    The readable part is the sanitized absolute path; the hash keeps two
    roots that sanitize to the same text apart.
    """
    absolute = str(Path(source_dir).resolve())
    readable = _UNSAFE_CHARS.sub("_", absolute).strip("_")[-80:] or "root"
    digest = hashlib.md5(absolute.encode()).hexdigest()[:12]
    return f"{readable}-{digest}"


@dataclass
class InstanceContext:
    """Process-wide state for one watched source tree.

    Built once at startup and passed to every component that needs it.
    """

    config: ParaConfig
    source_dir: Path
    base_dir: Path
    tracked_dir: Path
    ledger_path: Path
    journal_path: Path

    @classmethod
    def create(cls, config: ParaConfig, home: Path | None = None) -> "InstanceContext":
        """Build the context and make sure its directories exist."""
        home = Path(home) if home else para_home()
        source_dir = config.file_sync.source_dir.resolve()
        base_dir = home / "instances" / instance_key(source_dir)
        tracked_dir = base_dir / "tracked"

        tracked_dir.mkdir(parents=True, exist_ok=True)

        return cls(
            config=config,
            source_dir=source_dir,
            base_dir=base_dir,
            tracked_dir=tracked_dir,
            ledger_path=base_dir / "fileMap.json",
            journal_path=base_dir / ".sync-log.jsonl",
        )

    def path_filter(self) -> PathFilter:
        return PathFilter(self.config.file_sync.glob_pattern, self.config.ignore_patterns)
