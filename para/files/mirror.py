"""Flattened one-way mirror of a watched source tree.

The mirror manager copies every matching file of the source tree into a
single flat directory (see ``flatten``), and keeps it current from filesystem
events delivered by a watchdog observer. Watchdog calls its handlers on the
observer thread; those calls are bridged onto an asyncio queue so the rest
of the program consumes one ordered stream of events.

Mirror maintenance is best-effort: a file that cannot be copied or removed
is logged and skipped, it never stops the watcher.
"""

import asyncio
import filecmp
import logging
import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from para.exceptions import InvalidPathError
from para.files.filters import PathFilter
from para.files.flatten import JOINER, flatten, unflatten

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ADD = "add"
    CHANGE = "change"
    DELETE = "delete"


@dataclass(frozen=True)
class SourceEvent:
    """A raw event observed in the source tree."""

    kind: EventKind
    path: Path
    is_directory: bool = False


@dataclass(frozen=True)
class FileEvent:
    """A normalized event on a mirrored file, keyed by flattened name."""

    kind: EventKind
    filename: str


@dataclass
class MirrorScan:
    """Result of the initial mirror pass."""

    copied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


class _SourceEventHandler(FileSystemEventHandler):
    """Translate watchdog callbacks into SourceEvents.

    A directory created or moved into place gets an ADD per contained file,
    and a removed directory is reported as a single directory DELETE, since
    watchdog may not report the files inside either one.
    """

    def __init__(self, emit: Callable[[SourceEvent], None]):
        self.emit = emit

    def _emit_files_under(self, directory: Path):
        for path in sorted(directory.rglob("*")):
            if path.is_file():
                self.emit(SourceEvent(EventKind.ADD, path))

    def on_created(self, event):
        path = Path(os.fsdecode(event.src_path))
        if event.is_directory:
            self._emit_files_under(path)
        else:
            self.emit(SourceEvent(EventKind.ADD, path))

    def on_modified(self, event):
        if not event.is_directory:
            self.emit(SourceEvent(EventKind.CHANGE, Path(os.fsdecode(event.src_path))))

    def on_deleted(self, event):
        path = Path(os.fsdecode(event.src_path))
        self.emit(SourceEvent(EventKind.DELETE, path, is_directory=event.is_directory))

    def on_moved(self, event):
        src = Path(os.fsdecode(event.src_path))
        dest = Path(os.fsdecode(event.dest_path))
        self.emit(SourceEvent(EventKind.DELETE, src, is_directory=event.is_directory))
        if event.is_directory:
            self._emit_files_under(dest)
        else:
            self.emit(SourceEvent(EventKind.ADD, dest))


class MirrorManager:
    """Maintain a flattened copy of ``source_dir`` inside ``target_dir``."""

    def __init__(self, source_dir: Path, target_dir: Path, path_filter: PathFilter):
        """Initialize the mirror manager.

        Args:
            source_dir: Root of the watched source tree
            target_dir: Flat mirror directory, owned exclusively by this manager
            path_filter: Glob and ignore patterns applied to relative paths
        """
        self.source_dir = Path(source_dir).resolve()
        self.target_dir = Path(target_dir).resolve()
        self.path_filter = path_filter

        self._observer = None
        self._queue: asyncio.Queue[SourceEvent | None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def mirror_path(self, filename: str) -> Path:
        return self.target_dir / filename

    def list_mirrored(self) -> list[str]:
        """Return the flattened names currently present in the mirror."""
        if not self.target_dir.exists():
            return []
        return sorted(p.name for p in self.target_dir.iterdir() if p.is_file())

    def _relative(self, source_path: Path) -> str | None:
        """Relative POSIX path of a source file, or None if it is not mirrorable."""
        path = Path(os.path.abspath(source_path))
        if path == self.target_dir or self.target_dir in path.parents:
            return None
        try:
            return path.relative_to(self.source_dir).as_posix()
        except ValueError:
            return None

    def initialize(self) -> MirrorScan:
        """Copy every matching source file into the mirror once.

        Mirror entries whose source file no longer exists, or no longer
        matches the patterns, are removed so the mirror reflects the tree.

        Returns:
            MirrorScan with copied, failed and removed flattened names
        """
        scan = MirrorScan()
        self.target_dir.mkdir(parents=True, exist_ok=True)

        expected = set()
        for path in sorted(self.source_dir.rglob("*")):
            if not path.is_file():
                continue
            relative = self._relative(path)
            if relative is None or not self.path_filter.matches(relative):
                continue

            filename = self.copy_file(path)
            if filename is None:
                scan.failed.append(relative)
                continue
            expected.add(filename)
            scan.copied.append(filename)

        for filename in self.list_mirrored():
            if filename in expected:
                continue
            source = self.source_dir / unflatten(filename)
            if source.is_file() and self.path_filter.matches(unflatten(filename).as_posix()):
                # Matching source exists but failed to copy this round.
                continue
            if self._unlink(self.mirror_path(filename)):
                scan.removed.append(filename)

        logger.info(
            f"Mirrored {len(scan.copied)} files from {self.source_dir} "
            f"({len(scan.failed)} failed, {len(scan.removed)} stale removed)"
        )
        return scan

    def copy_file(self, source_path: Path) -> str | None:
        """Copy one source file into the mirror under its flattened name.

        Returns:
            The flattened name, or None if the copy failed
        """
        try:
            filename = flatten(source_path, self.source_dir)
        except InvalidPathError as e:
            logger.warning(f"Not mirroring {source_path}: {e}")
            return None

        target = self.mirror_path(filename)
        try:
            self.target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source_path, target)
            logger.debug(f"Copied {source_path} -> {target}")
            return filename
        except OSError as e:
            logger.error(f"Error copying file {source_path}: {e}")
            return None

    def _unlink(self, target: Path) -> bool:
        try:
            target.unlink()
            logger.debug(f"Removed {target}")
            return True
        except FileNotFoundError:
            logger.debug(f"File not found for deletion: {target}")
            return True
        except OSError as e:
            logger.error(f"Error deleting file {target}: {e}")
            return False

    def apply(self, event: SourceEvent) -> FileEvent | None:
        """Apply a source event to the mirror.

        Returns:
            The normalized FileEvent to forward, or None when the event is
            filtered out, redundant, or its mirror operation failed
        """
        relative = self._relative(event.path)
        if relative is None or not self.path_filter.matches(relative):
            return None

        try:
            filename = flatten(event.path, self.source_dir)
        except InvalidPathError as e:
            logger.warning(f"Ignoring event for {event.path}: {e}")
            return None

        if event.kind == EventKind.DELETE:
            if not self._unlink(self.mirror_path(filename)):
                return None
            return FileEvent(EventKind.DELETE, filename)

        target = self.mirror_path(filename)
        if event.kind == EventKind.CHANGE and target.exists():
            try:
                if filecmp.cmp(event.path, target, shallow=False):
                    # watchdog reports a modify right after most creates
                    return None
            except OSError:
                pass

        if self.copy_file(event.path) is None:
            return None
        return FileEvent(event.kind, filename)

    def remove_directory(self, directory: Path) -> list[FileEvent]:
        """Remove every mirror file that came from under ``directory``.

        Returns:
            A DELETE FileEvent for each mirror file removed
        """
        if self._relative(directory) is None:
            return []
        try:
            prefix = flatten(directory, self.source_dir) + JOINER
        except InvalidPathError as e:
            logger.warning(f"Ignoring directory event for {directory}: {e}")
            return []

        removed = []
        for filename in self.list_mirrored():
            if filename.startswith(prefix) and self._unlink(self.mirror_path(filename)):
                removed.append(FileEvent(EventKind.DELETE, filename))
        if removed:
            logger.debug(f"Removed {len(removed)} mirror files under {directory}")
        return removed

    def watch(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start watching the source tree for add, change and delete events."""
        if self._observer is not None:
            return

        self._loop = loop or asyncio.get_running_loop()
        self._queue = asyncio.Queue()

        handler = _SourceEventHandler(self._emit)
        observer = Observer()
        observer.schedule(handler, str(self.source_dir), recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(
            f"Watching files matching {self.path_filter.glob_pattern} in {self.source_dir}"
        )

    def _emit(self, event: SourceEvent) -> None:
        # Called on the observer thread.
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def push(self, event: SourceEvent) -> None:
        """Queue a source event from the event loop thread."""
        if self._queue is None:
            raise RuntimeError("watch() must be called before push()")
        self._queue.put_nowait(event)

    async def events(self) -> AsyncIterator[FileEvent]:
        """Yield normalized mirror events until ``stop()`` is called."""
        if self._queue is None:
            raise RuntimeError("watch() must be called before events()")

        while True:
            event = await self._queue.get()
            if event is None:
                return
            if event.is_directory:
                if event.kind == EventKind.DELETE:
                    for file_event in self.remove_directory(event.path):
                        yield file_event
                continue
            file_event = self.apply(event)
            if file_event is not None:
                yield file_event

    def stop(self) -> None:
        """Stop the observer and end the event stream."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        if self._queue is not None:
            self._queue.put_nowait(None)
