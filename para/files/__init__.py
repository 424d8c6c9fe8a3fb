"""Local file handling: path flattening, filtering and the flattened mirror."""

from para.files.filters import PathFilter
from para.files.flatten import JOINER, flatten
from para.files.mirror import EventKind, FileEvent, MirrorManager, MirrorScan, SourceEvent

__all__ = [
    "JOINER",
    "flatten",
    "PathFilter",
    "MirrorManager",
    "MirrorScan",
    "EventKind",
    "FileEvent",
    "SourceEvent",
]
