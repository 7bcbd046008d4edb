"""Project state: manifest, file layout, checkpoint store, image I/O."""

from histostack.project.manifest import (
    Slice,
    SliceStack,
    parse_manifest,
    format_manifest,
    read_manifest,
    write_manifest,
)
from histostack.project.layout import (
    PairRole,
    SliceRole,
    IterationRole,
    GlobalRole,
    PairFile,
    SliceFile,
    IterationFile,
    GlobalFile,
    SettingFile,
    IterationSummaryFile,
    RuntimeConfigFile,
    ProjectLayout,
)
from histostack.project.store import CheckpointStore, FileSystemStore, MemoryStore

__all__ = [
    "Slice",
    "SliceStack",
    "parse_manifest",
    "format_manifest",
    "read_manifest",
    "write_manifest",
    "PairRole",
    "SliceRole",
    "IterationRole",
    "GlobalRole",
    "PairFile",
    "SliceFile",
    "IterationFile",
    "GlobalFile",
    "SettingFile",
    "IterationSummaryFile",
    "RuntimeConfigFile",
    "ProjectLayout",
    "CheckpointStore",
    "FileSystemStore",
    "MemoryStore",
]
