"""
Gist revision history.

GitHub lists revisions newest first. The file changes of a revision are
found by comparing it with the revision right after it in that list (the
previous state of the Gist).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from lunasync.sync.entities import parse_timestamp
from lunasync.sync.file_naming import group_chunk_files
from lunasync.sync.models import RemoteFile


ADDED = "added"
REMOVED = "removed"
MODIFIED = "modified"


@dataclass
class RevisionInfo:
    """One entry of the Gist history."""

    version: str
    committed_at: datetime
    total: int = 0
    additions: int = 0
    deletions: int = 0
    user: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RevisionInfo":
        change_status = data.get("change_status") or {}
        return cls(
            version=data["version"],
            committed_at=parse_timestamp(data.get("committed_at")),
            total=change_status.get("total") or 0,
            additions=change_status.get("additions") or 0,
            deletions=change_status.get("deletions") or 0,
            user=(data.get("user") or {}).get("login"),
        )


@dataclass
class FileChangeInfo:
    """How one file changed in a revision."""

    filename: str
    status: str
    size: Optional[int] = None
    size_diff: Optional[int] = None


@dataclass
class RevisionDiff:
    revision: RevisionInfo
    files: list[FileChangeInfo] = field(default_factory=list)


@dataclass
class RevisionListResult:
    """Outcome of listing the Gist history."""

    success: bool
    revisions: list[RevisionInfo] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class RevisionChangesResult:
    """Outcome of inspecting one revision; ``diff`` is set on success."""

    success: bool
    diff: Optional[RevisionDiff] = None
    error: Optional[str] = None


def parse_revisions(history: list[dict[str, Any]]) -> list[RevisionInfo]:
    return [RevisionInfo.from_api(item) for item in history if item.get("version")]


def _file_modified(newer: RemoteFile, older: RemoteFile) -> bool:
    if newer.size != older.size:
        return True
    if newer.needs_raw_fetch or older.needs_raw_fetch:
        # Same size but content unavailable for comparison
        return True
    return newer.content != older.content


def diff_files(
    newer: dict[str, RemoteFile],
    older: Optional[dict[str, RemoteFile]],
) -> list[FileChangeInfo]:
    """
    File-level changes between two consecutive revisions.

    Args:
        newer: Files of the revision being inspected
        older: Files of the revision before it (None for the first revision,
            in which case every file counts as added)

    Returns:
        Added, removed and modified files, sorted by name
    """
    older = older or {}
    changes: list[FileChangeInfo] = []

    for name in sorted(newer.keys() - older.keys()):
        changes.append(FileChangeInfo(name, ADDED, size=newer[name].size, size_diff=newer[name].size))

    for name in sorted(older.keys() - newer.keys()):
        changes.append(FileChangeInfo(name, REMOVED, size=0, size_diff=-older[name].size))

    for name in sorted(newer.keys() & older.keys()):
        if _file_modified(newer[name], older[name]):
            size_diff = newer[name].size - older[name].size
            changes.append(FileChangeInfo(name, MODIFIED, size=newer[name].size, size_diff=size_diff or None))

    return sorted(changes, key=lambda change: change.filename)


def group_for_display(changes: list[FileChangeInfo]) -> list[FileChangeInfo]:
    """Show each chunked novel as a single row."""
    return group_chunk_files(changes)
