"""
Data structures shared by the sync engine.

Entities themselves (novels, AI models, settings, cover items) stay plain
JSON dictionaries so that unknown fields survive a round trip through the
Gist untouched. The dataclasses here describe everything around them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


SETTINGS_ENTITY_ID = "app-settings"


class EntityType(str, Enum):
    """Kinds of syncable entities."""

    NOVEL = "novel"
    AI_MODEL = "aiModel"
    SETTINGS = "settings"
    COVER_HISTORY = "coverHistory"


class Choice(str, Enum):
    """Side picked by the user for a conflict."""

    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class SyncData:
    """
    One replica of the user's data.

    ``app_settings`` and ``cover_history`` are None when the replica does not
    carry them at all (e.g. the settings file is missing remotely), which is
    different from an empty list.
    """

    novels: list[dict[str, Any]] = field(default_factory=list)
    ai_models: list[dict[str, Any]] = field(default_factory=list)
    app_settings: Optional[dict[str, Any]] = None
    cover_history: Optional[list[dict[str, Any]]] = None

    def is_empty(self) -> bool:
        return (
            not self.novels
            and not self.ai_models
            and not self.app_settings
            and not self.cover_history
        )

    def entity_ids(self) -> list[str]:
        """Ids of every entity, used to remember what was last synced."""
        ids = [item["id"] for item in self.novels if item.get("id")]
        ids.extend(item["id"] for item in self.ai_models if item.get("id"))
        ids.extend(item["id"] for item in self.cover_history or [] if item.get("id"))
        return ids


@dataclass
class RemoteFile:
    """A file as reported by the Gist API."""

    name: str
    content: Optional[str] = None
    size: int = 0
    truncated: bool = False
    raw_url: Optional[str] = None

    @classmethod
    def from_api(cls, name: str, data: dict[str, Any]) -> "RemoteFile":
        return cls(
            name=name,
            content=data.get("content"),
            size=data.get("size") or 0,
            truncated=bool(data.get("truncated")),
            raw_url=data.get("raw_url"),
        )

    @property
    def needs_raw_fetch(self) -> bool:
        """True when inline content is missing or cut short by the API."""
        return self.truncated or self.content is None


@dataclass
class ChunkMetadata:
    """Contents of ``novel-<id>.meta.json``."""

    chunks: int
    total_size: int

    def to_dict(self) -> dict[str, int]:
        return {"chunks": self.chunks, "totalSize": self.total_size}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChunkMetadata":
        chunks = data.get("chunks")
        if not isinstance(chunks, int) or isinstance(chunks, bool) or chunks < 0:
            raise ValueError(f"Invalid chunk count in metadata: {chunks!r}")
        return cls(chunks=chunks, total_size=int(data.get("totalSize") or 0))


@dataclass
class ChunkSet:
    """Ordered, byte-bounded fragments of one serialized entity."""

    chunks: list[str]
    total_size: int

    @property
    def metadata(self) -> ChunkMetadata:
        return ChunkMetadata(chunks=len(self.chunks), total_size=self.total_size)


@dataclass
class Conflict:
    """An entity present on both sides with different payloads."""

    entity_id: str
    entity_type: EntityType
    local_version: Any
    remote_version: Any
    local_name: str = ""
    remote_name: str = ""
    local_edited: Optional[datetime] = None
    remote_edited: Optional[datetime] = None


@dataclass(frozen=True)
class Resolution:
    """User decision for one conflict (or for a one-sided entity)."""

    conflict_id: str
    choice: Choice
    entity_type: Optional[EntityType] = None

    def __post_init__(self):
        # Accept plain strings from CLI/JSON callers
        if not isinstance(self.choice, Choice):
            object.__setattr__(self, "choice", Choice(self.choice))
        if self.entity_type is not None and not isinstance(self.entity_type, EntityType):
            object.__setattr__(self, "entity_type", EntityType(self.entity_type))

    def applies_to(self, entity_id: str, entity_type: EntityType) -> bool:
        if self.conflict_id != entity_id:
            return False
        return self.entity_type is None or self.entity_type == entity_type


@dataclass
class ItemFailure:
    """One remote entity that could not be read during this pass."""

    name: str
    reason: str
    entity_id: Optional[str] = None


@dataclass
class DownloadResult:
    """
    Remote replica as decoded from the Gist.

    Attributes:
        data: Entities that were read successfully
        failures: Entities that could not be read
        failed_ids: Ids of unreadable entities (SETTINGS_ENTITY_ID for the
            settings file); they must not be deleted locally
        remote_url: Gist HTML URL
        success: False when the Gist itself could not be read
        error: Why the Gist could not be read
    """

    data: SyncData
    failures: list[ItemFailure] = field(default_factory=list)
    failed_ids: set[str] = field(default_factory=set)
    remote_url: Optional[str] = None
    success: bool = True
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: BaseException) -> "DownloadResult":
        return cls(data=SyncData(), success=False, error=str(error))

    @property
    def settings_failed(self) -> bool:
        return SETTINGS_ENTITY_ID in self.failed_ids


@dataclass
class SyncResult:
    """
    Outcome of a public sync operation.

    Callers check ``success`` and display ``message`` or ``error``. When
    conflicts are returned unresolved, ``download`` holds the replica they
    were computed from, to be passed back to apply_resolutions().
    """

    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    remote_id: Optional[str] = None
    remote_url: Optional[str] = None
    recreated: bool = False
    uploaded: bool = False
    failures: list[ItemFailure] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    download: Optional[DownloadResult] = None

    @classmethod
    def failed(cls, error: BaseException) -> "SyncResult":
        return cls(success=False, error=str(error))
