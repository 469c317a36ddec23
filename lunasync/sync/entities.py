"""
Helpers for working with entity dictionaries.

Timestamps arrive in several shapes (ISO strings from JSON, epoch
milliseconds from older exports, datetime objects from callers), so every
comparison goes through parse_timestamp().
"""

import copy
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from lunasync.sync.models import EntityType


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Fields ignored when deciding whether two versions of an entity differ
VOLATILE_FIELDS = {
    EntityType.NOVEL: ("lastEdited", "createdAt"),
    EntityType.AI_MODEL: ("lastEdited", "apiKey"),
    EntityType.SETTINGS: ("lastEdited",),
    EntityType.COVER_HISTORY: ("addedAt",),
}

# Lazily loaded chapter fields, never part of a novel comparison
CHAPTER_CONTENT_FIELDS = ("content", "contentLoaded", "originalContent")

TIMESTAMP_FIELDS = {
    EntityType.NOVEL: "lastEdited",
    EntityType.AI_MODEL: "lastEdited",
    EntityType.SETTINGS: "lastEdited",
    EntityType.COVER_HISTORY: "addedAt",
}


def parse_timestamp(value: Any) -> datetime:
    """
    Convert a stored timestamp to an aware UTC datetime.

    Args:
        value: ISO-8601 string (``Z`` suffix allowed), epoch milliseconds,
            or datetime. Naive datetimes are taken as UTC.

    Returns:
        Aware datetime; EPOCH when the value is missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return EPOCH

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return EPOCH

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return EPOCH
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp(datetime.fromisoformat(text))
        except ValueError:
            return EPOCH

    return EPOCH


def json_default(value: Any) -> Any:
    """``default`` hook for json.dumps: datetimes become ISO strings."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def entity_timestamp(entity: Optional[dict[str, Any]], entity_type: EntityType) -> datetime:
    if not entity:
        return EPOCH
    return parse_timestamp(entity.get(TIMESTAMP_FIELDS[entity_type]))


def entity_label(entity: Optional[dict[str, Any]], entity_type: EntityType) -> str:
    """Human-readable name used in conflict lists."""
    if not entity:
        return ""
    if entity_type == EntityType.NOVEL:
        return str(entity.get("title") or entity.get("id", ""))
    if entity_type == EntityType.AI_MODEL:
        return str(entity.get("name") or entity.get("model") or entity.get("id", ""))
    if entity_type == EntityType.SETTINGS:
        return "App settings"
    return str(entity.get("url") or entity.get("id", ""))


def strip_volatile(entity: dict[str, Any], entity_type: EntityType) -> dict[str, Any]:
    """
    Return a deep copy of the entity without volatile fields.

    For novels this also removes the lazily loaded chapter payload.
    """
    stripped = {
        key: copy.deepcopy(value)
        for key, value in entity.items()
        if key not in VOLATILE_FIELDS[entity_type]
    }

    if entity_type == EntityType.NOVEL:
        for chapter in iter_chapters(stripped):
            for key in CHAPTER_CONTENT_FIELDS:
                chapter.pop(key, None)

    return stripped


def iter_chapters(novel: dict[str, Any]) -> Iterator[dict[str, Any]]:
    for volume in novel.get("volumes") or []:
        for chapter in volume.get("chapters") or []:
            yield chapter


def has_content(chapter: Optional[dict[str, Any]]) -> bool:
    """
    Whether a chapter carries its paragraph list.

    A missing key or None means "not loaded"; an empty list is real content.
    """
    return chapter is not None and chapter.get("content") is not None


def index_by_id(items: Optional[list[dict[str, Any]]]) -> dict[str, dict[str, Any]]:
    """Map entities by id, skipping malformed entries."""
    return {
        item["id"]: item
        for item in items or []
        if isinstance(item, dict) and item.get("id")
    }
