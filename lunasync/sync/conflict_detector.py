"""
Conflict detection between the local and the remote replica.

Only entities present on both sides can conflict, and only when their
payloads differ once volatile fields (edit timestamps, API keys, lazily
loaded chapter text) are ignored. One-sided entities are handled by the
retention rules of the merge step.
"""

from datetime import datetime
from typing import Any, Optional

from lunasync.sync.entities import (
    entity_label,
    entity_timestamp,
    index_by_id,
    strip_volatile,
)
from lunasync.sync.models import SETTINGS_ENTITY_ID, Conflict, EntityType, SyncData


def payloads_differ(
    local: dict[str, Any],
    remote: dict[str, Any],
    entity_type: EntityType,
) -> bool:
    return strip_volatile(local, entity_type) != strip_volatile(remote, entity_type)


def _make_conflict(
    entity_id: str,
    entity_type: EntityType,
    local: dict[str, Any],
    remote: dict[str, Any],
) -> Conflict:
    return Conflict(
        entity_id=entity_id,
        entity_type=entity_type,
        local_version=local,
        remote_version=remote,
        local_name=entity_label(local, entity_type),
        remote_name=entity_label(remote, entity_type),
        local_edited=entity_timestamp(local, entity_type),
        remote_edited=entity_timestamp(remote, entity_type),
    )


def _collection_conflicts(
    local_items: Optional[list[dict[str, Any]]],
    remote_items: Optional[list[dict[str, Any]]],
    entity_type: EntityType,
) -> list[Conflict]:
    remote_by_id = index_by_id(remote_items)
    conflicts = []
    for entity_id, local in index_by_id(local_items).items():
        remote = remote_by_id.get(entity_id)
        if remote is not None and payloads_differ(local, remote, entity_type):
            conflicts.append(_make_conflict(entity_id, entity_type, local, remote))
    return conflicts


def detect_conflicts(
    local: SyncData,
    remote: SyncData,
    last_sync_time: Optional[datetime] = None,
) -> list[Conflict]:
    """
    Compare two replicas entity by entity.

    Args:
        local: Local replica
        remote: Remote replica
        last_sync_time: Time of the last successful sync. Accepted for
            callers that track it; classification does not depend on it.

    Returns:
        One Conflict per entity id whose payloads differ
    """
    conflicts = _collection_conflicts(local.novels, remote.novels, EntityType.NOVEL)
    conflicts += _collection_conflicts(local.ai_models, remote.ai_models, EntityType.AI_MODEL)

    if local.app_settings is not None and remote.app_settings is not None:
        if payloads_differ(local.app_settings, remote.app_settings, EntityType.SETTINGS):
            conflicts.append(_make_conflict(
                SETTINGS_ENTITY_ID, EntityType.SETTINGS, local.app_settings, remote.app_settings
            ))

    if remote.cover_history is not None:
        conflicts += _collection_conflicts(
            local.cover_history, remote.cover_history, EntityType.COVER_HISTORY
        )

    return conflicts


def _ids_and_payloads(
    items: Optional[list[dict[str, Any]]],
    entity_type: EntityType,
) -> dict[str, dict[str, Any]]:
    return {
        entity_id: strip_volatile(item, entity_type)
        for entity_id, item in index_by_id(items).items()
    }


def has_changes_to_upload(local: SyncData, remote: SyncData) -> bool:
    """
    Whether the remote replica is out of date with respect to ``local``.

    Added or removed entities count as changes, as do payload differences.
    Edit timestamps alone are also compared for novels and models, so a
    local edit that only bumped ``lastEdited`` is still published.
    """
    for entity_type, local_items, remote_items in (
        (EntityType.NOVEL, local.novels, remote.novels),
        (EntityType.AI_MODEL, local.ai_models, remote.ai_models),
        (EntityType.COVER_HISTORY, local.cover_history or [], remote.cover_history or []),
    ):
        if _ids_and_payloads(local_items, entity_type) != _ids_and_payloads(remote_items, entity_type):
            return True
        remote_by_id = index_by_id(remote_items)
        for entity_id, item in index_by_id(local_items).items():
            if entity_timestamp(item, entity_type) != entity_timestamp(remote_by_id[entity_id], entity_type):
                return True

    if remote.app_settings is None:
        return bool(local.app_settings)
    if local.app_settings is None:
        return False
    return payloads_differ(local.app_settings, remote.app_settings, EntityType.SETTINGS)
