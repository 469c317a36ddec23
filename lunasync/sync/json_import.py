"""
JSON import into the local library.

Two modes:
- merge (default): entities missing locally are added, existing ones are
  replaced only when the imported copy was edited more recently
- replace: the library becomes exactly the imported data

Either way the store is written in one transaction.
"""

import json
from pathlib import Path
from typing import Any

from lunasync.sync.entities import entity_timestamp, index_by_id
from lunasync.sync.merge_applier import LocalStore
from lunasync.sync.models import EntityType, SyncData


def _parse_export(json_data: dict[str, Any]) -> SyncData:
    required_fields = ["format_version", "novels"]
    for field_name in required_fields:
        if field_name not in json_data:
            raise ValueError(f"Invalid export: missing field '{field_name}'")

    for key in ("novels", "aiModels", "coverHistory"):
        value = json_data.get(key) or []
        if not isinstance(value, list):
            raise ValueError(f"Invalid export: '{key}' must be a list")

    settings = json_data.get("appSettings")
    return SyncData(
        novels=json_data.get("novels") or [],
        ai_models=json_data.get("aiModels") or [],
        app_settings=settings if isinstance(settings, dict) else None,
        cover_history=json_data.get("coverHistory") or [],
    )


def _merge_items(
    current: list[dict[str, Any]],
    imported: list[dict[str, Any]],
    entity_type: EntityType,
    stats: dict[str, int],
) -> list[dict[str, Any]]:
    merged = index_by_id(current)
    for item in imported:
        if not isinstance(item, dict) or not item.get("id"):
            stats["errors"] += 1
            continue
        existing = merged.get(item["id"])
        if existing is None:
            stats["new_records"] += 1
            merged[item["id"]] = item
        elif entity_timestamp(item, entity_type) > entity_timestamp(existing, entity_type):
            stats["updated_records"] += 1
            merged[item["id"]] = item
        else:
            stats["skipped_records"] += 1
    return list(merged.values())


def import_from_json(
    json_data: dict[str, Any],
    store: LocalStore,
    replace: bool = False,
    dry_run: bool = False,
) -> dict[str, int]:
    """
    Import an export produced by export_to_json().

    Args:
        json_data: Exported JSON data
        store: Target library
        replace: Replace the whole library instead of merging
        dry_run: If True, validate and count but don't write

    Returns:
        Dictionary with import statistics:
        - new_records: Entities added
        - updated_records: Entities replaced by a newer imported copy
        - skipped_records: Entities kept because the local copy is as new
        - errors: Entries without a valid id

    Raises:
        ValueError: If the export structure is invalid
    """
    imported = _parse_export(json_data)
    stats = {"new_records": 0, "updated_records": 0, "skipped_records": 0, "errors": 0}

    current = SyncData(cover_history=[]) if replace else store.snapshot()

    final = SyncData(
        novels=_merge_items(current.novels, imported.novels, EntityType.NOVEL, stats),
        ai_models=_merge_items(current.ai_models, imported.ai_models, EntityType.AI_MODEL, stats),
        app_settings=current.app_settings,
        cover_history=_merge_items(
            current.cover_history or [], imported.cover_history or [],
            EntityType.COVER_HISTORY, stats,
        ),
    )

    if imported.app_settings is not None and (
        replace
        or current.app_settings is None
        or entity_timestamp(imported.app_settings, EntityType.SETTINGS)
        > entity_timestamp(current.app_settings, EntityType.SETTINGS)
    ):
        final.app_settings = imported.app_settings

    if not dry_run:
        store.replace_all(final)

    return stats


def import_from_file(
    path: Path,
    store: LocalStore,
    replace: bool = False,
    dry_run: bool = False,
) -> dict[str, int]:
    with open(path, "r", encoding="utf-8") as f:
        json_data = json.load(f)
    if not isinstance(json_data, dict):
        raise ValueError("Invalid export: top level must be a JSON object")
    return import_from_json(json_data, store, replace=replace, dry_run=dry_run)
