"""
JSON export of the local library.

Exports are read-only with respect to the store and include chapter
content, so a file is a complete offline backup.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from lunasync.sync.entities import json_default
from lunasync.sync.merge_applier import LocalStore, ensure_content_loaded


EXPORT_FORMAT_VERSION = 1


def export_to_json(store: LocalStore, include_content: bool = True) -> dict[str, Any]:
    """
    Export the local library to a JSON-compatible dictionary.

    Args:
        store: Local library
        include_content: Load chapter text into the exported novels

    Returns:
        Dictionary with exported data and statistics
    """
    data = store.snapshot()
    novels = data.novels
    if include_content:
        novels = [ensure_content_loaded(novel, store.load_chapter_content) for novel in novels]

    chapters = sum(
        len(volume.get("chapters") or [])
        for novel in novels
        for volume in novel.get("volumes") or []
    )

    return {
        "format_version": EXPORT_FORMAT_VERSION,
        "export_date": datetime.now(timezone.utc).isoformat(),
        "novels": novels,
        "aiModels": data.ai_models,
        "appSettings": data.app_settings,
        "coverHistory": data.cover_history or [],
        "stats": {
            "novels": len(novels),
            "chapters": chapters,
            "ai_models": len(data.ai_models),
            "covers": len(data.cover_history or []),
        },
    }


def export_to_file(store: LocalStore, path: Path, include_content: bool = True) -> dict[str, Any]:
    """
    Write an export to disk.

    Returns:
        The statistics block of the export
    """
    export = export_to_json(store, include_content=include_content)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(export, f, indent=2, ensure_ascii=False, default=json_default)
    return export["stats"]
