"""
Reconstruction of the local replica from a downloaded remote replica.

Rules per entity id:

* present on both sides: the user's Resolution decides; without any
  resolutions at all the remote copy wins; with resolutions for other
  entities only, the most recently edited copy wins (ties go to remote)
* remote only: added
* local only: kept when a Resolution says "local", when its remote copy
  could not be read, or when it was edited after the last sync; dropped
  otherwise (it was deleted on another device)

The result replaces the local store in a single transaction.

merge_for_upload() is the publishing counterpart used by a plain upload:
it folds the current remote copy into what gets published without touching
the local store.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Protocol

from lunasync.sync.entities import (
    TIMESTAMP_FIELDS,
    entity_timestamp,
    has_content,
    index_by_id,
    iter_chapters,
    parse_timestamp,
)
from lunasync.sync.models import (
    SETTINGS_ENTITY_ID,
    Choice,
    EntityType,
    Resolution,
    SyncData,
)


logger = logging.getLogger(__name__)

Paragraphs = list[dict[str, Any]]
ContentLoader = Callable[[str], Optional[Paragraphs]]


class LocalStore(Protocol):
    """What the sync engine needs from local persistence."""

    def snapshot(self) -> SyncData:
        """All entities; chapter content may be absent (not loaded)."""
        ...

    def load_chapter_content(self, chapter_id: str) -> Optional[Paragraphs]:
        ...

    def replace_all(self, data: SyncData) -> None:
        """Atomically replace every entity with ``data``."""
        ...


# ----------------------------------------------------------------------
# Chapter content
# ----------------------------------------------------------------------

def merge_paragraph_translations(
    local_paragraphs: Paragraphs,
    remote_paragraphs: Optional[Paragraphs],
) -> Paragraphs:
    """
    Add translations that only exist remotely to the matching local paragraphs.

    Paragraph text and order stay local. The selected translation is kept
    when it still exists, otherwise the remote selection (or the first
    translation) is used.
    """
    if not remote_paragraphs:
        return local_paragraphs

    remote_by_id = {p.get("id"): p for p in remote_paragraphs if isinstance(p, dict)}
    merged: Paragraphs = []

    for paragraph in local_paragraphs:
        remote = remote_by_id.get(paragraph.get("id"))
        if not remote or not remote.get("translations"):
            merged.append(paragraph)
            continue

        translations = list(paragraph.get("translations") or [])
        known = {t.get("id") for t in translations}
        translations.extend(t for t in remote["translations"] if t.get("id") not in known)
        translation_ids = {t.get("id") for t in translations}

        selected = paragraph.get("selectedTranslationId")
        if not selected or selected not in translation_ids:
            remote_selected = remote.get("selectedTranslationId")
            if remote_selected and remote_selected in translation_ids:
                selected = remote_selected
            elif translations:
                selected = translations[0].get("id")

        merged.append({**paragraph, "translations": translations, "selectedTranslationId": selected})

    return merged


def _merge_chapter(
    remote_chapter: dict[str, Any],
    local_chapter: Optional[dict[str, Any]],
    loader: ContentLoader,
) -> dict[str, Any]:
    content: Optional[Paragraphs] = None

    if local_chapter is not None:
        if has_content(local_chapter):
            content = local_chapter["content"]
        else:
            content = loader(local_chapter["id"])

    remote_id = remote_chapter.get("id")
    local_id = local_chapter.get("id") if local_chapter else None
    if content is None and remote_id and remote_id != local_id:
        content = loader(remote_id)

    if content is None:
        return dict(remote_chapter)

    return {
        **remote_chapter,
        "content": merge_paragraph_translations(content, remote_chapter.get("content")),
    }


def merge_novel_with_local_content(
    remote_novel: dict[str, Any],
    local_novel: dict[str, Any],
    loader: ContentLoader,
) -> dict[str, Any]:
    """
    Take the remote novel's metadata and structure, keeping local chapter text.

    For every remote chapter the content comes from, in order: the local
    chapter in memory, the content loader by local chapter id, the loader
    by remote chapter id, and finally the remote snapshot itself.
    """
    local_chapters = {
        chapter["id"]: chapter
        for chapter in iter_chapters(local_novel)
        if chapter.get("id")
    }

    merged = dict(remote_novel)
    merged["createdAt"] = remote_novel.get("createdAt") or local_novel.get("createdAt")
    merged["volumes"] = [
        {
            **volume,
            "chapters": [
                _merge_chapter(chapter, local_chapters.get(chapter.get("id")), loader)
                for chapter in volume.get("chapters") or []
            ],
        }
        for volume in remote_novel.get("volumes") or []
    ]
    return merged


def merge_remote_translations_into_local(
    local_novel: dict[str, Any],
    remote_novel: dict[str, Any],
    loader: ContentLoader,
) -> dict[str, Any]:
    """Keep the local novel but pick up translations added remotely."""
    remote_chapters = {
        chapter["id"]: chapter
        for chapter in iter_chapters(remote_novel)
        if chapter.get("id")
    }
    if not remote_chapters:
        return local_novel

    volumes = []
    for volume in local_novel.get("volumes") or []:
        chapters = []
        for chapter in volume.get("chapters") or []:
            remote_chapter = remote_chapters.get(chapter.get("id"))
            if not remote_chapter or not remote_chapter.get("content"):
                chapters.append(chapter)
                continue

            content = chapter["content"] if has_content(chapter) else loader(chapter["id"])
            if not content:
                chapters.append(chapter)
                continue

            chapters.append({
                **chapter,
                "content": merge_paragraph_translations(content, remote_chapter["content"]),
            })
        volumes.append({**volume, "chapters": chapters})

    return {**local_novel, "volumes": volumes}


def ensure_content_loaded(novel: dict[str, Any], loader: ContentLoader) -> dict[str, Any]:
    """Return a copy of the novel with every loadable chapter content filled in."""
    if all(has_content(chapter) for chapter in iter_chapters(novel)):
        return novel

    volumes = []
    for volume in novel.get("volumes") or []:
        chapters = []
        for chapter in volume.get("chapters") or []:
            if not has_content(chapter) and chapter.get("id"):
                content = loader(chapter["id"])
                if content is not None:
                    chapter = {**chapter, "content": content, "contentLoaded": True}
            chapters.append(chapter)
        volumes.append({**volume, "chapters": chapters})

    return {**novel, "volumes": volumes}


# ----------------------------------------------------------------------
# Cover history
# ----------------------------------------------------------------------

def dedupe_cover_history(covers: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep one entry per cover URL, the most recently added."""
    by_url: dict[str, dict[str, Any]] = {}
    without_url = []

    for cover in covers:
        url = cover.get("url")
        url = url.strip() if isinstance(url, str) else ""
        if not url:
            without_url.append(cover)
            continue
        existing = by_url.get(url)
        if existing is None or (
            entity_timestamp(cover, EntityType.COVER_HISTORY)
            >= entity_timestamp(existing, EntityType.COVER_HISTORY)
        ):
            by_url[url] = cover

    return [*by_url.values(), *without_url]


# ----------------------------------------------------------------------
# Entity selection
# ----------------------------------------------------------------------

def find_resolution(
    resolutions: list[Resolution],
    entity_id: str,
    entity_type: EntityType,
) -> Optional[Resolution]:
    for resolution in resolutions:
        if resolution.applies_to(entity_id, entity_type):
            return resolution
    return None


def choose_side(
    entity_id: str,
    entity_type: EntityType,
    local: dict[str, Any],
    remote: dict[str, Any],
    resolutions: list[Resolution],
) -> Choice:
    """Pick the winning copy of an entity present on both sides."""
    resolution = find_resolution(resolutions, entity_id, entity_type)
    if resolution is not None:
        return resolution.choice
    if not resolutions:
        return Choice.REMOTE
    if entity_timestamp(local, entity_type) > entity_timestamp(remote, entity_type):
        return Choice.LOCAL
    return Choice.REMOTE


def keep_local_only(
    entity_id: str,
    entity_type: EntityType,
    local: dict[str, Any],
    resolutions: list[Resolution],
    last_sync_time: Optional[datetime],
    protected_ids: set[str],
) -> bool:
    """Whether an entity missing remotely survives the apply."""
    if entity_id in protected_ids:
        return True

    resolution = find_resolution(resolutions, entity_id, entity_type)
    if resolution is not None:
        return resolution.choice == Choice.LOCAL

    if last_sync_time is None:
        # Never synced: nothing can have been deleted remotely
        return True
    return entity_timestamp(local, entity_type) > parse_timestamp(last_sync_time)


def _merge_collection(
    local_items: Optional[list[dict[str, Any]]],
    remote_items: list[dict[str, Any]],
    entity_type: EntityType,
    resolutions: list[Resolution],
    last_sync_time: Optional[datetime],
    protected_ids: set[str],
    merge_remote: Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]],
    merge_local: Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]],
) -> list[dict[str, Any]]:
    local_by_id = index_by_id(local_items)
    remote_ids = set()
    final = []

    for remote in remote_items:
        entity_id = remote.get("id")
        if not entity_id:
            continue
        remote_ids.add(entity_id)
        local = local_by_id.get(entity_id)

        if local is None:
            final.append(remote)
        elif choose_side(entity_id, entity_type, local, remote, resolutions) == Choice.REMOTE:
            final.append(merge_remote(remote, local))
        else:
            final.append(merge_local(local, remote))

    for entity_id, local in local_by_id.items():
        if entity_id in remote_ids:
            continue
        if keep_local_only(entity_id, entity_type, local, resolutions, last_sync_time, protected_ids):
            final.append(local)
        else:
            logger.info("Removing %s %s (deleted remotely)", entity_type.value, entity_id)

    return final


def _take_first(chosen: dict[str, Any], _other: dict[str, Any]) -> dict[str, Any]:
    return chosen


def _identity(item: dict[str, Any]) -> dict[str, Any]:
    return item


def build_final_state(
    local: SyncData,
    remote: SyncData,
    resolutions: list[Resolution],
    last_sync_time: Optional[datetime],
    loader: ContentLoader,
    protected_ids: Iterable[str] = (),
) -> SyncData:
    """
    Compute the local replica after applying a download.

    Args:
        local: Current local replica
        remote: Downloaded remote replica
        resolutions: User decisions (possibly empty)
        last_sync_time: Time of the last successful sync (None if never)
        loader: Chapter content lookup of the local store
        protected_ids: Entities whose remote copy could not be read

    Returns:
        Final replica to store
    """
    protected = set(protected_ids)

    novels = _merge_collection(
        local.novels, remote.novels, EntityType.NOVEL,
        resolutions, last_sync_time, protected,
        merge_remote=lambda r, l: merge_novel_with_local_content(r, l, loader),
        merge_local=lambda l, r: merge_remote_translations_into_local(l, r, loader),
    )

    ai_models = _merge_collection(
        local.ai_models, remote.ai_models, EntityType.AI_MODEL,
        resolutions, last_sync_time, protected,
        merge_remote=_take_first, merge_local=_take_first,
    )

    if remote.app_settings is None or local.app_settings is None:
        app_settings = local.app_settings if remote.app_settings is None else remote.app_settings
    else:
        choice = choose_side(
            SETTINGS_ENTITY_ID, EntityType.SETTINGS,
            local.app_settings, remote.app_settings, resolutions,
        )
        app_settings = remote.app_settings if choice == Choice.REMOTE else local.app_settings

    if remote.cover_history is None:
        cover_history = local.cover_history
    else:
        cover_history = dedupe_cover_history(_merge_collection(
            local.cover_history, remote.cover_history, EntityType.COVER_HISTORY,
            resolutions, last_sync_time, protected,
            merge_remote=_take_first, merge_local=_take_first,
        ))

    return SyncData(
        novels=novels,
        ai_models=ai_models,
        app_settings=app_settings,
        cover_history=cover_history,
    )


def apply_downloaded_data(
    store: LocalStore,
    remote: SyncData,
    resolutions: list[Resolution],
    last_sync_time: Optional[datetime],
    protected_ids: Iterable[str] = (),
) -> SyncData:
    """
    Merge the remote replica into the local store.

    The store is replaced atomically; on error it is left unchanged.

    Returns:
        The replica now held by the store
    """
    local = store.snapshot()
    final = build_final_state(
        local, remote, resolutions, last_sync_time,
        store.load_chapter_content, protected_ids,
    )
    store.replace_all(final)
    logger.info(
        "Applied remote data: %d novels, %d AI models, %d covers",
        len(final.novels), len(final.ai_models), len(final.cover_history or []),
    )
    return final


# ----------------------------------------------------------------------
# Upload merge
# ----------------------------------------------------------------------

def _is_new_since(
    entity: dict[str, Any],
    entity_type: EntityType,
    last_sync_time: Optional[datetime],
    known_ids: set[str],
) -> bool:
    if last_sync_time is None:
        return True
    if known_ids and entity.get("id") not in known_ids:
        # Never part of a sync seen by this device
        return True
    return entity_timestamp(entity, entity_type) > parse_timestamp(last_sync_time)


def _remote_is_newer(
    local: dict[str, Any],
    remote: dict[str, Any],
    entity_type: EntityType,
) -> bool:
    # Without both timestamps the local copy is the one being published
    field_name = TIMESTAMP_FIELDS[entity_type]
    if not local.get(field_name) or not remote.get(field_name):
        return False
    return entity_timestamp(remote, entity_type) > entity_timestamp(local, entity_type)


def _merge_for_upload(
    local_items: Optional[list[dict[str, Any]]],
    remote_items: Optional[list[dict[str, Any]]],
    entity_type: EntityType,
    last_sync_time: Optional[datetime],
    known_ids: set[str],
    merge_remote: Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]],
    merge_local: Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]],
    prepare_local: Callable[[dict[str, Any]], dict[str, Any]],
) -> list[dict[str, Any]]:
    local_items = local_items or []
    remote_by_id = index_by_id(remote_items)
    final = []

    for local in local_items:
        entity_id = local.get("id")
        remote = remote_by_id.pop(entity_id, None) if entity_id else None
        if remote is None:
            if _is_new_since(local, entity_type, last_sync_time, known_ids):
                final.append(prepare_local(local))
            else:
                logger.info("Not publishing %s %s (deleted remotely)", entity_type.value, entity_id)
        elif _remote_is_newer(local, remote, entity_type):
            final.append(merge_remote(remote, local))
        else:
            final.append(merge_local(prepare_local(local), remote))

    for entity_id, remote in remote_by_id.items():
        if _is_new_since(remote, entity_type, last_sync_time, known_ids):
            final.append(remote)
        else:
            logger.info("Dropping %s %s (deleted locally)", entity_type.value, entity_id)

    return final


def merge_for_upload(
    local: SyncData,
    remote: SyncData,
    last_sync_time: Optional[datetime],
    loader: ContentLoader,
    known_ids: Iterable[str] = (),
) -> SyncData:
    """
    Combine the local library with the current remote copy before publishing.

    Entities on both sides keep the most recently edited copy (local on
    ties or missing timestamps). One-sided entities are published when this
    device has never synced them or when they were edited after the last
    sync; the rest were deleted on the other side.
    An empty remote model list or cover history is refilled from local.
    The local store is not modified.

    Args:
        local: Current local replica
        remote: Downloaded remote replica
        last_sync_time: Time of the last successful sync (None if never)
        loader: Chapter content lookup of the local store
        known_ids: Entity ids recorded by the last sync (empty if unknown)

    Returns:
        Replica to upload
    """
    known = set(known_ids)
    novels = _merge_for_upload(
        local.novels, remote.novels, EntityType.NOVEL, last_sync_time, known,
        merge_remote=lambda r, l: merge_novel_with_local_content(r, l, loader),
        merge_local=lambda l, r: merge_remote_translations_into_local(l, r, loader),
        prepare_local=lambda n: ensure_content_loaded(n, loader),
    )

    if not remote.ai_models:
        ai_models = list(local.ai_models)
    else:
        ai_models = _merge_for_upload(
            local.ai_models, remote.ai_models, EntityType.AI_MODEL, last_sync_time, known,
            merge_remote=_take_first, merge_local=_take_first, prepare_local=_identity,
        )

    if remote.cover_history is None:
        cover_history = local.cover_history
    elif not remote.cover_history:
        cover_history = list(local.cover_history or [])
    else:
        cover_history = dedupe_cover_history(_merge_for_upload(
            local.cover_history, remote.cover_history, EntityType.COVER_HISTORY,
            last_sync_time, known,
            merge_remote=_take_first, merge_local=_take_first, prepare_local=_identity,
        ))

    app_settings = local.app_settings
    if remote.app_settings is not None and (
        local.app_settings is None
        or _remote_is_newer(local.app_settings, remote.app_settings, EntityType.SETTINGS)
    ):
        app_settings = remote.app_settings

    return SyncData(
        novels=novels,
        ai_models=ai_models,
        app_settings=app_settings,
        cover_history=cover_history,
    )
