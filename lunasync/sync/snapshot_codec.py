"""
Mapping between a SyncData replica and the files of the sync Gist.

Upload side: every payload is compressed, then stored either as one file
or, above MAX_FILE_SIZE, as chunk files plus a metadata file.

Download side: files are decoded per entity. A novel that cannot be read
is reported as an ItemFailure and skipped; it never aborts the download.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from lunasync.sync import chunk_codec
from lunasync.sync.entities import json_default
from lunasync.sync.exceptions import EntityParseError, TruncatedContentError
from lunasync.sync.file_naming import (
    SETTINGS_FILE,
    candidate_chunk_names,
    collect_novel_ids,
    is_managed_file,
    name_for_chunk,
    name_for_entity,
    name_for_metadata,
    novel_id_for_file,
)
from lunasync.sync.gist_client import DELETE, FileChange, Upsert
from lunasync.sync.models import (
    SETTINGS_ENTITY_ID,
    ChunkMetadata,
    DownloadResult,
    ItemFailure,
    RemoteFile,
    SyncData,
)


logger = logging.getLogger(__name__)

ContentReader = Callable[[RemoteFile], str]
MetadataReader = Callable[[RemoteFile], ChunkMetadata]


@dataclass
class UploadPlan:
    """
    Files that represent one replica on the remote.

    Attributes:
        files: {filename: content} to write
        chunk_counts: {novel_id: chunk count} for chunked novels
        skipped_ids: Entities whose remote files must be left untouched
    """

    files: dict[str, str] = field(default_factory=dict)
    chunk_counts: dict[str, int] = field(default_factory=dict)
    skipped_ids: set[str] = field(default_factory=set)

    def orphans(self, remote_filenames: Iterable[str]) -> list[str]:
        """
        Managed files on the remote that this plan no longer produces.

        Covers deleted novels, single-file/chunked format switches, chunk
        counts that shrank, and chunks named with a retired separator.
        """
        orphaned = []
        for filename in remote_filenames:
            if filename in self.files or not is_managed_file(filename):
                continue
            if self._is_skipped(filename):
                continue
            orphaned.append(filename)
        return sorted(orphaned)

    def changes(self, remote_filenames: Iterable[str]) -> tuple[dict[str, FileChange], list[str]]:
        """
        Build the update payload against the current remote listing.

        Returns:
            Tuple of ({filename: Upsert | DELETE}, deleted filenames)
        """
        removed = self.orphans(remote_filenames)
        changes: dict[str, FileChange] = {
            filename: Upsert(content) for filename, content in self.files.items()
        }
        for filename in removed:
            changes[filename] = DELETE
        return changes, removed

    def _is_skipped(self, filename: str) -> bool:
        if filename == SETTINGS_FILE:
            return SETTINGS_ENTITY_ID in self.skipped_ids
        return novel_id_for_file(filename) in self.skipped_ids


def serialize(payload: Any) -> str:
    """Compact JSON wrapped in a gzip envelope."""
    text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=json_default)
    return chunk_codec.compress(text)


def settings_payload(data: SyncData) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "aiModels": data.ai_models,
        "appSettings": data.app_settings or {},
    }
    if data.cover_history is not None:
        payload["coverHistory"] = data.cover_history
    return payload


def build_upload_plan(
    data: SyncData,
    max_file_size: int = chunk_codec.MAX_FILE_SIZE,
    skip_ids: Iterable[str] = (),
) -> UploadPlan:
    """
    Encode a replica into Gist files.

    Args:
        data: Replica to upload; novels must have their chapter content loaded
        max_file_size: Largest file written as-is, also the chunk size
        skip_ids: Entities to leave out (their remote files are kept as they are)

    Returns:
        UploadPlan with every file to write
    """
    plan = UploadPlan(skipped_ids=set(skip_ids))

    if SETTINGS_ENTITY_ID not in plan.skipped_ids:
        plan.files[SETTINGS_FILE] = serialize(settings_payload(data))

    for novel in data.novels:
        novel_id = novel.get("id")
        if not novel_id or novel_id in plan.skipped_ids:
            continue

        content = serialize(novel)
        size = chunk_codec.utf8_size(content)

        if size <= max_file_size:
            plan.files[name_for_entity(novel_id)] = content
            continue

        chunk_set = chunk_codec.encode(content, max_file_size)
        for index, chunk in enumerate(chunk_set.chunks):
            plan.files[name_for_chunk(novel_id, index)] = chunk
        plan.files[name_for_metadata(novel_id)] = json.dumps(chunk_set.metadata.to_dict())
        plan.chunk_counts[novel_id] = len(chunk_set.chunks)
        logger.debug("Novel %s split into %d chunks (%d bytes)",
                     novel_id, len(chunk_set.chunks), size)

    return plan


def decode_remote_files(
    files: dict[str, RemoteFile],
    read_content: ContentReader,
    read_metadata: MetadataReader,
) -> DownloadResult:
    """
    Decode the files of a Gist into a replica.

    Args:
        files: Gist files by name
        read_content: Returns the full content of a file (raw fallback included)
        read_metadata: Parses a chunk metadata file

    Returns:
        DownloadResult with per-entity failures collected
    """
    result = DownloadResult(data=SyncData())
    _decode_settings(files, read_content, result)

    for novel_id in collect_novel_ids(files):
        try:
            result.data.novels.append(_decode_novel(novel_id, files, read_content, read_metadata))
        except (EntityParseError, TruncatedContentError) as e:
            logger.warning("Skipping novel %s: %s", novel_id, e)
            result.failures.append(
                ItemFailure(name=name_for_entity(novel_id), reason=str(e), entity_id=novel_id)
            )
            result.failed_ids.add(novel_id)

    return result


def _decode_settings(
    files: dict[str, RemoteFile],
    read_content: ContentReader,
    result: DownloadResult,
) -> None:
    settings_file = files.get(SETTINGS_FILE)
    if settings_file is None:
        return

    try:
        payload = chunk_codec.parse_content(read_content(settings_file))
        if not isinstance(payload, dict):
            raise EntityParseError("settings file is not a JSON object")
        result.data.ai_models = _entity_list(payload.get("aiModels"), "aiModels")
        app_settings = payload.get("appSettings")
        result.data.app_settings = app_settings if isinstance(app_settings, dict) else None
        if payload.get("coverHistory") is not None:
            result.data.cover_history = _entity_list(payload["coverHistory"], "coverHistory")
    except (ValueError, EntityParseError, TruncatedContentError) as e:
        logger.warning("Could not read %s: %s", SETTINGS_FILE, e)
        result.data.ai_models = []
        result.data.app_settings = None
        result.data.cover_history = None
        result.failures.append(
            ItemFailure(name=SETTINGS_FILE, reason=str(e), entity_id=SETTINGS_ENTITY_ID)
        )
        result.failed_ids.add(SETTINGS_ENTITY_ID)


def _entity_list(value: Any, label: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise EntityParseError(f"{label} must be a list")
    for item in value:
        if not isinstance(item, dict) or not isinstance(item.get("id"), str) or not item["id"]:
            raise EntityParseError(f"{label} contains an entry without a valid id")
    return value


def _decode_novel(
    novel_id: str,
    files: dict[str, RemoteFile],
    read_content: ContentReader,
    read_metadata: MetadataReader,
) -> dict[str, Any]:
    chunk_files = _find_chunks(novel_id, files)
    metadata_file = files.get(name_for_metadata(novel_id))
    single_file = files.get(name_for_entity(novel_id))

    if chunk_files or metadata_file is not None:
        try:
            return _decode_chunked(novel_id, chunk_files, metadata_file, read_content, read_metadata)
        except TruncatedContentError:
            # Content exists but cannot be fetched; an older single file
            # would silently roll the novel back
            raise
        except (ValueError, EntityParseError) as e:
            if single_file is None:
                raise EntityParseError(f"chunked data is unreadable: {e}") from e
            logger.warning("Chunked data for novel %s is unreadable (%s), using %s",
                           novel_id, e, single_file.name)

    if single_file is None:
        raise EntityParseError("no data file found")

    try:
        return _validate_novel(chunk_codec.parse_content(read_content(single_file)))
    except ValueError as e:
        raise EntityParseError(f"{single_file.name} is not valid JSON: {e}") from e


def _find_chunks(novel_id: str, files: dict[str, RemoteFile]) -> list[RemoteFile]:
    """Chunks from index 0 upward until the first missing index."""
    chunks = []
    index = 0
    while True:
        chunk = next(
            (files[name] for name in candidate_chunk_names(novel_id, index) if name in files),
            None,
        )
        if chunk is None:
            return chunks
        chunks.append(chunk)
        index += 1


def _decode_chunked(
    novel_id: str,
    chunk_files: list[RemoteFile],
    metadata_file: Optional[RemoteFile],
    read_content: ContentReader,
    read_metadata: MetadataReader,
) -> dict[str, Any]:
    if metadata_file is None:
        raise EntityParseError(f"metadata file {name_for_metadata(novel_id)} is missing")

    metadata = read_metadata(metadata_file)
    if metadata.chunks != len(chunk_files):
        raise EntityParseError(
            f"metadata declares {metadata.chunks} chunks but {len(chunk_files)} were found"
        )

    payload = chunk_codec.decode([read_content(chunk) for chunk in chunk_files])
    return _validate_novel(chunk_codec.parse_content(payload))


def _validate_novel(novel: Any) -> dict[str, Any]:
    if not isinstance(novel, dict) or not isinstance(novel.get("id"), str) or not novel["id"]:
        raise EntityParseError("novel data has no valid id")
    return novel
