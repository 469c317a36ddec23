"""
Naming of files stored in the sync Gist.

Layout:
    luna-ai-settings.json            AI models, app settings, cover history
    novel-<id>.json                  novel small enough for one file
    novel-chunk-<id>_<index>.json    one chunk of a large novel
    novel-<id>.meta.json             {"chunks": N, "totalSize": bytes}

Chunk files were once written as ``novel-chunk-<id>#<index>.json`` and,
before that, ``novel-chunk-<id>-<index>.json``. Both are still accepted
when reading; the dash form is tried last because novel ids are UUIDs.
"""

import dataclasses
import re
from typing import Callable, Iterable, Optional, TypeVar


SETTINGS_FILE = "luna-ai-settings.json"
NOVEL_PREFIX = "novel-"
NOVEL_CHUNK_PREFIX = "novel-chunk-"
METADATA_SUFFIX = ".meta.json"
JSON_SUFFIX = ".json"

CHUNK_SEPARATOR = "_"
LEGACY_CHUNK_SEPARATORS = ("#", "-")

_INDEX_PATTERN = re.compile(r"[0-9]+")

ChunkName = tuple[str, int]


def name_for_entity(entity_id: str) -> str:
    return f"{NOVEL_PREFIX}{entity_id}{JSON_SUFFIX}"


def name_for_chunk(entity_id: str, index: int, separator: str = CHUNK_SEPARATOR) -> str:
    return f"{NOVEL_CHUNK_PREFIX}{entity_id}{separator}{index}{JSON_SUFFIX}"


def name_for_metadata(entity_id: str) -> str:
    return f"{NOVEL_PREFIX}{entity_id}{METADATA_SUFFIX}"


def candidate_chunk_names(entity_id: str, index: int) -> list[str]:
    """Names a chunk may have on the remote, current convention first."""
    return [
        name_for_chunk(entity_id, index, separator)
        for separator in (CHUNK_SEPARATOR, *LEGACY_CHUNK_SEPARATORS)
    ]


def _chunk_stem(filename: str) -> Optional[str]:
    if not filename.startswith(NOVEL_CHUNK_PREFIX) or not filename.endswith(JSON_SUFFIX):
        return None
    return filename[len(NOVEL_CHUNK_PREFIX):-len(JSON_SUFFIX)]


def _separator_parser(separator: str, strict_id: bool) -> Callable[[str], Optional[ChunkName]]:
    """
    Build a parser for one separator convention.

    With ``strict_id`` the id may not contain ``#`` nor end with ``-``,
    which rejects names that only look valid because of a different
    separator.
    """

    def parse(stem: str) -> Optional[ChunkName]:
        position = stem.rfind(separator)
        if position <= 0 or position == len(stem) - 1:
            return None

        index_part = stem[position + 1:]
        if not _INDEX_PATTERN.fullmatch(index_part):
            return None

        entity_id = stem[:position]
        if strict_id and ("#" in entity_id or entity_id.endswith("-")):
            return None

        return entity_id, int(index_part)

    return parse


# Tried in order; the first match wins
CHUNK_NAME_PARSERS = (
    _separator_parser(CHUNK_SEPARATOR, strict_id=True),
    _separator_parser("#", strict_id=True),
    _separator_parser("-", strict_id=False),
)


def parse_entity_id_from_chunk_name(filename: str) -> Optional[ChunkName]:
    """
    Extract ``(entity_id, index)`` from a chunk file name.

    Returns:
        Tuple of id and chunk index, or None if the name is not a chunk file
    """
    stem = _chunk_stem(filename)
    if not stem:
        return None

    for parser in CHUNK_NAME_PARSERS:
        parsed = parser(stem)
        if parsed is not None:
            return parsed
    return None


def parse_entity_id_from_entity_name(filename: str) -> Optional[str]:
    """Extract the id from ``novel-<id>.json``."""
    if (
        not filename.startswith(NOVEL_PREFIX)
        or filename.startswith(NOVEL_CHUNK_PREFIX)
        or not filename.endswith(JSON_SUFFIX)
        or filename.endswith(METADATA_SUFFIX)
    ):
        return None
    entity_id = filename[len(NOVEL_PREFIX):-len(JSON_SUFFIX)]
    return entity_id or None


def parse_entity_id_from_metadata_name(filename: str) -> Optional[str]:
    """Extract the id from ``novel-<id>.meta.json``."""
    if (
        not filename.startswith(NOVEL_PREFIX)
        or filename.startswith(NOVEL_CHUNK_PREFIX)
        or not filename.endswith(METADATA_SUFFIX)
    ):
        return None
    entity_id = filename[len(NOVEL_PREFIX):-len(METADATA_SUFFIX)]
    return entity_id or None


def novel_id_for_file(filename: str) -> Optional[str]:
    """Id of the novel a file belongs to, whatever its role."""
    chunk = parse_entity_id_from_chunk_name(filename)
    if chunk is not None:
        return chunk[0]
    return (
        parse_entity_id_from_metadata_name(filename)
        or parse_entity_id_from_entity_name(filename)
    )


def collect_novel_ids(filenames: Iterable[str]) -> list[str]:
    """Distinct novel ids referenced by a Gist file listing, in first-seen order."""
    seen: dict[str, None] = {}
    for filename in filenames:
        novel_id = novel_id_for_file(filename)
        if novel_id:
            seen.setdefault(novel_id, None)
    return list(seen)


def is_managed_file(filename: str) -> bool:
    """Whether a file was written by this tool and may be cleaned up."""
    return filename == SETTINGS_FILE or filename.startswith(NOVEL_PREFIX)


F = TypeVar("F")


def group_chunk_files(files: list[F]) -> list[F]:
    """
    Collapse the chunk, metadata and single files of each chunked novel into
    one entry named ``novel-<id>.json`` for display.

    Items must be dataclasses with ``filename``, ``size`` and ``size_diff``
    fields. Sizes (and size differences) of grouped files are summed.
    """
    groups: dict[str, F] = {}
    companions: list[tuple[str, F]] = []
    others: list[F] = []

    for item in files:
        chunk = parse_entity_id_from_chunk_name(item.filename)
        if chunk is not None:
            novel_id = chunk[0]
            group = groups.get(novel_id)
            if group is None:
                groups[novel_id] = dataclasses.replace(
                    item, filename=name_for_entity(novel_id)
                )
            else:
                groups[novel_id] = _add_sizes(group, item)
            continue

        novel_id = (
            parse_entity_id_from_metadata_name(item.filename)
            or parse_entity_id_from_entity_name(item.filename)
        )
        if novel_id:
            companions.append((novel_id, item))
        else:
            others.append(item)

    for novel_id, item in companions:
        if novel_id in groups:
            groups[novel_id] = _add_sizes(groups[novel_id], item)
        else:
            others.append(item)

    return [*groups.values(), *others]


def _add_sizes(group: F, item: F) -> F:
    size_diff = (group.size_diff or 0) + (item.size_diff or 0)
    return dataclasses.replace(
        group,
        size=(group.size or 0) + (item.size or 0),
        size_diff=size_diff or None,
    )
