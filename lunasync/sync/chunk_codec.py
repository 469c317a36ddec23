"""
Size-bounded chunking and gzip envelopes for Gist file payloads.

Gist rejects oversized files, so large documents are split into chunks
whose UTF-8 size never exceeds a limit. Chunk boundaries always fall
between code points: chunks are cut on the Python string, never on bytes.
"""

import base64
import gzip
import json
from typing import Any

from lunasync.sync.models import ChunkSet


# Safety margin below GitHub's per-file limit, used both as chunk size and
# as the single-file / chunked threshold
MAX_FILE_SIZE = 900 * 1024

ENVELOPE_FORMAT = "gzip"


class ChunkSizeError(ValueError):
    """Raised when a single character does not fit into one chunk."""
    pass


def utf8_size(text: str) -> int:
    return len(text.encode("utf-8"))


def encode(payload: str, max_chunk_bytes: int = MAX_FILE_SIZE) -> ChunkSet:
    """
    Split a payload into chunks of at most ``max_chunk_bytes`` UTF-8 bytes.

    For every chunk a binary search finds the longest prefix of the
    remaining text that still fits.

    Args:
        payload: Serialized document
        max_chunk_bytes: Upper bound for each chunk's encoded size

    Returns:
        ChunkSet whose concatenation equals ``payload``

    Raises:
        ChunkSizeError: If one character alone exceeds the limit
    """
    if max_chunk_bytes <= 0:
        raise ChunkSizeError(f"Chunk size must be positive, got {max_chunk_bytes}")

    chunks: list[str] = []
    position = 0
    total = len(payload)

    while position < total:
        remaining = total - position
        # A character takes at least one byte
        low, high = 1, min(remaining, max_chunk_bytes)
        best = 0

        while low <= high:
            middle = (low + high) // 2
            candidate = payload[position:position + middle]
            if utf8_size(candidate) <= max_chunk_bytes:
                best = middle
                low = middle + 1
            else:
                high = middle - 1

        if best == 0:
            raise ChunkSizeError(
                f"Character at offset {position} needs "
                f"{utf8_size(payload[position])} bytes, "
                f"more than the chunk limit of {max_chunk_bytes}"
            )

        chunks.append(payload[position:position + best])
        position += best

    return ChunkSet(chunks=chunks, total_size=utf8_size(payload))


def decode(chunks: list[str]) -> str:
    """Reassemble chunks that are already ordered by index."""
    return "".join(chunks)


def compress(payload: str) -> str:
    """
    Wrap a payload in a gzip envelope.

    Returns:
        JSON text ``{"format": "gzip", "data": "<base64>"}``
    """
    # Fixed mtime so identical payloads compress to identical files
    data = base64.b64encode(gzip.compress(payload.encode("utf-8"), mtime=0)).decode("ascii")
    return json.dumps({"format": ENVELOPE_FORMAT, "data": data}, separators=(",", ":"))


def is_envelope(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get("format") == ENVELOPE_FORMAT
        and isinstance(value.get("data"), str)
    )


def decompress(envelope: str) -> str:
    """
    Unwrap a gzip envelope produced by compress().

    Raises:
        ValueError: If the text is not an envelope or the data is corrupt
    """
    parsed = json.loads(envelope)
    if not is_envelope(parsed):
        raise ValueError("Content is not a gzip envelope")
    return _inflate(parsed["data"])


def _inflate(data: str) -> str:
    try:
        return gzip.decompress(base64.b64decode(data)).decode("utf-8")
    except (OSError, EOFError, ValueError) as e:
        raise ValueError(f"Corrupt gzip envelope: {e}") from e


def parse_content(text: str) -> Any:
    """
    Parse a stored file body, transparently unwrapping a gzip envelope.

    Content without the envelope tag is treated as plain JSON.

    Raises:
        ValueError: If the text (or the inflated payload) is not valid JSON
    """
    parsed = json.loads(text)
    if is_envelope(parsed):
        return json.loads(_inflate(parsed["data"]))
    return parsed
