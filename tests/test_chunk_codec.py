"""Tests for chunking and gzip envelopes."""

import json

import pytest

from lunasync.sync import chunk_codec
from lunasync.sync.chunk_codec import ChunkSizeError


class TestEncode:
    """Tests for size-bounded chunking."""

    def test_small_payload_is_one_chunk(self):
        """Test that a payload under the limit is not split."""
        chunk_set = chunk_codec.encode("hello", max_chunk_bytes=100)

        assert chunk_set.chunks == ["hello"]
        assert chunk_set.total_size == 5
        assert chunk_set.metadata.chunks == 1

    def test_chunks_respect_byte_limit(self):
        """Test every chunk fits and the chunks reassemble the payload."""
        payload = "abcdefghij" * 25

        chunk_set = chunk_codec.encode(payload, max_chunk_bytes=64)

        assert all(chunk_codec.utf8_size(chunk) <= 64 for chunk in chunk_set.chunks)
        assert chunk_codec.decode(chunk_set.chunks) == payload
        assert len(chunk_set.chunks) == 4

    def test_multibyte_characters_are_never_split(self):
        """Test that chunk boundaries fall between code points."""
        payload = "한국어" * 10 + "😀" * 5

        chunk_set = chunk_codec.encode(payload, max_chunk_bytes=7)

        assert chunk_codec.decode(chunk_set.chunks) == payload
        for chunk in chunk_set.chunks:
            assert chunk_codec.utf8_size(chunk) <= 7
            chunk.encode("utf-8")  # would fail on a lone surrogate
        assert chunk_set.total_size == chunk_codec.utf8_size(payload)

    def test_chunks_are_filled_greedily(self):
        """Test that each chunk but the last uses as much space as possible."""
        payload = "é" * 10  # 2 bytes each

        chunk_set = chunk_codec.encode(payload, max_chunk_bytes=5)

        assert [len(chunk) for chunk in chunk_set.chunks] == [2, 2, 2, 2, 2]

    def test_empty_payload(self):
        """Test that an empty payload yields no chunks."""
        chunk_set = chunk_codec.encode("", max_chunk_bytes=10)

        assert chunk_set.chunks == []
        assert chunk_set.total_size == 0

    def test_character_larger_than_limit(self):
        """Test that a character wider than the limit is an error."""
        with pytest.raises(ChunkSizeError):
            chunk_codec.encode("a😀", max_chunk_bytes=3)

    def test_non_positive_limit(self):
        """Test that a zero limit is rejected."""
        with pytest.raises(ChunkSizeError):
            chunk_codec.encode("abc", max_chunk_bytes=0)


class TestEnvelope:
    """Tests for gzip envelopes."""

    def test_compress_produces_tagged_envelope(self):
        """Test the envelope shape."""
        envelope = json.loads(chunk_codec.compress('{"a": 1}'))

        assert envelope["format"] == "gzip"
        assert isinstance(envelope["data"], str)

    def test_decompress_restores_payload(self):
        """Test unwrapping an envelope."""
        payload = json.dumps({"title": "소설", "n": [1, 2, 3]}, ensure_ascii=False)

        assert chunk_codec.decompress(chunk_codec.compress(payload)) == payload

    def test_decompress_rejects_plain_json(self):
        """Test that non-envelope content is refused."""
        with pytest.raises(ValueError):
            chunk_codec.decompress('{"id": "x"}')

    def test_corrupt_data(self):
        """Test that corrupt base64/gzip data raises ValueError."""
        corrupt = json.dumps({"format": "gzip", "data": "bm90IGd6aXA="})

        with pytest.raises(ValueError, match="Corrupt"):
            chunk_codec.parse_content(corrupt)

    def test_parse_content_accepts_plain_json(self):
        """Test that legacy uncompressed files still parse."""
        assert chunk_codec.parse_content('{"id": "n1"}') == {"id": "n1"}

    def test_parse_content_unwraps_envelope(self):
        """Test that envelopes are unwrapped transparently."""
        text = chunk_codec.compress('{"id": "n1"}')

        assert chunk_codec.parse_content(text) == {"id": "n1"}

    def test_envelope_with_other_format_is_plain_json(self):
        """Test that only the gzip tag triggers decompression."""
        text = '{"format": "zip", "data": "abc"}'

        assert chunk_codec.parse_content(text) == {"format": "zip", "data": "abc"}

    def test_envelope_survives_chunking(self):
        """Test that a chunked envelope reassembles and parses."""
        novel = {"id": "n1", "text": "x" * 5000}
        content = chunk_codec.compress(json.dumps(novel))

        chunk_set = chunk_codec.encode(content, max_chunk_bytes=50)

        assert len(chunk_set.chunks) > 1
        assert chunk_codec.parse_content(chunk_codec.decode(chunk_set.chunks)) == novel


class TestChunkScenarios:
    """Tests for sizes at the production limit."""

    def test_two_and_a_half_megabytes_of_ascii(self):
        """Test that 2.5 MB splits into exactly three full-size-bounded chunks."""
        payload = "a" * 2_500_000

        chunk_set = chunk_codec.encode(payload, chunk_codec.MAX_FILE_SIZE)

        assert len(chunk_set.chunks) == 3
        assert chunk_set.metadata.chunks == 3
        assert all(chunk_codec.utf8_size(c) <= chunk_codec.MAX_FILE_SIZE for c in chunk_set.chunks)
        assert chunk_codec.decode(chunk_set.chunks) == payload

    def test_length_multiple_of_chunk_size(self):
        """Test that an exact multiple leaves no empty trailing chunk."""
        chunk_set = chunk_codec.encode("ab" * 10, max_chunk_bytes=10)

        assert chunk_set.chunks == ["ababababab", "ababababab"]
