"""Tests for Gist file naming."""

from dataclasses import dataclass
from typing import Optional

from lunasync.sync import file_naming
from lunasync.sync.file_naming import (
    SETTINGS_FILE,
    candidate_chunk_names,
    collect_novel_ids,
    group_chunk_files,
    is_managed_file,
    name_for_chunk,
    name_for_entity,
    name_for_metadata,
    novel_id_for_file,
    parse_entity_id_from_chunk_name,
    parse_entity_id_from_entity_name,
    parse_entity_id_from_metadata_name,
)


UUID = "3f2b8c1e-9a4d-4e2b-8f1a-0c9d8e7f6a5b"


@dataclass
class Row:
    filename: str
    size: Optional[int] = None
    size_diff: Optional[int] = None


class TestNames:
    """Tests for name builders."""

    def test_entity_name(self):
        assert name_for_entity("abc") == "novel-abc.json"

    def test_chunk_name(self):
        assert name_for_chunk("abc", 3) == "novel-chunk-abc_3.json"

    def test_metadata_name(self):
        assert name_for_metadata("abc") == "novel-abc.meta.json"

    def test_candidates_put_current_separator_first(self):
        """Test legacy separators are tried after the current one."""
        assert candidate_chunk_names("abc", 0) == [
            "novel-chunk-abc_0.json",
            "novel-chunk-abc#0.json",
            "novel-chunk-abc-0.json",
        ]


class TestParseChunkName:
    """Tests for chunk name parsing across separator conventions."""

    def test_current_separator(self):
        assert parse_entity_id_from_chunk_name(f"novel-chunk-{UUID}_12.json") == (UUID, 12)

    def test_hash_separator(self):
        assert parse_entity_id_from_chunk_name(f"novel-chunk-{UUID}#2.json") == (UUID, 2)

    def test_dash_separator_with_uuid(self):
        """Test that a dashed id keeps all its dashes."""
        assert parse_entity_id_from_chunk_name(f"novel-chunk-{UUID}-0.json") == (UUID, 0)

    def test_id_containing_underscore(self):
        """Test that only the last separator splits the index."""
        assert parse_entity_id_from_chunk_name("novel-chunk-my_novel_4.json") == ("my_novel", 4)

    def test_non_numeric_index(self):
        assert parse_entity_id_from_chunk_name("novel-chunk-abc_x.json") is None

    def test_missing_index(self):
        assert parse_entity_id_from_chunk_name("novel-chunk-abc.json") is None

    def test_not_a_chunk(self):
        assert parse_entity_id_from_chunk_name("novel-abc.json") is None
        assert parse_entity_id_from_chunk_name(SETTINGS_FILE) is None

    def test_every_parser_agrees_with_builder(self):
        """Test that each separator convention round-trips through the parser list."""
        for separator in (file_naming.CHUNK_SEPARATOR, *file_naming.LEGACY_CHUNK_SEPARATORS):
            name = name_for_chunk(UUID, 7, separator)
            assert parse_entity_id_from_chunk_name(name) == (UUID, 7)


class TestParseOtherNames:
    """Tests for single-file and metadata names."""

    def test_entity_name(self):
        assert parse_entity_id_from_entity_name("novel-abc.json") == "abc"

    def test_entity_parser_ignores_metadata_and_chunks(self):
        assert parse_entity_id_from_entity_name("novel-abc.meta.json") is None
        assert parse_entity_id_from_entity_name("novel-chunk-abc_0.json") is None
        assert parse_entity_id_from_entity_name(SETTINGS_FILE) is None

    def test_metadata_name(self):
        assert parse_entity_id_from_metadata_name("novel-abc.meta.json") == "abc"
        assert parse_entity_id_from_metadata_name("novel-abc.json") is None

    def test_novel_id_for_any_role(self):
        assert novel_id_for_file("novel-abc.json") == "abc"
        assert novel_id_for_file("novel-abc.meta.json") == "abc"
        assert novel_id_for_file("novel-chunk-abc_1.json") == "abc"
        assert novel_id_for_file("notes.md") is None

    def test_collect_novel_ids(self):
        """Test ids are deduplicated in first-seen order."""
        names = [
            SETTINGS_FILE,
            "novel-b.json",
            "novel-chunk-a_0.json",
            "novel-a.meta.json",
            "novel-chunk-a_1.json",
            "readme.txt",
        ]

        assert collect_novel_ids(names) == ["b", "a"]

    def test_managed_files(self):
        assert is_managed_file(SETTINGS_FILE)
        assert is_managed_file("novel-a.json")
        assert is_managed_file("novel-chunk-a_0.json")
        assert not is_managed_file("readme.txt")


class TestGroupChunkFiles:
    """Tests for collapsing chunked novels for display."""

    def test_chunks_and_metadata_are_grouped(self):
        rows = [
            Row("novel-chunk-a_0.json", 100, 100),
            Row("novel-chunk-a_1.json", 50, 50),
            Row("novel-a.meta.json", 10, 10),
            Row(SETTINGS_FILE, 20, 5),
        ]

        grouped = group_chunk_files(rows)

        assert grouped == [Row("novel-a.json", 160, 160), Row(SETTINGS_FILE, 20, 5)]

    def test_single_file_merges_into_chunk_group(self):
        """Test a format switch shows as one row."""
        rows = [
            Row("novel-a.json", 0, -300),
            Row("novel-chunk-a_0.json", 200, 200),
            Row("novel-chunk-a_1.json", 150, 150),
        ]

        grouped = group_chunk_files(rows)

        assert grouped == [Row("novel-a.json", 350, 50)]

    def test_unchunked_novels_are_untouched(self):
        rows = [Row("novel-b.json", 10, None)]

        assert group_chunk_files(rows) == rows

    def test_zero_size_diff_becomes_none(self):
        rows = [Row("novel-chunk-a_0.json", 10, 5), Row("novel-chunk-a_1.json", 10, -5)]

        assert group_chunk_files(rows) == [Row("novel-a.json", 20, None)]
