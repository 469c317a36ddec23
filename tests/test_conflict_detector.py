"""Tests for conflict detection."""

from lunasync.sync.conflict_detector import detect_conflicts, has_changes_to_upload
from lunasync.sync.entities import parse_timestamp, strip_volatile
from lunasync.sync.models import SETTINGS_ENTITY_ID, EntityType, SyncData

from conftest import make_model, make_novel


class TestStripVolatile:
    """Tests for ignoring fields that do not count as edits."""

    def test_novel_timestamps_and_content_removed(self):
        novel = make_novel("n1")
        novel["volumes"][0]["chapters"][0]["contentLoaded"] = True

        stripped = strip_volatile(novel, EntityType.NOVEL)

        assert "lastEdited" not in stripped
        assert "createdAt" not in stripped
        chapter = stripped["volumes"][0]["chapters"][0]
        assert "content" not in chapter
        assert "contentLoaded" not in chapter
        # Original untouched
        assert "content" in novel["volumes"][0]["chapters"][0]

    def test_model_api_key_ignored(self):
        stripped = strip_volatile(make_model("m1", apiKey="secret"), EntityType.AI_MODEL)

        assert "apiKey" not in stripped


class TestDetectConflicts:
    """Tests for detect_conflicts()."""

    def test_identical_replicas(self):
        data = SyncData(novels=[make_novel("n1")], ai_models=[make_model("m1")])

        assert detect_conflicts(data, data) == []

    def test_only_timestamps_differ(self):
        local = SyncData(novels=[make_novel("n1", edited="2024-05-01T00:00:00Z")])
        remote = SyncData(novels=[make_novel("n1", edited="2024-01-01T00:00:00Z")])

        assert detect_conflicts(local, remote) == []

    def test_loaded_content_does_not_conflict(self):
        local_novel = make_novel("n1")
        for chapter in local_novel["volumes"][0]["chapters"]:
            del chapter["content"]

        conflicts = detect_conflicts(
            SyncData(novels=[local_novel]),
            SyncData(novels=[make_novel("n1")]),
        )

        assert conflicts == []

    def test_novel_conflict_details(self):
        local = SyncData(novels=[make_novel("n1", title="Mine", edited="2024-03-01T00:00:00Z")])
        remote = SyncData(novels=[make_novel("n1", title="Theirs", edited="2024-02-01T00:00:00Z")])

        conflicts = detect_conflicts(local, remote)

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.entity_id == "n1"
        assert conflict.entity_type == EntityType.NOVEL
        assert conflict.local_name == "Mine"
        assert conflict.remote_name == "Theirs"
        assert conflict.local_edited == parse_timestamp("2024-03-01T00:00:00Z")
        assert conflict.remote_version["title"] == "Theirs"

    def test_one_sided_entities_never_conflict(self):
        local = SyncData(novels=[make_novel("a")], ai_models=[make_model("m1")])
        remote = SyncData(novels=[make_novel("b")], ai_models=[make_model("m2")])

        assert detect_conflicts(local, remote) == []

    def test_model_and_settings_conflicts(self):
        local = SyncData(ai_models=[make_model("m1", name="A")], app_settings={"theme": "dark"})
        remote = SyncData(ai_models=[make_model("m1", name="B")], app_settings={"theme": "light"})

        conflicts = detect_conflicts(local, remote)

        assert [(c.entity_type, c.entity_id) for c in conflicts] == [
            (EntityType.AI_MODEL, "m1"),
            (EntityType.SETTINGS, SETTINGS_ENTITY_ID),
        ]

    def test_settings_missing_on_one_side(self):
        local = SyncData(app_settings={"theme": "dark"})

        assert detect_conflicts(local, SyncData()) == []

    def test_cover_history_compared_only_when_remote_has_it(self):
        local = SyncData(cover_history=[{"id": "c1", "url": "a"}])

        assert detect_conflicts(local, SyncData(cover_history=None)) == []
        conflicts = detect_conflicts(local, SyncData(cover_history=[{"id": "c1", "url": "b"}]))
        assert [c.entity_type for c in conflicts] == [EntityType.COVER_HISTORY]


class TestHasChangesToUpload:
    """Tests for skipping uploads that would change nothing."""

    def test_identical(self):
        data = SyncData(novels=[make_novel("n1")], app_settings={"a": 1}, cover_history=[])

        assert not has_changes_to_upload(data, data)

    def test_added_entity(self):
        local = SyncData(novels=[make_novel("n1"), make_novel("n2")])
        remote = SyncData(novels=[make_novel("n1")])

        assert has_changes_to_upload(local, remote)

    def test_removed_entity(self):
        assert has_changes_to_upload(SyncData(), SyncData(ai_models=[make_model("m1")]))

    def test_timestamp_only_change(self):
        local = SyncData(ai_models=[make_model("m1", edited="2024-06-01T00:00:00Z")])
        remote = SyncData(ai_models=[make_model("m1")])

        assert has_changes_to_upload(local, remote)

    def test_settings_missing_remotely(self):
        assert has_changes_to_upload(SyncData(app_settings={"a": 1}), SyncData())
        assert not has_changes_to_upload(SyncData(), SyncData())
