"""Tests for the record models."""

import pytest

from studysync.domain import (
    Chapter,
    ChatSession,
    Collection,
    ConflictRecord,
    ConflictSide,
    Material,
    MaterialContent,
    MaterialType,
    SyncStatus,
)


class TestSyncableRecord:

    def test_wire_names(self):
        chapter = Chapter(id="c1", name="Rivers", created_at=1, last_modified=2,
                          remote_id="r1", size=10, subject_id="s1", number=1.5)

        assert chapter.to_dict() == {
            "id": "c1", "name": "Rivers", "createdAt": 1, "lastModified": 2,
            "syncStatus": "idle", "remoteId": "r1", "size": 10,
            "subjectId": "s1", "number": 1.5,
        }

    def test_from_dict_defaults(self):
        chapter = Chapter.from_dict({"id": "c1"})

        assert chapter.name == ""
        assert chapter.sync_status is SyncStatus.IDLE
        assert chapter.remote_id is None

    def test_touch(self):
        chapter = Chapter(id="c1", name="Rivers", last_modified=1)

        chapter.touch(500)

        assert chapter.last_modified == 500

    def test_transient_statuses(self):
        assert SyncStatus.SYNCING_UP.is_transient
        assert not SyncStatus.UPLOAD_PENDING.is_transient

    def test_collection_parse(self):
        assert Collection.parse("chatSessions") is Collection.CHAT_SESSIONS
        with pytest.raises(ValueError):
            Collection.parse("notes")


class TestMaterial:

    def test_binary_content_round_trip(self):
        material = Material(id="m1", name="Notes", chapter_id="c1", type=MaterialType.PDF,
                            content=MaterialContent("application/pdf", b"%PDF"))

        restored = Material.from_dict(material.to_dict())

        assert restored.binary_data == b"%PDF"
        assert restored.content.mime_type == "application/pdf"
        assert restored.is_binary

    def test_inline_materials_are_not_binary(self):
        note = Material(id="m2", name="Summary", type=MaterialType.TEXT, content="rivers flow")
        link = Material(id="m3", name="Video", type=MaterialType.LINK, source_ref="https://example.org")

        assert not note.is_binary
        assert not link.is_binary
        assert link.to_dict()["sourceRef"] == "https://example.org"

    def test_stripped_payload_is_still_binary(self):
        material = Material.from_dict({"id": "m1", "type": "pdf", "content": {"mimeType": "application/pdf"}})

        assert material.is_binary
        assert material.binary_data is None

    def test_progress_is_clamped(self):
        assert Material(id="m1", name="x", progress=-5).progress == 0
        assert Material(id="m1", name="x", progress=250).progress == 100


class TestChatSession:

    def test_add_message_touches(self):
        session = ChatSession(id="chat1", name="Revision", last_modified=0)

        session.add_message("user", "What is erosion?")

        assert session.messages[0]["role"] == "user"
        assert session.last_modified == session.messages[0]["timestamp"]


class TestConflictRecord:

    def test_to_dict(self):
        conflict = ConflictRecord(cloud=ConflictSide(2000, 10), local=ConflictSide(1000))

        assert conflict.to_dict() == {
            "cloud": {"modifiedTime": 2000, "size": 10},
            "local": {"modifiedTime": 1000, "size": None},
        }

    def test_describe(self):
        remote_newer = ConflictRecord(cloud=ConflictSide(2000), local=ConflictSide(1000))
        local_newer = ConflictRecord(cloud=ConflictSide(1000), local=ConflictSide(2000))

        assert "remote backup was modified" in remote_newer.describe()
        assert "both changed" in local_newer.describe()
