"""Tests for the SQLite-backed LocalStore and the sync state file."""

import json
from unittest.mock import patch

import pytest

from studysync.domain import Collection, Material, MaterialContent, MaterialType, Subject
from studysync.events import SYNC_ORIGIN
from studysync.storage import (
    StoreConnectionError,
    SyncStateStore,
    UnknownCollectionError,
    decode_value,
    encode_value,
)


class TestLocalStoreBasics:

    async def test_set_and_get(self, store):
        await store.set(Collection.SUBJECTS, "s1", {"id": "s1", "name": "Physics"})

        assert await store.get(Collection.SUBJECTS, "s1") == {"id": "s1", "name": "Physics"}
        assert await store.get("subjects", "missing") is None

    async def test_get_all_preserves_insertion_order_on_update(self, store):
        await store.set("settings", "theme", "dark")
        await store.set("settings", "language", "en")
        await store.set("settings", "theme", "light")

        assert await store.get_items("settings") == [("theme", "light"), ("language", "en")]
        assert await store.get_all_keys("settings") == ["theme", "language"]

    async def test_collections_are_isolated(self, store):
        await store.set("subjects", "x", {"id": "x"})
        await store.set("chapters", "x", {"id": "x", "subjectId": "s"})

        await store.clear("subjects")

        assert await store.get_all("subjects") == []
        assert len(await store.get_all("chapters")) == 1

    async def test_delete(self, store):
        await store.set("subjects", "s1", {"id": "s1"})
        await store.delete("subjects", "s1")

        assert await store.get("subjects", "s1") is None

    async def test_unknown_collection(self, store):
        with pytest.raises(UnknownCollectionError):
            await store.get("quizzes", "q1")

    async def test_binary_values_round_trip(self, store):
        payload = bytes(range(256))
        await store.set("materials", "m1", {"id": "m1", "content": {"mimeType": "application/pdf", "data": payload}})

        stored = await store.get("materials", "m1")
        assert stored["content"]["data"] == payload

    async def test_typed_records(self, store):
        subject = Subject(id="s1", name="Maths", categories=["core"])
        material = Material(
            id="m1",
            name="Notes",
            chapter_id="c1",
            type=MaterialType.PDF,
            content=MaterialContent(mime_type="application/pdf", data=b"%PDF"),
            progress=150,
        )
        await store.save_record(Collection.SUBJECTS, subject)
        await store.save_record(Collection.MATERIALS, material)

        assert await store.load_record(Collection.SUBJECTS, "s1") == subject
        loaded = await store.load_records(Collection.MATERIALS)
        assert loaded[0].binary_data == b"%PDF"
        assert loaded[0].progress == 100


class TestChangeNotifications:

    async def test_each_mutation_publishes_once(self, store):
        events = []
        store.changes.subscribe(events.append)

        await store.set("subjects", "s1", {"id": "s1"})
        await store.delete("subjects", "s1")
        await store.clear("chapters")

        assert len(events) == 3
        assert all(e.name == "studysync-db-changed" for e in events)

    async def test_reads_do_not_publish(self, store):
        await store.set("subjects", "s1", {"id": "s1"})
        events = []
        store.changes.subscribe(events.append)

        await store.get("subjects", "s1")
        await store.get_all("subjects")

        assert events == []

    async def test_origin_is_carried(self, store):
        events = []
        store.changes.subscribe(events.append)

        await store.set("subjects", "s1", {"id": "s1"}, origin=SYNC_ORIGIN)

        assert events[0].origin == SYNC_ORIGIN

    async def test_replace_collections_publishes_once(self, store):
        await store.set("subjects", "old", {"id": "old"})
        events = []
        store.changes.subscribe(events.append)

        await store.replace_collections({
            "subjects": [("a", {"id": "a"}), ("b", {"id": "b"})],
            Collection.CHAPTERS: [("c", {"id": "c"})],
        })

        assert len(events) == 1
        assert await store.get_all_keys("subjects") == ["a", "b"]
        assert await store.get_all_keys("chapters") == ["c"]

    async def test_failing_listener_does_not_block_others(self, store):
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        store.changes.subscribe(broken)
        store.changes.subscribe(received.append)

        await store.set("subjects", "s1", {"id": "s1"})

        assert len(received) == 1


class TestReconnection:

    async def test_reconnects_after_invalidation(self, store):
        await store.set("subjects", "s1", {"id": "s1", "name": "Biology"})

        store.invalidate()

        assert await store.get("subjects", "s1") == {"id": "s1", "name": "Biology"}
        await store.set("subjects", "s2", {"id": "s2"})
        assert await store.get_all_keys("subjects") == ["s1", "s2"]

    async def test_reconnect_failure_is_fatal(self, store):
        await store.set("subjects", "s1", {"id": "s1"})
        store.invalidate()

        with patch.object(store, "_connect", side_effect=StoreConnectionError("disk gone")):
            with pytest.raises(StoreConnectionError):
                await store.get("subjects", "s1")

    async def test_close_then_reopen_lazily(self, store):
        await store.set("subjects", "s1", {"id": "s1"})
        store.close()
        assert not store.is_open

        assert await store.get("subjects", "s1") == {"id": "s1"}
        assert store.is_open


class TestValueEncoding:

    def test_nested_bytes(self):
        value = {"a": [b"\x00\x01", {"b": b"xyz"}], "c": "text"}
        assert decode_value(encode_value(value)) == value

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            encode_value({"when": object()})


class TestSyncStateStore:

    def test_last_sync_time_persists(self, tmp_path):
        path = tmp_path / "sync_state.json"
        state = SyncStateStore(path)
        assert state.last_sync_time is None

        state.last_sync_time = 1234567

        assert SyncStateStore(path).last_sync_time == 1234567
        assert json.loads(path.read_text())["lastSuccessfulSync"] == 1234567

    def test_clear_last_sync_time(self, tmp_path):
        state = SyncStateStore(tmp_path / "sync_state.json")
        state.last_sync_time = 5
        state.last_sync_time = None

        assert SyncStateStore(tmp_path / "sync_state.json").last_sync_time is None

    def test_device_id_is_stable(self, tmp_path):
        path = tmp_path / "sync_state.json"
        device_id = SyncStateStore(path).device_id

        assert device_id
        assert SyncStateStore(path).device_id == device_id

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "sync_state.json"
        path.write_text("{not json")

        assert SyncStateStore(path).last_sync_time is None
