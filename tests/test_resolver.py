"""Tests for conflict resolution."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from studysync.domain import ConflictRecord, ConflictSide, SyncStatus
from studysync.resolver import ConflictResolver, ResolutionChoice

from conftest import NOW_MS


def conflicted_orchestrator():
    orchestrator = Mock()
    orchestrator.status = SyncStatus.CONFLICT
    orchestrator.conflict = ConflictRecord(
        cloud=ConflictSide(modified_time=NOW_MS, size=10),
        local=ConflictSide(modified_time=NOW_MS - 5000),
    )
    orchestrator.backup = AsyncMock()
    orchestrator.restore = AsyncMock()
    return orchestrator


class TestConflictResolver:

    async def test_local_choice_backs_up(self):
        orchestrator = conflicted_orchestrator()
        resolver = ConflictResolver(orchestrator)

        assert await resolver.resolve(ResolutionChoice.LOCAL)

        orchestrator.backup.assert_awaited_once()
        orchestrator.restore.assert_not_awaited()

    async def test_remote_choice_restores(self):
        orchestrator = conflicted_orchestrator()
        resolver = ConflictResolver(orchestrator)

        assert await resolver.resolve("remote")

        orchestrator.restore.assert_awaited_once()
        orchestrator.backup.assert_not_awaited()

    async def test_noop_without_conflict(self):
        orchestrator = conflicted_orchestrator()
        orchestrator.status = SyncStatus.UP_TO_DATE
        resolver = ConflictResolver(orchestrator)

        assert resolver.conflict is None
        assert not await resolver.resolve("local")

        orchestrator.backup.assert_not_awaited()

    async def test_second_call_ignored_while_in_flight(self):
        orchestrator = conflicted_orchestrator()
        gate = asyncio.Event()

        async def slow_backup():
            await gate.wait()

        orchestrator.backup.side_effect = slow_backup
        resolver = ConflictResolver(orchestrator)

        first = asyncio.ensure_future(resolver.resolve("local"))
        await asyncio.sleep(0)
        assert resolver.loading_resolution is ResolutionChoice.LOCAL

        assert not await resolver.resolve("remote")

        gate.set()
        assert await first
        orchestrator.backup.assert_awaited_once()
        orchestrator.restore.assert_not_awaited()
        assert resolver.loading_resolution is None

    async def test_latch_released_after_failure(self):
        orchestrator = conflicted_orchestrator()
        orchestrator.restore.side_effect = RuntimeError("download failed")
        resolver = ConflictResolver(orchestrator)

        with pytest.raises(RuntimeError):
            await resolver.resolve("remote")

        assert resolver.loading_resolution is None
        assert await resolver.resolve("local")

    async def test_invalid_choice(self):
        resolver = ConflictResolver(conflicted_orchestrator())

        with pytest.raises(ValueError):
            await resolver.resolve("both")


class TestResolutionEndToEnd:

    async def test_remote_wins_restores_and_reloads(self, orchestrator, adapter, store, state_store):
        state_store.last_sync_time = NOW_MS - 60_000
        snapshot = {"subjects": [{"id": "cloud", "name": "Remote subject"}]}
        adapter.put("studypal.db.json", json.dumps(snapshot).encode(), NOW_MS)
        await orchestrator.check_initial_state()
        reloads = []
        orchestrator.on_reload(lambda: reloads.append(True))
        resolver = ConflictResolver(orchestrator)
        assert resolver.conflict is not None

        assert await resolver.resolve("remote")

        assert await store.get_all_keys("subjects") == ["cloud"]
        assert reloads == [True]
        assert orchestrator.status is SyncStatus.UP_TO_DATE
        assert resolver.conflict is None

    async def test_local_wins_overwrites_remote(self, orchestrator, adapter, store, state_store):
        state_store.last_sync_time = NOW_MS - 60_000
        adapter.put("studypal.db.json", b"{}", NOW_MS)
        await orchestrator.check_initial_state()
        await store.set("subjects", "mine", {"id": "mine"})
        await orchestrator.tracker.drain()
        reloads = []
        orchestrator.on_reload(lambda: reloads.append(True))

        assert await ConflictResolver(orchestrator).resolve("local")

        uploaded = json.loads(adapter.blobs["studypal.db.json"])
        assert [s["id"] for s in uploaded["subjects"]] == ["mine"]
        assert reloads == []
        assert orchestrator.status is SyncStatus.UP_TO_DATE
        assert not orchestrator.tracker.dirty
