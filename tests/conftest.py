"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from studysync.cloud.base import CloudAdapter, CloudFile, CloudStorageError
from studysync.codec import ExportCodec
from studysync.domain import SyncStatus
from studysync.orchestrator import SyncOrchestrator
from studysync.scheduler import ScheduledTask, Scheduler
from studysync.storage import LocalStore, SyncStateStore
from studysync.tracker import ChangeTracker


NOW_MS = 1_700_000_000_000


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class ManualTask(ScheduledTask):

    def __init__(self, when: float, seq: int, callback: Callable[[], None]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler(Scheduler):
    """Scheduler driven by explicit ``advance()`` calls."""

    def __init__(self):
        self.time = 0.0
        self._seq = 0
        self._tasks: List[ManualTask] = []

    def call_later(self, delay, callback):
        self._seq += 1
        task = ManualTask(self.time + delay, self._seq, callback)
        self._tasks.append(task)
        return task

    def now(self):
        return self.time

    @property
    def pending(self) -> List[ManualTask]:
        return [t for t in self._tasks if not t.cancelled]

    def advance(self, seconds: float):
        """Move virtual time forward, running due callbacks in order."""
        target = self.time + seconds
        while True:
            due = [t for t in self.pending if t.when <= target]
            if not due:
                break
            task = min(due, key=lambda t: (t.when, t.seq))
            self._tasks.remove(task)
            self.time = task.when
            task.callback()
        self.time = target
        self._tasks = self.pending


class InMemoryAdapter(CloudAdapter):
    """CloudAdapter keeping blobs in a dict, with hooks for failures and pacing."""

    provider_name = "memory"

    def __init__(self, authenticated: bool = True, clock: Callable[[], int] = lambda: NOW_MS):
        super().__init__()
        self.clock = clock
        self.files: Dict[str, CloudFile] = {}
        self.blobs: Dict[str, bytes] = {}
        self.uploads: List[Tuple[str, Optional[str]]] = []
        self.failing_names = set()
        self.find_error: Optional[Exception] = None
        self.upload_gate: Optional[asyncio.Event] = None
        self.active_uploads = 0
        self.max_active_uploads = 0
        self.auth_state.update(loaded=True, authenticated=authenticated)

    @staticmethod
    def _key(name: str, folder_path: Optional[str]) -> str:
        return f"{folder_path}/{name}" if folder_path else name

    def put(self, name: str, data: bytes, modified_time: Optional[int],
            folder_path: Optional[str] = None) -> CloudFile:
        """Seed a remote file directly."""
        key = self._key(name, folder_path)
        self.files[key] = CloudFile(id=key, name=name, modified_time=modified_time, size=len(data))
        self.blobs[key] = data
        return self.files[key]

    async def sign_in(self):
        self.auth_state.update(loaded=True, authenticated=True)
        return True

    async def sign_out(self):
        self.auth_state.update(authenticated=False)

    async def find_file(self, name, folder_path=None):
        self._require_auth()
        await asyncio.sleep(0)
        if self.find_error is not None:
            raise self.find_error
        return self.files.get(self._key(name, folder_path))

    async def upload_file(self, data, name, mime_type, folder_path=None):
        self._require_auth()
        self._check_upload_size(data, name)
        self.uploads.append((name, folder_path))
        self.active_uploads += 1
        self.max_active_uploads = max(self.max_active_uploads, self.active_uploads)
        try:
            await asyncio.sleep(0)
            if self.upload_gate is not None:
                await self.upload_gate.wait()
            if name in self.failing_names:
                raise CloudStorageError(f"Upload of {name} rejected", status_code=500)
            return self.put(name, bytes(data), self.clock(), folder_path).id
        finally:
            self.active_uploads -= 1

    async def download_file(self, remote_id):
        self._require_auth()
        return self.blobs[remote_id]

    async def list_files(self, parent_id=None):
        self._require_auth()
        return [f for key, f in self.files.items() if parent_id is None or key.startswith(f"{parent_id}/")]

    async def get_metadata(self, remote_id):
        self._require_auth()
        if remote_id not in self.files:
            raise CloudStorageError(f"File not found: {remote_id}", status_code=404)
        return self.files[remote_id]

    async def delete_file(self, remote_id):
        self._require_auth()
        self.blobs.pop(remote_id, None)
        return self.files.pop(remote_id, None) is not None


@pytest.fixture
def store(tmp_path):
    local_store = LocalStore(tmp_path / "studysync.db")
    yield local_store
    local_store.close()


@pytest.fixture
def state_store(tmp_path):
    return SyncStateStore(tmp_path / "sync_state.json")


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def adapter():
    return InMemoryAdapter()


@pytest.fixture
def codec(store):
    return ExportCodec(store)


@pytest.fixture
def orchestrator(store, state_store, codec, adapter, scheduler):
    orch = SyncOrchestrator(store, state_store, codec, adapter, clock=lambda: NOW_MS)
    tracker = ChangeTracker(
        store.changes,
        adapter.auth_state,
        scheduler,
        request_backup=orch.backup,
        is_conflict_pending=lambda: orch.status is SyncStatus.CONFLICT,
        state_store=state_store,
    )
    orch.tracker = tracker
    tracker.start()
    orch.start()
    yield orch
    tracker.stop()
    orch.stop()


@pytest.fixture
def status_log(orchestrator):
    """Every status the orchestrator publishes, in order."""
    seen = []
    orchestrator.subscribe(lambda status, error: seen.append(status))
    return seen
