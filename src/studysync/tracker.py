"""Local change detection and backup debouncing."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from .cloud.base import AuthState
from .events import ChangeEvent, EventChannel, SYNC_ORIGIN
from .scheduler import ScheduledTask, Scheduler
from .storage import SyncStateStore


logger = logging.getLogger(__name__)


class ChangeTracker:
    """Marks the local replica dirty and schedules backups.

    The first change after a clean state requests a backup immediately. Later
    changes are coalesced into one backup after ``debounce_seconds`` of quiet.
    Once a backup has cleaned the replica, the fast path is re-armed only
    after ``cooldown_seconds`` pass without further changes.

    While signed out or while a conflict is pending, changes only mark the
    replica dirty and no backup is requested.
    """

    def __init__(self, changes: EventChannel[ChangeEvent], auth_state: AuthState,
                 scheduler: Scheduler, request_backup: Callable[[], Awaitable[Any]],
                 is_conflict_pending: Callable[[], bool] = lambda: False,
                 debounce_seconds: float = 5.0, cooldown_seconds: float = 2.0,
                 dirty: bool = False, state_store: Optional[SyncStateStore] = None):
        """Initialize the tracker.

        Args:
            changes: Store change channel to observe
            auth_state: Adapter authentication state
            scheduler: Source of cancellable timers
            request_backup: Coroutine function that runs one backup
            is_conflict_pending: Returns True while a conflict awaits resolution
            debounce_seconds: Quiet period before a coalesced backup
            cooldown_seconds: Delay before the fast path is re-armed
            dirty: Initial dirty flag
            state_store: Durable copy of the dirty flag, read at startup and
                kept in step afterwards
        """
        self.changes = changes
        self.auth_state = auth_state
        self.scheduler = scheduler
        self.request_backup = request_backup
        self.is_conflict_pending = is_conflict_pending
        self.debounce_seconds = debounce_seconds
        self.cooldown_seconds = cooldown_seconds

        self.state_store = state_store
        self._dirty = dirty or (state_store is not None and state_store.dirty)
        self.first_change_since_clean = True
        self.generation = 0

        self._debounce: Optional[ScheduledTask] = None
        self._cooldown: Optional[ScheduledTask] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logging.getLogger(__name__)

    @property
    def dirty(self) -> bool:
        return self._dirty

    @dirty.setter
    def dirty(self, value: bool):
        self._dirty = value
        if self.state_store is not None:
            self.state_store.dirty = value

    @property
    def backup_scheduled(self) -> bool:
        return self._debounce is not None

    def start(self):
        if self._unsubscribe is None:
            self._unsubscribe = self.changes.subscribe(self._on_change)

    def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_timers()

    def _cancel_timers(self):
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        if self._cooldown is not None:
            self._cooldown.cancel()
            self._cooldown = None

    def _on_change(self, event: ChangeEvent):
        if event.origin == SYNC_ORIGIN:
            return

        self.generation += 1
        self.dirty = True

        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

        if not self.auth_state.authenticated:
            self.logger.debug("Change recorded while signed out")
            return
        if self.is_conflict_pending():
            self.logger.debug("Change recorded while a conflict is pending")
            return

        if self.first_change_since_clean:
            self.first_change_since_clean = False
            if self._cooldown is not None:
                self._cooldown.cancel()
                self._cooldown = None
            self.logger.info("First change since last sync; backing up now")
            self._fire()
        else:
            self.logger.debug(f"Backup scheduled in {self.debounce_seconds}s")
            self._debounce = self.scheduler.call_later(self.debounce_seconds, self._on_debounce_elapsed)

    def _on_debounce_elapsed(self):
        self._debounce = None
        self.logger.info("Debounce window elapsed; backing up")
        self._fire()

    def _fire(self):
        task = asyncio.get_running_loop().create_task(self._run_backup())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_backup(self):
        try:
            await self.request_backup()
        except Exception as e:
            self.logger.error(f"Scheduled backup failed: {e}")

    def mark_clean(self, generation: int) -> bool:
        """Clear ``dirty`` after a successful sync.

        Args:
            generation: Value of ``generation`` when the sync started

        Returns:
            False if newer changes arrived meanwhile and the replica stays dirty
        """
        if generation < self.generation:
            self.logger.debug("Changes arrived during sync; staying dirty")
            return False

        self.dirty = False
        if self._cooldown is not None:
            self._cooldown.cancel()
        self._cooldown = self.scheduler.call_later(self.cooldown_seconds, self._rearm)
        return True

    def _rearm(self):
        self._cooldown = None
        if not self.dirty:
            self.first_change_since_clean = True

    def reset(self):
        """Cancel pending timers and re-arm the fast path (on sign-out)."""
        self._cancel_timers()
        self.first_change_since_clean = True

    async def drain(self):
        """Wait for backups this tracker has started."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
