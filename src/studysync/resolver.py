"""Explicit, single-shot resolution of backup conflicts."""

import logging
from enum import Enum
from typing import Optional, Union

from .domain import ConflictRecord, SyncStatus
from .orchestrator import SyncOrchestrator


logger = logging.getLogger(__name__)


class ResolutionChoice(str, Enum):
    """Which replica wins a conflict."""
    LOCAL = "local"
    REMOTE = "remote"


class ConflictResolver:
    """Funnels a pending conflict into a backup (local wins) or a restore (remote wins).

    Only one resolution runs at a time; calls made while one is in flight,
    or while no conflict is pending, are ignored.
    """

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator
        self.loading_resolution: Optional[ResolutionChoice] = None
        self.logger = logging.getLogger(__name__)

    @property
    def conflict(self) -> Optional[ConflictRecord]:
        """The pending conflict, if any."""
        if self.orchestrator.status is not SyncStatus.CONFLICT:
            return None
        return self.orchestrator.conflict

    @property
    def is_resolving(self) -> bool:
        return self.loading_resolution is not None

    async def resolve(self, choice: Union[ResolutionChoice, str]) -> bool:
        """Resolve the pending conflict.

        Args:
            choice: ``local`` to overwrite the remote, ``remote`` to overwrite local data

        Returns:
            True if a resolution ran, False if the call was ignored

        Raises:
            ValueError: If choice is not a valid resolution
        """
        choice = ResolutionChoice(choice)

        if self.loading_resolution is not None:
            self.logger.warning(
                f"Ignoring '{choice.value}' resolution; '{self.loading_resolution.value}' is in progress"
            )
            return False
        if self.conflict is None:
            self.logger.debug("No conflict pending; nothing to resolve")
            return False

        # Latch before the first await so a second call sees it
        self.loading_resolution = choice
        self.logger.info(f"Resolving conflict: keeping {choice.value} data")
        try:
            if choice is ResolutionChoice.LOCAL:
                await self.orchestrator.backup()
            else:
                await self.orchestrator.restore()
        finally:
            self.loading_resolution = None
        return True
