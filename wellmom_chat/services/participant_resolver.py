"""Resolves ibu hamil display names/photos for conversations that lack them."""

import asyncio
import logging
from enum import Enum
from typing import Dict, Iterable, Optional

from wellmom_chat.api.client import ChatTransport
from wellmom_chat.core.exceptions import ChatException, ResolutionMiss
from wellmom_chat.core.observable import Observable
from wellmom_chat.schemas import ParticipantInfo

logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    ABSENT = "absent"
    PENDING = "pending"
    RESOLVED = "resolved"
    FAILED = "failed"


class ParticipantResolver(Observable):
    """
    Session-wide cache of participant display info.

    Guarantees at most one in-flight lookup per subject id: concurrent
    `resolve()` calls with overlapping ids await the same pending task.
    A failed lookup is cached as None for the rest of the session (callers
    show a fallback name) until `forget()` clears it.
    """

    def __init__(self, transport: ChatTransport):
        super().__init__()
        self._transport = transport
        self._results: Dict[int, Optional[ParticipantInfo]] = {}
        self._in_flight: Dict[int, asyncio.Task] = {}

    def status(self, subject_id: int) -> ResolutionStatus:
        if subject_id in self._in_flight:
            return ResolutionStatus.PENDING
        if subject_id not in self._results:
            return ResolutionStatus.ABSENT
        if self._results[subject_id] is None:
            return ResolutionStatus.FAILED
        return ResolutionStatus.RESOLVED

    def is_pending(self, subject_id: int) -> bool:
        return subject_id in self._in_flight

    def get(self, subject_id: int) -> Optional[ParticipantInfo]:
        """Resolved info, or None when absent, pending or failed (see `status`)."""
        return self._results.get(subject_id)

    async def resolve(self, subject_ids: Iterable[int]) -> None:
        """
        Fetch display info for every id not yet resolved.

        Args:
            subject_ids: Ids of ibu hamil lacking display metadata

        Returns when every requested id has a recorded result.
        """
        tasks = []
        for subject_id in set(subject_ids):
            if subject_id in self._results:
                continue
            task = self._in_flight.get(subject_id)
            if task is None:
                task = asyncio.get_running_loop().create_task(self._fetch(subject_id))
                self._in_flight[subject_id] = task
            tasks.append(task)

        if not tasks:
            return
        self._notify()
        # Shielded: a cancelled caller must not cancel a lookup others await
        await asyncio.gather(*(asyncio.shield(task) for task in tasks))

    async def resolve_one(self, subject_id: int) -> Optional[ParticipantInfo]:
        await self.resolve([subject_id])
        return self.get(subject_id)

    async def _fetch(self, subject_id: int) -> None:
        try:
            info: Optional[ParticipantInfo] = await self._transport.resolve_participant(subject_id)
        except ResolutionMiss:
            logger.info(f"No detail for ibu_hamil_id={subject_id}, using fallback name")
            info = None
        except ChatException as e:
            logger.warning(f"Failed to resolve ibu_hamil_id={subject_id}: {e.detail}")
            info = None
        finally:
            self._in_flight.pop(subject_id, None)

        self._results[subject_id] = info
        self._notify()

    def forget(self, subject_ids: Optional[Iterable[int]] = None) -> None:
        """Drop cached results so the next `resolve()` fetches again."""
        if subject_ids is None:
            self._results.clear()
        else:
            for subject_id in subject_ids:
                self._results.pop(subject_id, None)
        self._notify()

    def close(self) -> None:
        for task in self._in_flight.values():
            task.cancel()
        self._in_flight.clear()
