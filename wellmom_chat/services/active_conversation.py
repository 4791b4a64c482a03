"""Controller for the conversation currently open in the chat window."""

import asyncio
import logging
from typing import Callable, List, Optional

from wellmom_chat.api.client import ChatTransport
from wellmom_chat.core.exceptions import (
    ChatException,
    NoActiveConversationError,
    NotFoundError,
)
from wellmom_chat.core.observable import Observable
from wellmom_chat.schemas import Conversation, Message
from wellmom_chat.services.conversation_cache import ConversationCache
from wellmom_chat.services.participant_resolver import ParticipantResolver, ResolutionStatus

logger = logging.getLogger(__name__)

NAME_LOADING_PLACEHOLDER = "Memuat nama..."
NAME_FALLBACK = "Ibu Hamil"


class ActiveConversation(Observable):
    """
    Message history and send/mark-read for exactly one open conversation.

    The target is either a persisted conversation or a compose-mode target
    (an ibu hamil without a conversation yet). Compose mode shows only the
    pending messages; as soon as the cache holds a conversation for the
    subject (first send succeeded, or a refresh found one) the controller
    adopts it and loads its history.

    Every switch bumps `generation` and cancels the previous load, so a
    late response for a conversation the user left is never applied.
    """

    def __init__(
        self,
        cache: ConversationCache,
        transport: ChatTransport,
        resolver: ParticipantResolver,
    ):
        super().__init__()
        self._cache = cache
        self._transport = transport
        self._resolver = resolver
        self._subject_id: Optional[int] = None
        self._conversation_id: Optional[int] = None
        self._generation = 0
        self._load_task: Optional[asyncio.Task] = None
        self._resolve_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self.is_loading = False
        self.error: Optional[str] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def subject_id(self) -> Optional[int]:
        return self._subject_id

    @property
    def conversation_id(self) -> Optional[int]:
        return self._conversation_id

    @property
    def is_open(self) -> bool:
        return self._subject_id is not None

    @property
    def is_compose(self) -> bool:
        return self.is_open and self._conversation_id is None

    @property
    def is_sending(self) -> bool:
        return self.is_open and self._cache.is_sending(self._subject_id)

    @property
    def conversation(self) -> Optional[Conversation]:
        """The cached record, or a virtual one (id=None) in compose mode."""
        if self._subject_id is None:
            return None
        if self._conversation_id is not None:
            record = self._cache.get(self._conversation_id)
            if record is not None:
                return record
        record = self._cache.get_by_subject(self._subject_id)
        return record or Conversation(id=None, subject_id=self._subject_id)

    @property
    def messages(self) -> List[Message]:
        if self._subject_id is None:
            return []
        if self._conversation_id is None:
            return self._cache.pending_for(self._subject_id)
        return self._cache.messages_for(self._conversation_id)

    @property
    def display_name(self) -> Optional[str]:
        conversation = self.conversation
        if conversation is None:
            return None
        if conversation.display_name:
            return conversation.display_name
        info = self._resolver.get(conversation.subject_id)
        if info is not None and info.has_name:
            return info.name
        if self._resolver.status(conversation.subject_id) == ResolutionStatus.FAILED:
            return NAME_FALLBACK
        return NAME_LOADING_PLACEHOLDER

    @property
    def display_photo_url(self) -> Optional[str]:
        conversation = self.conversation
        if conversation is None:
            return None
        if conversation.display_photo_url:
            return conversation.display_photo_url
        info = self._resolver.get(conversation.subject_id)
        return info.photo_url if info is not None else None

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    async def open_conversation(self, conversation_id: int) -> None:
        """Open a persisted conversation and load its messages."""
        conversation = self._cache.get(conversation_id)
        if conversation is None:
            raise NotFoundError()
        self._switch(conversation.subject_id, conversation_id)
        await self._wait_for_load()

    async def open_subject(self, subject_id: int) -> None:
        """Open the conversation with an ibu hamil, or compose mode when none exists."""
        existing = self._cache.get_by_subject(subject_id)
        self._switch(subject_id, existing.id if existing else None)
        await self._wait_for_load()

    async def reload(self) -> None:
        if self._conversation_id is None:
            return
        self._generation += 1
        self._cancel_load()
        self._start_load()
        self._notify()
        await self._wait_for_load()

    def close(self) -> None:
        self._generation += 1
        self._cancel_load()
        self._subject_id = None
        self._conversation_id = None
        self.is_loading = False
        self.error = None
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._notify()

    def _switch(self, subject_id: int, conversation_id: Optional[int]) -> None:
        self._generation += 1
        self._cancel_load()
        self._subject_id = subject_id
        self._conversation_id = conversation_id
        self.is_loading = False
        self.error = None
        if not self._unsubscribers:
            self._unsubscribers = [
                self._cache.subscribe(self._on_cache_change),
                self._resolver.subscribe(self._notify),
            ]
        self._request_name()
        if conversation_id is not None:
            self._start_load()
        logger.debug(
            f"Opened ibu_hamil_id={subject_id} conversation={conversation_id} "
            f"generation={self._generation}"
        )
        self._notify()

    def _request_name(self) -> None:
        conversation = self.conversation
        if conversation is None or conversation.display_name:
            return
        if self._resolver.status(conversation.subject_id) != ResolutionStatus.ABSENT:
            return
        self._resolve_task = asyncio.get_running_loop().create_task(
            self._resolver.resolve([conversation.subject_id])
        )

    # ------------------------------------------------------------------
    # Message loading
    # ------------------------------------------------------------------

    def _start_load(self) -> None:
        self.is_loading = True
        self.error = None
        self._load_task = asyncio.get_running_loop().create_task(
            self._load(self._generation, self._conversation_id)
        )

    def _cancel_load(self) -> None:
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = None

    async def _wait_for_load(self) -> None:
        task = self._load_task
        if task is not None:
            # asyncio.wait does not raise if a newer switch cancelled the task
            await asyncio.wait([task])

    async def _load(self, generation: int, conversation_id: int) -> None:
        try:
            messages = await self._transport.list_messages(conversation_id)
        except ChatException as e:
            if generation != self._generation:
                return
            self.is_loading = False
            self.error = e.detail
            logger.warning(f"Failed to load messages of conversation {conversation_id}: {e.detail}")
            self._notify()
            return

        if generation != self._generation:
            logger.debug(f"Dropping stale messages of conversation {conversation_id}")
            return
        self.is_loading = False
        self._cache.store_messages(conversation_id, messages)

    def _on_cache_change(self) -> None:
        if self._subject_id is not None:
            record = self._cache.get_by_subject(self._subject_id)
            if record is not None and record.id != self._conversation_id:
                promoted = self._conversation_id is None
                self._conversation_id = record.id
                if promoted:
                    logger.info(
                        f"Compose target ibu_hamil_id={self._subject_id} is now conversation {record.id}"
                    )
                    self._generation += 1
                    self._start_load()
        self._notify()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def send(self, text: str) -> "asyncio.Task[Message]":
        """Send to the open target; see ConversationCache.send for the contract."""
        if self._subject_id is None:
            raise NoActiveConversationError()
        return self._cache.send(self._subject_id, text)

    async def mark_read(self) -> None:
        """Mark the open conversation as read. No-op in compose mode."""
        if self._subject_id is None:
            raise NoActiveConversationError()
        if self._conversation_id is None:
            return
        await self._cache.mark_read(self._conversation_id)
