"""Display-ready projection of the conversation cache for the sidebar list."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Set, Tuple

from pydantic import BaseModel

from wellmom_chat.core.observable import Observable
from wellmom_chat.schemas import Conversation
from wellmom_chat.services.conversation_cache import ConversationCache
from wellmom_chat.services.participant_resolver import ParticipantResolver, ResolutionStatus

logger = logging.getLogger(__name__)

NAME_LOADING_PLACEHOLDER = "Memuat..."
NAME_FALLBACK = "Ibu Hamil"
EMPTY_PREVIEW = "Belum ada pesan"


class ConversationListItem(BaseModel):
    """One row of the conversation list."""
    conversation_id: int
    subject_id: int
    display_name: str
    display_photo_url: Optional[str] = None
    initial: str
    is_name_loading: bool = False
    preview: str
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    is_sending: bool = False
    is_selected: bool = False


def initial_of(name: str) -> str:
    """Inisial dari nama (untuk avatar)."""
    return name.strip()[:1].upper() or "?"


def conversation_sort_key(conversation: Conversation) -> Tuple[int, float, int]:
    """Most recent activity first; conversations without messages after, newest id first."""
    if conversation.last_message_at is None:
        return (1, 0.0, -(conversation.id or 0))
    return (0, -conversation.last_message_at.timestamp(), -(conversation.id or 0))


class ConversationListViewModel(Observable):
    """
    Sorted conversation list with resolved names.

    Names come from the conversation record when the backend embeds them,
    otherwise from the shared ParticipantResolver. While the resolver is
    still fetching, the row shows a loading placeholder.
    """

    def __init__(self, cache: ConversationCache, resolver: ParticipantResolver):
        super().__init__()
        self._cache = cache
        self._resolver = resolver
        self._unsubscribers: List[Callable[[], None]] = []
        self._resolve_tasks: Set[asyncio.Task] = set()
        self.selected_conversation_id: Optional[int] = None

    @property
    def is_loading(self) -> bool:
        return self._cache.is_loading

    @property
    def error(self) -> Optional[str]:
        return self._cache.last_error.detail if self._cache.last_error else None

    @property
    def total_unread(self) -> int:
        return self._cache.total_unread

    def missing_names(self) -> Set[int]:
        """Subject ids lacking a name that the resolver has not been asked for yet."""
        return {
            conv.subject_id for conv in self._cache.conversations
            if not conv.display_name
            and self._resolver.status(conv.subject_id) == ResolutionStatus.ABSENT
        }

    def _display_name(self, conversation: Conversation) -> Tuple[str, bool]:
        if conversation.display_name:
            return conversation.display_name, False
        info = self._resolver.get(conversation.subject_id)
        if info is not None and info.has_name:
            return info.name, False
        status = self._resolver.status(conversation.subject_id)
        if status in (ResolutionStatus.PENDING, ResolutionStatus.ABSENT):
            return NAME_LOADING_PLACEHOLDER, True
        return NAME_FALLBACK, False

    def _to_item(self, conversation: Conversation) -> ConversationListItem:
        name, loading = self._display_name(conversation)
        photo_url = conversation.display_photo_url
        if not photo_url:
            info = self._resolver.get(conversation.subject_id)
            photo_url = info.photo_url if info is not None else None
        return ConversationListItem(
            conversation_id=conversation.id,
            subject_id=conversation.subject_id,
            display_name=name,
            display_photo_url=photo_url,
            initial=initial_of(name),
            is_name_loading=loading,
            preview=conversation.last_message_text or EMPTY_PREVIEW,
            last_message_at=conversation.last_message_at,
            unread_count=conversation.unread_count,
            is_sending=self._cache.is_sending(conversation.subject_id),
            is_selected=conversation.id == self.selected_conversation_id,
        )

    def items(self, query: Optional[str] = None) -> List[ConversationListItem]:
        """
        Conversations ready for rendering.

        Args:
            query: Optional case-insensitive filter on the display name
        """
        rows = [
            self._to_item(conv)
            for conv in sorted(self._cache.conversations, key=conversation_sort_key)
        ]
        if query and query.strip():
            needle = query.strip().lower()
            rows = [row for row in rows if needle in row.display_name.lower()]
        return rows

    def select(self, conversation_id: Optional[int]) -> None:
        self.selected_conversation_id = conversation_id
        self._notify()

    async def load(self) -> None:
        """Refresh the cache, then resolve names it did not embed."""
        await self._cache.refresh()
        await self.resolve_names()

    async def resolve_names(self) -> None:
        ids = {conv.subject_id for conv in self._cache.conversations if not conv.display_name}
        if ids:
            await self._resolver.resolve(ids)

    def _schedule_resolution(self) -> None:
        ids = self.missing_names()
        if not ids:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._resolver.resolve(ids))
        self._resolve_tasks.add(task)
        task.add_done_callback(self._resolve_tasks.discard)

    def _on_change(self) -> None:
        self._schedule_resolution()
        self._notify()

    def _on_first_subscriber(self) -> None:
        self._unsubscribers = [
            self._cache.subscribe(self._on_change),
            self._resolver.subscribe(self._notify),
        ]

    def _on_last_unsubscribe(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
