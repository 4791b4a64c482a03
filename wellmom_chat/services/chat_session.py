"""Wires the chat services together for one logged-in perawat."""

import logging
from typing import Optional

from wellmom_chat.api.client import ChatApiClient, ChatTransport, TokenSource
from wellmom_chat.services.active_conversation import ActiveConversation
from wellmom_chat.services.conversation_cache import ConversationCache
from wellmom_chat.services.conversation_list import ConversationListViewModel
from wellmom_chat.services.participant_resolver import ParticipantResolver

logger = logging.getLogger(__name__)


class ChatSession:
    """
    One transport, resolver and cache shared by the list and the open chat.

    Usage:
        >>> async with ChatSession(token=get_token, current_user_id=7) as session:
        ...     await session.start()
        ...     await session.active.open_subject(42)
        ...     await session.active.send("Halo")
    """

    def __init__(
        self,
        token: Optional[TokenSource] = None,
        current_user_id: Optional[int] = None,
        transport: Optional[ChatTransport] = None,
        refresh_interval: Optional[float] = None,
    ):
        if transport is None:
            if token is None:
                raise ValueError("Either token or transport is required")
            transport = ChatApiClient(token)
        self.transport = transport
        self.resolver = ParticipantResolver(transport)
        self.cache = ConversationCache(
            transport, current_user_id=current_user_id, refresh_interval=refresh_interval
        )
        self.conversation_list = ConversationListViewModel(self.cache, self.resolver)
        self.active = ActiveConversation(self.cache, transport, self.resolver)

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def start(self) -> None:
        """Initial load of the conversation list and missing names."""
        await self.conversation_list.load()
        logger.info(f"Chat session started with {len(self.cache.conversations)} conversations")

    async def aclose(self) -> None:
        self.active.close()
        self.cache.close()
        self.resolver.close()
        if isinstance(self.transport, ChatApiClient):
            await self.transport.aclose()
