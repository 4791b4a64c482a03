"""Shared fixtures: an in-memory backend whose calls can be held open."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from wellmom_chat.core.exceptions import ChatException, NotFoundError, ResolutionMiss
from wellmom_chat.schemas import (
    Conversation,
    MarkReadResponse,
    Message,
    ParticipantInfo,
    SenderRole,
    SentMessage,
)
from wellmom_chat.services import (
    ActiveConversation,
    ConversationCache,
    ConversationListViewModel,
    ParticipantResolver,
)

PERAWAT_USER_ID = 7
PERAWAT_ID = 3
BASE_TIME = datetime(2020, 1, 5, 8, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


async def settle(rounds: int = 20) -> None:
    """Let background tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_conversation(conversation_id: int, subject_id: int, **fields) -> Conversation:
    fields.setdefault("staff_id", PERAWAT_ID)
    return Conversation(id=conversation_id, subject_id=subject_id, **fields)


def make_message(
    message_id: int,
    conversation_id: int,
    text: str,
    minutes: int,
    sender_id: int = 900,
    **fields,
) -> Message:
    role = SenderRole.STAFF if sender_id == PERAWAT_USER_ID else SenderRole.SUBJECT
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        sender_role=role,
        text=text,
        created_at=at(minutes),
        **fields,
    )


class FakeTransport:
    """
    In-memory stand-in for the chat backend.

    `hold(op)` makes calls of that operation wait until the returned event
    is set; `fail(op, exc)` makes the next call raise. `lose_next_send_response`
    stores the message server-side and then raises, like a response lost on
    the network.
    """

    def __init__(self):
        self.conversations: Dict[int, Conversation] = {}
        self.messages: Dict[int, List[Message]] = {}
        self.participants: Dict[int, ParticipantInfo] = {}
        self.calls: List[Tuple[str, Any]] = []
        self._gates: Dict[Tuple[str, Any], asyncio.Event] = {}
        self._failures: Dict[str, List[ChatException]] = {}
        self._lost_send: Optional[ChatException] = None
        self._next_conversation_id = 100
        self._next_message_id = 1000
        self._minute = 60

    # --- test controls ---

    def add_conversation(self, conversation: Conversation) -> None:
        self.conversations[conversation.id] = conversation

    def hold(self, op: str, arg: Any = None) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[(op, arg)] = gate
        return gate

    def fail(self, op: str, exc: ChatException) -> None:
        self._failures.setdefault(op, []).append(exc)

    def lose_next_send_response(self, exc: ChatException) -> None:
        self._lost_send = exc

    def count(self, op: str, arg: Any = None) -> int:
        return sum(1 for name, value in self.calls if name == op and (arg is None or value == arg))

    async def _enter(self, op: str, arg: Any) -> None:
        self.calls.append((op, arg))
        gate = self._gates.get((op, arg)) or self._gates.get((op, None))
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        failures = self._failures.get(op)
        if failures:
            raise failures.pop(0)

    # --- transport API ---

    async def list_conversations(self) -> List[Conversation]:
        # Snapshot at request time; a held call returns what the server had then
        snapshot = [conv.model_copy() for conv in self.conversations.values()]
        await self._enter("list_conversations", None)
        return snapshot

    async def list_messages(self, conversation_id: int) -> List[Message]:
        await self._enter("list_messages", conversation_id)
        if conversation_id not in self.conversations:
            raise NotFoundError()
        return list(self.messages.get(conversation_id, []))

    async def send_message(
        self, subject_id: int, text: str, client_token: Optional[str] = None
    ) -> SentMessage:
        await self._enter("send_message", subject_id)
        conversation = next(
            (conv for conv in self.conversations.values() if conv.subject_id == subject_id), None
        )
        if conversation is None:
            conversation = make_conversation(self._next_conversation_id, subject_id)
            self._next_conversation_id += 1
            self.conversations[conversation.id] = conversation

        history = self.messages.setdefault(conversation.id, [])
        message = next(
            (m for m in history if client_token and m.client_token == client_token), None
        )
        if message is None:
            self._minute += 1
            message = make_message(
                self._next_message_id, conversation.id, text, self._minute,
                sender_id=PERAWAT_USER_ID, client_token=client_token,
            )
            self._next_message_id += 1
            history.append(message)
            self.conversations[conversation.id] = conversation.model_copy(update={
                "last_message_text": text,
                "last_message_at": message.created_at,
                "last_message_sender_id": PERAWAT_USER_ID,
            })

        if self._lost_send is not None:
            exc, self._lost_send = self._lost_send, None
            raise exc
        return SentMessage(conversation_id=conversation.id, message=message)

    async def mark_read(self, conversation_id: int) -> Optional[MarkReadResponse]:
        await self._enter("mark_read", conversation_id)
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError()
        self.conversations[conversation_id] = conversation.model_copy(update={"unread_count": 0})
        return MarkReadResponse(message="ok", read_count=conversation.unread_count)

    async def resolve_participant(self, subject_id: int) -> ParticipantInfo:
        await self._enter("resolve_participant", subject_id)
        if subject_id not in self.participants:
            raise ResolutionMiss()
        return self.participants[subject_id]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def resolver(transport):
    return ParticipantResolver(transport)


@pytest.fixture
def cache(transport):
    return ConversationCache(transport, current_user_id=PERAWAT_USER_ID, refresh_interval=0)


@pytest.fixture
def controller(cache, transport, resolver):
    return ActiveConversation(cache, transport, resolver)


@pytest.fixture
def conversation_list(cache, resolver):
    return ConversationListViewModel(cache, resolver)
