"""Client-side cache of conversations and messages for the current perawat."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError

from wellmom_chat.api.client import ChatTransport
from wellmom_chat.config import settings
from wellmom_chat.core.exceptions import (
    ChatException,
    InvalidMessageError,
    NotFoundError,
)
from wellmom_chat.core.observable import Observable
from wellmom_chat.core.scheduler import RefreshScheduler
from wellmom_chat.schemas import (
    ChatEvent,
    ChatEventType,
    Conversation,
    Message,
    SenderRole,
    SentMessage,
    message_sort_key,
)
from wellmom_chat.schemas.message import correlates

logger = logging.getLogger(__name__)

_NO_WATERMARK = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_newer(candidate: Optional[datetime], reference: Optional[datetime]) -> bool:
    """True when `candidate` is strictly more recent than `reference` (None is oldest)."""
    if candidate is None:
        return False
    return reference is None or candidate > reference


class ConversationCache(Observable):
    """
    Single source of truth for conversations and their messages.

    Owns the optimistic send protocol and the unread-count bookkeeping.
    Other components read through the getters and mutate only through
    `refresh`, `send`, `mark_read`, `store_messages` and the push-event
    methods.

    Invariants:
    - at most one conversation per subject (ibu hamil) id
    - a pending message is never shown next to its confirmed copy
    - unread_count is 0 right after a successful mark-read and a refresh
      that has not observed the read yet does not bring the old count back
    """

    def __init__(
        self,
        transport: ChatTransport,
        current_user_id: Optional[int] = None,
        refresh_interval: Optional[float] = None,
    ):
        """
        Initialize cache.

        Args:
            transport: Backend access
            current_user_id: User id of the logged-in perawat, used to tell own messages apart
            refresh_interval: Polling interval in seconds while someone is subscribed.
                Defaults to REFRESH_INTERVAL_SECONDS; 0 disables polling
        """
        super().__init__()
        self._transport = transport
        self.current_user_id = current_user_id
        self.match_window = settings.PENDING_MATCH_WINDOW_SECONDS
        self.max_message_length = settings.MAX_MESSAGE_LENGTH

        self._conversations: Dict[int, Conversation] = {}
        self._by_subject: Dict[int, int] = {}  # subject_id -> conversation_id
        self._messages: Dict[int, List[Message]] = {}  # conversation_id -> confirmed
        self._pending: Dict[int, List[Message]] = {}  # subject_id -> optimistic
        self._sending: Dict[int, int] = {}  # subject_id -> sends in flight
        self._marking: Dict[int, asyncio.Task] = {}
        self._read_watermarks: Dict[int, Optional[datetime]] = {}
        self._read_at: Dict[int, int] = {}  # conversation_id -> clock value of the last read
        self._server_last: Dict[int, Message] = {}  # subject_id -> newest confirmed message seen

        # Local mutation clock, compared against the clock value when a refresh started
        self._clock = 0
        self._touched: Dict[int, int] = {}

        self._refresh_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self.is_loading = False
        self.last_error: Optional[ChatException] = None

        interval = settings.REFRESH_INTERVAL_SECONDS if refresh_interval is None else refresh_interval
        self.scheduler = RefreshScheduler(self.refresh, interval)

    # ------------------------------------------------------------------
    # Getters
    # ------------------------------------------------------------------

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations.values())

    def get(self, conversation_id: int) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def get_by_subject(self, subject_id: int) -> Optional[Conversation]:
        conversation_id = self._by_subject.get(subject_id)
        if conversation_id is None:
            return None
        return self._conversations.get(conversation_id)

    def is_sending(self, subject_id: int) -> bool:
        return self._sending.get(subject_id, 0) > 0

    def is_marking_read(self, conversation_id: int) -> bool:
        return conversation_id in self._marking

    @property
    def total_unread(self) -> int:
        return sum(conv.unread_count for conv in self._conversations.values())

    def pending_for(self, subject_id: int) -> List[Message]:
        return list(self._pending.get(subject_id, []))

    def messages_for(self, conversation_id: int) -> List[Message]:
        """Confirmed messages plus pending ones that have no confirmed copy yet, ordered."""
        confirmed = list(self._messages.get(conversation_id, []))
        conversation = self._conversations.get(conversation_id)
        pending = self._pending.get(conversation.subject_id, []) if conversation else []
        return self._with_pending(confirmed, pending)

    def _with_pending(self, confirmed: List[Message], pending: List[Message]) -> List[Message]:
        absorbed: Set[int] = set()
        unmatched = []
        for item in pending:
            match = next(
                (
                    index for index, message in enumerate(confirmed)
                    if index not in absorbed and correlates(message, item, self.match_window)
                ),
                None,
            )
            if match is None:
                unmatched.append(item)
            else:
                absorbed.add(match)
        return sorted(confirmed + unmatched, key=message_sort_key)

    # ------------------------------------------------------------------
    # Internal bookkeeping
    # ------------------------------------------------------------------

    def _touch(self, subject_id: int) -> None:
        self._clock += 1
        self._touched[subject_id] = self._clock

    def _put(self, conversation: Conversation) -> None:
        """Insert/replace a persisted conversation, keeping one record per subject."""
        previous_id = self._by_subject.get(conversation.subject_id)
        if previous_id is not None and previous_id != conversation.id:
            self._conversations.pop(previous_id, None)
            moved = self._messages.pop(previous_id, [])
            if moved:
                self._store(moved, conversation.id)
            logger.warning(
                f"Conversation {previous_id} replaced by {conversation.id} "
                f"for ibu_hamil_id={conversation.subject_id}"
            )
        self._conversations[conversation.id] = conversation
        self._by_subject[conversation.subject_id] = conversation.id

    def _own(self, message: Message) -> Message:
        if self.current_user_id is not None:
            is_own = message.sender_id == self.current_user_id
        else:
            is_own = message.sender_role == SenderRole.STAFF
        if message.is_own == is_own:
            return message
        return message.model_copy(update={"is_own": is_own})

    def _store(self, messages: Iterable[Message], conversation_id: int) -> None:
        by_id = {message.id: message for message in self._messages.get(conversation_id, [])}
        for message in messages:
            if message.id is None:
                continue
            by_id[message.id] = self._own(message)
        self._messages[conversation_id] = sorted(by_id.values(), key=message_sort_key)

    def _record_server_last(self, subject_id: int, message: Message) -> None:
        current = self._server_last.get(subject_id)
        if current is None or not _is_newer(current.created_at, message.created_at):
            self._server_last[subject_id] = message

    def _latest_known(self, subject_id: int, conversation_id: Optional[int]) -> Dict[str, Any]:
        """Newest last-message values among pending, stored and server-reported messages."""
        candidates = list(self._pending.get(subject_id, []))
        if conversation_id is not None and self._messages.get(conversation_id):
            candidates.append(self._messages[conversation_id][-1])
        if subject_id in self._server_last:
            candidates.append(self._server_last[subject_id])
        if not candidates:
            return {"last_message_text": None, "last_message_at": None, "last_message_sender_id": None}
        newest = max(candidates, key=lambda message: message.created_at)
        return {
            "last_message_text": newest.text,
            "last_message_at": newest.created_at,
            "last_message_sender_id": newest.sender_id,
        }

    def _server_watermark(self, subject_id: int) -> Optional[datetime]:
        """Newest server timestamp seen for a subject; optimistic local times never count."""
        message = self._server_last.get(subject_id)
        return message.created_at if message is not None else None

    def _discard_pending(self, subject_id: int, pending: Message) -> None:
        queue = self._pending.get(subject_id, [])
        if pending in queue:
            queue.remove(pending)
        if not queue:
            self._pending.pop(subject_id, None)

    def _mark_messages_read(self, conversation_id: int, own: bool) -> None:
        """Flag stored messages as read: own=True for messages the other side read."""
        now = _now()
        self._messages[conversation_id] = [
            message.model_copy(update={"is_read": True, "read_at": now})
            if message.is_own == own and not message.is_read
            else message
            for message in self._messages.get(conversation_id, [])
        ]

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Background refresh failed: {task.exception()}")

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> None:
        """
        Fetch the conversation list and merge it into the cache.

        Concurrent calls share one request. On failure the cache is left as
        it was, `last_error` is set and the error is re-raised.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(self._refresh())
        await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> None:
        started = self._clock
        self.is_loading = True
        self._notify()
        try:
            incoming = await self._transport.list_conversations()
        except ChatException as e:
            self.is_loading = False
            self.last_error = e
            logger.warning(f"Failed to fetch conversations: {e.detail}")
            self._notify()
            raise
        except asyncio.CancelledError:
            self.is_loading = False
            raise

        for record in incoming:
            if record.id is not None:
                self._merge(record, started)
        self.is_loading = False
        self.last_error = None
        logger.debug(f"Refreshed {len(incoming)} conversations")
        self._notify()

    def _merge(self, incoming: Conversation, started: int) -> None:
        subject_id = incoming.subject_id
        if incoming.last_message_at is not None and incoming.last_message_text is not None:
            self._record_server_last(
                subject_id,
                Message(
                    id=None,
                    conversation_id=incoming.id,
                    sender_id=incoming.last_message_sender_id,
                    text=incoming.last_message_text,
                    created_at=incoming.last_message_at,
                ),
            )

        local = self._conversations.get(incoming.id) or self.get_by_subject(subject_id)
        if local is None:
            self._put(incoming)
            return

        stale = self._touched.get(subject_id, 0) > started
        updates: Dict[str, Any] = {
            "display_name": incoming.display_name or local.display_name,
            "display_photo_url": incoming.display_photo_url or local.display_photo_url,
            "unread_count": self._merge_unread(local, incoming, started, stale),
        }
        if _is_newer(local.last_message_at, incoming.last_message_at):
            # A send or pushed message the snapshot has not seen yet
            updates.update(
                last_message_text=local.last_message_text,
                last_message_at=local.last_message_at,
                last_message_sender_id=local.last_message_sender_id,
            )
        self._put(incoming.model_copy(update=updates))

    def _merge_unread(
        self, local: Conversation, incoming: Conversation, started: int, stale: bool
    ) -> int:
        if incoming.id in self._marking:
            return 0
        if self._read_at.get(incoming.id, 0) > started:
            # Snapshot predates our read
            return local.unread_count
        watermark = self._read_watermarks.get(incoming.id, _NO_WATERMARK)
        if watermark is not _NO_WATERMARK:
            if not _is_newer(incoming.last_message_at, watermark):
                # Server has not observed our read yet
                return 0
            if incoming.last_message_sender_id is not None and incoming.last_message_sender_id == self.current_user_id:
                # Only our own messages arrived since the read
                return local.unread_count
        if stale:
            return max(local.unread_count, incoming.unread_count)
        return incoming.unread_count

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def _validate_text(self, text: str) -> str:
        stripped = (text or "").strip()
        if not stripped:
            raise InvalidMessageError()
        if len(stripped) > self.max_message_length:
            raise InvalidMessageError(f"Pesan maksimal {self.max_message_length} karakter.")
        return stripped

    def send(
        self, subject_id: int, text: str, client_token: Optional[str] = None
    ) -> "asyncio.Task[Message]":
        """
        Send a message to an ibu hamil, with or without an existing conversation.

        The optimistic update (pending message, last message preview) is
        applied before this method returns; the returned task resolves to the
        confirmed message. On failure the optimistic state is rolled back and
        the error is raised with `failed_text` and `client_token` set, so the
        caller can offer a retry that reuses the same token.

        Args:
            subject_id: ID of ibu hamil
            text: Message text, trimmed before sending
            client_token: Idempotency token of an earlier failed attempt

        Raises:
            InvalidMessageError: Text is empty or too long (raised immediately)
        """
        loop = asyncio.get_running_loop()
        text = self._validate_text(text)
        conversation = self.get_by_subject(subject_id)

        created_at = _now()
        if conversation is not None and conversation.last_message_at and conversation.last_message_at > created_at:
            # Keep the bubble last even if the local clock is behind the server
            created_at = conversation.last_message_at
        pending = Message(
            id=None,
            conversation_id=conversation.id if conversation else None,
            sender_id=self.current_user_id,
            sender_role=SenderRole.STAFF,
            text=text,
            created_at=created_at,
            client_token=client_token or uuid.uuid4().hex,
            pending=True,
            is_own=True,
        )
        self._pending.setdefault(subject_id, []).append(pending)
        self._sending[subject_id] = self._sending.get(subject_id, 0) + 1
        if conversation is not None:
            self._put(conversation.model_copy(update={
                "last_message_text": text,
                "last_message_at": created_at,
                "last_message_sender_id": self.current_user_id,
            }))
        self._touch(subject_id)
        self._notify()
        return loop.create_task(self._deliver(subject_id, pending))

    async def _deliver(self, subject_id: int, pending: Message) -> Message:
        delivered = False
        try:
            sent = await self._transport.send_message(
                subject_id, pending.text, client_token=pending.client_token
            )
            delivered = True
        except ChatException as e:
            e.failed_text = pending.text
            e.client_token = pending.client_token
            logger.warning(f"Failed to send message to ibu_hamil_id={subject_id}: {e.detail}")
            raise
        finally:
            count = self._sending.get(subject_id, 1) - 1
            if count > 0:
                self._sending[subject_id] = count
            else:
                self._sending.pop(subject_id, None)
            if not delivered:
                self._rollback_send(subject_id, pending)
        return self._confirm_send(subject_id, pending, sent)

    def _rollback_send(self, subject_id: int, pending: Message) -> None:
        self._discard_pending(subject_id, pending)
        conversation = self.get_by_subject(subject_id)
        if (
            conversation is not None
            and conversation.last_message_at == pending.created_at
            and conversation.last_message_text == pending.text
        ):
            self._put(conversation.model_copy(
                update=self._latest_known(subject_id, conversation.id)
            ))
        self._touch(subject_id)
        self._notify()

    def _confirm_send(self, subject_id: int, pending: Message, sent: SentMessage) -> Message:
        message = self._own(sent.message)
        self._discard_pending(subject_id, pending)

        conversation = self._conversations.get(sent.conversation_id) or self.get_by_subject(subject_id)
        last_message = {
            "last_message_text": message.text,
            "last_message_at": message.created_at,
            "last_message_sender_id": message.sender_id,
        }
        if conversation is None:
            conversation = Conversation(
                id=sent.conversation_id,
                subject_id=subject_id,
                unread_count=0,
                created_at=message.created_at,
                **last_message,
            )
            logger.info(
                f"Conversation {sent.conversation_id} started with ibu_hamil_id={subject_id}"
            )
        else:
            updates: Dict[str, Any] = {"id": sent.conversation_id}
            if conversation.last_message_at == pending.created_at or not _is_newer(
                conversation.last_message_at, message.created_at
            ):
                updates.update(last_message)
            conversation = conversation.model_copy(update=updates)

        self._put(conversation)
        self._store([message], sent.conversation_id)
        self._record_server_last(subject_id, message)
        self._touch(subject_id)
        self._notify()
        return message

    # ------------------------------------------------------------------
    # Mark read
    # ------------------------------------------------------------------

    def mark_read(self, conversation_id: int) -> "asyncio.Task[None]":
        """
        Mark all messages of a conversation as read.

        The unread count drops to 0 before this returns. Concurrent calls for
        the same conversation share one request. On failure the count is
        restored (plus anything that arrived meanwhile) and the error raised.
        """
        loop = asyncio.get_running_loop()
        existing = self._marking.get(conversation_id)
        if existing is not None:
            return existing

        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError()

        previous_count = conversation.unread_count
        previous_watermark = self._read_watermarks.get(conversation_id, _NO_WATERMARK)
        previous_read_at = self._read_at.get(conversation_id)
        self._read_watermarks[conversation_id] = self._server_watermark(conversation.subject_id)
        self._put(conversation.model_copy(update={"unread_count": 0}))
        self._touch(conversation.subject_id)
        self._read_at[conversation_id] = self._clock
        self._notify()

        task = loop.create_task(
            self._confirm_read(conversation_id, previous_count, previous_watermark, previous_read_at)
        )
        self._marking[conversation_id] = task
        return task

    async def _confirm_read(
        self,
        conversation_id: int,
        previous_count: int,
        previous_watermark: object,
        previous_read_at: Optional[int],
    ) -> None:
        succeeded = False
        try:
            response = await self._transport.mark_read(conversation_id)
            succeeded = True
        except ChatException as e:
            logger.warning(f"Failed to mark conversation {conversation_id} as read: {e.detail}")
            raise
        finally:
            self._marking.pop(conversation_id, None)
            if not succeeded:
                self._rollback_read(
                    conversation_id, previous_count, previous_watermark, previous_read_at
                )

        if response is not None:
            logger.debug(f"Conversation {conversation_id}: {response.read_count} messages marked read")
        self._mark_messages_read(conversation_id, own=False)
        self._notify()

    def _rollback_read(
        self,
        conversation_id: int,
        previous_count: int,
        previous_watermark: object,
        previous_read_at: Optional[int],
    ) -> None:
        if previous_watermark is _NO_WATERMARK:
            self._read_watermarks.pop(conversation_id, None)
        else:
            self._read_watermarks[conversation_id] = previous_watermark
        if previous_read_at is None:
            self._read_at.pop(conversation_id, None)
        else:
            self._read_at[conversation_id] = previous_read_at
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        self._put(conversation.model_copy(
            update={"unread_count": conversation.unread_count + previous_count}
        ))
        self._touch(conversation.subject_id)
        self._notify()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def store_messages(self, conversation_id: int, messages: List[Message]) -> None:
        """Merge fetched messages into the conversation's history."""
        self._store(messages, conversation_id)
        conversation = self._conversations.get(conversation_id)
        if conversation is not None and messages:
            newest = max(messages, key=message_sort_key)
            self._record_server_last(conversation.subject_id, newest)
            if _is_newer(newest.created_at, conversation.last_message_at):
                self._put(conversation.model_copy(update={
                    "last_message_text": newest.text,
                    "last_message_at": newest.created_at,
                    "last_message_sender_id": newest.sender_id,
                }))
        self._notify()

    # ------------------------------------------------------------------
    # Push events
    # ------------------------------------------------------------------

    def apply_incoming_message(self, message: Message) -> bool:
        """
        Apply a message pushed by the backend.

        Returns False when the conversation is unknown; a refresh is then
        started in the background.
        """
        conversation = (
            self._conversations.get(message.conversation_id)
            if message.conversation_id is not None else None
        )
        if conversation is None or message.id is None:
            logger.info(
                f"Message {message.id} for unknown conversation {message.conversation_id}, refreshing"
            )
            self._spawn(self.refresh())
            return False

        message = self._own(message)
        already_known = any(m.id == message.id for m in self._messages.get(conversation.id, []))
        self._store([message], conversation.id)
        self._record_server_last(conversation.subject_id, message)
        if not already_known:
            updates: Dict[str, Any] = {}
            if not _is_newer(conversation.last_message_at, message.created_at):
                updates.update(
                    last_message_text=message.text,
                    last_message_at=message.created_at,
                    last_message_sender_id=message.sender_id,
                )
            if not message.is_own and not message.is_read:
                updates["unread_count"] = conversation.unread_count + 1
            if updates:
                self._put(conversation.model_copy(update=updates))
        self._touch(conversation.subject_id)
        self._notify()
        return True

    def apply_read_receipt(self, conversation_id: int, reader_user_id: Optional[int]) -> bool:
        """Apply a read receipt: ours zeroes the unread count, theirs flags our messages read."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return False
        own_read = reader_user_id is not None and reader_user_id == self.current_user_id
        if own_read:
            self._read_watermarks[conversation_id] = self._server_watermark(conversation.subject_id)
            self._put(conversation.model_copy(update={"unread_count": 0}))
            self._mark_messages_read(conversation_id, own=False)
        else:
            self._mark_messages_read(conversation_id, own=True)
        self._touch(conversation.subject_id)
        if own_read:
            self._read_at[conversation_id] = self._clock
        self._notify()
        return True

    def handle_event(self, payload: Union[ChatEvent, Dict[str, Any]]) -> bool:
        """Dispatch a realtime event payload (`new_message` / `read_receipt`)."""
        if isinstance(payload, ChatEvent):
            event = payload
        else:
            try:
                event = ChatEvent.model_validate(payload)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed chat event: {e}")
                return False

        if event.type == ChatEventType.NEW_MESSAGE and event.message is not None:
            return self.apply_incoming_message(event.message)
        if event.type == ChatEventType.READ_RECEIPT and event.conversation_id is not None:
            return self.apply_read_receipt(event.conversation_id, event.reader_user_id)
        if event.type == ChatEventType.ERROR:
            logger.warning(f"Chat event error: {payload}")
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _on_first_subscriber(self) -> None:
        self.scheduler.start()

    def _on_last_unsubscribe(self) -> None:
        self.scheduler.stop()

    def clear_error(self) -> None:
        self.last_error = None
        self._notify()

    def reset(self) -> None:
        """Forget all cached state (e.g. on logout)."""
        self._conversations.clear()
        self._by_subject.clear()
        self._messages.clear()
        self._pending.clear()
        self._read_watermarks.clear()
        self._read_at.clear()
        self._server_last.clear()
        self._touched.clear()
        self.last_error = None
        self._notify()

    def close(self) -> None:
        self.scheduler.stop()
        for task in list(self._background):
            task.cancel()
        if self._refresh_task is not None:
            self._refresh_task.cancel()
