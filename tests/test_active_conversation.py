"""Tests for ActiveConversation."""

import asyncio

import pytest

from tests.conftest import make_conversation, make_message, settle
from wellmom_chat.core.exceptions import (
    NoActiveConversationError,
    NotFoundError,
    TransportError,
)
from wellmom_chat.schemas import ParticipantInfo
from wellmom_chat.services.active_conversation import NAME_FALLBACK, NAME_LOADING_PLACEHOLDER


@pytest.fixture
async def two_conversations(cache, transport):
    transport.add_conversation(make_conversation(1, 42, display_name="Siti", unread_count=3))
    transport.add_conversation(make_conversation(2, 43, display_name="Dewi"))
    transport.messages[1] = [make_message(10, 1, "Halo bu", 1), make_message(11, 1, "Ya", 2)]
    transport.messages[2] = [make_message(20, 2, "Selamat pagi", 3)]
    await cache.refresh()
    return transport


@pytest.mark.asyncio
class TestOpen:
    """Tests for opening and switching conversations."""

    async def test_open_conversation_loads_messages(self, controller, two_conversations):
        """Test that opening a conversation loads its history."""
        await controller.open_conversation(1)

        assert controller.conversation_id == 1
        assert controller.subject_id == 42
        assert not controller.is_compose
        assert not controller.is_loading
        assert [m.id for m in controller.messages] == [10, 11]
        assert controller.display_name == "Siti"

    async def test_open_unknown_conversation(self, controller):
        """Test that an id missing from the cache raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await controller.open_conversation(999)
        assert not controller.is_open

    async def test_rapid_switch_drops_stale_load(self, controller, cache, two_conversations):
        """Test that the history of a conversation the user left is never applied."""
        gate = two_conversations.hold("list_messages", 1)
        first = asyncio.create_task(controller.open_conversation(1))
        await settle()
        generation = controller.generation

        await controller.open_conversation(2)
        gate.set()
        await first
        await settle()

        assert controller.generation > generation
        assert controller.conversation_id == 2
        assert [m.id for m in controller.messages] == [20]
        assert cache.messages_for(1) == []

    async def test_load_error_is_recorded(self, controller, two_conversations):
        """Test that a failed load sets `error` instead of raising."""
        two_conversations.fail("list_messages", TransportError())

        await controller.open_conversation(1)

        assert controller.error == TransportError.default_detail
        assert not controller.is_loading
        assert controller.messages == []

        await controller.reload()
        assert controller.error is None
        assert len(controller.messages) == 2

    async def test_close_unsubscribes(self, controller, cache, resolver, two_conversations):
        """Test that close releases the cache and resolver subscriptions."""
        await controller.open_conversation(1)
        assert cache.listener_count == 1

        controller.close()

        assert not controller.is_open
        assert controller.messages == []
        assert cache.listener_count == 0
        assert resolver.listener_count == 0


@pytest.mark.asyncio
class TestComposeMode:
    """Tests for composing to an ibu hamil without a conversation."""

    async def test_open_subject_without_conversation(self, controller):
        """Test that compose mode shows a virtual conversation and no history."""
        await controller.open_subject(42)

        assert controller.is_compose
        assert controller.conversation.is_virtual
        assert controller.conversation.subject_id == 42
        assert controller.messages == []

    async def test_open_subject_with_conversation(self, controller, two_conversations):
        """Test that open_subject reuses an existing conversation."""
        await controller.open_subject(43)

        assert controller.conversation_id == 2
        assert [m.id for m in controller.messages] == [20]

    async def test_first_send_promotes_to_conversation(self, controller, cache):
        """Test that a successful first send switches to the created conversation."""
        await controller.open_subject(42)

        task = controller.send("Halo")
        assert controller.is_sending
        assert [m.text for m in controller.messages] == ["Halo"]
        assert controller.messages[0].pending

        await task
        await settle()

        assert not controller.is_compose
        assert controller.conversation_id == 100
        assert len(cache.conversations) == 1
        messages = controller.messages
        assert len(messages) == 1
        assert not messages[0].pending

    async def test_refresh_promotes_compose_target(self, controller, cache, transport):
        """Test that a conversation discovered by refresh is adopted."""
        await controller.open_subject(42)
        transport.add_conversation(make_conversation(5, 42))
        transport.messages[5] = [make_message(50, 5, "Dari bidan lain", 1)]

        await cache.refresh()
        await settle()

        assert controller.conversation_id == 5
        assert [m.id for m in controller.messages] == [50]


@pytest.mark.asyncio
class TestDisplayName:
    """Tests for the header name."""

    async def test_name_resolved_when_missing(self, controller, transport):
        """Test that a missing name shows a placeholder until resolved."""
        transport.participants[42] = ParticipantInfo(name="Siti Aminah", photo_url="/files/siti.jpg")

        await controller.open_subject(42)
        assert controller.display_name == NAME_LOADING_PLACEHOLDER

        await settle()
        assert controller.display_name == "Siti Aminah"
        assert controller.display_photo_url == "/files/siti.jpg"

    async def test_fallback_name_when_lookup_fails(self, controller):
        """Test that an unresolvable ibu hamil gets the fallback name."""
        await controller.open_subject(42)
        await settle()

        assert controller.display_name == NAME_FALLBACK


@pytest.mark.asyncio
class TestActions:
    """Tests for send and mark-read through the controller."""

    async def test_send_without_target(self, controller):
        """Test that sending with nothing open raises."""
        with pytest.raises(NoActiveConversationError):
            controller.send("Halo")

    async def test_mark_read(self, controller, cache, two_conversations):
        """Test that mark_read clears the open conversation's unread count."""
        await controller.open_conversation(1)

        await controller.mark_read()

        assert cache.get(1).unread_count == 0
        assert cache.get(2).unread_count == 0
        assert two_conversations.count("mark_read", 1) == 1

    async def test_mark_read_in_compose_mode_is_noop(self, controller, transport):
        """Test that compose mode has nothing to mark read."""
        await controller.open_subject(42)

        await controller.mark_read()

        assert transport.count("mark_read") == 0
