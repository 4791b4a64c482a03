"""Tests for the observer base, the refresh scheduler and the session wiring."""

import asyncio
import logging

import pytest

from tests.conftest import PERAWAT_USER_ID, FakeTransport, make_conversation
from wellmom_chat.config import configure_logging, settings
from wellmom_chat.core import Observable, RefreshScheduler, TransportError
from wellmom_chat.services import ChatSession


class Counter(Observable):
    def __init__(self):
        super().__init__()
        self.started = 0
        self.stopped = 0

    def _on_first_subscriber(self):
        self.started += 1

    def _on_last_unsubscribe(self):
        self.stopped += 1


class TestObservable:
    """Tests for subscribe/unsubscribe."""

    def test_first_and_last_subscriber_hooks(self):
        """Test that hooks fire on the first subscribe and last unsubscribe only."""
        counter = Counter()
        first = counter.subscribe(lambda: None)
        second = counter.subscribe(lambda: None)
        assert counter.started == 1

        first()
        first()
        assert counter.stopped == 0
        second()
        assert counter.stopped == 1
        assert counter.listener_count == 0

    def test_failing_listener_does_not_block_others(self):
        """Test that one raising listener does not stop the rest."""
        counter = Counter()
        seen = []

        def broken():
            raise RuntimeError("boom")

        counter.subscribe(broken)
        counter.subscribe(lambda: seen.append(True))
        counter._notify()

        assert seen == [True]


class TestRefreshScheduler:
    """Tests for the periodic refresh task."""

    def test_not_started_without_loop(self):
        """Test that start() outside an event loop is a no-op."""
        async def tick():
            pass

        assert not RefreshScheduler(tick, 1.0).start()

    @pytest.mark.asyncio
    async def test_keeps_ticking_after_failure(self):
        """Test that a failed tick does not stop the scheduler."""
        ticks = []

        async def tick():
            ticks.append(1)
            if len(ticks) == 1:
                raise TransportError()

        scheduler = RefreshScheduler(tick, 0.01)
        assert scheduler.start()
        assert not scheduler.start()
        await asyncio.sleep(0.05)
        scheduler.stop()

        assert len(ticks) >= 2
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged_and_ticking_continues(self, caplog):
        """Test that a non-chat exception is logged and does not end polling."""
        ticks = []

        async def tick():
            ticks.append(1)
            if len(ticks) == 1:
                raise RuntimeError("boom")

        scheduler = RefreshScheduler(tick, 0.01)
        with caplog.at_level(logging.ERROR, logger="wellmom_chat.core.scheduler"):
            scheduler.start()
            await asyncio.sleep(0.05)
            assert scheduler.running
            scheduler.stop()

        assert len(ticks) >= 2
        assert "Unexpected error in scheduled refresh" in caplog.text


@pytest.mark.asyncio
class TestChatSession:
    """Tests for ChatSession."""

    async def test_requires_token_or_transport(self):
        with pytest.raises(ValueError):
            ChatSession()

    async def test_start_loads_list(self):
        """Test that start() loads conversations and shares one cache."""
        transport = FakeTransport()
        transport.add_conversation(make_conversation(1, 42, display_name="Siti"))

        async with ChatSession(
            current_user_id=PERAWAT_USER_ID, transport=transport, refresh_interval=0
        ) as session:
            await session.start()
            await session.active.open_subject(42)

            assert [row.display_name for row in session.conversation_list.items()] == ["Siti"]
            assert session.active.conversation_id == 1

        assert not session.active.is_open


class TestConfig:
    """Tests for settings and logging setup."""

    def test_defaults(self):
        assert settings.API_PREFIX == "/api/v1"
        assert settings.MAX_MESSAGE_LENGTH == 5000

    def test_configure_logging(self, monkeypatch):
        """Test that DEBUG overrides LOG_LEVEL when no level is given."""
        monkeypatch.setattr(settings, "DEBUG", True)
        configure_logging()
        assert logging.getLogger("wellmom_chat").level == logging.DEBUG

        configure_logging("warning")
        assert logging.getLogger("wellmom_chat").level == logging.WARNING
