"""Minimal observer base used by the cache, resolver and view models."""

import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class Observable:
    """Keeps a list of listeners and calls them after each state change."""

    def __init__(self):
        self._listeners: List[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            Callable that removes the listener again. Calling it twice is harmless.
        """
        self._listeners.append(listener)
        if len(self._listeners) == 1:
            self._on_first_subscriber()

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
                if not self._listeners:
                    self._on_last_unsubscribe()

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                # One broken listener must not stop the others
                logger.exception(f"Listener {listener!r} failed")

    def _on_first_subscriber(self) -> None:
        pass

    def _on_last_unsubscribe(self) -> None:
        pass
