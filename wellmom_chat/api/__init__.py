"""Backend API access."""

from .client import ChatApiClient, ChatTransport, TokenSource

__all__ = ["ChatApiClient", "ChatTransport", "TokenSource"]
