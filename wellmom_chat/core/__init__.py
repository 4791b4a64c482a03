"""Core module exports."""

from .exceptions import (
    ChatException,
    TransportError,
    InvalidResponseError,
    RejectionError,
    NotAuthorizedError,
    NotFoundError,
    InvalidMessageError,
    NoActiveConversationError,
    ResolutionMiss,
)
from .observable import Observable
from .scheduler import RefreshScheduler

__all__ = [
    "ChatException",
    "TransportError",
    "InvalidResponseError",
    "RejectionError",
    "NotAuthorizedError",
    "NotFoundError",
    "InvalidMessageError",
    "NoActiveConversationError",
    "ResolutionMiss",
    "Observable",
    "RefreshScheduler",
]
