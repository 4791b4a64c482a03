from .participant_resolver import ParticipantResolver, ResolutionStatus
from .conversation_cache import ConversationCache
from .active_conversation import ActiveConversation
from .conversation_list import ConversationListItem, ConversationListViewModel
from .chat_session import ChatSession

__all__ = [
    "ParticipantResolver",
    "ResolutionStatus",
    "ConversationCache",
    "ActiveConversation",
    "ConversationListItem",
    "ConversationListViewModel",
    "ChatSession",
]
