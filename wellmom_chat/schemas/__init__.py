from .conversation import (
	Conversation,
	ConversationListResponse,
)
from .message import (
	SenderRole,
	Message,
	MessageCreate,
	SentMessage,
	MessageListResponse,
	MarkReadRequest,
	MarkReadResponse,
	UnreadCountResponse,
	message_sort_key,
)
from .participant import (
	ParticipantInfo,
)
from .event import (
	ChatEventType,
	ChatEvent,
)
