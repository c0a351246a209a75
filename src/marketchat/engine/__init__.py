"""Realtime conversation engine."""

from .channels import ChannelSpec, RealtimeChannelManager
from .inbox import Inbox, InboxEntry
from .notifications import DispatcherState, NotificationDispatcher, ViewState
from .resolver import ChatResolver
from .stream import ConversationSession, MessageStream, SendResult
from .unread import UnreadBadge, UnreadCounterService

__all__ = [
    "ChannelSpec",
    "RealtimeChannelManager",
    "Inbox",
    "InboxEntry",
    "DispatcherState",
    "NotificationDispatcher",
    "ViewState",
    "ChatResolver",
    "ConversationSession",
    "MessageStream",
    "SendResult",
    "UnreadBadge",
    "UnreadCounterService",
]
