"""Realtime push to connected clients."""
from realtime.access import ConversationAccess
from realtime.auth import TokenVerifier
from realtime.broadcaster import Connection, EventBroadcaster, conversation_room, user_room

__all__ = [
    "TokenVerifier", "EventBroadcaster", "ConversationAccess", "Connection",
    "user_room", "conversation_room",
]
