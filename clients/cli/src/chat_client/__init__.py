"""Client-side state engine for two-party real-time conversations."""

from .client import ChatClient
from .config import ClientConfig, load_client_config_from_env
from .conversation import ConversationState, RoomSession
from .message_table import MessageTable
from .models import Message, MessageStatus, MessageType, Reaction, Reply

__all__ = [
    "ChatClient",
    "ClientConfig",
    "load_client_config_from_env",
    "ConversationState",
    "RoomSession",
    "MessageTable",
    "Message",
    "MessageStatus",
    "MessageType",
    "Reaction",
    "Reply",
]
