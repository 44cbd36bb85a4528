from agentstream.chat import ChatController, TurnResult
from agentstream.client import AgentClient
from agentstream.config import Settings
from agentstream.instrumentation import instrument, uninstrument
from agentstream.message import Conversation, Message, MessageRole, MessageStatus

__all__ = [
    "AgentClient",
    "ChatController",
    "Conversation",
    "Message",
    "MessageRole",
    "MessageStatus",
    "Settings",
    "TurnResult",
    "instrument",
    "uninstrument",
]
