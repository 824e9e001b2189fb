from .base import Base
from .chat_message import ROLE_ASSISTANT, ROLE_USER, ChatMessage
from .chat_session import ChatSession

__all__ = ["Base", "ChatMessage", "ChatSession", "ROLE_ASSISTANT", "ROLE_USER"]
