from . import message_repository, session_repository
from .session_repository import SessionListFilters

__all__ = ["SessionListFilters", "message_repository", "session_repository"]
