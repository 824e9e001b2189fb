from __future__ import annotations

from sqlalchemy.orm import Session

from aichat.errors import ErrorCode, message_not_found
from aichat.logging_config import logger
from aichat.models import ChatMessage
from aichat.repositories import message_repository, session_repository

from .session_service import get_owned_session


def list_messages(
    db: Session,
    *,
    session_id: str,
    user_id: str,
    page_no: int = 1,
    page_size: int = 50,
) -> tuple[list[ChatMessage], int]:
    get_owned_session(db, session_id=session_id, user_id=user_id)
    return message_repository.list_messages(
        db, session_id=session_id, page_no=page_no, page_size=page_size
    )


def get_message(db: Session, *, message_id: str, user_id: str) -> ChatMessage:
    message = message_repository.get_message(db, message_id)
    if message is None:
        raise message_not_found()
    session = session_repository.get_session(db, message.session_id)
    if session is None or session.user_id != user_id:
        logger.warning(
            "拒绝访问消息: message_id=%s user_id=%s code=%d",
            message_id,
            user_id,
            int(ErrorCode.MESSAGE_ACCESS_DENIED),
        )
        raise message_not_found()
    return message


__all__ = ["get_message", "list_messages"]
