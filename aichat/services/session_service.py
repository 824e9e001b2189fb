from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from aichat.errors import ErrorCode, session_not_found, validation_failed
from aichat.logging_config import logger
from aichat.models import ChatMessage, ChatSession
from aichat.repositories import message_repository, session_repository
from aichat.repositories.session_repository import SessionListFilters
from aichat.settings import settings

DEFAULT_SESSION_TITLE = "新对话"
_DERIVED_TITLE_MAX_CHARS = 30


def derive_title(message: str) -> str:
    """First non-empty line of the first message, truncated for the session list."""
    for line in message.splitlines():
        line = line.strip()
        if line:
            if len(line) > _DERIVED_TITLE_MAX_CHARS:
                return line[: _DERIVED_TITLE_MAX_CHARS - 1] + "…"
            return line
    return DEFAULT_SESSION_TITLE


def new_chat_session(
    *,
    user_id: str,
    title: str | None = None,
    model_name: str | None = None,
    system_prompt: str | None = None,
    temperature: float | None = None,
    top_p: float | None = None,
    top_k: int | None = None,
    max_tokens: int | None = None,
    meta: dict[str, Any] | None = None,
) -> ChatSession:
    return ChatSession(
        user_id=user_id,
        title=title or DEFAULT_SESSION_TITLE,
        model_name=model_name or settings.genkit_model,
        system_prompt=system_prompt,
        temperature=temperature,
        top_p=top_p,
        top_k=top_k,
        max_tokens=max_tokens,
        meta=meta,
        is_pinned=False,
        is_archived=False,
        is_deleted=False,
        message_count=0,
    )


def get_owned_session(db: Session, *, session_id: str, user_id: str) -> ChatSession:
    """
    Load a live session owned by ``user_id``.

    Missing and foreign sessions raise the same error so callers cannot discover
    other users' session ids; the distinction is only logged.
    """
    session = session_repository.get_session(db, session_id)
    if session is None:
        raise session_not_found()
    if session.user_id != user_id:
        logger.warning(
            "拒绝访问会话: session_id=%s user_id=%s owner=%s code=%d",
            session_id,
            user_id,
            session.user_id,
            int(ErrorCode.SESSION_ACCESS_DENIED),
        )
        raise session_not_found()
    return session


def load_last_messages(db: Session, sessions: list[ChatSession]) -> dict[str, ChatMessage]:
    return message_repository.get_messages_by_ids(
        db, (s.last_message_id for s in sessions if s.last_message_id)
    )


def create_session(db: Session, *, user_id: str, **fields: Any) -> ChatSession:
    session = new_chat_session(user_id=user_id, **fields)
    session_repository.create_session(db, session)
    db.commit()
    logger.info("创建会话: session_id=%s user_id=%s model=%s", session.id, user_id, session.model_name)
    return session


def get_session(
    db: Session, *, session_id: str, user_id: str
) -> tuple[ChatSession, ChatMessage | None]:
    session = get_owned_session(db, session_id=session_id, user_id=user_id)
    last_message = None
    if session.last_message_id:
        last_message = message_repository.get_message(db, session.last_message_id)
    return session, last_message


def list_sessions(
    db: Session,
    *,
    user_id: str,
    filters: SessionListFilters | None = None,
    page_no: int = 1,
    page_size: int = 20,
) -> tuple[list[ChatSession], int]:
    return session_repository.list_sessions(
        db, user_id=user_id, filters=filters, page_no=page_no, page_size=page_size
    )


def search_sessions(
    db: Session,
    *,
    user_id: str,
    keyword: str,
    page_no: int = 1,
    page_size: int = 20,
) -> tuple[list[ChatSession], int]:
    keyword = keyword.strip()
    if not keyword:
        raise validation_failed("搜索关键词不能为空")
    return session_repository.search_sessions(
        db, user_id=user_id, keyword=keyword, page_no=page_no, page_size=page_size
    )


def update_session(
    db: Session, *, session_id: str, user_id: str, fields: dict[str, Any]
) -> ChatSession:
    session = get_owned_session(db, session_id=session_id, user_id=user_id)
    if fields:
        session_repository.update_session_fields(db, session_id, fields)
        db.commit()
        db.refresh(session)
        logger.info("更新会话: session_id=%s fields=%s", session_id, sorted(fields))
    return session


def set_pinned(db: Session, *, session_id: str, user_id: str, pinned: bool) -> None:
    update_session(db, session_id=session_id, user_id=user_id, fields={"is_pinned": pinned})


def set_archived(db: Session, *, session_id: str, user_id: str, archived: bool) -> None:
    update_session(db, session_id=session_id, user_id=user_id, fields={"is_archived": archived})


def delete_session(db: Session, *, session_id: str, user_id: str) -> None:
    get_owned_session(db, session_id=session_id, user_id=user_id)
    if not session_repository.soft_delete_session(db, session_id):
        raise session_not_found()
    db.commit()
    logger.info("删除会话: session_id=%s user_id=%s", session_id, user_id)


__all__ = [
    "DEFAULT_SESSION_TITLE",
    "create_session",
    "delete_session",
    "derive_title",
    "get_owned_session",
    "get_session",
    "list_sessions",
    "load_last_messages",
    "new_chat_session",
    "search_sessions",
    "set_archived",
    "set_pinned",
    "update_session",
]
