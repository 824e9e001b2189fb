from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.orm import Session

from aichat.models import ChatMessage, ChatSession
from aichat.models.base import utcnow

SessionOrder = Literal["pinned_updated_desc", "updated_desc", "created_desc"]

UPDATABLE_SESSION_FIELDS = frozenset(
    {
        "title",
        "system_prompt",
        "temperature",
        "top_p",
        "top_k",
        "max_tokens",
        "is_pinned",
        "is_archived",
    }
)


@dataclass(slots=True)
class SessionListFilters:
    is_pinned: bool | None = None
    is_archived: bool | None = None
    model_name: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    order_by: SessionOrder = "pinned_updated_desc"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _visible_sessions() -> Select[tuple[ChatSession]]:
    return select(ChatSession).where(ChatSession.is_deleted.is_(False))


def _order(stmt: Select, order_by: SessionOrder) -> Select:
    if order_by == "created_desc":
        return stmt.order_by(ChatSession.created_at.desc(), ChatSession.id.desc())
    if order_by == "updated_desc":
        return stmt.order_by(ChatSession.updated_at.desc(), ChatSession.id.desc())
    return stmt.order_by(
        ChatSession.is_pinned.desc(),
        ChatSession.updated_at.desc(),
        ChatSession.id.desc(),
    )


def _paginate(
    db: Session, stmt: Select, *, page_no: int, page_size: int
) -> tuple[list[ChatSession], int]:
    total = db.execute(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    ).scalar_one()
    offset = (page_no - 1) * page_size
    rows = db.execute(stmt.offset(offset).limit(page_size)).scalars().all()
    return list(rows), int(total or 0)


def _escape_like(keyword: str) -> str:
    return keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def create_session(db: Session, session: ChatSession) -> ChatSession:
    """Insert a session row; id and timestamps are filled on flush."""
    db.add(session)
    db.flush()
    return session


def get_session(db: Session, session_id: str) -> ChatSession | None:
    return db.execute(
        _visible_sessions().where(ChatSession.id == session_id)
    ).scalars().first()


def list_sessions(
    db: Session,
    *,
    user_id: str,
    filters: SessionListFilters | None = None,
    page_no: int = 1,
    page_size: int = 20,
) -> tuple[list[ChatSession], int]:
    filters = filters or SessionListFilters()
    stmt = _visible_sessions().where(ChatSession.user_id == user_id)
    if filters.is_pinned is not None:
        stmt = stmt.where(ChatSession.is_pinned.is_(filters.is_pinned))
    if filters.is_archived is not None:
        stmt = stmt.where(ChatSession.is_archived.is_(filters.is_archived))
    if filters.model_name:
        stmt = stmt.where(ChatSession.model_name == filters.model_name)
    if filters.created_after is not None:
        stmt = stmt.where(ChatSession.created_at >= _as_utc(filters.created_after))
    if filters.created_before is not None:
        stmt = stmt.where(ChatSession.created_at < _as_utc(filters.created_before))
    return _paginate(db, _order(stmt, filters.order_by), page_no=page_no, page_size=page_size)


def search_sessions(
    db: Session,
    *,
    user_id: str,
    keyword: str,
    page_no: int = 1,
    page_size: int = 20,
) -> tuple[list[ChatSession], int]:
    """
    Case-insensitive substring match on the title and on the content of the
    session's most recent message.
    """
    pattern = f"%{_escape_like(keyword)}%"
    stmt = (
        _visible_sessions()
        .outerjoin(ChatMessage, ChatMessage.id == ChatSession.last_message_id)
        .where(
            ChatSession.user_id == user_id,
            or_(
                ChatSession.title.ilike(pattern, escape="\\"),
                ChatMessage.content.ilike(pattern, escape="\\"),
            ),
        )
    )
    return _paginate(db, _order(stmt, "pinned_updated_desc"), page_no=page_no, page_size=page_size)


def update_session_fields(db: Session, session_id: str, fields: dict[str, Any]) -> bool:
    unknown = set(fields) - UPDATABLE_SESSION_FIELDS
    if unknown:
        raise ValueError(f"fields not updatable: {sorted(unknown)}")
    if not fields:
        return get_session(db, session_id) is not None

    result = db.execute(
        update(ChatSession)
        .where(ChatSession.id == session_id, ChatSession.is_deleted.is_(False))
        .values(**fields, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount > 0


def soft_delete_session(db: Session, session_id: str) -> bool:
    result = db.execute(
        update(ChatSession)
        .where(ChatSession.id == session_id, ChatSession.is_deleted.is_(False))
        .values(is_deleted=True, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount > 0


def increment_message_count(db: Session, session_id: str, *, by: int = 1) -> None:
    db.execute(
        update(ChatSession)
        .where(ChatSession.id == session_id)
        .values(message_count=ChatSession.message_count + by, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )


def update_last_message(db: Session, session_id: str, message_id: str) -> None:
    db.execute(
        update(ChatSession)
        .where(ChatSession.id == session_id)
        .values(last_message_id=message_id, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )


__all__ = [
    "SessionListFilters",
    "UPDATABLE_SESSION_FIELDS",
    "create_session",
    "get_session",
    "increment_message_count",
    "list_sessions",
    "search_sessions",
    "soft_delete_session",
    "update_last_message",
    "update_session_fields",
]
