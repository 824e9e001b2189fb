from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from aichat.models import ChatMessage


def next_sequence(db: Session, session_id: str) -> int:
    """
    `max(sequence)+1` within the caller's transaction. Concurrent writers can
    observe the same value; the (session_id, sequence) unique constraint
    rejects the loser, which must retry.
    """
    current = db.execute(
        select(func.max(ChatMessage.sequence)).where(ChatMessage.session_id == session_id)
    ).scalar_one()
    return int(current or 0) + 1


def create_message(db: Session, message: ChatMessage) -> ChatMessage:
    db.add(message)
    db.flush()
    return message


def get_message(db: Session, message_id: str) -> ChatMessage | None:
    return db.get(ChatMessage, message_id)


def get_messages_by_ids(db: Session, message_ids: Iterable[str]) -> dict[str, ChatMessage]:
    ids = {mid for mid in message_ids if mid}
    if not ids:
        return {}
    rows = db.execute(select(ChatMessage).where(ChatMessage.id.in_(ids))).scalars().all()
    return {row.id: row for row in rows}


def list_messages(
    db: Session,
    *,
    session_id: str,
    page_no: int = 1,
    page_size: int = 50,
) -> tuple[list[ChatMessage], int]:
    total = db.execute(
        select(func.count(ChatMessage.id)).where(ChatMessage.session_id == session_id)
    ).scalar_one()
    stmt = (
        select(ChatMessage)
        .where(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.sequence.asc())
        .offset((page_no - 1) * page_size)
        .limit(page_size)
    )
    return list(db.execute(stmt).scalars().all()), int(total or 0)


__all__ = [
    "create_message",
    "get_message",
    "get_messages_by_ids",
    "list_messages",
    "next_sequence",
]
