from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from aichat.deps import (
    get_chat_orchestrator,
    get_current_user_id,
    get_db,
    get_request_cancellation,
)
from aichat.models import ChatMessage, ChatSession
from aichat.provider.generation import GenerateOptions
from aichat.repositories import SessionListFilters
from aichat.schemas import (
    ApiResponse,
    MessageOut,
    MessageSendRequest,
    MessageSendResponse,
    PageData,
    SessionCreateRequest,
    SessionOut,
    SessionUpdateRequest,
    UsageOut,
    page_of,
    success,
)
from aichat.schemas.message import MessagePreview
from aichat.services import message_service, session_service
from aichat.services.cancellation import CancellationToken
from aichat.services.chat_orchestrator import ChatOrchestrator, ChatTurnRequest

router = APIRouter(tags=["sessions"], prefix="/api/v1/chat/sessions")


def _session_out(session: ChatSession, last_message: ChatMessage | None = None) -> SessionOut:
    out = SessionOut.model_validate(session)
    if last_message is not None:
        out.last_message = MessagePreview.model_validate(last_message)
    return out


def _sessions_page(
    db: Session, sessions: list[ChatSession], *, page_no: int, page_size: int, total: int
) -> PageData[SessionOut]:
    last_messages = session_service.load_last_messages(db, sessions)
    items = [
        _session_out(s, last_messages.get(s.last_message_id or ""))
        for s in sessions
    ]
    return page_of(items, page_no=page_no, page_size=page_size, total=total)


@router.post("", response_model=ApiResponse[SessionOut])
def create_session_endpoint(
    payload: SessionCreateRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[SessionOut]:
    session = session_service.create_session(
        db,
        user_id=user_id,
        **payload.model_dump(exclude_none=True),
    )
    return success(_session_out(session))


@router.get("", response_model=ApiResponse[PageData[SessionOut]])
def list_sessions_endpoint(
    page_no: int = Query(1, alias="pageNo", ge=1),
    page_size: int = Query(20, alias="pageSize", ge=1, le=100),
    is_pinned: bool | None = Query(None, alias="isPinned"),
    is_archived: bool | None = Query(None, alias="isArchived"),
    model_name: str | None = Query(None, alias="modelName", max_length=128),
    created_after: datetime | None = Query(None, alias="createdAfter"),
    created_before: datetime | None = Query(None, alias="createdBefore"),
    order_by: Literal["pinned_updated_desc", "updated_desc", "created_desc"] = Query(
        "pinned_updated_desc", alias="orderBy"
    ),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[PageData[SessionOut]]:
    filters = SessionListFilters(
        is_pinned=is_pinned,
        is_archived=is_archived,
        model_name=model_name,
        created_after=created_after,
        created_before=created_before,
        order_by=order_by,
    )
    sessions, total = session_service.list_sessions(
        db, user_id=user_id, filters=filters, page_no=page_no, page_size=page_size
    )
    return success(_sessions_page(db, sessions, page_no=page_no, page_size=page_size, total=total))


# 注意：/search 必须在 /{session_id} 之前注册，避免被路径参数抢占。
@router.get("/search", response_model=ApiResponse[PageData[SessionOut]])
def search_sessions_endpoint(
    keyword: str = Query(..., min_length=1, max_length=200),
    page_no: int = Query(1, alias="pageNo", ge=1),
    page_size: int = Query(20, alias="pageSize", ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[PageData[SessionOut]]:
    sessions, total = session_service.search_sessions(
        db, user_id=user_id, keyword=keyword, page_no=page_no, page_size=page_size
    )
    return success(_sessions_page(db, sessions, page_no=page_no, page_size=page_size, total=total))


@router.get("/{session_id}", response_model=ApiResponse[SessionOut])
def get_session_endpoint(
    session_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[SessionOut]:
    session, last_message = session_service.get_session(
        db, session_id=session_id, user_id=user_id
    )
    return success(_session_out(session, last_message))


@router.patch("/{session_id}", response_model=ApiResponse[SessionOut])
def update_session_endpoint(
    session_id: str,
    payload: SessionUpdateRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[SessionOut]:
    session = session_service.update_session(
        db,
        session_id=session_id,
        user_id=user_id,
        fields=payload.model_dump(exclude_unset=True),
    )
    return success(_session_out(session))


@router.delete("/{session_id}", response_model=ApiResponse[None])
def delete_session_endpoint(
    session_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[None]:
    session_service.delete_session(db, session_id=session_id, user_id=user_id)
    return success(None)


@router.post("/{session_id}/pin", response_model=ApiResponse[None])
def pin_session_endpoint(
    session_id: str,
    pinned: bool = Query(True),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[None]:
    session_service.set_pinned(db, session_id=session_id, user_id=user_id, pinned=pinned)
    return success(None)


@router.post("/{session_id}/archive", response_model=ApiResponse[None])
def archive_session_endpoint(
    session_id: str,
    archived: bool = Query(True),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[None]:
    session_service.set_archived(db, session_id=session_id, user_id=user_id, archived=archived)
    return success(None)


@router.get("/{session_id}/messages", response_model=ApiResponse[PageData[MessageOut]])
def list_messages_endpoint(
    session_id: str,
    page_no: int = Query(1, alias="pageNo", ge=1),
    page_size: int = Query(50, alias="pageSize", ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[PageData[MessageOut]]:
    messages, total = message_service.list_messages(
        db, session_id=session_id, user_id=user_id, page_no=page_no, page_size=page_size
    )
    items = [MessageOut.model_validate(m) for m in messages]
    return success(page_of(items, page_no=page_no, page_size=page_size, total=total))


@router.post("/{session_id}/messages", response_model=ApiResponse[MessageSendResponse])
async def send_message_endpoint(
    session_id: str,
    payload: MessageSendRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
    cancellation: CancellationToken = Depends(get_request_cancellation),
) -> ApiResponse[MessageSendResponse]:
    options = GenerateOptions(**payload.options.model_dump()) if payload.options else None
    result = await orchestrator.send(
        user_id,
        ChatTurnRequest(message=payload.message, session_id=session_id, options=options),
        parent=cancellation,
        create_if_missing=False,
    )
    return success(
        MessageSendResponse(
            session_id=result.session_id,
            user_message=MessageOut.model_validate(result.user_message),
            assistant_message=MessageOut.model_validate(result.assistant_message),
            model=result.model,
            usage=UsageOut(
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
            ),
        )
    )
