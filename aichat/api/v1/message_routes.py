from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from aichat.deps import get_chat_orchestrator, get_current_user_id, get_db
from aichat.schemas import ApiResponse, MessageOut, success
from aichat.services import message_service
from aichat.services.chat_orchestrator import ChatOrchestrator

router = APIRouter(tags=["messages"], prefix="/api/v1/chat/messages")


@router.get("/{message_id}", response_model=ApiResponse[MessageOut])
def get_message_endpoint(
    message_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> ApiResponse[MessageOut]:
    message = message_service.get_message(db, message_id=message_id, user_id=user_id)
    return success(MessageOut.model_validate(message))


@router.post("/{message_id}/abort", response_model=ApiResponse[None])
async def abort_message_endpoint(
    message_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> ApiResponse[None]:
    """
    中止消息所属会话中正在进行的生成。消息不存在或生成已结束时同样返回成功。
    """
    await orchestrator.abort_message(user_id, message_id)
    return success(None)
