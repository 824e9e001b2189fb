from __future__ import annotations

from fastapi import APIRouter, Depends

from aichat.deps import get_chat_orchestrator, get_current_user_id, get_request_cancellation
from aichat.logging_config import logger
from aichat.provider.generation import GenerateOptions
from aichat.schemas import (
    AbortRequest,
    ApiResponse,
    ChatRequest,
    ChatResponse,
    UsageOut,
    success,
)
from aichat.services.cancellation import CancellationToken
from aichat.services.chat_orchestrator import ChatOrchestrator, ChatTurnRequest

router = APIRouter(tags=["chat"], prefix="/api/v1/chat")


@router.post("", response_model=ApiResponse[ChatResponse])
async def chat_endpoint(
    payload: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
    cancellation: CancellationToken = Depends(get_request_cancellation),
) -> ApiResponse[ChatResponse]:
    """
    发送一条消息并等待 AI 回复。未携带 sessionId（或会话不存在）时自动创建新会话，
    返回的 sessionId 可用于后续对话与中止。
    """
    logger.info(
        "聊天请求: user_id=%s session_id=%s message_len=%d",
        user_id,
        payload.session_id,
        len(payload.message),
    )
    options = GenerateOptions(**payload.options.model_dump()) if payload.options else None
    result = await orchestrator.send(
        user_id,
        ChatTurnRequest(
            message=payload.message,
            session_id=payload.session_id,
            model=payload.model,
            options=options,
        ),
        parent=cancellation,
    )
    return success(
        ChatResponse(
            session_id=result.session_id,
            message_id=result.assistant_message.id,
            message=result.text,
            model=result.model,
            usage=UsageOut(
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                total_tokens=result.usage.total_tokens,
            ),
        )
    )


@router.post("/abort", response_model=ApiResponse[None])
async def abort_chat_endpoint(
    payload: AbortRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
) -> ApiResponse[None]:
    cancelled = await orchestrator.abort(user_id, payload.session_id)
    logger.info(
        "中止请求: user_id=%s session_id=%s cancelled=%s",
        user_id,
        payload.session_id,
        cancelled,
    )
    return success(None)
