from __future__ import annotations

from dataclasses import dataclass

import anyio
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from aichat.db.session import session_scope
from aichat.errors import (
    ErrorCode,
    ai_service_error,
    context_cancelled,
    message_access_denied,
    message_send_failed,
    service_unavailable,
    session_access_denied,
    session_not_found,
)
from aichat.logging_config import logger
from aichat.models import ROLE_ASSISTANT, ROLE_USER, ChatMessage
from aichat.provider.generation import (
    GenerateOptions,
    GenerateResult,
    GenerationCancelledError,
    GenerationClient,
    GenerationError,
    TokenUsage,
)
from aichat.repositories import message_repository, session_repository

from .cancellation import CancellationToken
from .session_registry import SessionRegistry
from .session_service import derive_title, new_chat_session


@dataclass(slots=True)
class ChatTurnRequest:
    message: str
    session_id: str | None = None
    model: str | None = None
    options: GenerateOptions | None = None


@dataclass(slots=True)
class ChatTurnResult:
    session_id: str
    user_message: ChatMessage
    assistant_message: ChatMessage
    text: str
    model: str
    usage: TokenUsage


@dataclass(slots=True, frozen=True)
class _TurnSession:
    """Detached copy of the session fields a turn needs."""

    session_id: str
    model_name: str
    system_prompt: str | None
    temperature: float | None
    top_p: float | None
    top_k: int | None
    max_tokens: int | None

    def default_options(self) -> GenerateOptions:
        return GenerateOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            top_k=self.top_k,
            model=self.model_name,
            system_prompt=self.system_prompt,
        )


class ChatOrchestrator:
    """
    Runs one chat turn end to end:

    1. resolve (or implicitly create) the session and check ownership;
    2. register a cancellation handle for the session;
    3. in one transaction: allocate the next sequence, persist the user
       message, call the generation client, persist the assistant reply and
       bump the session counters;
    4. revoke the handle whatever happened.

    Database work runs in worker threads so a turn waiting on a row lock never
    blocks the event loop while other turns are generating.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        registry: SessionRegistry,
        generation_client: GenerationClient | None,
        max_sequence_retries: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._client = generation_client
        self._max_sequence_retries = max(1, max_sequence_retries)

    async def send(
        self,
        user_id: str,
        request: ChatTurnRequest,
        *,
        parent: CancellationToken | None = None,
        create_if_missing: bool = True,
    ) -> ChatTurnResult:
        client = self._client
        if client is None:
            raise service_unavailable("AI 服务未配置")

        turn_session = await anyio.to_thread.run_sync(
            self._resolve_session, user_id, request, create_if_missing
        )
        _, token, revoke = self._registry.create(parent, session_id=turn_session.session_id)
        try:
            return await self._run_turn(client, turn_session, request, token)
        finally:
            revoke()

    async def abort(self, user_id: str, session_id: str) -> bool:
        """
        Cancel the in-flight generation of ``session_id``. Idempotent: returns
        False when nothing was running.
        """
        owner = await anyio.to_thread.run_sync(self._session_owner, session_id)
        if owner is None or owner != user_id:
            logger.warning(
                "拒绝中止会话: session_id=%s user_id=%s found=%s",
                session_id,
                user_id,
                owner is not None,
            )
            raise session_access_denied()
        return self._cancel_registered(session_id)

    async def abort_message(self, user_id: str, message_id: str) -> bool:
        session_id = await anyio.to_thread.run_sync(self._message_session_id, message_id)
        if session_id is None:
            logger.info("中止消息: 消息不存在，视为成功 message_id=%s", message_id)
            return False
        owner = await anyio.to_thread.run_sync(self._session_owner, session_id)
        if owner is None or owner != user_id:
            logger.warning(
                "拒绝中止消息: message_id=%s user_id=%s code=%d",
                message_id,
                user_id,
                int(ErrorCode.MESSAGE_ACCESS_DENIED),
            )
            raise message_access_denied()
        return self._cancel_registered(session_id)

    def _cancel_registered(self, session_id: str) -> bool:
        token = self._registry.get(session_id)
        if token is None or token.cancelled:
            logger.info("中止会话: 没有进行中的生成 session_id=%s", session_id)
            return False
        return self._registry.cancel(session_id)

    def _session_owner(self, session_id: str) -> str | None:
        with session_scope(self._session_factory) as db:
            session = session_repository.get_session(db, session_id)
            return session.user_id if session is not None else None

    def _message_session_id(self, message_id: str) -> str | None:
        with session_scope(self._session_factory) as db:
            message = message_repository.get_message(db, message_id)
            return message.session_id if message is not None else None

    def _resolve_session(
        self, user_id: str, request: ChatTurnRequest, create_if_missing: bool
    ) -> _TurnSession:
        with session_scope(self._session_factory) as db:
            if request.session_id:
                session = session_repository.get_session(db, request.session_id)
                if session is not None and session.user_id != user_id:
                    logger.warning(
                        "拒绝访问会话: session_id=%s user_id=%s code=%d",
                        request.session_id,
                        user_id,
                        int(ErrorCode.SESSION_ACCESS_DENIED),
                    )
                    raise session_access_denied() if create_if_missing else session_not_found()
                if session is None and not create_if_missing:
                    raise session_not_found()
                if session is None:
                    logger.warning(
                        "会话不存在，将创建新会话: requested_session_id=%s user_id=%s",
                        request.session_id,
                        user_id,
                    )
            else:
                session = None

            if session is None:
                session = new_chat_session(
                    user_id=user_id,
                    title=derive_title(request.message),
                    model_name=request.model,
                )
                session_repository.create_session(db, session)
                logger.info("隐式创建会话: session_id=%s user_id=%s", session.id, user_id)

            return _TurnSession(
                session_id=session.id,
                model_name=session.model_name,
                system_prompt=session.system_prompt,
                temperature=session.temperature,
                top_p=session.top_p,
                top_k=session.top_k,
                max_tokens=session.max_tokens,
            )

    async def _run_turn(
        self,
        client: GenerationClient,
        turn_session: _TurnSession,
        request: ChatTurnRequest,
        token: CancellationToken,
    ) -> ChatTurnResult:
        options = (request.options or GenerateOptions()).merged_with(turn_session.default_options())
        if request.model:
            options.model = request.model

        db = self._session_factory()
        try:
            user_message = await anyio.to_thread.run_sync(
                self._insert_user_message, db, turn_session.session_id, request.message
            )

            try:
                result = await client.generate(
                    request.message, options, cancellation=token
                )
            except GenerationCancelledError as exc:
                logger.info("生成已取消: session_id=%s", turn_session.session_id)
                raise context_cancelled(exc) from exc
            except GenerationError as exc:
                logger.error(
                    "AI 生成失败: session_id=%s category=%s error=%s",
                    turn_session.session_id,
                    type(exc).__name__,
                    exc,
                )
                raise ai_service_error(exc) from exc
            except Exception as exc:
                logger.exception(
                    "AI 生成出现未预期的错误: session_id=%s category=%s",
                    turn_session.session_id,
                    type(exc).__name__,
                )
                raise ai_service_error(exc) from exc

            try:
                assistant_message = await anyio.to_thread.run_sync(
                    self._complete_turn,
                    db,
                    turn_session.session_id,
                    user_message,
                    result,
                )
            except SQLAlchemyError as exc:
                logger.exception("保存 AI 回复失败: session_id=%s", turn_session.session_id)
                raise message_send_failed(exc) from exc
        except BaseException:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(db.rollback)
            raise
        finally:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(db.close)

        logger.info(
            "聊天完成: session_id=%s model=%s prompt_tokens=%d completion_tokens=%d",
            turn_session.session_id,
            result.model,
            result.usage.prompt_tokens,
            result.usage.completion_tokens,
        )
        return ChatTurnResult(
            session_id=turn_session.session_id,
            user_message=user_message,
            assistant_message=assistant_message,
            text=result.text,
            model=result.model,
            usage=result.usage,
        )

    def _insert_user_message(self, db: Session, session_id: str, content: str) -> ChatMessage:
        """
        First write of the turn. A unique (session_id, sequence) violation means
        a concurrent turn took the sequence: roll back and allocate again.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._max_sequence_retries + 1):
            try:
                sequence = message_repository.next_sequence(db, session_id)
                message = ChatMessage(
                    session_id=session_id,
                    role=ROLE_USER,
                    content=content,
                    sequence=sequence,
                    tokens=0,
                )
                return message_repository.create_message(db, message)
            except IntegrityError as exc:
                db.rollback()
                last_error = exc
                logger.warning(
                    "消息序号冲突，重试分配: session_id=%s attempt=%d/%d",
                    session_id,
                    attempt,
                    self._max_sequence_retries,
                )
            except SQLAlchemyError as exc:
                logger.exception("保存用户消息失败: session_id=%s", session_id)
                raise message_send_failed(exc) from exc

        logger.error("消息序号分配失败，已达重试上限: session_id=%s", session_id)
        raise message_send_failed(last_error)

    def _complete_turn(
        self,
        db: Session,
        session_id: str,
        user_message: ChatMessage,
        result: GenerateResult,
    ) -> ChatMessage:
        usage = result.usage
        user_message.tokens = usage.prompt_tokens
        assistant_message = message_repository.create_message(
            db,
            ChatMessage(
                session_id=session_id,
                role=ROLE_ASSISTANT,
                content=result.text,
                sequence=user_message.sequence + 1,
                tokens=usage.completion_tokens,
                meta={
                    "model": result.model,
                    "usage": {
                        "promptTokens": usage.prompt_tokens,
                        "completionTokens": usage.completion_tokens,
                        "totalTokens": usage.total_tokens,
                    },
                },
            ),
        )
        session_repository.update_last_message(db, session_id, assistant_message.id)
        session_repository.increment_message_count(db, session_id, by=2)
        db.commit()
        return assistant_message


__all__ = ["ChatOrchestrator", "ChatTurnRequest", "ChatTurnResult"]
