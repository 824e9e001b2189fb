from collections.abc import Iterator

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from .db import SessionLocal, get_db_session
from .errors import unauthorized
from .middleware.client_disconnect import REQUEST_CANCELLATION_STATE_KEY
from .middleware.user_context import USER_ID_HEADER
from .provider.generation import GenerationClient
from .services.cancellation import CancellationToken
from .services.chat_orchestrator import ChatOrchestrator
from .services.health_service import HealthService
from .services.session_registry import SessionRegistry
from .settings import settings


def get_db() -> Iterator[Session]:
    """
    Provide a synchronous SQLAlchemy session.
    """
    yield from get_db_session()


def get_session_factory() -> sessionmaker[Session]:
    """
    Session factory for code that manages its own transactions (chat turns,
    health probes). Tests override it together with ``get_db``.
    """
    return SessionLocal


def get_generation_client(request: Request) -> GenerationClient | None:
    """None when GENKIT_API_KEY / GEMINI_API_KEY is not configured."""
    return getattr(request.app.state, "generation_client", None)


def get_session_registry(request: Request) -> SessionRegistry:
    return request.app.state.session_registry


def get_current_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None) or request.headers.get(USER_ID_HEADER)
    if not user_id:
        raise unauthorized("未提供用户身份信息")
    return user_id


def get_chat_orchestrator(
    registry: SessionRegistry = Depends(get_session_registry),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    generation_client: GenerationClient | None = Depends(get_generation_client),
) -> ChatOrchestrator:
    return ChatOrchestrator(
        session_factory=session_factory,
        registry=registry,
        generation_client=generation_client,
        max_sequence_retries=settings.message_sequence_max_retries,
    )


def get_health_service(
    request: Request,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    generation_client: GenerationClient | None = Depends(get_generation_client),
) -> HealthService:
    return HealthService(
        version=settings.app_version,
        started_at=request.app.state.started_at,
        generation_client=generation_client,
        session_factory=session_factory,
        timeout=settings.health_check_timeout_seconds,
    )


def get_request_cancellation(request: Request) -> CancellationToken:
    """
    Request-scoped cancellation token that fires when the client goes away.
    ClientDisconnectMiddleware stores it in the ASGI scope; chat turns derive
    their per-session token from it.
    """
    token = request.scope.get("state", {}).get(REQUEST_CANCELLATION_STATE_KEY)
    if token is None:
        # 未挂载 ClientDisconnectMiddleware（例如单独测试路由）时不会感知断开
        token = CancellationToken()
    return token
