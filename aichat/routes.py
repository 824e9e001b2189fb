import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.health_routes import router as health_router
from .api.v1.chat_routes import router as chat_router
from .api.v1.message_routes import router as message_router
from .api.v1.session_routes import router as session_router
from .errors import ERROR_MESSAGES, AppError, ErrorCode, ErrorResponse
from .log_sanitizer import mask_secret
from .logging_config import logger
from .middleware import (
    ClientDisconnectMiddleware,
    PreflightNoContentCORSMiddleware,
    RecoveryMiddleware,
    RequestLoggingMiddleware,
    UserContextMiddleware,
)
from .provider.gemini import GeminiGenerationClient
from .services.session_registry import SessionRegistry
from .settings import settings


async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    """
    业务异常统一转换为 {code, message, data}；底层原因只写日志，不返回给调用方。
    """
    if exc.cause is not None:
        logger.warning(
            "%s %s -> %s (cause=%r)",
            request.method,
            request.url.path,
            int(exc.code),
            exc.cause,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(),
    )


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """路由不存在 / 方法不允许等框架层错误，同样使用统一响应结构。"""
    code = exc.status_code
    try:
        message = ERROR_MESSAGES[ErrorCode(code)]
    except ValueError:
        message = str(exc.detail)
    payload = ErrorResponse(code=code, message=message)
    return JSONResponse(
        status_code=exc.status_code,
        content=payload.model_dump(),
        headers=getattr(exc, "headers", None),
    )


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors(), exclude={"ctx", "url", "input"})
    logger.info(
        "参数验证失败 %s %s: %s",
        request.method,
        request.url.path,
        errors,
    )
    payload = ErrorResponse(
        code=int(ErrorCode.VALIDATION_FAILED),
        message=ERROR_MESSAGES[ErrorCode.VALIDATION_FAILED],
        data={"errors": errors},
    )
    return JSONResponse(status_code=422, content=payload.model_dump())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理：
    - startup: 执行数据库迁移（仅 Postgres）、启动会话清理任务
    - shutdown: 停止清理任务并取消所有进行中的生成，关闭上游 HTTP 客户端
    """
    from .db.migration_runner import auto_upgrade_database

    auto_upgrade_database()
    registry: SessionRegistry = app.state.session_registry
    registry.start()

    yield

    await registry.stop()
    client = getattr(app.state, "generation_client", None)
    if client is not None:
        await client.aclose()


def _split_csv(value: str) -> list[str]:
    if not value:
        return []
    if value.strip() == "*":
        return ["*"]
    return [item.strip() for item in value.split(",") if item.strip()]


def create_app() -> FastAPI:
    docs_url = "/docs" if settings.enable_api_docs else None
    redoc_url = "/redoc" if settings.enable_api_docs else None
    openapi_url = "/openapi.json" if settings.enable_api_docs else None

    app = FastAPI(
        title="AI Chat Service",
        version=settings.app_version,
        docs_url=docs_url,
        redoc_url=redoc_url,
        openapi_url=openapi_url,
        lifespan=lifespan,
    )
    app.state.started_at = time.monotonic()
    app.state.session_registry = SessionRegistry(
        idle_timeout=settings.session_timeout_seconds,
        cleanup_interval=settings.session_cleanup_interval_seconds,
    )
    if settings.genkit_configured:
        app.state.generation_client = GeminiGenerationClient.from_settings(settings)
        logger.info(
            "Gemini 已配置: model=%s api_key=%s",
            settings.genkit_model,
            mask_secret(settings.genkit_api_key),
        )
    else:
        app.state.generation_client = None
        logger.warning("未配置 GENKIT_API_KEY / GEMINI_API_KEY，聊天接口将返回 503")

    app.add_exception_handler(AppError, handle_app_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    # 中间件按添加顺序由内向外包裹：最终顺序为
    # ClientDisconnect -> Recovery -> RequestLogging -> CORS -> UserContext -> 路由
    app.add_middleware(UserContextMiddleware)
    app.add_middleware(
        PreflightNoContentCORSMiddleware,
        allow_origins=_split_csv(settings.cors_allow_origins),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=_split_csv(settings.cors_allow_methods),
        allow_headers=_split_csv(settings.cors_allow_headers),
        expose_headers=["X-Request-ID"],
        max_age=settings.cors_max_age,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RecoveryMiddleware)
    app.add_middleware(ClientDisconnectMiddleware)

    app.include_router(health_router)
    app.include_router(session_router)
    app.include_router(message_router)
    app.include_router(chat_router)

    return app
