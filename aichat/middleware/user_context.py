from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from aichat.errors import ErrorCode, ErrorResponse
from aichat.logging_config import logger

USER_ID_HEADER = "X-User-ID"


class UserContextMiddleware(BaseHTTPMiddleware):
    """
    从 X-User-ID 请求头读取调用方身份（由上游网关完成鉴权后注入），
    写入 request.state.user_id；受保护路径缺少该头时直接返回 401。
    """

    def __init__(self, app: ASGIApp, protected_prefixes: tuple[str, ...] = ("/api/",)):
        super().__init__(app)
        self.protected_prefixes = protected_prefixes

    async def dispatch(self, request: Request, call_next):
        user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
        if user_id:
            request.state.user_id = user_id
        elif request.url.path.startswith(self.protected_prefixes):
            logger.warning("缺少 %s 请求头: %s %s", USER_ID_HEADER, request.method, request.url.path)
            payload = ErrorResponse(
                code=int(ErrorCode.UNAUTHORIZED),
                message="未提供用户身份信息",
            )
            return JSONResponse(status_code=401, content=payload.model_dump())
        return await call_next(request)
