from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from aichat.errors import ERROR_MESSAGES, ErrorCode, ErrorResponse
from aichat.logging_config import logger


def internal_error_response() -> JSONResponse:
    payload = ErrorResponse(
        code=int(ErrorCode.INTERNAL_ERROR),
        message=ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR],
    )
    return JSONResponse(status_code=500, content=payload.model_dump())


class RecoveryMiddleware(BaseHTTPMiddleware):
    """
    最外层兜底：任何未处理的异常都记录完整堆栈，并返回统一的
    {"code": 500, "message": "内部错误"} 响应，进程继续服务后续请求。
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled error %s %s", request.method, request.url.path)
            return internal_error_response()
