import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from aichat.log_sanitizer import sanitize_headers_for_log
from aichat.logging_config import logger, request_id_var

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    为每个请求生成 X-Request-ID（写入 request.state、日志上下文与响应头），
    记录请求开始与结束（状态码、耗时）。敏感请求头在日志中脱敏。
    """

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        ctx_token = request_id_var.set(request_id)
        started = time.perf_counter()

        client_host = request.client.host if request.client else "-"
        logger.info(
            "HTTP %s %s from %s, headers=%s",
            request.method,
            request.url.path,
            client_host,
            sanitize_headers_for_log(request.headers),
        )
        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - started) * 1000
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info(
                "HTTP %s %s -> %s (%.1fms)",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
            )
            return response
        finally:
            request_id_var.reset(ctx_token)
