from enum import IntEnum
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from pydantic import BaseModel, Field


class ErrorCode(IntEnum):
    SUCCESS = 200

    BAD_REQUEST = 400
    UNAUTHORIZED = 401
    FORBIDDEN = 403
    NOT_FOUND = 404
    VALIDATION_FAILED = 422
    INTERNAL_ERROR = 500
    SERVICE_UNAVAILABLE = 503

    # AI 服务
    AI_SERVICE_ERROR = 550
    CONTEXT_CANCELLED = 551

    # Provider / 模型
    PROVIDER_NOT_FOUND = 560
    MODEL_NOT_FOUND = 561
    DATA_LOAD_ERROR = 562

    # 会话
    SESSION_NOT_FOUND = 570
    SESSION_ACCESS_DENIED = 571
    SESSION_ALREADY_EXISTS = 572

    # 消息
    MESSAGE_NOT_FOUND = 580
    MESSAGE_ACCESS_DENIED = 581
    MESSAGE_SEND_FAILED = 582


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.SUCCESS: "成功",
    ErrorCode.BAD_REQUEST: "请求参数错误",
    ErrorCode.UNAUTHORIZED: "未授权",
    ErrorCode.FORBIDDEN: "禁止访问",
    ErrorCode.NOT_FOUND: "资源不存在",
    ErrorCode.VALIDATION_FAILED: "参数验证失败",
    ErrorCode.INTERNAL_ERROR: "内部错误",
    ErrorCode.SERVICE_UNAVAILABLE: "服务不可用",
    ErrorCode.AI_SERVICE_ERROR: "AI 服务错误",
    ErrorCode.CONTEXT_CANCELLED: "请求已取消",
    ErrorCode.PROVIDER_NOT_FOUND: "提供商不存在",
    ErrorCode.MODEL_NOT_FOUND: "模型不存在",
    ErrorCode.DATA_LOAD_ERROR: "数据加载失败",
    ErrorCode.SESSION_NOT_FOUND: "会话不存在",
    ErrorCode.SESSION_ACCESS_DENIED: "无权访问会话",
    ErrorCode.SESSION_ALREADY_EXISTS: "会话已存在",
    ErrorCode.MESSAGE_NOT_FOUND: "消息不存在",
    ErrorCode.MESSAGE_ACCESS_DENIED: "无权访问消息",
    ErrorCode.MESSAGE_SEND_FAILED: "消息发送失败",
}

# 业务码 -> HTTP 状态码；未列出的业务码本身就是 HTTP 状态码。
_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.AI_SERVICE_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.CONTEXT_CANCELLED: 499,
    ErrorCode.PROVIDER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.MODEL_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.DATA_LOAD_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.SESSION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.SESSION_ACCESS_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.SESSION_ALREADY_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.MESSAGE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.MESSAGE_ACCESS_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.MESSAGE_SEND_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def http_status_for(code: int) -> int:
    try:
        return _HTTP_STATUS.get(ErrorCode(code), int(code))
    except ValueError:
        return status.HTTP_500_INTERNAL_SERVER_ERROR


class ErrorResponse(BaseModel):
    """
    Envelope returned for every failed request:

    {
        "code": 570,
        "message": "会话不存在",
        "data": null
    }

    ``data`` is only populated for validation failures (field errors).
    """

    code: int = Field(..., description="Business error code")
    message: str = Field(..., description="Human-readable error message")
    data: Optional[Dict[str, Any]] = Field(
        default=None, description="Optional structured error details"
    )


class AppError(HTTPException):
    """
    Business error carrying a code from ``ErrorCode``, a user-facing message
    and the underlying cause. The cause is only ever logged.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        *,
        cause: BaseException | None = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, "未知错误")
        self.cause = cause
        self.details = details
        payload = ErrorResponse(code=int(code), message=self.message, data=details)
        super().__init__(status_code=http_status_for(code), detail=payload.model_dump())

    def __str__(self) -> str:
        if self.cause is not None:
            return f"[{int(self.code)}] {self.message}: {self.cause}"
        return f"[{int(self.code)}] {self.message}"

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(code=int(self.code), message=self.message, data=self.details)


def app_error(
    code: ErrorCode,
    message: str | None = None,
    *,
    cause: BaseException | None = None,
    details: Optional[Dict[str, Any]] = None,
) -> AppError:
    return AppError(code, message, cause=cause, details=details)


def unauthorized(message: str | None = None) -> AppError:
    return app_error(ErrorCode.UNAUTHORIZED, message)


def validation_failed(
    message: str | None = None, *, details: Optional[Dict[str, Any]] = None
) -> AppError:
    return app_error(ErrorCode.VALIDATION_FAILED, message, details=details)


def service_unavailable(message: str | None = None) -> AppError:
    return app_error(ErrorCode.SERVICE_UNAVAILABLE, message)


def ai_service_error(cause: BaseException | None = None) -> AppError:
    return app_error(ErrorCode.AI_SERVICE_ERROR, cause=cause)


def context_cancelled(cause: BaseException | None = None) -> AppError:
    return app_error(ErrorCode.CONTEXT_CANCELLED, cause=cause)


def session_not_found() -> AppError:
    return app_error(ErrorCode.SESSION_NOT_FOUND)


def session_access_denied() -> AppError:
    return app_error(ErrorCode.SESSION_ACCESS_DENIED)


def message_not_found() -> AppError:
    return app_error(ErrorCode.MESSAGE_NOT_FOUND)


def message_access_denied() -> AppError:
    return app_error(ErrorCode.MESSAGE_ACCESS_DENIED)


def message_send_failed(cause: BaseException | None = None) -> AppError:
    return app_error(ErrorCode.MESSAGE_SEND_FAILED, cause=cause)


__all__ = [
    "AppError",
    "ERROR_MESSAGES",
    "ErrorCode",
    "ErrorResponse",
    "ai_service_error",
    "app_error",
    "context_cancelled",
    "http_status_for",
    "message_access_denied",
    "message_not_found",
    "message_send_failed",
    "service_unavailable",
    "session_access_denied",
    "session_not_found",
    "unauthorized",
    "validation_failed",
]
