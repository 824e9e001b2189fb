from __future__ import annotations

import math
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aichat.errors import ERROR_MESSAGES, ErrorCode

T = TypeVar("T")


class CamelModel(BaseModel):
    """Serialises with camelCase keys and accepts both camelCase and snake_case input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )


class ApiResponse(BaseModel, Generic[T]):
    """Uniform response envelope ``{code, message, data}``."""

    code: int = Field(default=int(ErrorCode.SUCCESS))
    message: str = Field(default=ERROR_MESSAGES[ErrorCode.SUCCESS])
    data: T | None = None


class PageData(CamelModel, Generic[T]):
    items: list[T]
    page_no: int
    page_size: int
    total: int
    total_page: int


def page_of(items: list[T], *, page_no: int, page_size: int, total: int) -> PageData[T]:
    total_page = math.ceil(total / page_size) if page_size > 0 else 0
    return PageData(
        items=items,
        page_no=page_no,
        page_size=page_size,
        total=total,
        total_page=total_page,
    )


def success(data: T | None = None, message: str | None = None) -> ApiResponse[T]:
    return ApiResponse(
        code=int(ErrorCode.SUCCESS),
        message=message or ERROR_MESSAGES[ErrorCode.SUCCESS],
        data=data,
    )


__all__ = ["ApiResponse", "CamelModel", "PageData", "page_of", "success"]
