from __future__ import annotations

from collections.abc import Mapping

REDACTED = "***REDACTED***"


_SENSITIVE_HEADER_NAMES = {
    "authorization",
    "proxy-authorization",
    "x-api-key",
    "x-goog-api-key",
    "cookie",
    "set-cookie",
}

_SENSITIVE_KEYWORDS = ("key", "token", "secret", "auth", "cookie", "password")


def sanitize_headers_for_log(
    headers: Mapping[str, str], *, mask_token: str = REDACTED
) -> dict[str, str]:
    """
    将请求头做安全脱敏后用于日志输出。

    - 明确敏感的 header 名（authorization / x-goog-api-key / cookie 等）直接打码；
    - 名称中包含 key/token/secret/auth/cookie/password 的 header 也打码；
    - 其它 header（包括 X-User-ID、X-Request-ID）原样保留，便于排障。
    """
    sanitized: dict[str, str] = {}
    for name, value in headers.items():
        lower_name = name.lower()
        if lower_name in _SENSITIVE_HEADER_NAMES or any(
            keyword in lower_name for keyword in _SENSITIVE_KEYWORDS
        ):
            sanitized[name] = mask_token
            continue
        sanitized[name] = value
    return sanitized


def mask_secret(value: str | None, *, visible: int = 4) -> str:
    """Keep only the last ``visible`` characters of a secret (API keys in startup logs)."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


__all__ = ["REDACTED", "mask_secret", "sanitize_headers_for_log"]
