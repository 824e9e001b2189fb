"""
HTTP middleware stack (outer -> inner): client disconnect, recovery, request logging,
CORS, user identity.
"""

from .client_disconnect import REQUEST_CANCELLATION_STATE_KEY, ClientDisconnectMiddleware
from .cors import PreflightNoContentCORSMiddleware
from .recovery import RecoveryMiddleware
from .request_logging import REQUEST_ID_HEADER, RequestLoggingMiddleware
from .user_context import USER_ID_HEADER, UserContextMiddleware

__all__ = [
    "ClientDisconnectMiddleware",
    "PreflightNoContentCORSMiddleware",
    "REQUEST_CANCELLATION_STATE_KEY",
    "REQUEST_ID_HEADER",
    "RecoveryMiddleware",
    "RequestLoggingMiddleware",
    "USER_ID_HEADER",
    "UserContextMiddleware",
]
