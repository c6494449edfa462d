"""IPアドレス単位のリクエスト数制限（全体の既定値と、認証APIのより厳しい制限）"""
from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from campus_lost_found.config import get_settings
from campus_lost_found.logging_config import logging_config

DEFAULT_LIMIT_MESSAGE = "Too many requests, please try again later."
AUTH_LIMIT_MESSAGE = "Too many authentication attempts, please try again later."

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[_settings.default_rate_limit],
    enabled=_settings.rate_limit_enabled,
)

auth_limit = limiter.limit(_settings.auth_rate_limit, error_message=AUTH_LIMIT_MESSAGE)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    message = AUTH_LIMIT_MESSAGE if exc.limit.error_message else DEFAULT_LIMIT_MESSAGE
    logging_config.log_security_event(
        "rate_limited", ip=get_remote_address(request), path=request.url.path, limit=str(exc.limit.limit)
    )
    return JSONResponse(
        status_code=429,
        content={"success": False, "error": message, "code": "RATE_LIMITED"},
    )
