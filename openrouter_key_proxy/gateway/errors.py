from __future__ import annotations

from fastapi import status
from fastapi.responses import JSONResponse


class ProxyError(Exception):
    """Base class for failures rendered as JSON error envelopes."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(ProxyError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "authentication_error"


class AdminNotConfiguredError(ProxyError):
    status_code = status.HTTP_403_FORBIDDEN
    error_type = "admin_not_configured"

    def __init__(self, message: str = "Admin password has not been set up yet.") -> None:
        super().__init__(message)


class InvalidRequestError(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_error"


class NotFoundError(ProxyError):
    status_code = status.HTTP_404_NOT_FOUND
    error_type = "not_found"


class TokenNotFoundError(NotFoundError):
    pass


class DuplicateTokenError(InvalidRequestError):
    pass


class NoKeysConfiguredError(ProxyError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "no_api_keys"

    def __init__(self, message: str = "No upstream API keys are configured.") -> None:
        super().__init__(message)


class NoHealthyKeyError(ProxyError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "no_healthy_api_keys"

    def __init__(self, message: str = "No healthy upstream API key is available.") -> None:
        super().__init__(message)


class QuotaExhaustedError(ProxyError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_type = "quota_exceeded"

    def __init__(self, message: str = "Quota exhausted on all upstream keys.") -> None:
        super().__init__(message)


class UpstreamConnectionError(ProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_connection_error"


def openai_error_response(
    status_code: int,
    message: str,
    error_type: str,
    *,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "error": {
                "message": message,
                "type": error_type,
                "param": None,
                "code": code,
            },
        },
    )


def admin_error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def render_proxy_error(exc: ProxyError, *, admin: bool) -> JSONResponse:
    headers: dict[str, str] | None = None
    if isinstance(exc, AuthError):
        headers = {"WWW-Authenticate": "Bearer"}
    if admin:
        response = admin_error_response(exc.status_code, exc.message)
        if headers:
            response.headers.update(headers)
        return response
    return openai_error_response(
        exc.status_code,
        exc.message,
        exc.error_type,
        code="invalid_api_key" if isinstance(exc, AuthError) else None,
        headers=headers,
    )
