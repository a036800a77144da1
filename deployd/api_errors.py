"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}

Messages sent back to the webhook caller are fixed, short strings. The
full diagnostic (git error chains, stderr, paths) stays in the logs.
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from deployd.errors import DeployError


class APIError(Exception):
    """Structured API error with HTTP status and machine-readable code."""

    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status,
            content={"error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }},
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.response()


def translate_error(exc: Exception) -> APIError:
    """Translate pipeline exceptions to structured API errors."""
    if isinstance(exc, DeployError):
        return APIError(exc.status, exc.code, exc.public_message)
    return APIError(500, "internal_error", "Internal error")
