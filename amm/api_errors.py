"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from amm.errors import (
    AMMError, AlreadyInitialized, ConvergenceFailure, InsufficientAllowance,
    InsufficientBalance, InsufficientCollateral, InsufficientReserve,
    InvalidArgument, InvalidParameters, MarketNotOpen, MarketNotResolved,
    NumericOverflow, Unauthorized,
)


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


_STATUS: dict[type[AMMError], int] = {
    InvalidParameters: 400,
    InsufficientBalance: 400,
    InsufficientAllowance: 400,
    Unauthorized: 403,
    AlreadyInitialized: 409,
    MarketNotOpen: 409,
    MarketNotResolved: 409,
    InsufficientCollateral: 409,
    NumericOverflow: 422,
    InvalidArgument: 422,
    ConvergenceFailure: 422,
    InsufficientReserve: 503,
}


def translate_engine_error(exc: AMMError) -> APIError:
    """Translate engine exceptions to structured API errors."""
    return APIError(_STATUS.get(type(exc), 400), exc.code, str(exc))
