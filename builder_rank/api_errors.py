"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from builder_rank.rank_engine import RankNotFound
from builder_rank.rewards import (
    InvalidRewardTransition, NotRewardOwner, RewardNotFound,
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


async def validation_error_handler(request: Request,
                                   exc: RequestValidationError) -> JSONResponse:
    """Pydantic rejections (negative counters etc.) in the same shape."""
    fields = [".".join(str(p) for p in e["loc"]) for e in exc.errors()]
    return APIError(422, "invalid_request", "Request validation failed",
                    {"fields": fields}).response()


def translate_engine_error(exc: Exception) -> APIError:
    """Translate engine exceptions to structured API errors."""
    msg = str(exc)

    if isinstance(exc, RankNotFound):
        return APIError(404, "rank_not_found", msg)

    if isinstance(exc, RewardNotFound):
        return APIError(404, "reward_not_found", msg)

    if isinstance(exc, NotRewardOwner):
        return APIError(403, "not_reward_owner", msg)

    if isinstance(exc, InvalidRewardTransition):
        return APIError(409, "invalid_reward_transition", msg)

    if "unknown reward reason" in msg:
        return APIError(400, "invalid_reason", msg)

    if "unknown tier" in msg:
        return APIError(400, "invalid_tier", msg)

    if "shipping address" in msg:
        return APIError(400, "invalid_address", msg)

    return APIError(400, "bad_request", msg)
