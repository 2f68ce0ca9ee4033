"""
Maps operation error codes to HTTP responses.

Failed ``OperationResult`` objects become RFC 7807 style problem bodies::

    {"title": "Run not found", "status": 404, "code": "NOT_FOUND"}
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from autorun.core.logging import get_logger
from autorun.ops.result import (
    FORBIDDEN,
    INTERNAL,
    JOB_ACTIVE,
    NOT_FOUND,
    QUEUE_UNAVAILABLE,
    VALIDATION_FAILED,
    OperationResult,
)

logger = get_logger(__name__)

ERROR_CODE_TO_STATUS: dict[str, int] = {
    NOT_FOUND: 404,
    VALIDATION_FAILED: 400,
    JOB_ACTIVE: 409,
    QUEUE_UNAVAILABLE: 503,
    FORBIDDEN: 403,
    INTERNAL: 500,
}


def status_for_error_code(code: str) -> int:
    return ERROR_CODE_TO_STATUS.get(code, 500)


def problem_response(*, status: int, title: str, code: str = INTERNAL) -> JSONResponse:
    return JSONResponse(status_code=status, content={"title": title, "status": status, "code": code})


def handle_error(result: OperationResult) -> JSONResponse:
    code = result.error.code if result.error else INTERNAL
    return problem_response(
        status=status_for_error_code(code),
        title=result.error.message if result.error else "Operation failed",
        code=code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("api.unhandled_error", path=request.url.path)
    return problem_response(status=500, title="Internal server error")
