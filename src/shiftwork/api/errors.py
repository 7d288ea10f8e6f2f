"""
Error handlers — map :class:`ShiftworkError` categories to RFC 7807 responses.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from shiftwork.api.schemas import ProblemDetail
from shiftwork.core.errors import ErrorCategory, ShiftworkError
from shiftwork.core.logging import get_logger

logger = get_logger(__name__)

CATEGORY_TO_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.ORCHESTRATION: 409,
    ErrorCategory.DATABASE: 503,
    ErrorCategory.CONFIG: 500,
    ErrorCategory.INTERNAL: 500,
}


def status_for_error(error: ShiftworkError) -> int:
    """Resolve an error category to an HTTP status, defaulting to 500."""
    return CATEGORY_TO_STATUS.get(error.category, 500)


def problem_response(*, status: int, title: str, detail: str = "", instance: str = "", context=None):
    body = ProblemDetail(
        title=title, status=status, detail=detail, instance=instance, context=context or {}
    )
    return JSONResponse(status_code=status, content=body.model_dump())


async def shiftwork_error_handler(request: Request, exc: ShiftworkError) -> JSONResponse:
    status = status_for_error(exc)
    if status >= 500:
        logger.error("api_request_failed", path=request.url.path, **exc.to_dict())
    return problem_response(
        status=status,
        title=exc.category.value.replace("_", " ").title(),
        detail=exc.message,
        instance=str(request.url),
        context=exc.context.to_dict(),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions; returns 500 with ProblemDetail."""
    logger.exception("api_unhandled_error", path=request.url.path)
    return problem_response(
        status=500,
        title="Internal Server Error",
        detail="An unexpected error occurred.",
        instance=str(request.url),
    )
