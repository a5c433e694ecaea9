"""Exception handler middleware for structured error responses."""

import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from ..exceptions import CornerException

logger = logging.getLogger(__name__)


async def corner_exception_handler(request: Request, exc: CornerException) -> JSONResponse:
    """
    Convert a CornerException into its JSON error body.

    Client errors are logged at warning level, server-side failures
    (storage, database) at error level. Headers carried by the exception,
    such as ``Retry-After`` on a rate-limit rejection, are passed through.
    """
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"CornerException: {exc.error_code.value}",
        extra={
            "error_code": exc.error_code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
            "status_code": exc.status_code
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers or None,
    )
