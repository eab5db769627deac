"""
Shared error handlers.

Translate ledger and validation errors into structured JSON responses.
"""

import logging
from typing import Any, Dict, List

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..core.aggregator import LedgerNotFoundError

logger = logging.getLogger(__name__)


def _sanitize_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return validation errors without raw input payloads."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in errors
    ]


async def not_found_handler(request: Request, exc: LedgerNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies and parameters are client errors (400)."""
    errors = _sanitize_validation_errors(exc.errors())
    logger.warning("Request validation failed path=%s method=%s errors=%s", request.url.path, request.method, errors)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": errors})


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    logger.warning("Rejected request path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch unhandled errors without leaking internals to the caller."""
    logger.error("Unhandled error path=%s error_type=%s", request.url.path, type(exc).__name__, exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal Server Error"})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerNotFoundError, not_found_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
