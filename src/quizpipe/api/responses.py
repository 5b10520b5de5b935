"""Response envelope: ``{"success", "message"?, "data"?, "error"?}``."""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from quizpipe.errors import QuizpipeError

logger = logging.getLogger(__name__)


def envelope(
    *,
    success: bool = True,
    data: object = None,
    message: str | None = None,
    error: dict | None = None,
    status_code: int = 200,
) -> JSONResponse:
    body: dict = {"success": success}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    if error is not None:
        body["error"] = error
    return JSONResponse(body, status_code=status_code)


def error_response(
    request: Request, exc: QuizpipeError, status_code: int | None = None
) -> JSONResponse:
    """Envelope for a domain error; client errors log at INFO, server errors at ERROR."""
    status = status_code or exc.status_code
    level = logging.ERROR if status >= 500 else logging.INFO
    logger.log(level, "%s %s -> %d: %s", request.method, request.url.path, status, exc.message)
    return envelope(
        success=False, message=exc.message, error=exc.to_dict(), status_code=status
    )
