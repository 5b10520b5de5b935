"""FastAPI application exposing generation, review and settings operations."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from quizpipe.api.responses import envelope, error_response
from quizpipe.api.routes import generation_router, questions_router, settings_router
from quizpipe.config import get_settings
from quizpipe.errors import InvariantError, QuizpipeError
from quizpipe.runtime import Pipeline

logger = logging.getLogger(__name__)


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
    """Build the app. Without a pipeline one is created from the environment."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pipeline = pipeline or Pipeline(get_settings())
        app.state.pipeline.start()
        try:
            yield
        finally:
            app.state.pipeline.stop()

    app = FastAPI(title="quizpipe", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuizpipeError)
    async def _quizpipe_error(request: Request, exc: QuizpipeError):
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = [str(part) for part in first.get("loc", ()) if part != "body"]
        error = {"message": first.get("msg", "Invalid request"), "code": "validation_error"}
        if loc:
            error["field"] = loc[0]
        logger.info("%s %s -> 400: %s", request.method, request.url.path, error["message"])
        return envelope(success=False, message=error["message"], error=error, status_code=400)

    @app.exception_handler(InvariantError)
    async def _invariant_error(request: Request, exc: InvariantError):
        logger.error(
            "%s %s -> 500: invariant violated: %s", request.method, request.url.path, exc
        )
        return envelope(
            success=False,
            message="Internal error",
            error={"message": str(exc), "code": "invariant_violation"},
            status_code=500,
        )

    app.include_router(generation_router)
    app.include_router(questions_router)
    app.include_router(settings_router)
    return app
