"""HTTP routes. Handlers are plain functions; FastAPI runs them in its threadpool."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Query, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from quizpipe.api.responses import envelope, error_response
from quizpipe.errors import ValidationError
from quizpipe.review.bulk import bulk_action_message
from quizpipe.runtime import Pipeline

generation_router = APIRouter(prefix="/api/generation", tags=["generation"])
questions_router = APIRouter(prefix="/api/questions", tags=["questions"])
settings_router = APIRouter(prefix="/api/settings", tags=["settings"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequeuePayload(_CamelModel):
    page_id: str


class RegeneratePagePayload(_CamelModel):
    page_id: str
    prompt: Optional[str] = None


class RegenerateChapterPayload(_CamelModel):
    chapter_id: str
    prompt: Optional[str] = None


class BulkActionPayload(_CamelModel):
    action: str
    ids: list[str] = []


def _pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def _question_dict(question) -> dict:
    return {
        "id": question.id,
        "pageId": question.page_id,
        "jobId": question.job_id,
        "stem": question.stem,
        "options": {
            "a": question.option_a,
            "b": question.option_b,
            "c": question.option_c,
            "d": question.option_d,
        },
        "correctOption": question.correct_option,
        "explanation": question.explanation,
        "difficulty": question.difficulty,
        "lineIndex": question.line_index,
        "status": question.status,
        "updatedAt": question.updated_at.isoformat(),
    }


# -- generation ---------------------------------------------------------------


@generation_router.post("/requeue")
def requeue_page(payload: RequeuePayload, request: Request):
    job_id = _pipeline(request).orchestrator.requeue_page(payload.page_id)
    return envelope(message="Page requeued", data={"pageId": payload.page_id, "jobId": job_id})


@generation_router.post("/regenerate-page")
def regenerate_page(payload: RegeneratePagePayload, request: Request):
    job_id = _pipeline(request).orchestrator.regenerate_page(payload.page_id, payload.prompt)
    return envelope(
        message="Page regeneration queued",
        data={"pageId": payload.page_id, "jobId": job_id},
    )


@generation_router.post("/regenerate-chapter")
def regenerate_chapter(payload: RegenerateChapterPayload, request: Request):
    outcome = _pipeline(request).orchestrator.regenerate_chapter(
        payload.chapter_id, payload.prompt
    )
    message = f"{len(outcome.jobs)} page(s) queued for regeneration"
    if outcome.failures:
        message += f", {len(outcome.failures)} failed"
    return envelope(message=message, data=outcome.to_dict())


@generation_router.get("/status")
def pipeline_status(request: Request):
    return envelope(data=_pipeline(request).status())


@generation_router.get("/attempts")
def page_attempts(request: Request, page_id: str = Query(alias="pageId")):
    store = _pipeline(request).store
    store.get_page(page_id)
    attempts = [
        {
            "attemptNo": a.attempt_no,
            "jobId": a.job_id,
            "model": a.model,
            "isSuccess": a.is_success,
            "errorMessage": a.error_message,
            "tokensIn": a.tokens_in,
            "tokensOut": a.tokens_out,
            "estimatedCostUsd": round(a.estimated_cost_usd, 6),
            "promptVersion": a.prompt_version,
            "createdAt": a.created_at.isoformat(),
        }
        for a in store.list_attempts(page_id)
    ]
    return envelope(data=attempts)


# -- questions ----------------------------------------------------------------


@questions_router.post("/bulk-action")
def bulk_action(payload: BulkActionPayload, request: Request):
    result = _pipeline(request).review.execute(payload.action, payload.ids)
    return envelope(data=result.as_dict(), message=bulk_action_message(result))


@questions_router.patch("/{question_id}")
def resubmit_question(question_id: str, request: Request, edits: dict[str, Any] = Body(...)):
    question = _pipeline(request).review.resubmit(question_id, edits)
    return envelope(message="Question resubmitted for review", data=_question_dict(question))


# -- settings -----------------------------------------------------------------


@settings_router.get("")
def get_settings(request: Request):
    return envelope(data=_pipeline(request).settings_store.get().public_dict())


@settings_router.patch("")
def patch_settings(request: Request, fields: dict[str, Any] = Body(...)):
    try:
        updated = _pipeline(request).settings_store.patch(fields)
    except ValidationError as exc:
        return error_response(request, exc, status_code=422)
    return envelope(message="Settings updated", data=updated.public_dict())
