"""Survey response endpoints.

This module exposes the submission pipeline over HTTP: creating responses,
editing, listing and deleting drafts, uploading offline batches, reading a
stored response and validating a submission without storing it.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from canvass.middleware.auth import HmacTokenIdentityProvider, get_identity_provider
from canvass.models.database import get_db
from canvass.services.orchestrator import (
    SubmissionContext,
    SubmissionOrchestrator,
    SubmissionOutcome,
)
from canvass.services.questionnaire_loader import QuestionnaireLoader, get_questionnaire_loader
from canvass.services.rate_limiter import get_batch_rate_limiter, get_rate_limiter
from canvass.services.repository import SurveyResponseRepository
from canvass.services.telemetry import TelemetrySink, get_telemetry
from canvass.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/surveys")


def get_orchestrator(
    db: Session = Depends(get_db),
    identity_provider: HmacTokenIdentityProvider = Depends(get_identity_provider),
    rate_limiter=Depends(get_rate_limiter),
    batch_rate_limiter=Depends(get_batch_rate_limiter),
    loader: QuestionnaireLoader = Depends(get_questionnaire_loader),
    telemetry: TelemetrySink = Depends(get_telemetry),
) -> SubmissionOrchestrator:
    """Build the orchestrator for one request."""
    return SubmissionOrchestrator(
        repository=SurveyResponseRepository(db),
        identity_provider=identity_provider,
        rate_limiter=rate_limiter,
        batch_rate_limiter=batch_rate_limiter,
        loader=loader,
        telemetry=telemetry,
    )


def build_context(request: Request) -> SubmissionContext:
    """Collect the request facts the pipeline needs.

    The request id assigned by the request id middleware is reused so
    logs, error bodies and the X-Request-ID header agree.
    """
    context = SubmissionContext(
        client_address=request.client.host if request.client else "unknown",
        authorization=request.headers.get("Authorization"),
    )
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        context.request_id = request_id
    return context


async def read_json_body(request: Request) -> Any:
    """Decode the request body; None when it is empty or not JSON."""
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        logger.info("Request body is not valid JSON")
        return None


def to_response(outcome: SubmissionOutcome) -> JSONResponse:
    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.body,
        headers=outcome.headers,
    )


@router.post("/responses")
async def create_response(
    request: Request,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Submit a survey response (complete or draft).

    The pipeline runs in the threadpool: database calls and retry
    backoff block.

    Returns:
        JSONResponse: 201 with the stored response summary, or an error
            body with a stable code
    """
    context = build_context(request)
    raw_body = await read_json_body(request)
    outcome = await run_in_threadpool(orchestrator.submit, context, raw_body)
    return to_response(outcome)


@router.put("/responses/{response_id}")
async def update_draft(
    response_id: str,
    request: Request,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Replace a draft's contents; is_draft=false finalizes it."""
    context = build_context(request)
    raw_body = await read_json_body(request)
    outcome = await run_in_threadpool(orchestrator.update_draft, context, response_id, raw_body)
    return to_response(outcome)


@router.delete("/responses/{response_id}")
def delete_draft(
    response_id: str,
    request: Request,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Delete a draft owned by the caller."""
    return to_response(orchestrator.delete_draft(build_context(request), response_id))


@router.get("/responses/{response_id}")
def get_response(
    response_id: str,
    request: Request,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Read a response with its answers."""
    return to_response(orchestrator.get_response(build_context(request), response_id))


@router.post("/validate")
async def validate_submission(
    request: Request,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Validate a submission without storing it."""
    context = build_context(request)
    raw_body = await read_json_body(request)
    outcome = await run_in_threadpool(orchestrator.validate_only, context, raw_body)
    return to_response(outcome)


@router.post("/batch")
async def submit_batch(
    request: Request,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Upload submissions queued by an offline client.

    Returns:
        JSONResponse: 200 when every submission was accepted, 207 with
            per-submission results when some failed
    """
    context = build_context(request)
    raw_body = await read_json_body(request)
    outcome = await run_in_threadpool(orchestrator.submit_batch, context, raw_body)
    return to_response(outcome)


@router.get("/drafts")
def list_drafts(
    request: Request,
    questionnaire_id: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """List the caller's drafts, most recently updated first."""
    return to_response(
        orchestrator.list_drafts(build_context(request), questionnaire_id, limit, offset)
    )


@router.post("/drafts/cleanup")
async def cleanup_drafts(
    request: Request,
    orchestrator: SubmissionOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Delete stale drafts; dry_run=true only previews what would go."""
    context = build_context(request)
    raw_body = await read_json_body(request)
    outcome = await run_in_threadpool(orchestrator.cleanup_drafts, context, raw_body)
    return to_response(outcome)
