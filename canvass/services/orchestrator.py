"""Submission pipeline orchestration.

This module runs one submission through the pipeline:

    rate check -> identity -> sanitize -> validate -> duplicate check
    -> response row -> answers -> telemetry -> outcome

Each step may end the request early with a stable error code. The
orchestrator is independent of FastAPI: it receives a SubmissionContext
and a decoded body and returns a SubmissionOutcome that the route turns
into an HTTP response.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from canvass.config import Settings, get_settings
from canvass.middleware.auth import AuthenticationError, CallerIdentity
from canvass.models.survey_response import SurveyResponse
from canvass.schemas.questionnaire import Questionnaire
from canvass.schemas.submission import CleanSubmission
from canvass.services.duplicates import DuplicateDetector
from canvass.services.persistence import (
    PartialPersistenceError,
    ResilientExecutor,
    RetriesExhaustedError,
)
from canvass.services.questionnaire_loader import (
    QuestionnaireLoader,
    QuestionnaireNotFoundError,
    QuestionnaireValidationError,
)
from canvass.services.rate_limiter import RateLimitResult, RateLimiterUnavailableError
from canvass.services.repository import (
    ResponseNotEditableError,
    ResponseNotFoundError,
    SurveyResponseRepository,
    partition_stale_drafts,
)
from canvass.services.respondent_key import RespondentKey
from canvass.services.sanitizer import MAX_ID_LENGTH, InputSanitizer, parse_iso_timestamp
from canvass.services.telemetry import TelemetrySink
from canvass.services.validation import SubmissionValidator, ValidationVerdict
from canvass.logging_config import bind_request_id, get_logger

logger = get_logger(__name__)

# Stable error codes: code -> (HTTP status, message)
ERRORS = {
    "INVALID_REQUEST_FORMAT": (400, "Request body must be a JSON object"),
    "INVALID_BATCH_FORMAT": (400, "Batch must be an object with a non-empty submissions list"),
    "INVALID_QUESTIONNAIRE": (400, "Questionnaire not found or not available"),
    "VALIDATION_FAILED": (400, "Submission failed validation"),
    "UNAUTHORIZED_ACCESS": (401, "Authentication required"),
    "RESPONSE_NOT_FOUND": (404, "Response not found"),
    "RESPONSE_NOT_EDITABLE": (409, "Completed responses cannot be modified"),
    "DUPLICATE_SUBMISSION": (409, "A completed response already exists for this respondent"),
    "RATE_LIMIT_EXCEEDED": (429, "Too many submissions, please try again later"),
    "BATCH_RATE_LIMIT_EXCEEDED": (429, "Too many batch uploads, please try again later"),
    "PARTIAL_PERSISTENCE": (500, "Response was stored without all of its answers"),
    "SERVER_ERROR": (500, "An unexpected error occurred"),
    "NETWORK_ERROR": (503, "Temporary storage problem, please retry"),
}

NETWORK_RETRY_AFTER_SECONDS = 30

DEFAULT_DRAFT_PAGE_SIZE = 10
MAX_DRAFT_PAGE_SIZE = 50
DEFAULT_STALE_DRAFT_DAYS = 7
DEFAULT_KEEP_RECENT_DRAFTS = 3


@dataclass
class SubmissionContext:
    """Per-request facts gathered by the HTTP layer.

    Attributes:
        client_address: Remote address used for the rate limit key
        authorization: Raw Authorization header
        request_id: Correlation id (generated when omitted)
        started_at: perf_counter() value when the request arrived
    """
    client_address: str = "unknown"
    authorization: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def rate_limit_key(self) -> str:
        return f"ip:{self.client_address}"

    @property
    def batch_rate_limit_key(self) -> str:
        return f"batch:ip:{self.client_address}"

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)


@dataclass
class SubmissionOutcome:
    """HTTP-agnostic result of a pipeline operation."""
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


class _Halt(Exception):
    """Ends the pipeline with a prepared outcome."""

    def __init__(self, outcome: SubmissionOutcome):
        super().__init__(outcome.body.get("code"))
        self.outcome = outcome


class SubmissionOrchestrator:
    """Runs submissions and draft operations through the pipeline.

    Usage:
        orchestrator = SubmissionOrchestrator(
            repository=SurveyResponseRepository(db),
            identity_provider=HmacTokenIdentityProvider(db),
            rate_limiter=get_rate_limiter(),
            loader=get_questionnaire_loader(),
            telemetry=get_telemetry(),
        )
        outcome = orchestrator.submit(context, body)
    """

    def __init__(
        self,
        repository: SurveyResponseRepository,
        identity_provider,
        rate_limiter,
        loader: QuestionnaireLoader,
        telemetry: TelemetrySink,
        sanitizer: Optional[InputSanitizer] = None,
        validator: Optional[SubmissionValidator] = None,
        executor: Optional[ResilientExecutor] = None,
        settings: Optional[Settings] = None,
        batch_rate_limiter=None
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.identity_provider = identity_provider
        self.rate_limiter = rate_limiter
        self.batch_rate_limiter = batch_rate_limiter or rate_limiter
        self.loader = loader
        self.telemetry = telemetry
        self.sanitizer = sanitizer or InputSanitizer(self.settings.get_location_bounds())
        self.validator = validator or SubmissionValidator()
        self.executor = executor or ResilientExecutor.from_settings(self.settings)
        self.duplicates = DuplicateDetector(repository)
        self.batch_size = self.settings.answer_batch_size

    # Public operations

    def submit(self, context: SubmissionContext, raw_body: Any) -> SubmissionOutcome:
        """Accept a new submission (complete or draft).

        Args:
            context: Request context
            raw_body: Decoded JSON body (None when the body was not JSON)

        Returns:
            201 outcome on success, an error outcome otherwise
        """
        return self._run(context, "submit", lambda: self._submit(context, raw_body))

    def update_draft(self, context: SubmissionContext, response_id: str, raw_body: Any) -> SubmissionOutcome:
        """Replace a draft's contents, optionally finalizing it."""
        return self._run(
            context, "update_draft", lambda: self._update_draft(context, response_id, raw_body)
        )

    def delete_draft(self, context: SubmissionContext, response_id: str) -> SubmissionOutcome:
        """Delete a draft owned by the caller."""
        return self._run(context, "delete_draft", lambda: self._delete_draft(context, response_id))

    def get_response(self, context: SubmissionContext, response_id: str) -> SubmissionOutcome:
        """Read a response with its answers."""
        return self._run(context, "get_response", lambda: self._get_response(context, response_id))

    def validate_only(self, context: SubmissionContext, raw_body: Any) -> SubmissionOutcome:
        """Sanitize and validate a submission without storing it."""
        return self._run(context, "validate_only", lambda: self._validate_only(context, raw_body))

    def submit_batch(self, context: SubmissionContext, raw_body: Any) -> SubmissionOutcome:
        """Accept a queue of submissions uploaded by an offline client.

        Each submission goes through the same steps as submit() and gets
        its own result; one failing submission does not stop the others.

        Args:
            context: Request context
            raw_body: {"submissions": [...], "metadata": {"batch_id": ...}}

        Returns:
            200 when every submission succeeded, 207 when some failed
        """
        return self._run(context, "submit_batch", lambda: self._submit_batch(context, raw_body))

    def list_drafts(
        self,
        context: SubmissionContext,
        questionnaire_id: Optional[str] = None,
        limit: Any = None,
        offset: Any = None
    ) -> SubmissionOutcome:
        """List the caller's drafts, most recently updated first."""
        return self._run(
            context,
            "list_drafts",
            lambda: self._list_drafts(context, questionnaire_id, limit, offset),
        )

    def cleanup_drafts(self, context: SubmissionContext, raw_body: Any) -> SubmissionOutcome:
        """Delete the caller's stale drafts, keeping the newest per questionnaire."""
        return self._run(context, "cleanup_drafts", lambda: self._cleanup_drafts(context, raw_body))

    # Pipeline

    def _run(self, context: SubmissionContext, operation: str, step) -> SubmissionOutcome:
        bind_request_id(context.request_id)
        try:
            outcome = step()
        except _Halt as halt:
            outcome = halt.outcome
        except Exception as e:
            logger.error(f"Unhandled error during {operation}: {e}", exc_info=True)
            self.telemetry.track("submission_error", {
                "operation": operation,
                "error_type": type(e).__name__,
            })
            details = None if self.settings.is_production else {"original_error": str(e)}
            outcome = self._error(context, "SERVER_ERROR", details=details)
        outcome.headers.setdefault("X-Request-ID", context.request_id)
        return outcome

    def _submit(self, context: SubmissionContext, raw_body: Any) -> SubmissionOutcome:
        rate = self._check_rate(context)
        identity = self._authenticate(context)
        return self._accept(context, identity, raw_body, rate)

    def _accept(
        self,
        context: SubmissionContext,
        identity: CallerIdentity,
        raw_body: Any,
        rate: Optional[RateLimitResult],
        client_id: Optional[str] = None,
        batch_id: Optional[str] = None
    ) -> SubmissionOutcome:
        """Sanitize, validate and store one submission for a known caller."""
        clean = self._sanitize(context, raw_body)
        questionnaire = self._questionnaire(context, clean, identity)
        verdict = self._validate(context, clean, questionnaire)

        respondent_key = RespondentKey.derive(
            clean.respondent_name, clean.respondent_phone, clean.respondent_email
        )
        if not clean.is_draft:
            self._check_duplicate(context, identity, clean.questionnaire_id, respondent_key)

        response_id = str(uuid.uuid4())
        fields = self._response_fields(identity, clean, questionnaire, verdict, respondent_key)
        if client_id is not None:
            fields["client_id"] = client_id
        if batch_id is not None:
            fields["client_metadata"]["batch_id"] = batch_id
        try:
            response = self.executor.execute(
                lambda: self.repository.create_response(response_id, fields),
                "create response",
            )
        except IntegrityError as e:
            self._raise_duplicate_from_integrity(context, identity, clean, respondent_key, e)
        except RetriesExhaustedError as e:
            self.telemetry.track("submission_network_error", {"stage": "response", "attempts": e.attempts})
            raise _Halt(self._network_error(context))

        self._store_answers(context, response.id, clean)

        status = response.status
        self.telemetry.track("submission_completed" if response.is_complete else "draft_saved", {
            "response_id": response.id,
            "questionnaire_id": clean.questionnaire_id,
            "tenant_id": identity.tenant_id,
            "answer_count": len(clean.answers),
            "completion_percentage": verdict.completion_percentage,
            "response_time_ms": context.elapsed_ms(),
        })
        logger.info(
            f"Stored {status} response {response.id} for {clean.questionnaire_id} "
            f"({len(clean.answers)} answers)"
        )
        return self._success(context, 201, response, clean, verdict, rate)

    def _update_draft(self, context: SubmissionContext, response_id: str, raw_body: Any) -> SubmissionOutcome:
        rate = self._check_rate(context)
        identity = self._authenticate(context)
        clean = self._sanitize(context, raw_body)

        existing = self._load_owned(context, identity, response_id, for_write=True)
        if clean.questionnaire_id and clean.questionnaire_id != existing.questionnaire_id:
            raise _Halt(self._error(
                context,
                "VALIDATION_FAILED",
                details={"questionnaire_id": ["Questionnaire cannot change for an existing response"]},
            ))

        questionnaire = self._questionnaire(context, clean, identity)
        verdict = self._validate(context, clean, questionnaire)

        respondent_key = RespondentKey.derive(
            clean.respondent_name, clean.respondent_phone, clean.respondent_email
        )
        if not clean.is_draft:
            self._check_duplicate(
                context, identity, clean.questionnaire_id, respondent_key, exclude=response_id
            )

        fields = self._response_fields(identity, clean, questionnaire, verdict, respondent_key)
        del fields["volunteer_id"]
        try:
            response = self.executor.execute(
                lambda: self.repository.replace_draft(identity.tenant_id, response_id, fields),
                "update draft",
            )
        except ResponseNotFoundError:
            raise _Halt(self._error(context, "RESPONSE_NOT_FOUND"))
        except ResponseNotEditableError:
            raise _Halt(self._error(context, "RESPONSE_NOT_EDITABLE"))
        except IntegrityError as e:
            self._raise_duplicate_from_integrity(
                context, identity, clean, respondent_key, e, exclude=response_id
            )
        except RetriesExhaustedError:
            raise _Halt(self._network_error(context))

        self._store_answers(context, response.id, clean)

        self.telemetry.track("draft_finalized" if response.is_complete else "draft_updated", {
            "response_id": response.id,
            "questionnaire_id": clean.questionnaire_id,
            "answer_count": len(clean.answers),
        })
        return self._success(context, 200, response, clean, verdict, rate)

    def _delete_draft(self, context: SubmissionContext, response_id: str) -> SubmissionOutcome:
        identity = self._authenticate(context)
        self._load_owned(context, identity, response_id, for_write=True)
        try:
            self.executor.execute(
                lambda: self.repository.delete_draft(identity.tenant_id, response_id),
                "delete draft",
            )
        except ResponseNotFoundError:
            raise _Halt(self._error(context, "RESPONSE_NOT_FOUND"))
        except ResponseNotEditableError:
            raise _Halt(self._error(context, "RESPONSE_NOT_EDITABLE"))
        except RetriesExhaustedError:
            raise _Halt(self._network_error(context))

        self.telemetry.track("draft_deleted", {"response_id": response_id})
        return SubmissionOutcome(200, {
            "success": True,
            "data": {"id": response_id, "deleted": True},
            "request_id": context.request_id,
        })

    def _get_response(self, context: SubmissionContext, response_id: str) -> SubmissionOutcome:
        identity = self._authenticate(context)
        response = self._load_owned(context, identity, response_id, for_write=False)
        return SubmissionOutcome(200, {
            "success": True,
            "data": serialize_response(response),
            "request_id": context.request_id,
        })

    def _validate_only(self, context: SubmissionContext, raw_body: Any) -> SubmissionOutcome:
        identity = self._authenticate(context)
        clean = self._sanitize(context, raw_body)
        questionnaire = self._questionnaire(context, clean, identity)
        verdict = self.validator.validate(clean, questionnaire)
        return SubmissionOutcome(200, {
            "success": True,
            "data": {
                "is_valid": verdict.is_valid,
                "errors": verdict.errors,
                "warnings": verdict.warnings,
                "completion_percentage": verdict.completion_percentage,
            },
            "request_id": context.request_id,
        })

    def _submit_batch(self, context: SubmissionContext, raw_body: Any) -> SubmissionOutcome:
        rate = self._check_rate(context, batch=True)

        max_items = self.settings.batch_max_submissions
        submissions = raw_body.get("submissions") if isinstance(raw_body, dict) else None
        if not isinstance(submissions, list) or not 1 <= len(submissions) <= max_items:
            raise _Halt(self._error(
                context,
                "INVALID_BATCH_FORMAT",
                message=f"Batch must contain between 1 and {max_items} submissions",
            ))

        identity = self._authenticate(context)

        metadata = raw_body.get("metadata")
        batch_id = None
        if isinstance(metadata, dict):
            batch_id = self.sanitizer.sanitize_optional_string(metadata.get("batch_id"), MAX_ID_LENGTH)
        batch_id = batch_id or str(uuid.uuid4())

        results = [self._batch_item(context, identity, item, batch_id) for item in submissions]
        succeeded = sum(1 for result in results if result["success"])
        failed = len(results) - succeeded

        self.telemetry.track("batch_submission", {
            "batch_id": batch_id,
            "tenant_id": identity.tenant_id,
            "total_submissions": len(results),
            "successful_submissions": succeeded,
            "failed_submissions": failed,
            "response_time_ms": context.elapsed_ms(),
        })
        logger.info(f"Batch {batch_id}: {succeeded}/{len(results)} submissions accepted")

        headers = rate.headers() if rate else {}
        headers["X-Batch-Success-Rate"] = f"{succeeded}/{len(results)}"
        return SubmissionOutcome(207 if failed else 200, {
            "success": succeeded > 0,
            "batch_id": batch_id,
            "data": {
                "total_submissions": len(results),
                "successful_submissions": succeeded,
                "failed_submissions": failed,
                "response_time_ms": context.elapsed_ms(),
                "results": results,
            },
            "request_id": context.request_id,
        }, headers)

    def _batch_item(
        self,
        context: SubmissionContext,
        identity: CallerIdentity,
        item: Any,
        batch_id: str
    ) -> dict[str, Any]:
        """Run one batch entry and describe how it ended."""
        client_id = None
        if isinstance(item, dict):
            client_id = self.sanitizer.sanitize_optional_string(item.get("client_id"), MAX_ID_LENGTH)
        result: dict[str, Any] = {"client_id": client_id}

        try:
            if client_id is not None:
                existing = self._find_by_client_id(context, identity, client_id)
                if existing is not None:
                    logger.info(f"Batch entry {client_id} already stored as {existing}")
                    return {
                        **result,
                        "success": True,
                        "survey_id": existing,
                        "code": "DUPLICATE_CLIENT_ID",
                        "error": "Submission already uploaded",
                    }
            outcome = self._accept(context, identity, item, None, client_id=client_id, batch_id=batch_id)
        except _Halt as halt:
            outcome = halt.outcome
        except Exception as e:
            logger.error(f"Batch entry {client_id} failed: {e}", exc_info=True)
            return {
                **result,
                "success": False,
                "code": "SUBMISSION_PROCESSING_ERROR",
                "error": "Submission could not be processed",
            }

        body = outcome.body
        if body["success"]:
            return {
                **result,
                "success": True,
                "survey_id": body["data"]["id"],
                "status": body["data"]["status"],
            }
        result.update(success=False, code=body["code"], error=body["error"])
        if "details" in body:
            result["details"] = body["details"]
        return result

    def _list_drafts(
        self,
        context: SubmissionContext,
        questionnaire_id: Optional[str],
        limit: Any,
        offset: Any
    ) -> SubmissionOutcome:
        identity = self._authenticate(context)
        limit = min(max(_as_int(limit, DEFAULT_DRAFT_PAGE_SIZE), 1), MAX_DRAFT_PAGE_SIZE)
        offset = max(_as_int(offset, 0), 0)
        questionnaire_id = self.sanitizer.sanitize_optional_string(questionnaire_id, MAX_ID_LENGTH)

        try:
            rows, total = self.executor.execute(
                lambda: self.repository.list_drafts(
                    identity.tenant_id, identity.volunteer_id, questionnaire_id, limit, offset
                ),
                "list drafts",
            )
        except RetriesExhaustedError:
            raise _Halt(self._network_error(context))

        now = datetime.now(timezone.utc)
        return SubmissionOutcome(200, {
            "success": True,
            "data": {
                "drafts": [self._draft_summary(draft, count, now) for draft, count in rows],
                "total": total,
                "limit": limit,
                "offset": offset,
            },
            "request_id": context.request_id,
        })

    def _draft_summary(self, draft: SurveyResponse, answer_count: int, now: datetime) -> dict[str, Any]:
        metadata = draft.client_metadata or {}
        try:
            title = self.loader.load(draft.questionnaire_id).title
        except (QuestionnaireNotFoundError, QuestionnaireValidationError):
            title = None
        updated_at = _as_utc(draft.updated_at)
        return {
            "id": draft.id,
            "questionnaire_id": draft.questionnaire_id,
            "questionnaire_title": title,
            "questionnaire_version": metadata.get("questionnaire_version"),
            "respondent_name": draft.respondent_name,
            "completion_percentage": metadata.get("completion_percentage", 0),
            "answer_count": answer_count,
            "created_at": _isoformat(draft.created_at),
            "updated_at": _isoformat(draft.updated_at),
            "age_minutes": int((now - updated_at).total_seconds() // 60) if updated_at else None,
        }

    def _cleanup_drafts(self, context: SubmissionContext, raw_body: Any) -> SubmissionOutcome:
        identity = self._authenticate(context)
        if raw_body is None:
            raw_body = {}
        if not isinstance(raw_body, dict):
            raise _Halt(self._error(context, "INVALID_REQUEST_FORMAT"))

        errors: dict[str, list[str]] = {}
        older_than_days = raw_body.get("older_than_days", DEFAULT_STALE_DRAFT_DAYS)
        keep_recent = raw_body.get("keep_recent", DEFAULT_KEEP_RECENT_DRAFTS)
        dry_run = raw_body.get("dry_run", False)
        for name, value in (("older_than_days", older_than_days), ("keep_recent", keep_recent)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                errors[name] = ["Must be a non-negative integer"]
        if not isinstance(dry_run, bool):
            errors["dry_run"] = ["Must be true or false"]
        if errors:
            raise _Halt(self._error(context, "VALIDATION_FAILED", details=errors))
        questionnaire_id = self.sanitizer.sanitize_optional_string(
            raw_body.get("questionnaire_id"), MAX_ID_LENGTH
        )

        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        try:
            stale = self.executor.execute(
                lambda: self.repository.find_stale_drafts(
                    identity.tenant_id, identity.volunteer_id, cutoff, questionnaire_id
                ),
                "find stale drafts",
            )
            kept, doomed = partition_stale_drafts(stale, keep_recent)
            data: dict[str, Any] = {
                "drafts_found": len(stale),
                "cutoff_date": cutoff.isoformat(),
                "dry_run": dry_run,
            }
            if dry_run:
                doomed_ids = {draft.id for draft in doomed}
                data.update({
                    "drafts_to_delete": len(doomed),
                    "drafts_to_keep": len(kept),
                    "preview": [
                        {
                            "id": draft.id,
                            "questionnaire_id": draft.questionnaire_id,
                            "respondent_name": draft.respondent_name,
                            "created_at": _isoformat(draft.created_at),
                            "updated_at": _isoformat(draft.updated_at),
                            "will_delete": draft.id in doomed_ids,
                        }
                        for draft in stale
                    ],
                })
            else:
                ids = [draft.id for draft in doomed]
                deleted = self.executor.execute(
                    lambda: self.repository.delete_drafts(identity.tenant_id, identity.volunteer_id, ids),
                    "delete stale drafts",
                )
                data.update({"drafts_deleted": deleted, "drafts_kept": len(kept)})
                self.telemetry.track("drafts_cleaned", {
                    "tenant_id": identity.tenant_id,
                    "drafts_deleted": deleted,
                    "drafts_kept": len(kept),
                })
                logger.info(f"Deleted {deleted} stale drafts of volunteer {identity.volunteer_id}")
        except RetriesExhaustedError:
            raise _Halt(self._network_error(context))

        return SubmissionOutcome(200, {
            "success": True,
            "data": data,
            "request_id": context.request_id,
        })

    # Steps

    def _check_rate(self, context: SubmissionContext, batch: bool = False) -> Optional[RateLimitResult]:
        limiter = self.batch_rate_limiter if batch else self.rate_limiter
        key = context.batch_rate_limit_key if batch else context.rate_limit_key
        try:
            result = limiter.check_limit(key)
        except RateLimiterUnavailableError as e:
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            return None

        if not result.allowed:
            self.telemetry.track("rate_limit_exceeded", {"key": key})
            raise _Halt(self._error(
                context,
                "BATCH_RATE_LIMIT_EXCEEDED" if batch else "RATE_LIMIT_EXCEEDED",
                details={
                    "retryAfter": result.retry_after_seconds,
                    "remaining": result.remaining,
                    "resetTime": result.reset_at_epoch_ms,
                },
                headers=result.headers(),
            ))
        return result

    def _authenticate(self, context: SubmissionContext) -> CallerIdentity:
        try:
            return self.executor.execute(
                lambda: self.identity_provider.identify(context.authorization),
                "identify caller",
            )
        except AuthenticationError as e:
            self.telemetry.track("unauthorized_access", {"reason": str(e)})
            raise _Halt(self._error(context, "UNAUTHORIZED_ACCESS", message=str(e)))
        except RetriesExhaustedError:
            raise _Halt(self._network_error(context))

    def _sanitize(self, context: SubmissionContext, raw_body: Any) -> CleanSubmission:
        if not isinstance(raw_body, dict):
            raise _Halt(self._error(context, "INVALID_REQUEST_FORMAT"))
        return self.sanitizer.sanitize(raw_body)

    def _questionnaire(
        self,
        context: SubmissionContext,
        clean: CleanSubmission,
        identity: CallerIdentity
    ) -> Questionnaire:
        if not clean.questionnaire_id:
            raise _Halt(self._error(
                context,
                "VALIDATION_FAILED",
                details={"questionnaire_id": ["Questionnaire ID is required"]},
            ))
        try:
            return self.loader.get_for_tenant(clean.questionnaire_id, identity.tenant_id)
        except (QuestionnaireNotFoundError, QuestionnaireValidationError) as e:
            logger.warning(f"Rejected questionnaire {clean.questionnaire_id}: {e}")
            raise _Halt(self._error(context, "INVALID_QUESTIONNAIRE"))

    def _validate(
        self,
        context: SubmissionContext,
        clean: CleanSubmission,
        questionnaire: Questionnaire
    ) -> ValidationVerdict:
        verdict = self.validator.validate(clean, questionnaire)
        rejected = verdict.has_envelope_errors() if clean.is_draft else not verdict.is_valid
        if rejected:
            self.telemetry.track("validation_failed", {
                "questionnaire_id": clean.questionnaire_id,
                "error_fields": sorted(verdict.errors),
            })
            raise _Halt(self._error(
                context,
                "VALIDATION_FAILED",
                details=verdict.errors,
                warnings=verdict.warnings or None,
            ))
        return verdict

    def _check_duplicate(
        self,
        context: SubmissionContext,
        identity: CallerIdentity,
        questionnaire_id: str,
        respondent_key: str,
        exclude: Optional[str] = None
    ) -> None:
        try:
            existing = self.executor.execute(
                lambda: self.duplicates.find_existing(
                    identity.tenant_id, questionnaire_id, respondent_key, exclude
                ),
                "duplicate check",
            )
        except RetriesExhaustedError:
            raise _Halt(self._network_error(context))
        if existing is not None:
            raise _Halt(self._duplicate(context, existing))

    def _find_by_client_id(
        self,
        context: SubmissionContext,
        identity: CallerIdentity,
        client_id: str
    ) -> Optional[str]:
        try:
            return self.executor.execute(
                lambda: self.repository.find_by_client_id(
                    identity.tenant_id, identity.volunteer_id, client_id
                ),
                "client id lookup",
            )
        except RetriesExhaustedError:
            raise _Halt(self._network_error(context))

    def _raise_duplicate_from_integrity(
        self,
        context: SubmissionContext,
        identity: CallerIdentity,
        clean: CleanSubmission,
        respondent_key: str,
        error: IntegrityError,
        exclude: Optional[str] = None
    ) -> None:
        """Map a unique index violation to 409 when a completed twin exists."""
        existing = None
        if not clean.is_draft:
            try:
                existing = self.executor.execute(
                    lambda: self.repository.find_completed(
                        identity.tenant_id, clean.questionnaire_id, respondent_key, exclude
                    ),
                    "duplicate lookup after unique violation",
                )
            except RetriesExhaustedError:
                raise _Halt(self._network_error(context))
        if existing is None:
            raise error
        logger.info(f"Concurrent duplicate for {clean.questionnaire_id} caught by unique index")
        raise _Halt(self._duplicate(context, existing))

    def _load_owned(
        self,
        context: SubmissionContext,
        identity: CallerIdentity,
        response_id: str,
        for_write: bool
    ) -> SurveyResponse:
        try:
            response = self.executor.execute(
                lambda: self.repository.get(identity.tenant_id, response_id),
                "load response",
            )
        except RetriesExhaustedError:
            raise _Halt(self._network_error(context))

        if response is None:
            raise _Halt(self._error(context, "RESPONSE_NOT_FOUND"))
        is_owner = response.volunteer_id == identity.volunteer_id
        if for_write:
            if not is_owner:
                raise _Halt(self._error(context, "RESPONSE_NOT_FOUND"))
            if response.is_complete:
                raise _Halt(self._error(context, "RESPONSE_NOT_EDITABLE"))
        elif not (is_owner or identity.can_read_tenant_responses):
            raise _Halt(self._error(context, "RESPONSE_NOT_FOUND"))
        return response

    def _store_answers(self, context: SubmissionContext, response_id: str, clean: CleanSubmission) -> None:
        """Insert answers chunk by chunk after the response row exists."""
        answers = clean.answers
        persisted = 0
        try:
            for start in range(0, len(answers), self.batch_size):
                chunk = answers[start:start + self.batch_size]
                self.executor.execute(
                    lambda: self.repository.insert_answer_chunk(response_id, chunk),
                    f"insert answers {start + 1}-{start + len(chunk)}",
                )
                persisted = start + len(chunk)
        except Exception as e:
            try:
                persisted = self.repository.count_answers(response_id)
            except Exception as count_error:
                logger.warning(f"Could not count stored answers of {response_id}: {count_error}")
            error = PartialPersistenceError(response_id, persisted, len(answers), e)
            logger.error(str(error))
            self.telemetry.track("partial_persistence", {
                "response_id": response_id,
                "persisted_answer_count": persisted,
                "expected_answer_count": len(answers),
                "error_type": type(e).__name__,
            })
            raise _Halt(self._error(
                context,
                "PARTIAL_PERSISTENCE",
                details={
                    "orphanedResponseId": response_id,
                    "persistedAnswerCount": persisted,
                    "expectedAnswerCount": len(answers),
                },
                retry_suggested=False,
            ))

    # Shaping

    def _response_fields(
        self,
        identity: CallerIdentity,
        clean: CleanSubmission,
        questionnaire: Questionnaire,
        verdict: ValidationVerdict,
        respondent_key: str
    ) -> dict[str, Any]:
        metadata = clean.metadata
        return {
            "tenant_id": identity.tenant_id,
            "questionnaire_id": clean.questionnaire_id,
            "volunteer_id": identity.volunteer_id,
            "respondent_name": clean.respondent_name,
            "respondent_email": clean.respondent_email,
            "respondent_phone": clean.respondent_phone,
            "respondent_key": respondent_key,
            "precinct_id": clean.precinct_id,
            "is_complete": not clean.is_draft,
            "expected_answer_count": len(clean.answers),
            "completion_time_ms": completion_time_ms(clean),
            "location": metadata.location.model_dump() if metadata.location else None,
            "client_metadata": {
                "start_time": metadata.start_time,
                "completion_time": metadata.completion_time,
                "device_info": metadata.device_info.model_dump() if metadata.device_info else None,
                "questionnaire_version": questionnaire.version,
                "completion_percentage": verdict.completion_percentage,
            },
        }

    def _success(
        self,
        context: SubmissionContext,
        status_code: int,
        response: SurveyResponse,
        clean: CleanSubmission,
        verdict: ValidationVerdict,
        rate: Optional[RateLimitResult]
    ) -> SubmissionOutcome:
        body: dict[str, Any] = {
            "success": True,
            "data": {
                "id": response.id,
                "status": response.status,
                "answer_count": len(clean.answers),
                "response_time_ms": context.elapsed_ms(),
                "completion_percentage": verdict.completion_percentage,
            },
        }
        if verdict.warnings:
            body["warnings"] = verdict.warnings
        body["request_id"] = context.request_id
        return SubmissionOutcome(status_code, body, rate.headers() if rate else {})

    def _duplicate(self, context: SubmissionContext, existing_id: str) -> SubmissionOutcome:
        self.telemetry.track("duplicate_submission", {"existing_response_id": existing_id})
        return self._error(
            context, "DUPLICATE_SUBMISSION", details={"existingResponseId": existing_id}
        )

    def _network_error(self, context: SubmissionContext) -> SubmissionOutcome:
        return self._error(
            context,
            "NETWORK_ERROR",
            retry_suggested=True,
            headers={"Retry-After": str(NETWORK_RETRY_AFTER_SECONDS)},
        )

    def _error(
        self,
        context: SubmissionContext,
        code: str,
        message: Optional[str] = None,
        details: Optional[dict] = None,
        warnings: Optional[dict] = None,
        retry_suggested: Optional[bool] = None,
        headers: Optional[dict[str, str]] = None
    ) -> SubmissionOutcome:
        status_code, default_message = ERRORS[code]
        body: dict[str, Any] = {
            "success": False,
            "error": message or default_message,
            "code": code,
        }
        if details is not None:
            body["details"] = details
        if warnings:
            body["warnings"] = warnings
        if retry_suggested is not None:
            body["retry_suggested"] = retry_suggested
        body["request_id"] = context.request_id
        return SubmissionOutcome(status_code, body, dict(headers or {}))


def completion_time_ms(clean: CleanSubmission) -> Optional[int]:
    """Interview duration from client timestamps, when both are valid."""
    metadata = clean.metadata
    if not metadata.start_time or not metadata.completion_time:
        return None
    start = parse_iso_timestamp(metadata.start_time)
    end = parse_iso_timestamp(metadata.completion_time)
    if start is None or end is None or end < start:
        return None
    return int((end - start).total_seconds() * 1000)


def _as_int(value: Any, default: int) -> int:
    """Read a query parameter as an integer, falling back to default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they were written in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_response(response: SurveyResponse) -> dict[str, Any]:
    """Render a stored response with its answers."""
    return {
        "id": response.id,
        "questionnaire_id": response.questionnaire_id,
        "status": response.status,
        "respondent_name": response.respondent_name,
        "respondent_email": response.respondent_email,
        "respondent_phone": response.respondent_phone,
        "precinct_id": response.precinct_id,
        "completion_time_ms": response.completion_time_ms,
        "location": response.location,
        "metadata": response.client_metadata,
        "created_at": _isoformat(response.created_at),
        "updated_at": _isoformat(response.updated_at),
        "answers": [
            {
                "question_id": answer.question_id,
                "answer_value": answer.value,
                "answer_text": answer.answer_text,
                "skipped": answer.skipped,
            }
            for answer in response.answers
        ],
    }
