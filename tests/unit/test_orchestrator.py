"""Unit tests for the submission orchestrator.

Collaborators are mocked; the sanitizer, validator and in-memory rate
limiter are real.
"""

import copy
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from canvass.middleware.auth import AuthenticationError, CallerIdentity
from canvass.models.survey_response import SurveyResponse
from canvass.services.orchestrator import (
    NETWORK_RETRY_AFTER_SECONDS,
    SubmissionContext,
    SubmissionOrchestrator,
    completion_time_ms,
)
from canvass.services.persistence import ResilientExecutor
from canvass.services.questionnaire_loader import QuestionnaireNotFoundError
from canvass.services.rate_limiter import InMemoryRateLimiter, RateLimiterUnavailableError
from canvass.services.repository import SurveyResponseRepository
from canvass.services.sanitizer import InputSanitizer
from canvass.services.telemetry import TelemetrySink


VOLUNTEER = CallerIdentity(user_id="user-1", volunteer_id=1, tenant_id="tenant-a", role="volunteer")
OTHER_VOLUNTEER = CallerIdentity(user_id="user-2", volunteer_id=2, tenant_id="tenant-a", role="volunteer")
MANAGER = CallerIdentity(user_id="boss", volunteer_id=3, tenant_id="tenant-a", role="manager")


def stored_response(response_id: str = "r-1", is_complete: bool = False, volunteer_id: int = 1) -> SurveyResponse:
    return SurveyResponse(
        id=response_id,
        tenant_id="tenant-a",
        questionnaire_id="q1",
        volunteer_id=volunteer_id,
        respondent_name="Jose Garcia",
        respondent_key="k" * 64,
        is_complete=is_complete,
        expected_answer_count=1,
    )


@pytest.fixture
def repository():
    repo = MagicMock(spec=SurveyResponseRepository)
    repo.create_response.side_effect = lambda response_id, fields: SurveyResponse(id=response_id, **fields)
    repo.find_completed.return_value = None
    repo.find_by_client_id.return_value = None
    repo.insert_answer_chunk.side_effect = lambda response_id, chunk: len(chunk)
    repo.count_answers.return_value = 0
    return repo


@pytest.fixture
def identity_provider():
    provider = MagicMock()
    provider.identify.return_value = VOLUNTEER
    return provider


@pytest.fixture
def loader(simple_questionnaire):
    loader = MagicMock()
    loader.get_for_tenant.return_value = simple_questionnaire
    return loader


@pytest.fixture
def telemetry():
    return MagicMock(spec=TelemetrySink)


@pytest.fixture
def rate_limiter():
    return InMemoryRateLimiter(max_attempts=5, window_seconds=60)


@pytest.fixture
def orchestrator(repository, identity_provider, rate_limiter, loader, telemetry):
    return SubmissionOrchestrator(
        repository=repository,
        identity_provider=identity_provider,
        rate_limiter=rate_limiter,
        loader=loader,
        telemetry=telemetry,
        sanitizer=InputSanitizer(),
        executor=ResilientExecutor(max_attempts=2, base_delay_ms=1, sleep=lambda _: None),
    )


@pytest.fixture
def context():
    return SubmissionContext(client_address="10.0.0.1", authorization="Bearer token")


def events(telemetry) -> list[str]:
    return [call.args[0] for call in telemetry.track.call_args_list]


class TestSubmit:
    """Tests for new submissions."""

    def test_complete_submission(self, orchestrator, context, valid_payload, repository, telemetry):
        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 201
        assert outcome.body["success"] is True
        assert outcome.body["data"]["status"] == "completed"
        assert outcome.body["data"]["answer_count"] == 1
        assert outcome.body["data"]["completion_percentage"] == 100
        assert outcome.body["request_id"] == context.request_id
        assert outcome.headers["X-Request-ID"] == context.request_id
        assert outcome.headers["X-RateLimit-Remaining"] == "4"

        fields = repository.create_response.call_args.args[1]
        assert fields["tenant_id"] == "tenant-a"
        assert fields["volunteer_id"] == 1
        assert fields["is_complete"] is True
        assert len(fields["respondent_key"]) == 64
        assert "submission_completed" in events(telemetry)

    def test_payload_tenant_is_ignored(self, orchestrator, context, valid_payload, repository):
        valid_payload["tenant_id"] = "tenant-evil"
        valid_payload["volunteer_id"] = 999

        orchestrator.submit(context, valid_payload)

        fields = repository.create_response.call_args.args[1]
        assert fields["tenant_id"] == "tenant-a"
        assert fields["volunteer_id"] == 1

    def test_draft_with_missing_required_answer(self, orchestrator, context, valid_payload, telemetry):
        valid_payload["is_draft"] = True
        valid_payload["answers"] = []

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 201
        assert outcome.body["data"]["status"] == "draft"
        assert "answers.name" in outcome.body["warnings"]
        assert "draft_saved" in events(telemetry)

    def test_draft_skips_duplicate_check(self, orchestrator, context, valid_payload, repository):
        valid_payload["is_draft"] = True
        repository.find_completed.return_value = "existing"

        assert orchestrator.submit(context, valid_payload).status_code == 201

    def test_completion_time_from_metadata(self, orchestrator, context, valid_payload, repository):
        valid_payload["metadata"]["completion_time"] = "2024-01-15T10:05:00Z"

        orchestrator.submit(context, valid_payload)

        assert repository.create_response.call_args.args[1]["completion_time_ms"] == 300000


class TestRejections:
    """Tests for early pipeline exits."""

    def test_rate_limit_exceeded(self, orchestrator, context, valid_payload, rate_limiter, telemetry):
        rate_limiter.max_attempts = 1
        orchestrator.submit(context, copy.deepcopy(valid_payload))

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 429
        assert outcome.body["code"] == "RATE_LIMIT_EXCEEDED"
        assert outcome.body["details"]["remaining"] == 0
        assert outcome.body["details"]["retryAfter"] >= 1
        assert "Retry-After" in outcome.headers
        assert "rate_limit_exceeded" in events(telemetry)

    def test_rate_limiter_unavailable_fails_open(self, orchestrator, context, valid_payload):
        orchestrator.rate_limiter = MagicMock()
        orchestrator.rate_limiter.check_limit.side_effect = RateLimiterUnavailableError("down")

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 201
        assert "X-RateLimit-Remaining" not in outcome.headers

    def test_unauthenticated(self, orchestrator, context, valid_payload, identity_provider, repository):
        identity_provider.identify.side_effect = AuthenticationError("Authentication required")

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 401
        assert outcome.body["code"] == "UNAUTHORIZED_ACCESS"
        repository.create_response.assert_not_called()

    @pytest.mark.parametrize("body", [None, [], "text", 42])
    def test_body_not_an_object(self, orchestrator, context, body):
        outcome = orchestrator.submit(context, body)
        assert outcome.status_code == 400
        assert outcome.body["code"] == "INVALID_REQUEST_FORMAT"

    def test_missing_questionnaire_id(self, orchestrator, context, valid_payload):
        del valid_payload["questionnaire_id"]

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 400
        assert outcome.body["code"] == "VALIDATION_FAILED"
        assert "questionnaire_id" in outcome.body["details"]

    def test_unknown_questionnaire(self, orchestrator, context, valid_payload, loader):
        loader.get_for_tenant.side_effect = QuestionnaireNotFoundError("nope")

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 400
        assert outcome.body["code"] == "INVALID_QUESTIONNAIRE"

    def test_missing_required_answer(self, orchestrator, context, valid_payload, repository, telemetry):
        valid_payload["answers"] = []

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 400
        assert outcome.body["code"] == "VALIDATION_FAILED"
        assert "answers.name" in outcome.body["details"]
        assert "validation_failed" in events(telemetry)
        repository.create_response.assert_not_called()

    def test_draft_rejected_on_envelope_error(self, orchestrator, context, valid_payload):
        valid_payload["is_draft"] = True
        valid_payload["respondent_name"] = ""

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 400
        assert "respondent_name" in outcome.body["details"]

    def test_duplicate_submission(self, orchestrator, context, valid_payload, repository):
        repository.find_completed.return_value = "existing-id"

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 409
        assert outcome.body["code"] == "DUPLICATE_SUBMISSION"
        assert outcome.body["details"]["existingResponseId"] == "existing-id"
        repository.create_response.assert_not_called()

    def test_concurrent_duplicate_from_unique_index(self, orchestrator, context, valid_payload, repository):
        repository.find_completed.side_effect = [None, "winner-id"]
        repository.create_response.side_effect = IntegrityError("INSERT", {}, Exception("unique"))

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 409
        assert outcome.body["details"]["existingResponseId"] == "winner-id"

    def test_unique_violation_lookup_retried(self, orchestrator, context, valid_payload, repository):
        repository.find_completed.side_effect = [
            None,
            OperationalError("SELECT", {}, Exception("blip")),
            "winner-id",
        ]
        repository.create_response.side_effect = IntegrityError("INSERT", {}, Exception("unique"))

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 409
        assert outcome.body["details"]["existingResponseId"] == "winner-id"

    def test_unique_violation_lookup_unavailable(self, orchestrator, context, valid_payload, repository):
        repository.find_completed.side_effect = [
            None,
            OperationalError("SELECT", {}, Exception("timeout")),
            OperationalError("SELECT", {}, Exception("timeout")),
        ]
        repository.create_response.side_effect = IntegrityError("INSERT", {}, Exception("unique"))

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 503
        assert outcome.body["code"] == "NETWORK_ERROR"
        assert outcome.headers["Retry-After"] == str(NETWORK_RETRY_AFTER_SECONDS)
        assert repository.find_completed.call_count == 3


class TestPersistenceFailures:
    """Tests for store failures."""

    def test_partial_persistence(self, orchestrator, context, valid_payload, repository, telemetry):
        repository.insert_answer_chunk.side_effect = OperationalError("INSERT", {}, Exception("lost"))

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 500
        assert outcome.body["code"] == "PARTIAL_PERSISTENCE"
        assert outcome.body["retry_suggested"] is False
        created_id = repository.create_response.call_args.args[0]
        assert outcome.body["details"] == {
            "orphanedResponseId": created_id,
            "persistedAnswerCount": 0,
            "expectedAnswerCount": 1,
        }
        assert repository.insert_answer_chunk.call_count == 2
        assert "partial_persistence" in events(telemetry)

    def test_transient_create_failure(self, orchestrator, context, valid_payload, repository):
        repository.create_response.side_effect = OperationalError("INSERT", {}, Exception("timeout"))

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 503
        assert outcome.body["code"] == "NETWORK_ERROR"
        assert outcome.body["retry_suggested"] is True
        assert outcome.headers["Retry-After"] == str(NETWORK_RETRY_AFTER_SECONDS)
        assert repository.create_response.call_count == 2

    def test_transient_failure_recovers(self, orchestrator, context, valid_payload, repository):
        succeed = repository.create_response.side_effect
        repository.create_response.side_effect = [
            OperationalError("INSERT", {}, Exception("blip")),
            succeed("r-retry", {"is_complete": True}),
        ]

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 201
        assert outcome.body["data"]["id"] == "r-retry"

    def test_unexpected_error(self, orchestrator, context, valid_payload, repository, telemetry):
        repository.create_response.side_effect = ValueError("boom")

        outcome = orchestrator.submit(context, valid_payload)

        assert outcome.status_code == 500
        assert outcome.body["code"] == "SERVER_ERROR"
        assert outcome.body["details"]["original_error"] == "boom"
        assert outcome.headers["X-Request-ID"] == context.request_id
        assert "submission_error" in events(telemetry)


class TestDrafts:
    """Tests for draft update, delete and read."""

    def test_update_draft(self, orchestrator, context, valid_payload, repository, telemetry):
        repository.get.return_value = stored_response()
        repository.replace_draft.side_effect = lambda tenant, rid, fields: stored_response(rid, fields["is_complete"])

        outcome = orchestrator.update_draft(context, "r-1", valid_payload)

        assert outcome.status_code == 200
        assert outcome.body["data"]["status"] == "completed"
        fields = repository.replace_draft.call_args.args[2]
        assert "volunteer_id" not in fields
        assert "draft_finalized" in events(telemetry)

    def test_update_completed_response(self, orchestrator, context, valid_payload, repository):
        repository.get.return_value = stored_response(is_complete=True)

        outcome = orchestrator.update_draft(context, "r-1", valid_payload)

        assert outcome.status_code == 409
        assert outcome.body["code"] == "RESPONSE_NOT_EDITABLE"
        repository.replace_draft.assert_not_called()
        repository.get.assert_called_once_with("tenant-a", "r-1")

    def test_update_cannot_change_questionnaire(self, orchestrator, context, valid_payload, repository):
        repository.get.return_value = stored_response()
        valid_payload["questionnaire_id"] = "another"

        outcome = orchestrator.update_draft(context, "r-1", valid_payload)

        assert outcome.status_code == 400
        assert "questionnaire_id" in outcome.body["details"]

    def test_update_other_volunteers_draft(self, orchestrator, context, valid_payload, repository):
        repository.get.return_value = stored_response(volunteer_id=2)

        outcome = orchestrator.update_draft(context, "r-1", valid_payload)

        assert outcome.status_code == 404
        repository.replace_draft.assert_not_called()

    def test_delete_draft(self, orchestrator, context, repository, telemetry):
        repository.get.return_value = stored_response()

        outcome = orchestrator.delete_draft(context, "r-1")

        assert outcome.status_code == 200
        assert outcome.body["data"] == {"id": "r-1", "deleted": True}
        repository.delete_draft.assert_called_once_with("tenant-a", "r-1")
        assert "draft_deleted" in events(telemetry)

    def test_delete_missing(self, orchestrator, context, repository):
        repository.get.return_value = None
        assert orchestrator.delete_draft(context, "nope").status_code == 404

    def test_get_own_response(self, orchestrator, context, repository):
        repository.get.return_value = stored_response()

        outcome = orchestrator.get_response(context, "r-1")

        assert outcome.status_code == 200
        assert outcome.body["data"]["id"] == "r-1"
        assert outcome.body["data"]["status"] == "draft"
        assert outcome.body["data"]["answers"] == []

    def test_get_other_volunteers_response(self, orchestrator, context, repository, identity_provider):
        repository.get.return_value = stored_response()
        identity_provider.identify.return_value = OTHER_VOLUNTEER
        assert orchestrator.get_response(context, "r-1").status_code == 404

    def test_manager_reads_any_response(self, orchestrator, context, repository, identity_provider):
        repository.get.return_value = stored_response()
        identity_provider.identify.return_value = MANAGER
        assert orchestrator.get_response(context, "r-1").status_code == 200


class TestValidateOnly:
    """Tests for dry-run validation."""

    def test_reports_verdict_without_storing(self, orchestrator, context, valid_payload, repository):
        valid_payload["answers"] = []

        outcome = orchestrator.validate_only(context, valid_payload)

        assert outcome.status_code == 200
        assert outcome.body["data"]["is_valid"] is False
        assert "answers.name" in outcome.body["data"]["errors"]
        repository.create_response.assert_not_called()


class TestCompletionTime:
    """Tests for completion_time_ms."""

    def test_missing_timestamps(self):
        from canvass.schemas.submission import CleanSubmission

        assert completion_time_ms(CleanSubmission()) is None

    def test_end_before_start(self):
        from canvass.schemas.submission import CleanSubmission, SubmissionMetadata

        clean = CleanSubmission(metadata=SubmissionMetadata(
            start_time="2024-01-15T10:05:00Z", completion_time="2024-01-15T10:00:00Z"
        ))
        assert completion_time_ms(clean) is None


class TestSubmitBatch:
    """Tests for offline batch uploads."""

    @pytest.fixture
    def batch_limiter(self):
        return InMemoryRateLimiter(max_attempts=2, window_seconds=60)

    @pytest.fixture
    def orchestrator(self, repository, identity_provider, rate_limiter, batch_limiter, loader, telemetry):
        return SubmissionOrchestrator(
            repository=repository,
            identity_provider=identity_provider,
            rate_limiter=rate_limiter,
            batch_rate_limiter=batch_limiter,
            loader=loader,
            telemetry=telemetry,
            sanitizer=InputSanitizer(),
            executor=ResilientExecutor(max_attempts=2, base_delay_ms=1, sleep=lambda _: None),
        )

    def entry(self, valid_payload, client_id: str, name: str = "Jose Garcia") -> dict:
        item = copy.deepcopy(valid_payload)
        item["client_id"] = client_id
        item["respondent_name"] = name
        item["answers"][0]["answer_value"] = name
        return item

    def test_all_accepted(self, orchestrator, context, valid_payload, repository, telemetry):
        body = {
            "submissions": [
                self.entry(valid_payload, "c-1", "Ana Rivera"),
                self.entry(valid_payload, "c-2", "Luis Ortiz"),
            ],
            "metadata": {"batch_id": "b-1"},
        }

        outcome = orchestrator.submit_batch(context, body)

        assert outcome.status_code == 200
        assert outcome.body["success"] is True
        assert outcome.body["batch_id"] == "b-1"
        data = outcome.body["data"]
        assert data["total_submissions"] == 2
        assert data["successful_submissions"] == 2
        assert [r["client_id"] for r in data["results"]] == ["c-1", "c-2"]
        assert all(r["status"] == "completed" for r in data["results"])
        assert outcome.headers["X-Batch-Success-Rate"] == "2/2"

        fields = repository.create_response.call_args_list[0].args[1]
        assert fields["client_id"] == "c-1"
        assert fields["client_metadata"]["batch_id"] == "b-1"
        assert "batch_submission" in events(telemetry)

    def test_partial_failure_is_multi_status(self, orchestrator, context, valid_payload):
        broken = self.entry(valid_payload, "c-2", "Luis Ortiz")
        broken["answers"] = []

        outcome = orchestrator.submit_batch(context, {
            "submissions": [self.entry(valid_payload, "c-1"), broken, "not-an-object"],
        })

        assert outcome.status_code == 207
        assert outcome.body["success"] is True
        results = outcome.body["data"]["results"]
        assert results[0]["success"] is True
        assert results[1]["code"] == "VALIDATION_FAILED"
        assert "answers.name" in results[1]["details"]
        assert results[2] == {
            "client_id": None,
            "success": False,
            "code": "INVALID_REQUEST_FORMAT",
            "error": "Request body must be a JSON object",
        }
        assert outcome.body["data"]["failed_submissions"] == 2
        assert outcome.headers["X-Batch-Success-Rate"] == "1/3"

    def test_known_client_id_acknowledged(self, orchestrator, context, valid_payload, repository):
        repository.find_by_client_id.return_value = "stored-id"

        outcome = orchestrator.submit_batch(context, {"submissions": [self.entry(valid_payload, "c-1")]})

        assert outcome.status_code == 200
        result = outcome.body["data"]["results"][0]
        assert result["success"] is True
        assert result["survey_id"] == "stored-id"
        assert result["code"] == "DUPLICATE_CLIENT_ID"
        repository.find_by_client_id.assert_called_once_with("tenant-a", 1, "c-1")
        repository.create_response.assert_not_called()

    def test_same_respondent_twice_in_one_batch(self, orchestrator, context, valid_payload, repository):
        repository.find_completed.side_effect = [None, "first-id"]

        outcome = orchestrator.submit_batch(context, {
            "submissions": [self.entry(valid_payload, "c-1"), self.entry(valid_payload, "c-2")],
        })

        assert outcome.status_code == 207
        second = outcome.body["data"]["results"][1]
        assert second["code"] == "DUPLICATE_SUBMISSION"
        assert second["details"]["existingResponseId"] == "first-id"

    def test_unexpected_error_confined_to_entry(self, orchestrator, context, valid_payload, repository):
        succeed = repository.create_response.side_effect
        repository.create_response.side_effect = [ValueError("boom"), succeed("r-2", {"is_complete": True})]

        outcome = orchestrator.submit_batch(context, {
            "submissions": [self.entry(valid_payload, "c-1"), self.entry(valid_payload, "c-2", "Ana Rivera")],
        })

        assert outcome.status_code == 207
        results = outcome.body["data"]["results"]
        assert results[0]["code"] == "SUBMISSION_PROCESSING_ERROR"
        assert results[1]["survey_id"] == "r-2"

    @pytest.mark.parametrize("body", [None, [], {}, {"submissions": []}, {"submissions": "x"}])
    def test_invalid_batch_format(self, orchestrator, context, body, identity_provider):
        outcome = orchestrator.submit_batch(context, body)

        assert outcome.status_code == 400
        assert outcome.body["code"] == "INVALID_BATCH_FORMAT"
        identity_provider.identify.assert_not_called()

    def test_too_many_submissions(self, orchestrator, context, valid_payload):
        limit = orchestrator.settings.batch_max_submissions
        outcome = orchestrator.submit_batch(context, {"submissions": [valid_payload] * (limit + 1)})

        assert outcome.status_code == 400
        assert str(limit) in outcome.body["error"]

    def test_batch_rate_limit_is_separate(self, orchestrator, context, valid_payload, rate_limiter):
        body = {"submissions": [self.entry(valid_payload, "c-1")]}
        orchestrator.submit_batch(context, body)
        orchestrator.submit_batch(context, body)

        outcome = orchestrator.submit_batch(context, body)

        assert outcome.status_code == 429
        assert outcome.body["code"] == "BATCH_RATE_LIMIT_EXCEEDED"
        assert rate_limiter.get_stats()["active_keys"] == 0

    def test_unauthenticated(self, orchestrator, context, valid_payload, identity_provider, repository):
        identity_provider.identify.side_effect = AuthenticationError("Missing bearer token")

        outcome = orchestrator.submit_batch(context, {"submissions": [valid_payload]})

        assert outcome.status_code == 401
        repository.create_response.assert_not_called()


def draft_row(response_id: str, questionnaire_id: str = "q1", hours_old: int = 0) -> SurveyResponse:
    draft = stored_response(response_id)
    draft.questionnaire_id = questionnaire_id
    draft.client_metadata = {"questionnaire_version": "1.0.0", "completion_percentage": 40}
    draft.created_at = datetime.now(timezone.utc) - timedelta(hours=hours_old + 1)
    draft.updated_at = datetime.now(timezone.utc) - timedelta(hours=hours_old)
    return draft


class TestListDrafts:
    """Tests for the caller's draft listing."""

    def test_lists_summaries(self, orchestrator, context, repository, loader, simple_questionnaire):
        loader.load.return_value = simple_questionnaire
        repository.list_drafts.return_value = ([(draft_row("d-1", hours_old=2), 3)], 7)

        outcome = orchestrator.list_drafts(context)

        assert outcome.status_code == 200
        data = outcome.body["data"]
        assert data["total"] == 7
        assert (data["limit"], data["offset"]) == (10, 0)
        summary = data["drafts"][0]
        assert summary["id"] == "d-1"
        assert summary["questionnaire_title"] == "Simple"
        assert summary["questionnaire_version"] == "1.0.0"
        assert summary["completion_percentage"] == 40
        assert summary["answer_count"] == 3
        assert summary["age_minutes"] == 120
        repository.list_drafts.assert_called_once_with("tenant-a", 1, None, 10, 0)

    @pytest.mark.parametrize("limit,offset,expected", [
        ("500", "20", (50, 20)),
        ("abc", "-5", (10, 0)),
        ("0", None, (1, 0)),
    ])
    def test_paging_is_clamped(self, orchestrator, context, repository, limit, offset, expected):
        repository.list_drafts.return_value = ([], 0)

        outcome = orchestrator.list_drafts(context, "q1", limit, offset)

        assert (outcome.body["data"]["limit"], outcome.body["data"]["offset"]) == expected
        repository.list_drafts.assert_called_once_with("tenant-a", 1, "q1", *expected)

    def test_missing_questionnaire_has_no_title(self, orchestrator, context, repository, loader):
        loader.load.side_effect = QuestionnaireNotFoundError("retired")
        repository.list_drafts.return_value = ([(draft_row("d-1", "retired"), 0)], 1)

        outcome = orchestrator.list_drafts(context)

        assert outcome.body["data"]["drafts"][0]["questionnaire_title"] is None

    def test_store_unavailable(self, orchestrator, context, repository):
        repository.list_drafts.side_effect = OperationalError("SELECT", {}, Exception("down"))

        assert orchestrator.list_drafts(context).status_code == 503


class TestCleanupDrafts:
    """Tests for stale draft cleanup."""

    @pytest.fixture
    def stale(self):
        # Newest first, as returned by the repository
        return [
            draft_row("q1-a", "q1", hours_old=200),
            draft_row("q1-b", "q1", hours_old=300),
            draft_row("q1-c", "q1", hours_old=400),
            draft_row("q1-d", "q1", hours_old=500),
            draft_row("q2-a", "q2", hours_old=600),
        ]

    def test_dry_run_previews(self, orchestrator, context, repository, stale):
        repository.find_stale_drafts.return_value = stale

        outcome = orchestrator.cleanup_drafts(context, {"dry_run": True})

        data = outcome.body["data"]
        assert data["drafts_found"] == 5
        assert data["drafts_to_delete"] == 1
        assert data["drafts_to_keep"] == 4
        assert [p["id"] for p in data["preview"] if p["will_delete"]] == ["q1-d"]
        repository.delete_drafts.assert_not_called()

    def test_deletes_all_but_newest_per_questionnaire(self, orchestrator, context, repository, stale, telemetry):
        repository.find_stale_drafts.return_value = stale
        repository.delete_drafts.return_value = 3

        outcome = orchestrator.cleanup_drafts(context, {"keep_recent": 1, "questionnaire_id": None})

        assert outcome.status_code == 200
        assert outcome.body["data"]["drafts_deleted"] == 3
        assert outcome.body["data"]["drafts_kept"] == 2
        repository.delete_drafts.assert_called_once_with("tenant-a", 1, ["q1-b", "q1-c", "q1-d"])
        assert "drafts_cleaned" in events(telemetry)

    def test_defaults_without_body(self, orchestrator, context, repository):
        repository.find_stale_drafts.return_value = []
        repository.delete_drafts.return_value = 0

        outcome = orchestrator.cleanup_drafts(context, None)

        assert outcome.status_code == 200
        assert outcome.body["data"]["drafts_found"] == 0
        tenant, volunteer_id, cutoff, questionnaire_id = repository.find_stale_drafts.call_args.args
        expected = datetime.now(timezone.utc) - timedelta(days=7)
        assert abs((cutoff - expected).total_seconds()) < 60
        assert questionnaire_id is None

    def test_invalid_options(self, orchestrator, context, repository):
        outcome = orchestrator.cleanup_drafts(context, {"older_than_days": -1, "keep_recent": "3", "dry_run": "yes"})

        assert outcome.status_code == 400
        assert set(outcome.body["details"]) == {"older_than_days", "keep_recent", "dry_run"}
        repository.find_stale_drafts.assert_not_called()

    def test_body_not_an_object(self, orchestrator, context):
        assert orchestrator.cleanup_drafts(context, [1]).body["code"] == "INVALID_REQUEST_FORMAT"
