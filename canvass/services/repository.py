"""Store operations for survey responses and their answers.

Every public method is one unit of work: it commits on success and rolls
back before re-raising on failure, so the resilient executor can call it
again on the same session.
"""

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from canvass.models.answer import Answer
from canvass.models.survey_response import SurveyResponse
from canvass.schemas.submission import CleanAnswer
from canvass.logging_config import get_logger

logger = get_logger(__name__)


class ResponseNotFoundError(Exception):
    """Raised when a response does not exist or is not visible to the caller."""
    pass


class ResponseNotEditableError(Exception):
    """Raised when a completed response is modified or deleted."""
    pass


def answer_row(response_id: str, answer: CleanAnswer) -> Answer:
    """Build an Answer row from a sanitized answer.

    Args:
        response_id: Parent response id
        answer: Sanitized answer

    Returns:
        Unsaved Answer instance
    """
    value = answer.answer_value
    numeric: Optional[float] = None
    selections: Optional[list] = None

    if isinstance(value, list):
        selections = list(value)
        text_value = json.dumps(value, ensure_ascii=False)
    elif isinstance(value, (int, float)):
        numeric = float(value)
        text_value = str(value)
    else:
        text_value = value

    return Answer(
        survey_response_id=response_id,
        question_id=answer.question_id,
        answer_value=text_value,
        answer_numeric=numeric,
        answer_json=selections,
        answer_text=answer.answer_text,
        skipped=answer.skipped,
    )


class SurveyResponseRepository:
    """Data access for survey responses.

    Usage:
        repo = SurveyResponseRepository(db)
        response = repo.create_response(response_id, fields)
        repo.insert_answer_chunk(response.id, answers[:25])
    """

    def __init__(self, db: Session):
        self.db = db

    def _rollback(self) -> None:
        try:
            self.db.rollback()
        except Exception as e:
            logger.warning(f"Rollback failed: {e}")

    def create_response(self, response_id: str, fields: dict[str, Any]) -> SurveyResponse:
        """Insert the response row.

        If a row with response_id already exists (a previous attempt
        committed but its acknowledgement was lost) that row is returned.

        Args:
            response_id: Pre-generated UUID
            fields: Column values

        Returns:
            Stored SurveyResponse
        """
        try:
            existing = self.db.get(SurveyResponse, response_id)
            if existing is not None:
                logger.info(f"Response {response_id} already stored by an earlier attempt")
                return existing

            response = SurveyResponse(id=response_id, **fields)
            self.db.add(response)
            self.db.commit()
            return response
        except Exception:
            self._rollback()
            raise

    def insert_answer_chunk(self, response_id: str, answers: list[CleanAnswer]) -> int:
        """Insert one chunk of answers.

        Question ids already stored for the response are skipped, so
        repeating a chunk after an unacknowledged commit is harmless.

        Returns:
            Number of answers inserted by this call
        """
        try:
            stored = set(
                self.db.execute(
                    select(Answer.question_id).where(Answer.survey_response_id == response_id)
                ).scalars()
            )
            rows = [
                answer_row(response_id, answer)
                for answer in answers
                if answer.question_id not in stored
            ]
            if rows:
                self.db.add_all(rows)
                self.db.commit()
            return len(rows)
        except Exception:
            self._rollback()
            raise

    def count_answers(self, response_id: str) -> int:
        """Count stored answers of a response."""
        try:
            return self.db.execute(
                select(func.count(Answer.id)).where(Answer.survey_response_id == response_id)
            ).scalar_one()
        except Exception:
            self._rollback()
            raise

    def get(self, tenant_id: str, response_id: str) -> Optional[SurveyResponse]:
        """Fetch a response within a tenant.

        Returns:
            SurveyResponse if found in the tenant, None otherwise
        """
        try:
            return self.db.execute(
                select(SurveyResponse).where(
                    SurveyResponse.id == response_id,
                    SurveyResponse.tenant_id == tenant_id,
                )
            ).scalar_one_or_none()
        except Exception:
            self._rollback()
            raise

    def find_completed(
        self,
        tenant_id: str,
        questionnaire_id: str,
        respondent_key: str,
        exclude_response_id: Optional[str] = None
    ) -> Optional[str]:
        """Find the id of a completed response for a respondent.

        Returns:
            Response id if one exists, None otherwise
        """
        query = select(SurveyResponse.id).where(
            SurveyResponse.tenant_id == tenant_id,
            SurveyResponse.questionnaire_id == questionnaire_id,
            SurveyResponse.respondent_key == respondent_key,
            SurveyResponse.is_complete.is_(True),
        )
        if exclude_response_id is not None:
            query = query.where(SurveyResponse.id != exclude_response_id)
        try:
            return self.db.execute(query.limit(1)).scalar_one_or_none()
        except Exception:
            self._rollback()
            raise

    def replace_draft(self, tenant_id: str, response_id: str, fields: dict[str, Any]) -> SurveyResponse:
        """Overwrite a draft's columns and remove its answers.

        The new answers are inserted afterwards with insert_answer_chunk.

        Raises:
            ResponseNotFoundError: If the draft does not exist in the tenant
            ResponseNotEditableError: If the response is already complete
        """
        try:
            response = self._get_draft(tenant_id, response_id)
            for name, value in fields.items():
                setattr(response, name, value)
            self.db.execute(delete(Answer).where(Answer.survey_response_id == response_id))
            self.db.commit()
            return response
        except (ResponseNotFoundError, ResponseNotEditableError):
            raise
        except Exception:
            self._rollback()
            raise

    def delete_draft(self, tenant_id: str, response_id: str) -> None:
        """Delete a draft and its answers.

        Raises:
            ResponseNotFoundError: If the draft does not exist in the tenant
            ResponseNotEditableError: If the response is already complete
        """
        try:
            response = self._get_draft(tenant_id, response_id)
            self.db.delete(response)
            self.db.commit()
        except (ResponseNotFoundError, ResponseNotEditableError):
            raise
        except Exception:
            self._rollback()
            raise

    def _get_draft(self, tenant_id: str, response_id: str) -> SurveyResponse:
        response = self.db.execute(
            select(SurveyResponse).where(
                SurveyResponse.id == response_id,
                SurveyResponse.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if response is None:
            raise ResponseNotFoundError(response_id)
        if response.is_complete:
            raise ResponseNotEditableError(response_id)
        return response

    def find_partial_responses(
        self,
        tenant_id: Optional[str] = None,
        limit: int = 100
    ) -> list[tuple[SurveyResponse, int]]:
        """List responses with fewer stored answers than expected.

        These are left behind when the answers insert fails after the
        response row was committed.

        Args:
            tenant_id: Restrict to one tenant
            limit: Maximum rows returned

        Returns:
            (response, stored answer count) pairs, oldest first
        """
        stored = func.count(Answer.id)
        query = (
            select(SurveyResponse, stored)
            .outerjoin(Answer, Answer.survey_response_id == SurveyResponse.id)
            .group_by(SurveyResponse.id)
            .having(stored < SurveyResponse.expected_answer_count)
            .order_by(SurveyResponse.created_at)
            .limit(limit)
        )
        if tenant_id is not None:
            query = query.where(SurveyResponse.tenant_id == tenant_id)
        try:
            return [(response, count) for response, count in self.db.execute(query).all()]
        except Exception:
            self._rollback()
            raise

    def find_by_client_id(self, tenant_id: str, volunteer_id: int, client_id: str) -> Optional[str]:
        """Find a response a volunteer already uploaded under a client id.

        Offline clients resend a whole queue when they reconnect, so a
        client id seen before marks a submission that is already stored.

        Returns:
            Response id if one exists, None otherwise
        """
        try:
            return self.db.execute(
                select(SurveyResponse.id).where(
                    SurveyResponse.tenant_id == tenant_id,
                    SurveyResponse.volunteer_id == volunteer_id,
                    SurveyResponse.client_id == client_id,
                ).limit(1)
            ).scalar_one_or_none()
        except Exception:
            self._rollback()
            raise

    def list_drafts(
        self,
        tenant_id: str,
        volunteer_id: int,
        questionnaire_id: Optional[str] = None,
        limit: int = 10,
        offset: int = 0
    ) -> tuple[list[tuple[SurveyResponse, int]], int]:
        """List a volunteer's drafts, most recently updated first.

        Args:
            tenant_id: Tenant of the volunteer
            volunteer_id: Owner of the drafts
            questionnaire_id: Restrict to one questionnaire
            limit: Page size
            offset: Rows to skip

        Returns:
            ((draft, stored answer count) pairs for the page, total drafts)
        """
        filters = [
            SurveyResponse.tenant_id == tenant_id,
            SurveyResponse.volunteer_id == volunteer_id,
            SurveyResponse.is_complete.is_(False),
        ]
        if questionnaire_id is not None:
            filters.append(SurveyResponse.questionnaire_id == questionnaire_id)

        stored = func.count(Answer.id)
        page = (
            select(SurveyResponse, stored)
            .outerjoin(Answer, Answer.survey_response_id == SurveyResponse.id)
            .where(*filters)
            .group_by(SurveyResponse.id)
            .order_by(SurveyResponse.updated_at.desc(), SurveyResponse.id)
            .limit(limit)
            .offset(offset)
        )
        try:
            rows = [(draft, count) for draft, count in self.db.execute(page).all()]
            total = self.db.execute(
                select(func.count(SurveyResponse.id)).where(*filters)
            ).scalar_one()
            return rows, total
        except Exception:
            self._rollback()
            raise

    def find_stale_drafts(
        self,
        tenant_id: str,
        volunteer_id: int,
        updated_before: datetime,
        questionnaire_id: Optional[str] = None
    ) -> list[SurveyResponse]:
        """List a volunteer's drafts not touched since a cutoff, newest first."""
        query = select(SurveyResponse).where(
            SurveyResponse.tenant_id == tenant_id,
            SurveyResponse.volunteer_id == volunteer_id,
            SurveyResponse.is_complete.is_(False),
            SurveyResponse.updated_at < updated_before,
        )
        if questionnaire_id is not None:
            query = query.where(SurveyResponse.questionnaire_id == questionnaire_id)
        query = query.order_by(SurveyResponse.updated_at.desc(), SurveyResponse.id)
        try:
            return list(self.db.execute(query).scalars())
        except Exception:
            self._rollback()
            raise

    def delete_drafts(self, tenant_id: str, volunteer_id: int, response_ids: list[str]) -> int:
        """Delete several drafts of one volunteer in a single transaction.

        Ids that are not drafts owned by the volunteer are ignored.

        Returns:
            Number of drafts deleted
        """
        if not response_ids:
            return 0
        try:
            drafts = self.db.execute(
                select(SurveyResponse).where(
                    SurveyResponse.id.in_(response_ids),
                    SurveyResponse.tenant_id == tenant_id,
                    SurveyResponse.volunteer_id == volunteer_id,
                    SurveyResponse.is_complete.is_(False),
                )
            ).scalars().all()
            for draft in drafts:
                self.db.delete(draft)
            self.db.commit()
            return len(drafts)
        except Exception:
            self._rollback()
            raise


def partition_stale_drafts(
    drafts: list[SurveyResponse],
    keep_recent: int
) -> tuple[list[SurveyResponse], list[SurveyResponse]]:
    """Split stale drafts into those kept and those to delete.

    The keep_recent newest drafts of each questionnaire are kept.

    Args:
        drafts: Stale drafts, newest first
        keep_recent: Drafts kept per questionnaire

    Returns:
        (kept, to delete), each newest first
    """
    seen: dict[str, int] = {}
    kept: list[SurveyResponse] = []
    doomed: list[SurveyResponse] = []
    for draft in drafts:
        seen[draft.questionnaire_id] = seen.get(draft.questionnaire_id, 0) + 1
        if seen[draft.questionnaire_id] <= keep_recent:
            kept.append(draft)
        else:
            doomed.append(draft)
    return kept, doomed
