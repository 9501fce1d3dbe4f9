"""Duplicate submission detection.

A completed response is unique per tenant, questionnaire and respondent
key. This module performs the read-side check before insert; the partial
unique index on survey_responses is the backstop for concurrent inserts.
"""

from typing import Optional

from canvass.services.repository import SurveyResponseRepository
from canvass.services.respondent_key import RespondentKey
from canvass.logging_config import get_logger

logger = get_logger(__name__)


class DuplicateDetector:
    """Service for finding an existing completed response."""

    def __init__(self, repository: SurveyResponseRepository):
        self.repository = repository

    def find_existing(
        self,
        tenant_id: str,
        questionnaire_id: str,
        respondent_key: str,
        exclude_response_id: Optional[str] = None
    ) -> Optional[str]:
        """Look for a completed response of the same respondent.

        Args:
            tenant_id: Caller's tenant
            questionnaire_id: Questionnaire being answered
            respondent_key: Output of RespondentKey.derive()
            exclude_response_id: Response to ignore (a draft being finalized)

        Returns:
            Id of the existing response, or None
        """
        existing = self.repository.find_completed(
            tenant_id, questionnaire_id, respondent_key, exclude_response_id
        )
        if existing is not None:
            logger.info(
                f"Duplicate submission for {questionnaire_id} by "
                f"{RespondentKey.truncate_for_logging(respondent_key)}: existing {existing}"
            )
        return existing
