"""Pydantic schemas for sanitized survey submissions.

These models describe the canonical shape produced by the input sanitizer.
They are deliberately permissive: the sanitizer never rejects input, so
every field has a neutral default and the validator decides what is
acceptable.
"""

from typing import Optional, Union

from pydantic import BaseModel, Field

# Canonical answer value: free text/choice, number, or checkbox selections
AnswerValue = Union[str, int, float, list[str]]


class CleanAnswer(BaseModel):
    """One sanitized answer.

    Attributes:
        question_id: Question being answered
        answer_value: Sanitized value
        answer_text: Optional free-text override (e.g., "Other: ...")
        skipped: Whether the volunteer skipped the question
    """
    question_id: str
    answer_value: AnswerValue = ""
    answer_text: Optional[str] = None
    skipped: bool = False


class DeviceInfo(BaseModel):
    """Client device description reported by the mobile form."""
    user_agent: str = ""
    screen_size: str = ""
    connection_type: Optional[str] = None
    platform: Optional[str] = None


class GeoLocation(BaseModel):
    """Optional position where the interview took place."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None


class SubmissionMetadata(BaseModel):
    """Client-side timing, device and location metadata."""
    start_time: Optional[str] = None
    completion_time: Optional[str] = None
    device_info: Optional[DeviceInfo] = None
    location: Optional[GeoLocation] = None


class CleanSubmission(BaseModel):
    """A survey submission after sanitization.

    tenant and volunteer identity are intentionally absent: they are taken
    from the authenticated caller, never from the payload.
    """
    questionnaire_id: str = ""
    answers: list[CleanAnswer] = Field(default_factory=list)
    metadata: SubmissionMetadata = Field(default_factory=SubmissionMetadata)
    is_draft: bool = False
    respondent_name: str = ""
    respondent_email: Optional[str] = None
    respondent_phone: Optional[str] = None
    precinct_id: Optional[str] = None
