"""Pydantic schemas for data validation.

This package contains the questionnaire read model and the canonical
shape of a sanitized survey submission.
"""

from canvass.schemas.questionnaire import (
    QuestionType,
    RuleOperator,
    QuestionOption,
    ValidationRules,
    ConditionalRule,
    Question,
    Section,
    Questionnaire,
)
from canvass.schemas.submission import (
    AnswerValue,
    CleanAnswer,
    DeviceInfo,
    GeoLocation,
    SubmissionMetadata,
    CleanSubmission,
)

__all__ = [
    "QuestionType",
    "RuleOperator",
    "QuestionOption",
    "ValidationRules",
    "ConditionalRule",
    "Question",
    "Section",
    "Questionnaire",
    "AnswerValue",
    "CleanAnswer",
    "DeviceInfo",
    "GeoLocation",
    "SubmissionMetadata",
    "CleanSubmission",
]
