"""Submission validation against a questionnaire structure.

This module checks a sanitized submission against the questionnaire it
answers: envelope fields, required-ness, types and format rules of every
visible question, orphaned answers and cross-question business rules. It
produces field-level diagnostics and a completion percentage.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Optional

from canvass.schemas.questionnaire import Question, QuestionType, Questionnaire
from canvass.schemas.submission import AnswerValue, CleanAnswer, CleanSubmission
from canvass.services.questionnaire_validator import QuestionnaireValidator
from canvass.services.sanitizer import parse_iso_timestamp
from canvass.services.visibility import VisibilityService
from canvass.logging_config import get_logger

logger = get_logger(__name__)

EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PHONE_REGEX = re.compile(r"^[0-9]{3}-[0-9]{3}-[0-9]{4}$")

# Error keys that reject a draft as well as a completed submission
ENVELOPE_FIELDS = (
    "questionnaire_id",
    "respondent_name",
    "respondent_email",
    "respondent_phone",
    "metadata",
)

MESSAGES = {
    "required": "This question is required",
    "required_pending": "Required question still pending",
    "email": "Enter a valid email address",
    "phone": "Required format: 787-555-1234",
    "text": "Answer must be text",
    "number": "Answer must be a number",
    "option": "Selected option is not valid",
    "selections": "Answer must be a list of selections",
    "invalid_selections": "Some selections are not valid",
    "invalid_date": "Enter a valid date",
    "future_date": "Date cannot be in the future",
    "invalid_format": "Invalid format",
}


@dataclass
class ValidationVerdict:
    """Result of validating a submission.

    Attributes:
        is_valid: Whether the submission has no errors
        errors: Messages keyed by field path (e.g., "answers.party")
        warnings: Non-blocking messages keyed by field path
        completion_percentage: Answered share of required visible questions (0-100)
    """
    is_valid: bool
    errors: dict[str, list[str]] = field(default_factory=dict)
    warnings: dict[str, list[str]] = field(default_factory=dict)
    completion_percentage: int = 0

    def has_envelope_errors(self) -> bool:
        """Check for errors outside the per-question answers."""
        return any(key.startswith(ENVELOPE_FIELDS) for key in self.errors)


def is_empty_answer(value: AnswerValue) -> bool:
    """Check if an answer value counts as not answered."""
    if value is None or value == "":
        return True
    if isinstance(value, list) and len(value) == 0:
        return True
    return False


def answered_values(answers: list[CleanAnswer]) -> dict[str, AnswerValue]:
    """Map question id to value for answers that were given (not skipped or empty)."""
    return {
        answer.question_id: answer.answer_value
        for answer in answers
        if not answer.skipped and not is_empty_answer(answer.answer_value)
    }


def resolve_visibility(
    questionnaire: Questionnaire,
    answered: dict[str, AnswerValue]
) -> tuple[set[str], dict[str, AnswerValue]]:
    """Decide which questions are visible and keep only their answers.

    Questions are resolved prerequisites first. A question's answer only
    feeds later visibility rules once the question itself is visible, so
    an answer left behind on a hidden question cannot reveal anything.

    Returns:
        (visible question ids, answers restricted to visible questions)
    """
    questions = questionnaire.question_map()
    visible: set[str] = set()
    visible_answers: dict[str, AnswerValue] = {}
    for question_id in QuestionnaireValidator.resolution_order(questionnaire):
        question = questions[question_id]
        if not VisibilityService.is_visible(question.conditional, visible_answers):
            continue
        visible.add(question_id)
        if question_id in answered:
            visible_answers[question_id] = answered[question_id]
    return visible, visible_answers


def _age_range_consistency(
    submission: CleanSubmission,
    answered: dict[str, AnswerValue]
) -> dict[str, list[str]]:
    """Check that a birth date agrees with the selected age range."""
    birth_date = answered.get("birth_date")
    age_range = answered.get("age_range")
    if not isinstance(birth_date, str) or not isinstance(age_range, str):
        return {}
    parsed = parse_iso_timestamp(birth_date)
    if parsed is None:
        return {}

    today = datetime.now(timezone.utc).date()
    born = parsed.date()
    age = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
    ranges = {
        "18-25": 18 <= age <= 25,
        "26-40": 26 <= age <= 40,
        "41-55": 41 <= age <= 55,
        "56+": age >= 56,
    }
    if not ranges.get(age_range, False):
        return {"answers.age_consistency": ["Calculated age does not match the selected age range"]}
    return {}


BusinessRule = Callable[[CleanSubmission, dict[str, AnswerValue]], dict[str, list[str]]]

BUSINESS_RULES: list[BusinessRule] = [_age_range_consistency]


class SubmissionValidator:
    """Service for validating submissions against questionnaire rules."""

    def __init__(self, business_rules: Optional[list[BusinessRule]] = None):
        """Initialize validator.

        Args:
            business_rules: Cross-question checks (defaults to BUSINESS_RULES)
        """
        self.business_rules = BUSINESS_RULES if business_rules is None else business_rules

    def validate(self, submission: CleanSubmission, questionnaire: Questionnaire) -> ValidationVerdict:
        """Validate a sanitized submission.

        Hidden questions (visibility rule false) are ignored regardless of
        their answer. Missing required answers are errors for complete
        submissions and warnings for drafts.

        Args:
            submission: Output of the input sanitizer
            questionnaire: Structure the submission answers

        Returns:
            ValidationVerdict with errors, warnings and completion percentage

        Example:
            >>> verdict = SubmissionValidator().validate(clean, questionnaire)
            >>> verdict.is_valid, verdict.completion_percentage
            (True, 100)
        """
        errors: dict[str, list[str]] = {}
        warnings: dict[str, list[str]] = {}

        self._validate_envelope(submission, errors, warnings)

        questions = questionnaire.question_map()
        answers_by_id = {answer.question_id: answer for answer in submission.answers}
        visible, answered = resolve_visibility(questionnaire, answered_values(submission.answers))

        required_visible = 0
        answered_required_visible = 0

        for question in questions.values():
            if question.id not in visible:
                continue

            field_key = f"answers.{question.id}"
            is_answered = question.id in answered

            if question.required:
                required_visible += 1
                if is_answered:
                    answered_required_visible += 1
                else:
                    if submission.is_draft:
                        warnings[field_key] = [MESSAGES["required_pending"]]
                    else:
                        errors[field_key] = [MESSAGES["required"]]
                    continue

            if not is_answered:
                continue

            messages = self.validate_answer(question, answers_by_id[question.id].answer_value)
            if messages:
                errors[field_key] = messages

        orphaned = [answer.question_id for answer in submission.answers if answer.question_id not in questions]
        if orphaned:
            errors["orphaned_answers"] = [
                f"Found {len(orphaned)} answers without matching questions: {', '.join(orphaned)}"
            ]

        for rule in self.business_rules:
            errors.update(rule(submission, answered))

        if required_visible == 0:
            completion = 100
        else:
            completion = (answered_required_visible * 100) // required_visible

        verdict = ValidationVerdict(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            completion_percentage=completion,
        )
        logger.debug(
            f"Validated submission for {questionnaire.id}: valid={verdict.is_valid}, "
            f"errors={len(errors)}, completion={completion}%"
        )
        return verdict

    def _validate_envelope(
        self,
        submission: CleanSubmission,
        errors: dict[str, list[str]],
        warnings: dict[str, list[str]]
    ) -> None:
        """Validate identity, respondent and metadata fields."""
        if not submission.questionnaire_id:
            errors["questionnaire_id"] = ["Questionnaire ID is required"]

        if not submission.respondent_name:
            errors["respondent_name"] = ["Respondent name is required"]
        elif len(submission.respondent_name) < 2:
            errors["respondent_name"] = ["Name must be at least 2 characters"]

        if submission.respondent_email and not EMAIL_REGEX.match(submission.respondent_email):
            errors["respondent_email"] = [MESSAGES["email"]]

        if submission.respondent_phone and not PHONE_REGEX.match(submission.respondent_phone):
            errors["respondent_phone"] = [MESSAGES["phone"]]

        metadata = submission.metadata
        start = parse_iso_timestamp(metadata.start_time) if metadata.start_time else None
        if start is None:
            errors["metadata.start_time"] = ["A valid start time is required"]

        if metadata.completion_time:
            completion = parse_iso_timestamp(metadata.completion_time)
            if completion is None:
                errors["metadata.completion_time"] = ["Invalid completion time"]
            elif start is not None and completion < start:
                warnings["metadata.completion_time"] = ["Completion time is before start time"]

        if metadata.device_info is None:
            errors["metadata.device_info"] = ["Device information is required"]

    def validate_answer(self, question: Question, value: AnswerValue) -> list[str]:
        """Validate one answered question.

        Args:
            question: Question definition
            value: Non-empty answer value

        Returns:
            List of error messages (empty when valid)
        """
        rules = question.validation
        errors: list[str] = []

        if question.type in (QuestionType.TEXT, QuestionType.TEXTAREA):
            if not isinstance(value, str):
                return [MESSAGES["text"]]
            if rules is not None:
                if rules.min_length is not None and len(value) < rules.min_length:
                    errors.append(f"Minimum {rules.min_length} characters")
                if rules.max_length is not None and len(value) > rules.max_length:
                    errors.append(f"Maximum {rules.max_length} characters")
                if rules.pattern is not None and not _matches(rules.pattern, value, question.id):
                    errors.append(MESSAGES["invalid_format"])

        elif question.type == QuestionType.EMAIL:
            if not isinstance(value, str) or not EMAIL_REGEX.match(value):
                errors.append(MESSAGES["email"])

        elif question.type == QuestionType.TEL:
            if not isinstance(value, str) or not PHONE_REGEX.match(value):
                errors.append(MESSAGES["phone"])

        elif question.type == QuestionType.DATE:
            parsed = parse_iso_timestamp(value) if isinstance(value, str) else None
            if parsed is None:
                errors.append(MESSAGES["invalid_date"])
            elif rules is not None and rules.no_future and parsed.date() > date.today():
                errors.append(MESSAGES["future_date"])

        elif question.type == QuestionType.SCALE:
            number = _as_number(value)
            if number is None:
                return [MESSAGES["number"]]
            low = rules.min if rules is not None and rules.min is not None else 0
            high = rules.max if rules is not None and rules.max is not None else 10
            if number < low or number > high:
                errors.append(f"Value must be between {_fmt(low)} and {_fmt(high)}")

        elif question.type == QuestionType.RADIO:
            if not isinstance(value, str):
                return [MESSAGES["option"]]
            if value not in question.option_values():
                errors.append(MESSAGES["option"])

        elif question.type == QuestionType.CHECKBOX:
            if not isinstance(value, list):
                return [MESSAGES["selections"]]
            if rules is not None:
                if rules.min_selections and len(value) < rules.min_selections:
                    errors.append(f"Select at least {rules.min_selections} options")
                if rules.max_selections and len(value) > rules.max_selections:
                    errors.append(f"Select at most {rules.max_selections} options")
            valid = set(question.option_values())
            if any(item not in valid for item in value):
                errors.append(MESSAGES["invalid_selections"])

        return errors


def _matches(pattern: str, value: str, question_id: str) -> bool:
    """Match a questionnaire-supplied pattern; a broken pattern never matches."""
    try:
        return re.search(pattern, value) is not None
    except re.error as e:
        logger.error(f"Invalid regex pattern in question {question_id}: {e}")
        return False


def _as_number(value: AnswerValue) -> Optional[float]:
    """Read a scale answer sent as a number or numeric string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)
