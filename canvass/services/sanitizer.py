"""Input sanitization for raw survey submissions.

The sanitizer turns an arbitrary decoded JSON body into a CleanSubmission.
It strips executable markup, normalizes whitespace, truncates oversized
fields and coerces structurally wrong values into a canonical shape.

It never rejects input (that is the validator's job) and it is
idempotent: sanitizing an already-sanitized submission returns it unchanged.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Optional

from canvass.schemas.submission import (
    AnswerValue,
    CleanAnswer,
    CleanSubmission,
    DeviceInfo,
    GeoLocation,
    SubmissionMetadata,
)
from canvass.logging_config import get_logger

logger = get_logger(__name__)

# Hard limits
MAX_STRING_LENGTH = 10000
MAX_ANSWER_TEXT_LENGTH = 1000
MAX_ID_LENGTH = 100
MAX_NAME_LENGTH = 100
MAX_EMAIL_LENGTH = 255
MAX_LIST_ITEM_LENGTH = 500
MAX_ANSWERS = 100
MAX_SELECTIONS = 50
MAX_NUMERIC = 999999
MAX_ACCURACY = 10000.0

WORLD_BOUNDS = (-90.0, 90.0, -180.0, 180.0)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_SCRIPT_BLOCKS = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAGS = re.compile(r"<[^<>]*>")
_DANGEROUS_SCHEMES = re.compile(r"(?:java|vb)script\s*:", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_NAME_CHARS = re.compile(r"[<>\"'`]")
_NON_DIGITS = re.compile(r"\D")
_TRUE_STRINGS = {"true", "1", "yes", "on"}


def _strip_until_stable(pattern: re.Pattern, value: str) -> str:
    """Remove pattern matches until none remain (removal can form new ones)."""
    while True:
        stripped = pattern.sub("", value)
        if stripped == value:
            return stripped
        value = stripped


class InputSanitizer:
    """Service for cleaning raw survey submissions.

    Usage:
        sanitizer = InputSanitizer()
        clean = sanitizer.sanitize(json.loads(body))
    """

    def __init__(self, location_bounds: Optional[tuple[float, float, float, float]] = None):
        """Initialize sanitizer.

        Args:
            location_bounds: Accepted (min_lat, max_lat, min_lng, max_lng);
                locations outside the box are dropped. Defaults to the world.
        """
        self.location_bounds = location_bounds or WORLD_BOUNDS

    def sanitize(self, raw: Any) -> CleanSubmission:
        """Sanitize a decoded submission body.

        Args:
            raw: Decoded JSON body (anything; non-objects yield an empty submission)

        Returns:
            CleanSubmission in canonical shape
        """
        data = raw if isinstance(raw, dict) else {}
        return CleanSubmission(
            questionnaire_id=self.sanitize_string(data.get("questionnaire_id"), MAX_ID_LENGTH),
            answers=self.sanitize_answers(data.get("answers")),
            metadata=self.sanitize_metadata(data.get("metadata")),
            is_draft=self.sanitize_bool(data.get("is_draft")),
            respondent_name=self.sanitize_person_name(data.get("respondent_name")),
            respondent_email=self.sanitize_email(data.get("respondent_email")),
            respondent_phone=self.sanitize_phone(data.get("respondent_phone")),
            precinct_id=self.sanitize_optional_string(data.get("precinct_id"), MAX_ID_LENGTH),
        )

    def sanitize_string(self, value: Any, max_length: int = MAX_STRING_LENGTH) -> str:
        """Strip markup and control characters, collapse whitespace, truncate.

        Non-string input becomes the empty string.
        """
        if not isinstance(value, str):
            return ""
        cleaned = _CONTROL_CHARS.sub("", value)
        cleaned = _SCRIPT_BLOCKS.sub("", cleaned)
        cleaned = _strip_until_stable(_TAGS, cleaned)
        cleaned = cleaned.replace("<", "").replace(">", "")
        cleaned = _strip_until_stable(_DANGEROUS_SCHEMES, cleaned)
        cleaned = _WHITESPACE.sub(" ", cleaned).strip()
        return cleaned[:max_length].rstrip()

    def sanitize_optional_string(self, value: Any, max_length: int = MAX_STRING_LENGTH) -> Optional[str]:
        """Like sanitize_string, but missing or empty values become None."""
        cleaned = self.sanitize_string(value, max_length)
        return cleaned or None

    def sanitize_bool(self, value: Any) -> bool:
        """Coerce flags sent as booleans, numbers or strings."""
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_STRINGS
        return False

    def sanitize_person_name(self, value: Any) -> str:
        """Clean a person name, preserving accents but dropping quote characters."""
        cleaned = self.sanitize_string(value, MAX_NAME_LENGTH)
        cleaned = _NAME_CHARS.sub("", cleaned)
        return _WHITESPACE.sub(" ", cleaned).strip()

    def sanitize_email(self, value: Any) -> Optional[str]:
        """Lowercase and trim an email; format is checked by the validator."""
        cleaned = self.sanitize_string(value, MAX_EMAIL_LENGTH).lower().replace(" ", "")
        return cleaned or None

    def sanitize_phone(self, value: Any) -> Optional[str]:
        """Format ten-digit phone numbers as NNN-NNN-NNNN.

        Other values are kept as cleaned text so the validator can report them.
        """
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        cleaned = self.sanitize_string(value, 20)
        if not cleaned:
            return None
        digits = _NON_DIGITS.sub("", cleaned)
        if len(digits) == 10:
            return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"
        return cleaned

    def sanitize_timestamp(self, value: Any) -> Optional[str]:
        """Normalize ISO-8601 timestamps to UTC with a trailing Z.

        Unparseable values are returned cleaned but otherwise untouched.
        """
        cleaned = self.sanitize_string(value, 64)
        if not cleaned:
            return None
        parsed = parse_iso_timestamp(cleaned)
        if parsed is None:
            return cleaned
        return parsed.isoformat().replace("+00:00", "Z")

    def sanitize_answers(self, value: Any) -> list[CleanAnswer]:
        """Coerce the answers collection into a de-duplicated list.

        A single answer object is wrapped in a list. Entries without a
        question id are dropped. A repeated question id keeps its first
        position and its last value.
        """
        if isinstance(value, dict):
            value = [value]
        if not isinstance(value, list):
            return []

        by_question: dict[str, CleanAnswer] = {}
        for entry in value:
            if not isinstance(entry, dict):
                continue
            question_id = self.sanitize_string(entry.get("question_id"), MAX_ID_LENGTH)
            if not question_id:
                continue
            if question_id not in by_question and len(by_question) >= MAX_ANSWERS:
                continue
            by_question[question_id] = CleanAnswer(
                question_id=question_id,
                answer_value=self.sanitize_answer_value(entry.get("answer_value")),
                answer_text=self.sanitize_optional_string(
                    entry.get("answer_text"), MAX_ANSWER_TEXT_LENGTH
                ),
                skipped=self.sanitize_bool(entry.get("skipped")),
            )
        return list(by_question.values())

    def sanitize_answer_value(self, value: Any) -> AnswerValue:
        """Sanitize an answer value according to its JSON type."""
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            if isinstance(value, float) and not math.isfinite(value):
                return 0
            return max(-MAX_NUMERIC, min(MAX_NUMERIC, value))
        if isinstance(value, list):
            items = []
            for item in value[:MAX_SELECTIONS]:
                if isinstance(item, bool):
                    item = "true" if item else "false"
                elif isinstance(item, (int, float)):
                    item = str(item)
                cleaned = self.sanitize_string(item, MAX_LIST_ITEM_LENGTH)
                if cleaned:
                    items.append(cleaned)
            return items
        if isinstance(value, str):
            return self.sanitize_string(value, MAX_STRING_LENGTH)
        return ""

    def sanitize_metadata(self, value: Any) -> SubmissionMetadata:
        """Sanitize client metadata."""
        data = value if isinstance(value, dict) else {}
        return SubmissionMetadata(
            start_time=self.sanitize_timestamp(data.get("start_time")),
            completion_time=self.sanitize_timestamp(data.get("completion_time")),
            device_info=self.sanitize_device_info(data.get("device_info")),
            location=self.sanitize_location(data.get("location")),
        )

    def sanitize_device_info(self, value: Any) -> Optional[DeviceInfo]:
        """Keep only known device fields, as bounded strings."""
        if not isinstance(value, dict):
            return None
        return DeviceInfo(
            user_agent=self.sanitize_string(value.get("user_agent"), 500),
            screen_size=self.sanitize_string(value.get("screen_size"), 50),
            connection_type=self.sanitize_optional_string(value.get("connection_type"), 50),
            platform=self.sanitize_optional_string(value.get("platform"), 50),
        )

    def sanitize_location(self, value: Any) -> Optional[GeoLocation]:
        """Parse coordinates and drop locations outside the accepted box."""
        if not isinstance(value, dict):
            return None
        latitude = _to_float(value.get("latitude"))
        longitude = _to_float(value.get("longitude"))
        if latitude is None or longitude is None:
            return None

        min_lat, max_lat, min_lng, max_lng = self.location_bounds
        if not (min_lat <= latitude <= max_lat and min_lng <= longitude <= max_lng):
            logger.debug(f"Dropping location outside bounds: {latitude}, {longitude}")
            return None

        accuracy = _to_float(value.get("accuracy"))
        if accuracy is not None:
            accuracy = min(abs(accuracy), MAX_ACCURACY)
        return GeoLocation(latitude=latitude, longitude=longitude, accuracy=accuracy)


def _to_float(value: Any) -> Optional[float]:
    """Parse a finite float from a number or numeric string."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_iso_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are assumed to be UTC. Returns None when unparseable.
    """
    candidate = value.strip()
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
