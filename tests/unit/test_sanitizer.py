"""Unit tests for the input sanitizer."""

import pytest

from canvass.services.sanitizer import (
    InputSanitizer,
    MAX_ANSWERS,
    MAX_NUMERIC,
    MAX_STRING_LENGTH,
    parse_iso_timestamp,
)


@pytest.fixture
def sanitizer():
    return InputSanitizer()


class TestStrings:
    """Tests for free-text cleaning."""

    def test_removes_script_blocks(self, sanitizer):
        assert sanitizer.sanitize_string("Hola<script>alert(1)</script> mundo") == "Hola mundo"

    def test_removes_tags_and_stray_brackets(self, sanitizer):
        assert sanitizer.sanitize_string("<b>bold</b> a > b") == "bold a b"

    def test_removes_nested_tag_fragments(self, sanitizer):
        """Removing one tag must not leave a new one behind."""
        assert "<" not in sanitizer.sanitize_string("<<b>script>x")

    def test_removes_dangerous_schemes(self, sanitizer):
        cleaned = sanitizer.sanitize_string("click javascript:alert(1) or VBScript :x")
        assert "javascript" not in cleaned.lower()
        assert "vbscript" not in cleaned.lower()

    def test_scheme_reassembled_after_removal(self, sanitizer):
        assert "javascript:" not in sanitizer.sanitize_string("javajavascript:script:x").lower()

    def test_collapses_whitespace_and_control_chars(self, sanitizer):
        assert sanitizer.sanitize_string("  a\t\tb\x00\n c  ") == "a b c"

    def test_truncates(self, sanitizer):
        assert len(sanitizer.sanitize_string("x" * (MAX_STRING_LENGTH + 50))) == MAX_STRING_LENGTH

    def test_non_string_becomes_empty(self, sanitizer):
        assert sanitizer.sanitize_string(42) == ""
        assert sanitizer.sanitize_string(None) == ""

    def test_person_name_keeps_accents(self, sanitizer):
        assert sanitizer.sanitize_person_name("  José \"Pepe\" García ") == "José Pepe García"


class TestContactFields:
    """Tests for email, phone and timestamp normalization."""

    def test_email_lowercased(self, sanitizer):
        assert sanitizer.sanitize_email("  Jose@Example.COM ") == "jose@example.com"

    def test_empty_email_is_none(self, sanitizer):
        assert sanitizer.sanitize_email("   ") is None

    @pytest.mark.parametrize("raw", ["7875551234", "(787) 555-1234", "787.555.1234", 7875551234])
    def test_phone_formatted(self, sanitizer, raw):
        assert sanitizer.sanitize_phone(raw) == "787-555-1234"

    def test_invalid_phone_kept_for_validator(self, sanitizer):
        assert sanitizer.sanitize_phone("555-12") == "555-12"

    def test_timestamp_normalized_to_utc(self, sanitizer):
        assert sanitizer.sanitize_timestamp("2024-01-15T06:00:00-04:00") == "2024-01-15T10:00:00Z"

    def test_unparseable_timestamp_kept(self, sanitizer):
        assert sanitizer.sanitize_timestamp("yesterday") == "yesterday"

    def test_parse_naive_timestamp_as_utc(self):
        parsed = parse_iso_timestamp("2024-01-15T10:00:00")
        assert parsed.utcoffset().total_seconds() == 0


class TestAnswers:
    """Tests for answer collection coercion."""

    def test_single_object_wrapped(self, sanitizer):
        answers = sanitizer.sanitize_answers({"question_id": "name", "answer_value": "Ana"})
        assert [a.question_id for a in answers] == ["name"]

    def test_non_list_becomes_empty(self, sanitizer):
        assert sanitizer.sanitize_answers("nope") == []

    def test_entries_without_question_id_dropped(self, sanitizer):
        answers = sanitizer.sanitize_answers([{"answer_value": "x"}, "junk", {"question_id": "a"}])
        assert [a.question_id for a in answers] == ["a"]

    def test_duplicates_keep_first_position_last_value(self, sanitizer):
        answers = sanitizer.sanitize_answers([
            {"question_id": "a", "answer_value": "1"},
            {"question_id": "b", "answer_value": "2"},
            {"question_id": "a", "answer_value": "3"},
        ])
        assert [(a.question_id, a.answer_value) for a in answers] == [("a", "3"), ("b", "2")]

    def test_answer_count_capped(self, sanitizer):
        raw = [{"question_id": f"q{i}", "answer_value": "x"} for i in range(MAX_ANSWERS + 10)]
        assert len(sanitizer.sanitize_answers(raw)) == MAX_ANSWERS

    def test_value_coercions(self, sanitizer):
        assert sanitizer.sanitize_answer_value(None) == ""
        assert sanitizer.sanitize_answer_value(True) == "true"
        assert sanitizer.sanitize_answer_value(10 ** 9) == MAX_NUMERIC
        assert sanitizer.sanitize_answer_value(float("nan")) == 0
        assert sanitizer.sanitize_answer_value({"a": 1}) == ""
        assert sanitizer.sanitize_answer_value(["pnp", "", 3, "<b>ppd</b>"]) == ["pnp", "3", "ppd"]


class TestMetadata:
    """Tests for metadata and location handling."""

    def test_location_outside_bounds_dropped(self):
        sanitizer = InputSanitizer(location_bounds=(17.8, 18.6, -67.4, -65.2))
        assert sanitizer.sanitize_location({"latitude": 40.7, "longitude": -74.0}) is None

    def test_location_inside_bounds_kept(self):
        sanitizer = InputSanitizer(location_bounds=(17.8, 18.6, -67.4, -65.2))
        location = sanitizer.sanitize_location({"latitude": "18.4", "longitude": -66.1, "accuracy": -50000})
        assert location.latitude == 18.4
        assert location.accuracy == 10000.0

    def test_missing_device_info_is_none(self, sanitizer):
        assert sanitizer.sanitize_metadata({}).device_info is None


class TestSanitize:
    """Tests for whole-submission sanitization."""

    def test_non_object_yields_empty_submission(self, sanitizer):
        clean = sanitizer.sanitize(["not", "an", "object"])
        assert clean.questionnaire_id == ""
        assert clean.answers == []

    def test_is_draft_string_flag(self, sanitizer):
        assert sanitizer.sanitize({"is_draft": "true"}).is_draft is True

    @pytest.mark.parametrize("raw", [
        {
            "questionnaire_id": " q1 ",
            "respondent_name": "  <i>José</i>  'García'  ",
            "respondent_email": " ANA@Example.com ",
            "respondent_phone": "(787) 555 1234",
            "is_draft": 1,
            "precinct_id": "  P-07 ",
            "answers": [
                {"question_id": "name", "answer_value": "José\t García", "answer_text": " other "},
                {"question_id": "score", "answer_value": 7.5},
                {"question_id": "issues", "answer_value": ["economy", None, 4]},
                {"question_id": "name", "answer_value": "javascript:José", "skipped": "yes"},
            ],
            "metadata": {
                "start_time": "2024-01-15T06:00:00.250-04:00",
                "completion_time": "not a time",
                "device_info": {"user_agent": "Mozilla <script>x</script>", "screen_size": 390},
                "location": {"latitude": 18.4, "longitude": "-66.1", "accuracy": 12},
            },
        },
        {"answers": {"question_id": "a", "answer_value": False}, "metadata": "junk"},
        {},
    ])
    def test_idempotent(self, sanitizer, raw):
        """Sanitizing sanitized output yields byte-identical output."""
        once = sanitizer.sanitize(raw)
        twice = sanitizer.sanitize(once.model_dump())
        assert twice.model_dump_json() == once.model_dump_json()
