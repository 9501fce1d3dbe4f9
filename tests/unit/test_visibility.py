"""Unit tests for conditional visibility evaluation.

Tests the rule operators and safe expression evaluation with simpleeval.
"""

import pytest

from canvass.schemas.questionnaire import ConditionalRule
from canvass.services.visibility import VisibilityService, VisibilityRuleError


def rule(**kwargs) -> ConditionalRule:
    return ConditionalRule(**kwargs)


class TestVisibilityService:
    """Tests for VisibilityService class."""

    def test_no_rule_is_visible(self):
        assert VisibilityService.is_visible(None, {}) is True

    def test_equals(self):
        r = rule(question_id="leans_party", value="yes")
        assert VisibilityService.is_visible(r, {"leans_party": "yes"}) is True
        assert VisibilityService.is_visible(r, {"leans_party": "no"}) is False

    def test_equals_tolerates_number_strings(self):
        r = rule(question_id="score", value=5)
        assert VisibilityService.is_visible(r, {"score": "5"}) is True

    def test_missing_prerequisite_is_false_for_every_operator(self):
        """A skipped prerequisite hides the question, even for not_equals."""
        assert VisibilityService.is_visible(rule(question_id="a", value="x"), {}) is False
        assert VisibilityService.is_visible(
            rule(question_id="a", operator="not_equals", value="x"), {}
        ) is False
        assert VisibilityService.is_visible(rule(question_id="a", operator="answered"), {}) is False

    def test_not_equals(self):
        r = rule(question_id="a", operator="not_equals", value="x")
        assert VisibilityService.is_visible(r, {"a": "y"}) is True
        assert VisibilityService.is_visible(r, {"a": "x"}) is False

    def test_in_and_not_in(self):
        r_in = rule(question_id="party", operator="in", value=["pnp", "ppd"])
        r_not_in = rule(question_id="party", operator="not_in", value=["pnp", "ppd"])
        assert VisibilityService.is_visible(r_in, {"party": "ppd"}) is True
        assert VisibilityService.is_visible(r_in, {"party": "pip"}) is False
        assert VisibilityService.is_visible(r_not_in, {"party": "pip"}) is True

    def test_in_with_checkbox_answer(self):
        r = rule(question_id="issues", operator="in", value=["energy"])
        assert VisibilityService.is_visible(r, {"issues": ["economy", "energy"]}) is True

    def test_contains(self):
        r = rule(question_id="issues", operator="contains", value="health")
        assert VisibilityService.is_visible(r, {"issues": ["health"]}) is True
        assert VisibilityService.is_visible(r, {"issues": ["economy"]}) is False

    def test_answered(self):
        r = rule(question_id="comments", operator="answered")
        assert VisibilityService.is_visible(r, {"comments": "hi"}) is True

    def test_all_and_any(self):
        r_all = rule(all=[
            {"question_id": "a", "value": "1"},
            {"question_id": "b", "value": "2"},
        ])
        r_any = rule(any=[
            {"question_id": "a", "value": "1"},
            {"question_id": "b", "value": "2"},
        ])
        answers = {"a": "1", "b": "3"}
        assert VisibilityService.is_visible(r_all, answers) is False
        assert VisibilityService.is_visible(r_any, answers) is True

    def test_expression(self):
        r = rule(expression="likelihood_to_vote >= 7")
        assert VisibilityService.is_visible(r, {"likelihood_to_vote": 8}) is True
        assert VisibilityService.is_visible(r, {"likelihood_to_vote": 3}) is False

    def test_expression_with_unanswered_name_hides_question(self):
        r = rule(expression="age >= 18")
        assert VisibilityService.is_visible(r, {}) is False

    def test_evaluate_expression_raises_on_undefined_name(self):
        with pytest.raises(VisibilityRuleError):
            VisibilityService.evaluate_expression("age >= 18", {})

    def test_evaluate_expression_blocks_unsafe_calls(self):
        with pytest.raises(VisibilityRuleError):
            VisibilityService.evaluate_expression("__import__('os').system('ls')", {})

    def test_rule_requires_single_shape(self):
        with pytest.raises(ValueError):
            ConditionalRule(question_id="a", value="x", expression="a == 'x'")

    def test_in_requires_list(self):
        with pytest.raises(ValueError):
            ConditionalRule(question_id="a", operator="in", value="x")
