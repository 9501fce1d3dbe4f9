"""Conditional visibility evaluation for questionnaire questions.

A question's visibility rule is a small declarative structure. This module
interprets it as a pure function of the answers given so far, so new rule
shapes only need a new entry in the comparator table.

Expressions are evaluated with simpleeval to avoid arbitrary code execution.
"""

from typing import Any, Callable, Mapping, Optional

from simpleeval import simple_eval, InvalidExpression

from canvass.schemas.questionnaire import ConditionalRule, RuleOperator
from canvass.schemas.submission import AnswerValue
from canvass.logging_config import get_logger

logger = get_logger(__name__)


class VisibilityRuleError(Exception):
    """Raised when a visibility expression cannot be evaluated."""
    pass


def _same(actual: Any, expected: Any) -> bool:
    """Compare an answer with a rule value, tolerating "5" vs 5."""
    if actual == expected:
        return True
    if isinstance(actual, (list, dict)) or isinstance(expected, (list, dict)):
        return False
    return str(actual) == str(expected)


def _equals(actual: AnswerValue, expected: Any) -> bool:
    return _same(actual, expected)


def _not_equals(actual: AnswerValue, expected: Any) -> bool:
    return not _same(actual, expected)


def _in(actual: AnswerValue, expected: Any) -> bool:
    if isinstance(actual, list):
        return any(_same(item, candidate) for item in actual for candidate in expected)
    return any(_same(actual, candidate) for candidate in expected)


def _not_in(actual: AnswerValue, expected: Any) -> bool:
    return not _in(actual, expected)


def _contains(actual: AnswerValue, expected: Any) -> bool:
    if isinstance(actual, list):
        return any(_same(item, expected) for item in actual)
    return str(expected) in str(actual)


def _answered(actual: AnswerValue, expected: Any) -> bool:
    return True


# Comparators receive the prerequisite's answer, which is always present
_COMPARATORS: dict[RuleOperator, Callable[[AnswerValue, Any], bool]] = {
    RuleOperator.EQUALS: _equals,
    RuleOperator.NOT_EQUALS: _not_equals,
    RuleOperator.IN: _in,
    RuleOperator.NOT_IN: _not_in,
    RuleOperator.CONTAINS: _contains,
    RuleOperator.ANSWERED: _answered,
}


class VisibilityService:
    """Service for evaluating question visibility rules."""

    @staticmethod
    def evaluate_expression(expression: str, answers: Mapping[str, AnswerValue]) -> bool:
        """Evaluate a visibility expression safely.

        Names in the expression resolve to answered question ids. A name
        that refers to an unanswered or skipped question is undefined and
        makes the evaluation fail.

        Args:
            expression: simpleeval expression string
            answers: Answered question values keyed by question id

        Returns:
            Boolean result of expression

        Raises:
            VisibilityRuleError: If expression is invalid or evaluation fails

        Example:
            >>> VisibilityService.evaluate_expression("age >= 18", {"age": 25})
            True
        """
        try:
            result = simple_eval(expression, names=dict(answers))
        except InvalidExpression as e:
            raise VisibilityRuleError(f"Invalid visibility expression: {e}")
        except KeyError as e:
            raise VisibilityRuleError(f"Undefined variable in expression: {e}")
        except Exception as e:
            raise VisibilityRuleError(f"Error evaluating expression: {e}")

        if not isinstance(result, bool):
            logger.warning(f"Expression '{expression}' did not return boolean: {result}")
            return bool(result)
        return result

    @staticmethod
    def evaluate(rule: ConditionalRule, answers: Mapping[str, AnswerValue]) -> bool:
        """Evaluate a rule against answered questions.

        A comparison whose prerequisite question is missing or skipped is
        false for every operator, including not_equals.

        Raises:
            VisibilityRuleError: If an expression cannot be evaluated
        """
        if rule.all_of is not None:
            return all(VisibilityService.evaluate(r, answers) for r in rule.all_of)
        if rule.any_of is not None:
            return any(VisibilityService.evaluate(r, answers) for r in rule.any_of)
        if rule.expression is not None:
            return VisibilityService.evaluate_expression(rule.expression, answers)

        if rule.question_id not in answers:
            return False
        comparator = _COMPARATORS[rule.operator]
        return comparator(answers[rule.question_id], rule.value)

    @staticmethod
    def is_visible(
        rule: Optional[ConditionalRule],
        answers: Mapping[str, AnswerValue]
    ) -> bool:
        """Decide whether a question with the given rule is shown.

        Args:
            rule: The question's visibility rule (None means always visible)
            answers: Answered question values keyed by question id; skipped
                and empty answers must already be excluded

        Returns:
            True if the question is visible

        Example:
            >>> rule = ConditionalRule(question_id="leans_party", value="yes")
            >>> VisibilityService.is_visible(rule, {"leans_party": "no"})
            False
        """
        if rule is None:
            return True
        try:
            return VisibilityService.evaluate(rule, answers)
        except VisibilityRuleError as e:
            logger.warning(f"Treating question as hidden: {e}")
            return False
