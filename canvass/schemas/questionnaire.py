"""Pydantic schemas for questionnaire YAML definitions.

This module defines the structure and validation rules for questionnaire
files. Questionnaires are an externally owned read model: the submission
pipeline only reads them to validate incoming answers.
"""

import ast
from enum import Enum
from typing import Any, Iterator, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class QuestionType(str, Enum):
    """Valid question types in questionnaire definitions."""
    TEXT = "text"
    TEXTAREA = "textarea"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    SCALE = "scale"
    DATE = "date"
    EMAIL = "email"
    TEL = "tel"


class RuleOperator(str, Enum):
    """Comparison operators for conditional visibility rules."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    ANSWERED = "answered"


class QuestionOption(BaseModel):
    """A single option for radio and checkbox questions.

    Attributes:
        value: Value stored with the answer (e.g., "pnp")
        label: Text shown to the volunteer (e.g., "Partido Nuevo Progresista")
    """
    value: str = Field(..., min_length=1, description="Stored option value")
    label: str = Field(..., min_length=1, description="Display label")


class ValidationRules(BaseModel):
    """Validation rules for question answers.

    Different question types use different fields:
    - text/textarea: min_length, max_length, pattern
    - scale: min, max
    - checkbox: min_selections, max_selections
    - date: no_future
    """
    model_config = ConfigDict(populate_by_name=True)

    min_length: Optional[int] = Field(
        None, ge=1, validation_alias=AliasChoices("min_length", "minLength")
    )
    max_length: Optional[int] = Field(
        None, ge=1, validation_alias=AliasChoices("max_length", "maxLength")
    )
    pattern: Optional[str] = Field(None, description="Regex pattern for text answers")
    min: Optional[float] = Field(None, description="Lower bound for scale answers")
    max: Optional[float] = Field(None, description="Upper bound for scale answers")
    min_selections: Optional[int] = Field(
        None, ge=0, validation_alias=AliasChoices("min_selections", "minSelections")
    )
    max_selections: Optional[int] = Field(
        None, ge=1, validation_alias=AliasChoices("max_selections", "maxSelections")
    )
    no_future: bool = Field(False, description="Reject dates after today")

    @field_validator('max_length')
    @classmethod
    def max_length_greater_than_min(cls, v, info):
        """Ensure max_length >= min_length if both are set."""
        if v is not None and info.data.get('min_length') is not None:
            if v < info.data['min_length']:
                raise ValueError('max_length must be >= min_length')
        return v


class ConditionalRule(BaseModel):
    """Declarative visibility rule for a question.

    Exactly one shape must be used:
    - comparison: question_id + operator + value
      (e.g., show "party" when "leans_party" equals "yes")
    - all: every nested rule must hold
    - any: at least one nested rule must hold
    - expression: simpleeval expression over answered question ids
    """
    model_config = ConfigDict(populate_by_name=True)

    question_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("question_id", "questionId")
    )
    operator: RuleOperator = RuleOperator.EQUALS
    value: Optional[Any] = None
    all_of: Optional[list["ConditionalRule"]] = Field(
        None, validation_alias=AliasChoices("all", "all_of")
    )
    any_of: Optional[list["ConditionalRule"]] = Field(
        None, validation_alias=AliasChoices("any", "any_of")
    )
    expression: Optional[str] = Field(None, min_length=1)

    @model_validator(mode='after')
    def validate_shape(self):
        """Ensure exactly one rule shape is used."""
        shapes = [
            self.question_id is not None,
            self.all_of is not None,
            self.any_of is not None,
            self.expression is not None,
        ]
        if sum(shapes) != 1:
            raise ValueError(
                "Conditional rule must define exactly one of "
                "'question_id', 'all', 'any' or 'expression'"
            )
        if self.question_id is not None:
            needs_value = self.operator != RuleOperator.ANSWERED
            if needs_value and self.value is None:
                raise ValueError(f"Operator '{self.operator.value}' requires a value")
            if self.operator in (RuleOperator.IN, RuleOperator.NOT_IN):
                if not isinstance(self.value, list):
                    raise ValueError(f"Operator '{self.operator.value}' requires a list value")
        if self.expression is not None:
            try:
                ast.parse(self.expression, mode="eval")
            except SyntaxError as e:
                raise ValueError(f"Invalid expression: {e.msg}")
        return self

    def references(self) -> set[str]:
        """Return the question ids this rule depends on."""
        if self.question_id is not None:
            return {self.question_id}
        if self.expression is not None:
            tree = ast.parse(self.expression, mode="eval")
            return {node.id for node in ast.walk(tree) if isinstance(node, ast.Name)}
        refs: set[str] = set()
        for rule in (self.all_of or []) + (self.any_of or []):
            refs |= rule.references()
        return refs


class Question(BaseModel):
    """A single question in a questionnaire section.

    Attributes:
        id: Unique question identifier across the questionnaire
        text: Question text shown to the volunteer
        type: Question type
        required: Whether a visible question must be answered
        options: Options for radio/checkbox questions
        validation: Format/length rules
        conditional: Visibility rule; the question is hidden when it is false
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique question identifier")
    text: str = Field(..., min_length=1, description="Question text")
    type: QuestionType = Field(..., description="Question type")
    required: bool = Field(
        False, validation_alias=AliasChoices("required", "is_required")
    )
    options: Optional[list[QuestionOption]] = Field(None, description="Answer options")
    validation: Optional[ValidationRules] = Field(None, description="Validation rules")
    conditional: Optional[ConditionalRule] = Field(None, description="Visibility rule")

    @model_validator(mode='after')
    def validate_question_requirements(self):
        """Validate type-specific requirements."""
        if self.type in (QuestionType.RADIO, QuestionType.CHECKBOX):
            if not self.options:
                raise ValueError(f"Question '{self.id}' of type {self.type.value} must have options")
        if self.conditional is not None and self.id in self.conditional.references():
            raise ValueError(f"Question '{self.id}' cannot depend on itself")
        return self

    def option_values(self) -> list[str]:
        """Return the stored values of this question's options."""
        return [option.value for option in self.options or []]


class Section(BaseModel):
    """A titled group of questions."""
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    order: int = Field(default=0)
    questions: list[Question] = Field(..., min_length=1)


class Questionnaire(BaseModel):
    """Complete questionnaire definition.

    Root schema for questionnaire YAML files.

    Attributes:
        id: Questionnaire identifier (matches YAML filename)
        version: Semantic version
        title: Human-readable title
        is_active: Inactive questionnaires reject submissions
        tenant_ids: Tenants allowed to use it (empty means every tenant)
        sections: Ordered sections
    """
    id: str = Field(..., min_length=1, description="Questionnaire identifier")
    version: str = Field(..., pattern=r'^\d+\.\d+\.\d+$', description="Semantic version")
    title: str = Field(..., min_length=1)
    is_active: bool = Field(default=True)
    tenant_ids: list[str] = Field(default_factory=list)
    sections: list[Section] = Field(..., min_length=1)

    @field_validator('id')
    @classmethod
    def id_alphanumeric(cls, v):
        """Ensure ID is alphanumeric with underscores/hyphens only."""
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Questionnaire ID must be alphanumeric with underscores/hyphens')
        return v

    @model_validator(mode='after')
    def validate_questionnaire_structure(self):
        """Validate question ids are unique and rules reference real questions."""
        question_ids = [q.id for q in self.iter_questions()]
        if len(question_ids) != len(set(question_ids)):
            duplicates = sorted({qid for qid in question_ids if question_ids.count(qid) > 1})
            raise ValueError(f"Duplicate question IDs found: {duplicates}")

        known = set(question_ids)
        for question in self.iter_questions():
            if question.conditional is None:
                continue
            # Expressions may name helper variables; only comparisons are strict
            if question.conditional.expression is not None:
                continue
            invalid = question.conditional.references() - known
            if invalid:
                raise ValueError(
                    f"Question '{question.id}' references unknown questions: {sorted(invalid)}"
                )
        return self

    def iter_questions(self) -> Iterator[Question]:
        """Yield every question in section order."""
        for section in sorted(self.sections, key=lambda s: s.order):
            yield from section.questions

    def question_map(self) -> dict[str, Question]:
        """Return questions keyed by id, in section order."""
        return {question.id: question for question in self.iter_questions()}

    def get_question(self, question_id: str) -> Optional[Question]:
        """Get question by ID.

        Args:
            question_id: Question identifier

        Returns:
            Question if found, None otherwise
        """
        return self.question_map().get(question_id)

    def is_available_to(self, tenant_id: str) -> bool:
        """Check whether a tenant may submit responses to this questionnaire."""
        return self.is_active and (not self.tenant_ids or tenant_id in self.tenant_ids)
