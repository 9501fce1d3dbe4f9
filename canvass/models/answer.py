"""Answer model for storing individual answers of a survey response.

Each answer belongs to exactly one SurveyResponse and is deleted with it
(ON DELETE CASCADE).
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    JSON,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from canvass.models.database import Base


class Answer(Base):
    """Model for one answer of a survey response.

    The value is always stored as text in answer_value; numeric answers are
    also stored in answer_numeric and checkbox selections in answer_json so
    that reports can query them without parsing.

    Attributes:
        id: Primary key
        survey_response_id: Foreign key to survey_responses table
        question_id: Question being answered
        answer_value: Text rendering of the value
        answer_numeric: Numeric value for scale/number answers
        answer_json: Selections for checkbox answers
        answer_text: Optional free-text override
        skipped: Whether the question was skipped
        created_at: When the answer was stored
        response: Relationship to parent SurveyResponse
    """

    __tablename__ = "answers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    survey_response_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("survey_responses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Foreign key to survey_responses table"
    )
    question_id: Mapped[str] = mapped_column(String(100), nullable=False)

    answer_value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    answer_numeric: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    answer_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    answer_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    skipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    response: Mapped["SurveyResponse"] = relationship(
        "SurveyResponse",
        back_populates="answers",
    )

    __table_args__ = (
        UniqueConstraint("survey_response_id", "question_id", name="uq_answer_response_question"),
    )

    @property
    def value(self) -> Any:
        """Return the answer in its submitted shape."""
        if self.answer_json is not None:
            return self.answer_json
        if self.answer_numeric is not None:
            if self.answer_numeric.is_integer() and "." not in self.answer_value:
                return int(self.answer_numeric)
            return self.answer_numeric
        return self.answer_value

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Answer(id={self.id}, "
            f"survey_response_id={self.survey_response_id}, "
            f"question_id={self.question_id}, "
            f"skipped={self.skipped})>"
        )
