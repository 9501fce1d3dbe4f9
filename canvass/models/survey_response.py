"""SurveyResponse model for submitted survey responses.

This module defines the SurveyResponse model: one row per interview,
holding respondent identity, completion state and client metadata. The
individual answers live in the answers table.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from canvass.models.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SurveyResponse(Base):
    """Model for one submitted (or drafted) survey response.

    A completed response is immutable. A draft may be updated in place or
    deleted. Only one completed response may exist per tenant,
    questionnaire and respondent key (partial unique index).

    A response whose expected_answer_count exceeds its stored answers was
    left behind by a failed answers insert and can be found with
    SurveyResponseRepository.find_partial_responses().

    Attributes:
        id: UUID primary key
        tenant_id: Tenant of the submitting volunteer
        questionnaire_id: Questionnaire being answered
        volunteer_id: Foreign key to volunteers table
        respondent_name: Interviewed person's name
        respondent_email: Optional email
        respondent_phone: Optional phone (NNN-NNN-NNNN)
        respondent_key: Salted hash used for duplicate detection
        precinct_id: Optional electoral precinct
        client_id: Device-generated id of an offline submission (batch uploads)
        is_complete: False for drafts
        expected_answer_count: Answers the response should have
        completion_time_ms: Interview duration from client timestamps
        location: Optional GPS position
        client_metadata: Timing and device information
        created_at: When the response was stored
        updated_at: Last update timestamp
        answers: Relationship to Answer rows
    """

    __tablename__ = "survey_responses"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    # Ownership
    tenant_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Tenant of the submitting volunteer"
    )
    questionnaire_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Questionnaire identifier from YAML filename"
    )
    volunteer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("volunteers.id"),
        nullable=False,
        index=True,
        comment="Foreign key to volunteers table"
    )

    # Respondent
    respondent_name: Mapped[str] = mapped_column(String(100), nullable=False)
    respondent_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    respondent_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    respondent_key: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Salted SHA-256 of normalized respondent identity"
    )
    precinct_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    client_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Id assigned by the offline client; repeats are acknowledged, not stored"
    )

    # State
    is_complete: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="False while the response is a draft"
    )
    expected_answer_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Answers the response should have once fully stored"
    )
    completion_time_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Interview duration derived from client timestamps"
    )

    # Client Metadata
    location: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    client_metadata: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Start/completion times and device information"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=_utcnow,
    )

    answers: Mapped[list["Answer"]] = relationship(
        "Answer",
        back_populates="response",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Answer.id",
    )

    __table_args__ = (
        # One completed response per respondent and questionnaire within a tenant
        Index(
            "uq_completed_respondent",
            "tenant_id",
            "questionnaire_id",
            "respondent_key",
            unique=True,
            postgresql_where=text("is_complete = true"),
            sqlite_where=text("is_complete = 1"),
        ),
        Index("idx_tenant_questionnaire", "tenant_id", "questionnaire_id"),
        Index("idx_created_at", "created_at"),
        Index("idx_volunteer_client_id", "volunteer_id", "client_id"),
        Index("idx_volunteer_drafts", "volunteer_id", "is_complete", "updated_at"),
    )

    @property
    def status(self) -> str:
        return "completed" if self.is_complete else "draft"

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<SurveyResponse(id={self.id}, "
            f"questionnaire_id={self.questionnaire_id}, "
            f"status={self.status})>"
        )
