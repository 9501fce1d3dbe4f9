"""Volunteer model for caller identity and tenancy.

This module defines the Volunteer profile which links an authenticated
user id to a tenant and a role. Submissions always take their tenant and
volunteer from this profile, never from the request payload.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    String,
    select,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column

from canvass.models.database import Base

ROLES = ("admin", "manager", "analyst", "volunteer")

# Roles that may read any response of their tenant
READER_ROLES = frozenset({"admin", "manager", "analyst"})


class Volunteer(Base):
    """Model for a field volunteer (or staff member) profile.

    Attributes:
        id: Primary key
        auth_user_id: Identifier issued by the identity provider
        tenant_id: Organization the volunteer works for
        role: One of admin, manager, analyst, volunteer
        active: Inactive profiles cannot submit
        created_at: When the profile was created
    """

    __tablename__ = "volunteers"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    auth_user_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        comment="Identifier issued by the identity provider"
    )
    tenant_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Organization the volunteer works for"
    )
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="volunteer",
        comment="admin, manager, analyst or volunteer"
    )
    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the profile may submit responses"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        comment="When the profile was created"
    )

    @classmethod
    def get_by_auth_user_id(cls, db: Session, auth_user_id: str) -> Optional["Volunteer"]:
        """Find the profile of an authenticated user.

        Args:
            db: Database session
            auth_user_id: Identifier verified by the identity provider

        Returns:
            Volunteer if found, None otherwise
        """
        return db.execute(
            select(cls).where(cls.auth_user_id == auth_user_id)
        ).scalar_one_or_none()

    @property
    def can_read_tenant_responses(self) -> bool:
        """Whether this role may read other volunteers' responses."""
        return self.role in READER_ROLES

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Volunteer(id={self.id}, "
            f"tenant_id={self.tenant_id}, "
            f"role={self.role}, "
            f"active={self.active})>"
        )
