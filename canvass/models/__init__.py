"""Database models and session management.

This package contains all SQLAlchemy ORM models and database utilities.
"""

from canvass.models.database import Base, engine, SessionLocal, get_db
from canvass.models.volunteer import Volunteer
from canvass.models.survey_response import SurveyResponse
from canvass.models.answer import Answer

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "get_db",
    "Volunteer",
    "SurveyResponse",
    "Answer",
]
