"""Pytest configuration and shared fixtures.

This module provides fixtures and configuration used across all tests.
"""

import os
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set required environment variables for tests BEFORE importing app modules
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test_secret_key_for_testing_only")
os.environ.setdefault("RESPONDENT_KEY_SALT", "test_salt_for_respondent_keys")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault(
    "QUESTIONNAIRES_DIR", str(Path(__file__).parent.parent / "questionnaires")
)

from canvass.models.database import Base
from canvass.models.volunteer import Volunteer
from canvass.schemas.questionnaire import Questionnaire

QUESTIONNAIRES_DIR = Path(__file__).parent.parent / "questionnaires"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine with SQLite in-memory database.

    Yields:
        Engine: SQLAlchemy engine for testing

    Note:
        StaticPool keeps the single in-memory database alive across the
        threadpool workers used by the HTTP tests.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,  # Set to True for SQL debugging
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign key support for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # Create all tables
    Base.metadata.create_all(engine)

    yield engine

    # Drop all tables after test
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session_factory(db_engine):
    """Session factory bound to the test engine."""
    return sessionmaker(
        bind=db_engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest.fixture(scope="function")
def db_session(db_session_factory) -> Generator[Session, None, None]:
    """Create a test database session.

    Yields:
        Session: SQLAlchemy session for testing

    Note:
        Session is rolled back after each test to ensure isolation.
    """
    session = db_session_factory()

    yield session

    # Rollback any uncommitted changes
    session.rollback()
    session.close()


@pytest.fixture
def volunteer(db_session) -> Volunteer:
    """Active volunteer of tenant-a."""
    profile = Volunteer(auth_user_id="user-1", tenant_id="tenant-a", role="volunteer", active=True)
    db_session.add(profile)
    db_session.commit()
    return profile


@pytest.fixture
def questionnaires_dir() -> Path:
    return QUESTIONNAIRES_DIR


@pytest.fixture
def simple_questionnaire() -> Questionnaire:
    """Questionnaire "q1" requiring only a name."""
    return Questionnaire(
        id="q1",
        version="1.0.0",
        title="Simple",
        sections=[
            {
                "id": "main",
                "title": "Main",
                "questions": [
                    {"id": "name", "text": "Name?", "type": "text", "required": True},
                ],
            }
        ],
    )


@pytest.fixture
def party_questionnaire() -> Questionnaire:
    """Questionnaire with a party question shown only to leaners."""
    return Questionnaire(
        id="party_poll",
        version="1.0.0",
        title="Party Poll",
        sections=[
            {
                "id": "politics",
                "title": "Politics",
                "questions": [
                    {
                        "id": "leans_party",
                        "text": "Do you lean towards a party?",
                        "type": "radio",
                        "required": True,
                        "options": [
                            {"value": "yes", "label": "Yes"},
                            {"value": "no", "label": "No"},
                        ],
                    },
                    {
                        "id": "party",
                        "text": "Which party?",
                        "type": "radio",
                        "required": True,
                        "options": [
                            {"value": "pnp", "label": "PNP"},
                            {"value": "ppd", "label": "PPD"},
                        ],
                        "conditional": {
                            "question_id": "leans_party",
                            "operator": "equals",
                            "value": "yes",
                        },
                    },
                ],
            }
        ],
    )


@pytest.fixture
def valid_payload() -> dict:
    """Complete submission matching simple_questionnaire."""
    return {
        "questionnaire_id": "q1",
        "is_draft": False,
        "respondent_name": "Jose Garcia",
        "answers": [
            {"question_id": "name", "answer_value": "Jose Garcia", "skipped": False},
        ],
        "metadata": {
            "start_time": "2024-01-15T10:00:00Z",
            "device_info": {"user_agent": "x", "screen_size": "390x844"},
        },
    }
