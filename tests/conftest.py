"""
Root pytest configuration for Apricot tests

Adds project root to Python path, points the app at an in-memory SQLite
database and provides common fixtures
"""
import sys
import os

import pytest
from dotenv import load_dotenv

# Add project root to Python path so tests can import apricot
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# Must be set before apricot.database creates its engine
os.environ["DATABASE_URL"] = "sqlite://"

# Load environment variables
load_dotenv()


@pytest.fixture(scope="function")
def db_session():
    """
    Provides a database session on a freshly created schema.

    Tables are dropped after each test.
    """
    from apricot.database import Base, SessionLocal, engine, init_db

    init_db(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    """Settings with an oracle key and default feed options."""
    from apricot.config import Settings

    return Settings(ai_api_key="test-key")
