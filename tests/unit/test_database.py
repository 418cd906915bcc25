"""
Unit tests for engine creation.
"""

from sqlalchemy.pool import StaticPool

from apricot.database import DEFAULT_DATABASE_URL, create_db_engine


class TestCreateDbEngine:
    """The engine URL comes from DATABASE_URL, not from Settings."""

    def test_default_url_when_unset(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        engine = create_db_engine()
        try:
            assert str(engine.url) == DEFAULT_DATABASE_URL
        finally:
            engine.dispose()

    def test_environment_url_used(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite://")
        engine = create_db_engine()
        try:
            assert str(engine.url) == "sqlite://"
            assert isinstance(engine.pool, StaticPool)
        finally:
            engine.dispose()

    def test_explicit_url_wins(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:///ignored.db")
        engine = create_db_engine("sqlite:///:memory:")
        try:
            assert str(engine.url) == "sqlite:///:memory:"
        finally:
            engine.dispose()
