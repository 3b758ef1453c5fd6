"""Tests for Alembic migrations and the readiness check."""

import pytest
import redis
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from verifactu_api.db import session as session_module
from verifactu_api.db.base import Base
from verifactu_api.db.migrations import current_revision, head_revision, upgrade_to_head
from verifactu_api.main import app


class FakeBroker:
    def ping(self):
        return True


@pytest.fixture
def fresh_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield engine
    engine.dispose()


@pytest.fixture
def broker_up(monkeypatch):
    monkeypatch.setattr(redis, "from_url", lambda *args, **kwargs: FakeBroker())


def test_upgrade_creates_the_model_schema(fresh_engine):
    upgrade_to_head(fresh_engine)

    inspector = inspect(fresh_engine)
    for table in Base.metadata.sorted_tables:
        assert inspector.has_table(table.name)
        migrated = {column["name"] for column in inspector.get_columns(table.name)}
        assert migrated == {column.name for column in table.columns}, table.name

    with fresh_engine.connect() as connection:
        assert current_revision(connection) == head_revision() == "001"


def test_upgrade_is_idempotent(fresh_engine):
    upgrade_to_head(fresh_engine)
    upgrade_to_head(fresh_engine)
    with fresh_engine.connect() as connection:
        assert current_revision(connection) == head_revision()


def test_ready_when_migrations_at_head(fresh_engine, broker_up, monkeypatch):
    upgrade_to_head(fresh_engine)
    monkeypatch.setattr(session_module, "SessionLocal", sessionmaker(bind=fresh_engine))

    response = TestClient(app).get("/ready")

    assert response.status_code == 200
    assert response.json()["checks"] == {"database": True, "migrations": True, "broker": True}


def test_not_ready_without_migrations(fresh_engine, broker_up, monkeypatch):
    Base.metadata.create_all(fresh_engine)
    monkeypatch.setattr(session_module, "SessionLocal", sessionmaker(bind=fresh_engine))

    response = TestClient(app).get("/ready")

    assert response.status_code == 503
    assert response.json()["checks"]["migrations"] is False
