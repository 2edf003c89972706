from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow.core.auth import AuthUser, get_current_user as auth_get_current_user
from dealflow.core.config import get_settings
from dealflow.core.database import Base, get_db
from dealflow.crm.api import get_current_user as crm_get_current_user
from dealflow.crm.service import ActorUser
from dealflow.main import app
from dealflow.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={"crm.pipelines.read", "crm.pipelines.manage", "crm.placements.write", "crm.placements.move"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_move_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    pipeline = client.post("/api/crm/pipelines", json={"name": "Metrics Pipeline"})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]
    stages = pipeline.json()["stages"]

    placement = client.post(
        f"/api/crm/pipelines/{pipeline_id}/placements",
        json={"title": "Metrics deal", "stage_id": stages[0]["id"]},
    )
    assert placement.status_code == 201

    move_path = f"/api/crm/pipelines/{pipeline_id}/placements/{placement.json()['id']}/move"
    assert client.post(move_path, json={"to_stage_id": stages[1]["id"]}).status_code == 200
    assert client.post(move_path, json={"to_stage_id": stages[1]["id"]}).status_code == 409

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_pipeline_moves_total" in body
    assert "crm_placements_created_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/pipelines/{id}/placements/{id}/move"' in body
    assert 'outcome="moved"' in body


def test_metrics_endpoint_requires_role(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="plain-user", roles=["user"])

    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
