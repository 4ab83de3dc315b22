from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from obitwatch.core.config import Settings, get_settings
from obitwatch.main import app
from obitwatch.services.repository import get_repository

AUTH = {"Authorization": "Bearer s3cret"}


@pytest.fixture
def records_client(fake_repo) -> Any:
    fake_repo.seed("Jane_Doe", age=88, description="actress")
    fake_repo.seed("John_Roe", verdict="approved")
    app.dependency_overrides[get_settings] = lambda: Settings(run_secret="s3cret")
    app.dependency_overrides[get_repository] = lambda: fake_repo

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def test_records_require_bearer(records_client: TestClient) -> None:
    assert records_client.get("/records").status_code == 401
    assert records_client.get("/records/1", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_records_unavailable_without_secret(fake_repo) -> None:
    app.dependency_overrides[get_settings] = lambda: Settings(run_secret=None)
    app.dependency_overrides[get_repository] = lambda: fake_repo
    try:
        with TestClient(app) as client:
            response = client.get("/records", headers=AUTH)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503


def test_list_records_filters_by_verdict(records_client: TestClient) -> None:
    response = records_client.get("/records", params={"verdict": "pending"}, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert [row["external_id"] for row in body] == ["Jane_Doe"]
    assert body[0]["age"] == 88


def test_list_records_rejects_unknown_verdict(records_client: TestClient) -> None:
    assert records_client.get("/records", params={"verdict": "maybe"}, headers=AUTH).status_code == 422


def test_get_record(records_client: TestClient) -> None:
    response = records_client.get("/records/2", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["verdict"] == "approved"
    assert records_client.get("/records/99", headers=AUTH).status_code == 404


def test_reject_pending_record(records_client: TestClient, fake_repo) -> None:
    response = records_client.post("/records/1/reject", json={"reason": "duplicate"}, headers=AUTH)

    assert response.status_code == 200
    assert response.json()["verdict"] == "rejected"
    assert fake_repo.by_external_id("Jane_Doe")["rejection_reason"] == "duplicate"


def test_reject_terminal_record_conflicts(records_client: TestClient) -> None:
    response = records_client.post("/records/2/reject", json={}, headers=AUTH)
    assert response.status_code == 409
