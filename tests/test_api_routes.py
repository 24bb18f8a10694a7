from __future__ import annotations

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from reportsync.api import app as app_module
from reportsync.api.app import create_app
from reportsync.config import get_settings
from reportsync.errors import (
    CredentialExpiredError,
    PermissionDeniedError,
    ProviderUnavailableError,
    TenantNotFoundError,
)
from reportsync.ingestion import TaskManager
from reportsync.schemas import ManualRunResponse, TokenGrant, ValidToken

API_TOKEN = "route-test-token"
AUTH = {"Authorization": f"Bearer {API_TOKEN}"}


class StubOrchestrator:
    def __init__(self) -> None:
        self.calls = []

    async def run_manual(self, tenant_id, requester_id=None, trigger=None):
        self.calls.append((tenant_id, requester_id))
        if tenant_id == "missing":
            raise TenantNotFoundError(tenant_id)
        if requester_id != "owner-1":
            raise PermissionDeniedError("Caller does not own this site")
        return ManualRunResponse(
            success=False,
            results={
                "sourceA": {"success": True, "rowCount": 3, "period": {"startDate": "2025-05-17", "endDate": "2025-06-15"}},
                "sourceB": {"error": "forbidden", "kind": "SourceRequestError"},
            },
        )


class StubTokens:
    def __init__(self) -> None:
        self.refreshed = []
        self.stored = {}

    async def refresh_now(self, identity):
        if identity == "revoked":
            raise CredentialExpiredError(identity, "invalid_grant")
        if identity == "crash":
            raise RuntimeError("store offline")
        self.refreshed.append(identity)

    async def store_grant(self, identity, grant, metadata=None):
        self.stored[identity] = (grant, metadata)
        return ValidToken(access_token=grant.access_token, expires_at=1_750_003_600_000)

    async def is_token_valid(self, identity):
        return identity in self.stored


class StubProvider:
    async def exchange_code(self, code, redirect_uri):
        if code == "used-code":
            raise CredentialExpiredError("authorization-code", "invalid_grant")
        if code == "outage":
            raise ProviderUnavailableError("token endpoint returned 503")
        return TokenGrant(access_token="new-access", expires_in=3600, refresh_token="new-refresh")


class StubBackfill:
    def __init__(self, task_manager: TaskManager) -> None:
        self.task_manager = task_manager
        self.events = []

    async def handle_site_created(self, event):
        self.events.append(event)
        if not event.completes_setup:
            return None
        return self.task_manager.create("backfill", {"tenant_id": event.after.id}).id


@pytest.fixture()
def services():
    task_manager = TaskManager()
    return SimpleNamespace(
        orchestrator=StubOrchestrator(),
        tokens=StubTokens(),
        provider=StubProvider(),
        backfill=StubBackfill(task_manager),
        task_manager=task_manager,
    )


@pytest.fixture()
def client(services):
    settings = replace(get_settings(), api_token=API_TOKEN, auth_disabled=False)
    with TestClient(create_app(settings, services)) as test_client:
        yield test_client


def test_health_needs_no_token(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_requests_without_token_are_rejected(client, services):
    response = client.post("/api/ingest/manual", json={"tenantId": "t1"})

    assert response.status_code == 401
    assert services.orchestrator.calls == []


def test_manual_ingest_returns_per_source_results(client, services):
    response = client.post(
        "/api/ingest/manual",
        json={"tenantId": "t1"},
        headers={**AUTH, "X-User-Id": "owner-1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["results"]["sourceA"]["rowCount"] == 3
    assert body["results"]["sourceB"]["error"] == "forbidden"
    assert services.orchestrator.calls == [("t1", "owner-1")]


def test_manual_ingest_error_mapping(client):
    missing = client.post(
        "/api/ingest/manual", json={"tenantId": "missing"}, headers={**AUTH, "X-User-Id": "owner-1"}
    )
    not_owner = client.post(
        "/api/ingest/manual", json={"tenantId": "t1"}, headers={**AUTH, "X-User-Id": "intruder"}
    )
    anonymous = client.post("/api/ingest/manual", json={"tenantId": "t1"}, headers=AUTH)
    malformed = client.post(
        "/api/ingest/manual", json={"siteId": "t1"}, headers={**AUTH, "X-User-Id": "owner-1"}
    )

    assert missing.status_code == 404
    assert "Site not found" in missing.json()["detail"]
    assert not_owner.status_code == 403
    assert anonymous.status_code == 401
    assert malformed.status_code == 400


def test_credential_refresh_success(client, services):
    response = client.post("/api/credentials/refresh", json={"tokenId": "tok-1", "type": "A"}, headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Token refreshed successfully"}
    assert services.tokens.refreshed == ["tok-1"]


@pytest.mark.parametrize(
    "token_id, message",
    [("revoked", "invalid_grant"), ("crash", "store offline")],
)
def test_credential_refresh_failure_is_internal_error_with_message(client, token_id, message):
    response = client.post(
        "/api/credentials/refresh", json={"tokenId": token_id, "type": "B"}, headers=AUTH
    )

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert message in response.json()["message"]


def test_credential_refresh_rejects_unknown_type(client):
    response = client.post(
        "/api/credentials/refresh", json={"tokenId": "tok-1", "type": "C"}, headers=AUTH
    )
    assert response.status_code == 400


def test_site_created_schedules_backfill_and_exposes_task(client):
    event = {
        "before": {"id": "t1", "userId": "owner-1", "setupCompleted": False},
        "after": {
            "id": "t1",
            "userId": "owner-1",
            "setupCompleted": True,
            "ga4PropertyId": "123",
            "ga4OauthTokenId": "tok-1",
        },
    }

    response = client.post("/api/events/site-created", json=event, headers=AUTH)

    assert response.status_code == 202
    body = response.json()
    assert body["accepted"] is True
    assert body["backfillScheduled"] is True
    task = client.get(f"/api/tasks/{body['taskId']}", headers=AUTH).json()
    assert task["kind"] == "backfill"
    assert task["status"] == "pending"
    assert task["detail"] == {"tenant_id": "t1"}


def test_site_created_without_transition_is_acknowledged_only(client):
    tenant = {"id": "t1", "userId": "owner-1", "setupCompleted": True}

    response = client.post(
        "/api/events/site-created", json={"before": tenant, "after": tenant}, headers=AUTH
    )

    assert response.status_code == 202
    assert response.json() == {"accepted": True, "backfillScheduled": False, "taskId": None}


def test_unknown_task_is_404(client):
    assert client.get("/api/tasks/nope", headers=AUTH).status_code == 404


def test_code_exchange_stores_grant_for_caller(client, services):
    body = {"tokenId": "tok-9", "type": "A", "code": "auth-code", "redirectUri": "https://app.example/cb"}

    response = client.post(
        "/api/credentials/exchange", json=body, headers={**AUTH, "X-User-Id": "owner-9"}
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "tokenId": "tok-9", "expiresAt": 1_750_003_600_000}
    grant, metadata = services.tokens.stored["tok-9"]
    assert grant.refresh_token == "new-refresh"
    assert metadata == {"user_id": "owner-9", "source": "analytics"}
    status = client.get("/api/credentials/tok-9/status", headers=AUTH).json()
    assert status == {"tokenId": "tok-9", "valid": True}


@pytest.mark.parametrize("code, status_code", [("used-code", 400), ("outage", 503)])
def test_code_exchange_error_mapping(client, services, code, status_code):
    body = {"tokenId": "tok-9", "type": "B", "code": code, "redirectUri": "https://app.example/cb"}

    response = client.post(
        "/api/credentials/exchange", json=body, headers={**AUTH, "X-User-Id": "owner-9"}
    )

    assert response.status_code == status_code
    assert services.tokens.stored == {}


def test_code_exchange_requires_caller(client, services):
    body = {"tokenId": "tok-9", "type": "A", "code": "auth-code", "redirectUri": "https://app.example/cb"}

    assert client.post("/api/credentials/exchange", json=body, headers=AUTH).status_code == 401
    assert services.tokens.stored == {}


def test_unknown_credential_reports_invalid(client):
    response = client.get("/api/credentials/tok-404/status", headers=AUTH)

    assert response.json() == {"tokenId": "tok-404", "valid": False}


def test_api_entry_point_serves_module_app():
    settings = replace(get_settings(), api_host="0.0.0.0", api_port=9090, log_level="DEBUG")

    with (
        patch.object(app_module, "get_settings", lambda: settings),
        patch.object(app_module.uvicorn, "run") as run,
    ):
        app_module.main()

    run.assert_called_once_with(
        "reportsync.api.app:app", host="0.0.0.0", port=9090, log_level="debug"
    )
