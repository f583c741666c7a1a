import pytest
from fastapi.testclient import TestClient

from playstream import main
from playstream.core.dependencies import get_stream_service
from playstream.core.errors import ConfigurationError
from playstream.modules.registry.schemas import StreamingSession
from playstream.modules.streams.service import StreamService
from playstream.modules.workflows.orchestrator import LocalOrchestrator
from tests.conftest import INSTANCE_ARN, INSTANCE_ID


@pytest.fixture
def service(deps, registry):
    return StreamService(registry, LocalOrchestrator(deps, run_inline=True))


@pytest.fixture
def client(service):
    main.app.dependency_overrides[get_stream_service] = lambda: service
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_ready(client, monkeypatch):
    monkeypatch.setattr(main, "get_registry_store", lambda: object())
    monkeypatch.setattr(main, "get_orchestrator", lambda: object())
    body = client.get("/ready").json()
    assert body["status"] == "ready"
    assert body["orchestrator"] == "local"


def test_not_ready_when_backend_misconfigured(client, monkeypatch):
    def broken():
        raise ConfigurationError("Unknown registry backend: nope")

    monkeypatch.setattr(main, "get_registry_store", broken)
    response = client.get("/ready")
    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


def test_deploy_then_status_and_session(client):
    response = client.post("/api/v1/streams/deploy", json={"user_id": "u1"})
    assert response.status_code == 202
    body = response.json()
    assert body["workflow_id"] == "deploy"
    assert body["execution_id"].startswith("u1-")

    status = client.get("/api/v1/streams/status", params={"user_id": "u1"}).json()
    assert status["status"] == "SUCCEEDED"
    assert status["progress"] == 100
    assert status["instance_id"] == INSTANCE_ID

    response = client.get("/api/v1/streams/session", params={"user_id": "u1"})
    assert response.headers["Cache-Control"] == "no-store"
    session = response.json()
    assert session["endpoint"] == "https://54-1-2-3.nip.io:8443?session-id=user-u1-session"
    assert session["instance_arn"] == INSTANCE_ARN
    assert session["password"]


def test_deploy_requires_user_id(client):
    response = client.post("/api/v1/streams/deploy", json={"user_id": ""})
    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"
    assert "user_id" in response.json()["message"]


def test_status_unknown_user(client):
    response = client.get("/api/v1/streams/status", params={"user_id": "ghost"})
    assert response.status_code == 200
    assert response.json()["status"] == "NOT_FOUND"


def test_session_not_found_is_json_error(client):
    response = client.get("/api/v1/streams/session", params={"user_id": "ghost"})
    assert response.status_code == 404
    assert response.json() == {
        "error": "SessionNotFound",
        "message": "No streaming session found for userId: ghost",
    }


def test_terminate_without_instance(client):
    response = client.post("/api/v1/streams/terminate", json={"user_id": "ghost"})
    assert response.status_code == 404
    assert response.json()["error"] == "NoActiveInstance"


def test_terminate_after_deploy(client, registry):
    client.post("/api/v1/streams/deploy", json={"user_id": "u1"})

    response = client.post("/api/v1/streams/terminate", json={"user_id": "u1"})
    assert response.status_code == 202
    assert response.json()["workflow_id"] == "terminate"

    status = client.get("/api/v1/streams/status", params={"user_id": "u1"}).json()
    assert status["status"] == "SUCCEEDED"
    assert status["workflow_id"] == "terminate"
    assert registry.list_sessions_by_user("u1") == []


def test_session_endpoint_quotes_session_id(service, registry):
    registry.put_session(StreamingSession(
        instance_arn="arn:1",
        instance_id="i-1",
        user_id="u 1",
        session_id="user-u 1-session",
        host="54.1.2.3",
        port=8443,
        username="Administrator",
        password="pw",
        streaming_link="https://54-1-2-3.nip.io:8443",
    ))
    response = service.get_streaming_session("u 1", include_password=False)
    assert response.endpoint.endswith("session-id=user-u%201-session")
    assert response.password is None
