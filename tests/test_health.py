from fastapi.testclient import TestClient

from graph_notifications.main import app, create_application


def test_health_endpoint_returns_expected_shape(api_client: TestClient) -> None:
    response = api_client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "service" in data
    assert "timestamp" in data
    assert data["persistence_store"] == "memory"
    assert data["graph_configured"] is True
    assert data["summarization_configured"] is True
    assert data["scheduler_running"] is False


def test_health_builds_runtime_from_settings_when_missing() -> None:
    app.state.runtime = None
    client = TestClient(app)

    try:
        response = client.get("/api/health")
        runtime = app.state.runtime
    finally:
        app.state.runtime = None

    assert response.status_code == 200
    assert response.json()["graph_configured"] is False
    assert response.json()["summarization_configured"] is False
    runtime.stop()


def test_lifespan_starts_and_stops_injected_runtime(runtime, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    events: list[str] = []
    monkeypatch.setattr(runtime, "start", lambda: events.append("start"))
    monkeypatch.setattr(runtime, "stop", lambda: events.append("stop"))

    with TestClient(create_application(runtime=runtime)) as client:
        assert events == ["start"]
        response = client.get("/api/health")

    assert response.status_code == 200
    assert events == ["start", "stop"]
