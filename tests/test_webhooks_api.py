"""HTTP тесты: приём событий и операционные эндпоинты."""

from __future__ import annotations

import time

from fastapi.testclient import TestClient

from tests.helpers import OPS_HEADERS, make_client, make_session_factory
from webhook_pipeline.core.config import get_settings
from webhook_pipeline.core.errors import PermanentEventError
from webhook_pipeline.services.registry import HandlerRegistry


def _registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    attempts = {"charge.created": 0}

    async def ok(payload: dict) -> None:  # noqa: ARG001
        return None

    async def flaky(payload: dict) -> None:  # noqa: ARG001
        attempts["charge.created"] += 1
        if attempts["charge.created"] == 1:
            raise RuntimeError("downstream timeout")

    async def rejected(payload: dict) -> None:  # noqa: ARG001
        raise PermanentEventError("unknown customer")

    registry.register("invoice.paid", ok)
    registry.register("charge.created", flaky)
    registry.register("customer.deleted", rejected)
    return registry


def _event(event_id: str, event_type: str, **extra) -> dict:
    return {"id": event_id, "type": event_type, **extra}


def test_health(tmp_path) -> None:
    client, _ = make_client(tmp_path)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}

    ready = client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ok", "database": "up"}


def test_ingest_processes_and_deduplicates(tmp_path) -> None:
    client, _ = make_client(tmp_path, _registry())

    body = _event("evt_1", "invoice.paid", data={"object": {"amount": 100}})
    first = client.post("/webhooks/events", json=body)
    assert first.status_code == 200, first.text
    assert first.json()["outcome"] == "processed"
    assert first.json()["acknowledged"] is True

    second = client.post("/webhooks/events", json=body)
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"


def test_ingest_acknowledges_handler_failure(tmp_path) -> None:
    """Упавший обработчик всё равно даёт 200: ретрай за нами, а не за провайдером."""

    client, _ = make_client(tmp_path, _registry())
    response = client.post("/webhooks/events", json=_event("evt_2", "charge.created"))
    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "retry_scheduled"
    assert data["acknowledged"] is True
    assert data["attempts"] == 1
    assert data["retry_at"] is not None


def test_ingest_validates_body(tmp_path) -> None:
    client, _ = make_client(tmp_path)
    assert client.post("/webhooks/events", json={"type": "invoice.paid"}).status_code == 422
    assert client.post("/webhooks/events", json={"id": "", "type": "x"}).status_code == 422


def test_ingest_returns_503_when_event_cannot_be_recorded(tmp_path) -> None:
    from webhook_pipeline.main import create_app

    broken = make_session_factory(tmp_path / "missing" / "db.sqlite")
    client = TestClient(create_app(registry=_registry(), session_factory=broken))

    response = client.post("/webhooks/events", json=_event("evt_3", "invoice.paid"))
    assert response.status_code == 503
    assert response.json()["outcome"] == "not_recorded"
    assert response.json()["acknowledged"] is False


def test_ops_endpoints_require_token(tmp_path) -> None:
    client, _ = make_client(tmp_path)
    for method, path in (
        ("get", "/webhooks/metrics"),
        ("get", "/webhooks/status"),
        ("get", "/webhooks/failed"),
        ("post", "/webhooks/replay/evt_1"),
        ("post", "/webhooks/process-retries"),
        ("post", "/webhooks/reconcile"),
    ):
        assert getattr(client, method)(path).status_code == 401, path
        wrong = getattr(client, method)(path, headers={"X-Ops-Token": "definitely-not-the-token"})
        assert wrong.status_code == 401, path


def test_metrics_and_status(tmp_path) -> None:
    client, _ = make_client(tmp_path, _registry())
    client.post("/webhooks/events", json=_event("evt_ok", "invoice.paid"))
    client.post("/webhooks/events", json=_event("evt_retry", "charge.created"))
    client.post("/webhooks/events", json=_event("evt_dead", "customer.deleted"))

    metrics = client.get("/webhooks/metrics", headers=OPS_HEADERS)
    assert metrics.status_code == 200
    assert metrics.json() == {
        "window_hours": 24,
        "total_events": 3,
        "processed_events": 1,
        "failed_events": 1,
        "dead_lettered_events": 1,
        "pending_retries": 1,
        "success_rate": 33.33,
    }

    status_response = client.get("/webhooks/status", headers=OPS_HEADERS)
    assert status_response.status_code == 200
    data = status_response.json()
    assert data["status"] == "degraded"
    assert data["registered_event_types"] == ["charge.created", "customer.deleted", "invoice.paid"]
    assert data["metrics"]["total_events"] == 3


def test_status_is_healthy_without_traffic(tmp_path) -> None:
    client, _ = make_client(tmp_path)
    data = client.get("/webhooks/status", headers=OPS_HEADERS).json()
    assert data["status"] == "healthy"
    assert data["metrics"]["success_rate"] == 100.0


def test_failed_listing_and_replay(tmp_path) -> None:
    client, _ = make_client(tmp_path, _registry())
    client.post("/webhooks/events", json=_event("evt_retry", "charge.created"))
    client.post("/webhooks/events", json=_event("evt_dead", "customer.deleted"))

    page = client.get("/webhooks/failed", headers=OPS_HEADERS)
    assert page.status_code == 200
    items = {item["id"]: item for item in page.json()["items"]}
    assert set(items) == {"evt_retry", "evt_dead"}
    assert items["evt_dead"]["dead_lettered"] is True
    assert items["evt_retry"]["dead_lettered"] is False
    assert items["evt_retry"]["error_message"] == "RuntimeError: downstream timeout"

    replay = client.post("/webhooks/replay/evt_retry", headers=OPS_HEADERS)
    assert replay.status_code == 200
    assert replay.json()["outcome"] == "processed"

    # Replay не обходит state machine.
    assert client.post("/webhooks/replay/evt_retry", headers=OPS_HEADERS).json()["outcome"] == "duplicate"
    assert client.post("/webhooks/replay/evt_dead", headers=OPS_HEADERS).json()["outcome"] == "dead_lettered"

    missing = client.post("/webhooks/replay/evt_nope", headers=OPS_HEADERS)
    assert missing.status_code == 404
    assert missing.json()["detail"] == "webhook event not found"


def test_process_retries_and_reconcile(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("WEBHOOK_RETRY_BASE_SECONDS", "0.001")
    get_settings.cache_clear()
    client, _ = make_client(tmp_path, _registry())

    client.post("/webhooks/events", json=_event("evt_retry", "charge.created"))
    time.sleep(0.05)

    run = client.post("/webhooks/process-retries", headers=OPS_HEADERS)
    assert run.status_code == 200
    assert run.json() == {"claimed": 1, "outcomes": {"processed": 1}}

    assert client.post("/webhooks/process-retries", headers=OPS_HEADERS).json() == {
        "claimed": 0,
        "outcomes": {},
    }
    sweep = client.post("/webhooks/reconcile", headers=OPS_HEADERS)
    assert sweep.status_code == 200
    assert sweep.json() == {"released_claims": 0, "rescheduled": 0, "resubmitted": 0}


def test_readiness_reports_database_down(tmp_path) -> None:
    from webhook_pipeline.db.session import get_db
    from webhook_pipeline.main import create_app

    broken = make_session_factory(tmp_path / "missing" / "db.sqlite")
    app = create_app(session_factory=broken)

    async def broken_db():  # noqa: ANN202
        async with broken() as db:
            yield db

    app.dependency_overrides[get_db] = broken_db
    response = TestClient(app).get("/health/ready")
    assert response.status_code == 503
    assert response.json()["database"] == "down"


def test_api_entrypoint_serves_app_on_configured_address(monkeypatch) -> None:
    from webhook_pipeline import main

    monkeypatch.setenv("API_HOST", "127.0.0.1")
    monkeypatch.setenv("API_PORT", "8081")
    get_settings.cache_clear()
    served: list[tuple[str, dict]] = []
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **kwargs: served.append((target, kwargs)))

    main.run()

    assert served == [
        (
            "webhook_pipeline.main:app",
            {"host": "127.0.0.1", "port": 8081, "log_config": None},
        )
    ]
