"""Tests for the service health and root endpoints."""

from httpx import AsyncClient

from paybridge import main
from paybridge.config import settings


async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_root_reports_provider(client: AsyncClient):
    body = (await client.get("/")).json()
    assert body["payment_provider"] == "stripe"
    assert body["docs"] == "/docs"


async def test_unknown_route_uses_error_envelope(client: AsyncClient):
    response = await client.get("/api/v1/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "Not Found"}


def test_run_serves_on_configured_host_and_port(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(settings, "host", "127.0.0.1")
    monkeypatch.setattr(settings, "port", 9100)
    monkeypatch.setattr(settings, "log_level", "INFO")

    main.run()

    assert calls == [(main.app, {"host": "127.0.0.1", "port": 9100, "log_level": "info"})]
