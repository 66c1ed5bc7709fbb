from __future__ import annotations

from typing import Any

import pytest
from fastapi.middleware.cors import CORSMiddleware
from fastapi.testclient import TestClient

from chromium_launcher.config import LauncherSettings
from chromium_launcher.errors import ConfigurationError, HandshakeTimeoutError, SpawnError
from chromium_launcher.main import create_app
from chromium_launcher.server import ChromiumLauncher


class _StubServer:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.ws_endpoint = f"ws://127.0.0.1:9222/devtools/browser/{pid}"
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class _StubLauncher(ChromiumLauncher):
    def __init__(self, settings: LauncherSettings) -> None:
        super().__init__(settings)
        self.error: Exception | None = None
        self.servers: list[_StubServer] = []

    async def launch_server(self, options=None) -> _StubServer:
        if self.error is not None:
            raise self.error
        server = _StubServer(100 + len(self.servers))
        self.servers.append(server)
        return server


def _get_cors_options(app: Any) -> dict[str, Any]:
    for middleware in app.user_middleware:
        if middleware.cls is CORSMiddleware:
            return middleware.kwargs
    raise AssertionError("CORS middleware not configured")


@pytest.fixture
def launcher(settings: LauncherSettings) -> _StubLauncher:
    return _StubLauncher(settings)


@pytest.fixture
def client(settings: LauncherSettings, launcher: _StubLauncher):
    with TestClient(create_app(settings, launcher=launcher)) as test_client:
        yield test_client


def test_health_reports_missing_binary(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["checks"] == {"manager": "ok", "binary": "missing"}


def test_server_lifecycle(client: TestClient, launcher: _StubLauncher) -> None:
    created = client.post("/servers", json={"labels": {"suite": "smoke"}})
    assert created.status_code == 201
    detail = created.json()
    assert detail["ws_endpoint"] == "ws://127.0.0.1:9222/devtools/browser/100"
    assert detail["pid"] == 100
    assert detail["status"] == "READY"
    assert detail["labels"] == {"suite": "smoke"}

    listed = client.get("/servers").json()
    assert [item["id"] for item in listed] == [detail["id"]]
    assert client.get(f"/servers/{detail['id']}").json()["id"] == detail["id"]
    assert client.post(f"/servers/{detail['id']}/touch").status_code == 200

    deleted = client.delete(f"/servers/{detail['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"id": detail["id"], "status": "DEAD"}
    assert launcher.servers[0].closed
    assert client.get(f"/servers/{detail['id']}").status_code == 404
    assert client.delete(f"/servers/{detail['id']}").status_code == 404


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (ConfigurationError("Browser executable not found at /nope"), 400),
        (HandshakeTimeoutError(30.0, "724623"), 502),
        (SpawnError("Failed to launch browser /nope: permission denied"), 502),
    ],
)
def test_launch_errors_map_to_http_status(
    client: TestClient, launcher: _StubLauncher, error: Exception, status_code: int
) -> None:
    launcher.error = error
    response = client.post("/servers", json={})
    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)


def test_invalid_payload_is_rejected(client: TestClient) -> None:
    assert client.post("/servers", json={"idle_ttl_seconds": 1}).status_code == 422
    # Pipe transports cannot be handed out over HTTP.
    assert client.post("/servers", json={"pipe": True}).status_code == 422
    for value in ("NaN", "Infinity"):
        response = client.post(
            "/servers", content=f'{{"timeout": {value}}}', headers={"content-type": "application/json"}
        )
        assert response.status_code == 422


def test_revision_endpoint(client: TestClient, settings: LauncherSettings) -> None:
    response = client.get("/revisions/724623")
    assert response.status_code == 200
    body = response.json()
    assert body["platform"] == "linux"
    assert body["local"] is False
    assert body["download_url"].endswith("/Linux_x64/724623/chrome-linux.zip")


def test_revision_endpoint_rejects_unsupported_platform(tmp_path) -> None:
    settings = LauncherSettings(_env_file=None, cache_path=tmp_path, platform="beos")
    with TestClient(create_app(settings, launcher=_StubLauncher(settings))) as client:
        assert client.get("/revisions/1").status_code == 400
        assert client.get("/health").json()["checks"]["binary"] == "unsupported"


def test_metrics_endpoint(client: TestClient) -> None:
    client.post("/servers", json={})
    body = client.get("/metrics").text
    assert "chromium_launcher_launches_total 1.0" in body
    assert "chromium_launcher_live_servers 1.0" in body


def test_cors_for_specific_origins(tmp_path) -> None:
    settings = LauncherSettings(_env_file=None, cache_path=tmp_path, cors_origins=["https://ui.example"])
    options = _get_cors_options(create_app(settings))
    assert options["allow_origins"] == ["https://ui.example"]
    assert options["allow_credentials"] is True


def test_cors_allows_any_origin_without_credentials(tmp_path) -> None:
    settings = LauncherSettings(_env_file=None, cache_path=tmp_path, cors_origins=["*"])
    options = _get_cors_options(create_app(settings))
    assert options["allow_origins"] == ["*"]
    assert options["allow_credentials"] is False
