import pytest
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

import core.middleware as middleware
from app import create_app
from core.errors import AppError, error_name
from tests.conftest import TRUSTED_ORIGIN, build_router


def test_app_error_classification():
    not_found = AppError("missing", 404)
    assert not_found.message == "missing"
    assert not_found.status_code == 404
    assert not_found.status == "fail"
    assert not_found.is_operational

    assert AppError("broken").status == "error"
    assert AppError("broken").status_code == 500


@pytest.mark.parametrize(
    "status_code, expected",
    [(404, "not_found"), (400, "bad_request"), (413, "request_entity_too_large"), (500, "internal_server_error"), (999, "http_error")],
)
def test_error_name(status_code, expected):
    assert error_name(status_code) == expected


def test_app_error_rendered(client: TestClient):
    res = client.get("/api/v1/conflict")
    assert res.status_code == 409
    assert res.json() == {
        "status": "fail",
        "error": "conflict",
        "message": "Item already exists",
        "detail": None,
        "status_code": 409,
    }


def test_validation_error_rendered(client: TestClient):
    res = client.get("/api/v1/items?limit=abc")
    assert res.status_code == 422
    data = res.json()
    assert data["error"] == "validation_error"
    assert data["errors"][0]["loc"] == ["query", "limit"]


def test_unexpected_error_hides_detail(app):
    with TestClient(app, raise_server_exceptions=False) as client:
        res = client.get("/api/v1/boom")
    assert res.status_code == 500
    data = res.json()
    assert data["status"] == "error"
    assert data["message"] == "An internal server error occurred"
    assert data["detail"] is None


def test_unexpected_error_detail_in_debug(settings, database):
    settings.debug = True
    app = create_app(settings, router=build_router(), database=database)
    with TestClient(app, raise_server_exceptions=False) as client:
        res = client.get("/api/v1/boom")
    assert res.status_code == 500
    assert res.json()["detail"] == "kaboom"


def test_injected_error_handler_receives_errors(settings, database):
    seen = []

    async def handler(request, exc):
        seen.append(exc)
        return JSONResponse(status_code=getattr(exc, "status_code", 500), content={"handled": True})

    app = create_app(settings, router=build_router(), database=database, error_handler=handler)
    with TestClient(app) as client:
        not_found = client.put("/nowhere")
        bad_json = client.post("/api/v1/echo", content=b"{", headers={"Content-Type": "application/json"})

    assert not_found.status_code == 404
    assert not_found.json() == {"handled": True}
    assert bad_json.status_code == 400
    assert [type(exc) for exc in seen] == [AppError, AppError]
    assert "PUT" in seen[0].message


def test_unexpected_error_passes_back_through_middleware(client: TestClient, monkeypatch: pytest.MonkeyPatch):
    lines = []

    class Recorder:
        def info(self, line, **kwargs):
            lines.append(line)

    monkeypatch.setattr(middleware, "access_logger", Recorder())
    res = client.get("/api/v1/boom", headers={"Origin": TRUSTED_ORIGIN})

    assert res.status_code == 500
    assert res.json()["message"] == "An internal server error occurred"
    assert res.headers["access-control-allow-origin"] == TRUSTED_ORIGIN
    assert res.headers["access-control-allow-credentials"] == "true"
    assert len(lines) == 1
    assert '"GET /api/v1/boom HTTP/1.1" 500' in lines[0]


def test_database_unavailable_rendered(client: TestClient):
    res = client.get("/api/v1/db-down")
    assert res.status_code == 503
    assert res.headers["retry-after"] == "30"
    data = res.json()
    assert data["status"] == "error"
    assert data["error"] == "service_unavailable"
    assert data["message"] == "Database temporarily unavailable"
    assert data["detail"] is None


def test_integrity_error_rendered(client: TestClient):
    res = client.get("/api/v1/db-conflict")
    assert res.status_code == 409
    data = res.json()
    assert data["status"] == "fail"
    assert data["error"] == "conflict"
    assert data["message"] == "Data integrity violation"
