import json

import pytest
from fastapi.testclient import TestClient

from app import create_app
from tests.conftest import FakeDatabase


def test_root_returns_greeting(client: TestClient):
    res = client.get("/")
    assert res.status_code == 200
    assert res.text == "Hello World!"


def test_root_ignores_query_and_headers(client: TestClient):
    res = client.get("/?foo=bar&x=1", headers={"X-Anything": "1", "Accept": "application/json"})
    assert res.status_code == 200
    assert res.text == "Hello World!"


@pytest.mark.parametrize("method", ["GET", "POST", "PUT", "PATCH", "DELETE"])
def test_unknown_path_is_not_found(client: TestClient, method: str):
    res = client.request(method, "/does-not-exist?page=2")
    assert res.status_code == 404
    data = res.json()
    assert data["status"] == "fail"
    assert data["error"] == "not_found"
    assert data["status_code"] == 404
    assert "/does-not-exist?page=2" in data["message"]
    assert method in data["message"]


def test_not_found_message_format(client: TestClient):
    res = client.delete("/nope")
    assert res.json()["message"] == (
        "Can't find /nope on the server! Are you sure you wanted to make a DELETE request?"
    )


@pytest.mark.parametrize("method", ["TRACE", "PROPFIND"])
def test_uncommon_method_is_not_found(client: TestClient, method: str):
    res = client.request(method, "/nowhere")
    assert res.status_code == 404
    assert res.json()["message"] == (
        f"Can't find /nowhere on the server! Are you sure you wanted to make a {method} request?"
    )


def test_not_found_keeps_encoded_path(client: TestClient):
    res = client.get("/foo%20bar?q=a%26b")
    assert res.status_code == 404
    assert res.json()["message"].startswith("Can't find /foo%20bar?q=a%26b on the server!")


def test_wrong_method_on_root_is_not_found(client: TestClient):
    res = client.post("/")
    assert res.status_code == 404
    assert "POST" in res.json()["message"]


def test_unknown_api_path_is_not_found(client: TestClient):
    res = client.get("/api/v1/unknown")
    assert res.status_code == 404
    assert "/api/v1/unknown" in res.json()["message"]


def test_router_mounted_under_prefix(client: TestClient):
    assert client.get("/api/v1/items?limit=3").json() == {"limit": 3}
    assert client.get("/items?limit=3").status_code == 404


def test_default_router_health(settings):
    database = FakeDatabase(connected=True)
    with TestClient(create_app(settings, database=database)) as client:
        res = client.get("/api/v1/health")
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "healthy"
    assert data["version"] == settings.api_version
    assert data["database"] == "connected"


def test_lifespan_connects_and_closes_database(app, database: FakeDatabase):
    with TestClient(app) as client:
        client.get("/")
    assert database.connect_calls == 1
    assert database.closed


class TestApiDocs:
    """Documentation endpoint."""

    def test_swagger_ui_served(self, client: TestClient):
        res = client.get("/api-docs")
        assert res.status_code == 200
        assert "text/html" in res.headers["content-type"]
        assert "swagger-ui" in res.text
        assert "/api-docs/swagger.json" in res.text

    def test_trailing_slash_served(self, client: TestClient):
        res = client.get("/api-docs/")
        assert res.status_code == 200
        assert "swagger-ui" in res.text

    def test_bundled_document(self, client: TestClient, settings):
        res = client.get("/api-docs/swagger.json")
        assert res.status_code == 200
        document = res.json()
        assert document["info"]["version"] == settings.api_version
        assert "/health" in document["paths"]

    def test_injected_document(self, settings, database):
        document = {"openapi": "3.0.3", "info": {"title": "Injected", "version": "9"}, "paths": {}}
        with TestClient(create_app(settings, database=database, docs_document=document)) as client:
            assert client.get("/api-docs/swagger.json").json() == document

    def test_document_loaded_from_file(self, tmp_path, settings, database):
        path = tmp_path / "swagger.json"
        path.write_text(json.dumps({"openapi": "3.0.3", "info": {"title": "From file", "version": "2"}, "paths": {}}))
        settings.docs_document_path = path
        with TestClient(create_app(settings, database=database)) as client:
            assert client.get("/api-docs/swagger.json").json()["info"]["title"] == "From file"

    @pytest.mark.parametrize("path", ["/docs", "/redoc", "/openapi.json"])
    def test_framework_docs_disabled(self, client: TestClient, path: str):
        assert client.get(path).status_code == 404
