from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from api_explorer.openapi_doc import ApiSpecError, load_api_spec

SERVER_URL = "https://devapi.managefy.com.br/integration"


def _write_spec(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "swagger.json"
    path.write_text(content, encoding="utf-8")
    return path


def test_load_api_spec_replaces_servers(tmp_path: Path) -> None:
    path = _write_spec(
        tmp_path,
        json.dumps(
            {
                "openapi": "3.0.1",
                "info": {"title": "Integration", "version": "v1"},
                "servers": [{"url": "http://localhost:5000"}, {"url": "https://old.example"}],
                "paths": {"/Suppliers": {"get": {"tags": ["Suppliers"]}}},
            }
        ),
    )

    document = load_api_spec(path, server_url=SERVER_URL, description="Managefy Development API")

    assert document["servers"] == [{"url": SERVER_URL, "description": "Managefy Development API"}]
    assert document["paths"] == {"/Suppliers": {"get": {"tags": ["Suppliers"]}}}


def test_load_api_spec_without_description(tmp_path: Path) -> None:
    path = _write_spec(tmp_path, "{}")
    assert load_api_spec(path, server_url=SERVER_URL)["servers"] == [{"url": SERVER_URL}]


@pytest.mark.parametrize("content", ["{broken", "[1, 2]"])
def test_load_api_spec_rejects_invalid_documents(tmp_path: Path, content: str) -> None:
    with pytest.raises(ApiSpecError):
        load_api_spec(_write_spec(tmp_path, content), server_url=SERVER_URL)


def test_load_api_spec_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ApiSpecError, match="Failed to read API spec"):
        load_api_spec(tmp_path / "missing.json", server_url=SERVER_URL)


def test_swagger_endpoint_serves_document(client: TestClient, tmp_path: Path, monkeypatch) -> None:
    path = _write_spec(tmp_path, json.dumps({"openapi": "3.0.1", "paths": {}}))
    monkeypatch.setenv("API_EXPLORER_API_SPEC_PATH", str(path))

    response = client.get("/swagger.json")

    assert response.status_code == 200
    assert response.json()["servers"][0]["url"] == SERVER_URL


def test_swagger_endpoint_reports_missing_document(client: TestClient, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("API_EXPLORER_API_SPEC_PATH", str(tmp_path / "nope.json"))

    response = client.get("/swagger.json")

    assert response.status_code == 503
    assert response.json() == {"detail": "Failed to load API specification"}
