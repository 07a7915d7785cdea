from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from api_explorer.db import get_session

CORS_EXPECTED = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, POST, PUT, DELETE, PATCH, OPTIONS",
    "access-control-allow-headers": "Content-Type, access-token",
}


def _assert_cors(response) -> None:
    for name, value in CORS_EXPECTED.items():
        assert response.headers[name] == value


@pytest.mark.parametrize("method", ["GET", "POST", "PUT", "DELETE", "PATCH"])
def test_missing_path_returns_400_without_contacting_upstream(client: TestClient, upstream, method: str) -> None:
    response = client.request(method, "/api/proxy?page=1")

    assert response.status_code == 400
    assert response.json() == {"error": "Path parameter is required"}
    _assert_cors(response)
    assert upstream.requests == []


@pytest.mark.parametrize("url", ["/api/proxy", "/api/proxy?path=%2FSuppliers"])
def test_options_preflight_returns_bare_200(client: TestClient, upstream, url: str) -> None:
    response = client.options(url)

    assert response.status_code == 200
    assert response.content == b""
    _assert_cors(response)
    assert upstream.requests == []


def test_get_relays_json_envelope(client: TestClient, upstream) -> None:
    upstream.handler = lambda _: httpx.Response(200, json={"a": 1})

    response = client.get(
        "/api/proxy?path=%2FSuppliers&page=2",
        headers={"access-token": "good-token", "X-Custom": "leak-me"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == 200
    assert payload["statusText"] == "OK"
    assert payload["data"] == {"a": 1}
    assert payload["headers"]["content-type"] == "application/json"
    _assert_cors(response)

    [sent] = upstream.requests
    assert str(sent.url) == "https://upstream.test/integration/Suppliers?page=2"
    assert sent.headers["access-token"] == "good-token"
    assert "x-custom" not in sent.headers


def test_upstream_error_status_is_mirrored(client: TestClient, upstream) -> None:
    upstream.handler = lambda _: httpx.Response(401, json={"message": "unauthorized"})

    response = client.get("/api/proxy?path=/Suppliers", headers={"access-token": "bad-token"})

    assert response.status_code == 401
    assert response.json()["status"] == 401
    assert response.json()["data"] == {"message": "unauthorized"}
    _assert_cors(response)


def test_bodyless_upstream_status_is_carried_in_envelope(client: TestClient, upstream) -> None:
    upstream.handler = lambda _: httpx.Response(204)

    response = client.delete("/api/proxy?path=/Suppliers/3")

    assert response.status_code == 200
    assert response.json()["status"] == 204
    assert response.json()["data"] == ""


def test_post_body_is_forwarded_verbatim(client: TestClient, upstream) -> None:
    body = b'{"name":"Acme","document":"123"}'
    upstream.handler = lambda request: httpx.Response(201, json={"echo": request.content.decode("utf-8")})

    response = client.post("/api/proxy?path=/Suppliers", content=body)

    assert response.status_code == 201
    assert upstream.requests[0].content == body
    assert response.json()["data"] == {"echo": body.decode("utf-8")}


def test_get_body_is_dropped(client: TestClient, upstream) -> None:
    client.request("GET", "/api/proxy?path=/Suppliers", content=b'{"ignored": true}')

    assert upstream.requests[0].content == b""


def test_transport_failure_returns_network_error_envelope(client: TestClient, upstream) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Name or service not known", request=request)

    upstream.handler = handler

    for _ in range(2):
        response = client.get("/api/proxy?path=/Suppliers")
        assert response.status_code == 500
        payload = response.json()
        assert payload["status"] == 0
        assert payload["statusText"] == "Network Error"
        assert payload["headers"] == {}
        assert payload["data"] is None
        assert "Name or service not known" in payload["error"]
        _assert_cors(response)


def test_malformed_json_is_reported_in_data(client: TestClient, upstream) -> None:
    upstream.handler = lambda _: httpx.Response(
        200, content=b"{oops", headers={"Content-Type": "application/json; charset=utf-8"}
    )

    response = client.get("/api/proxy?path=/Suppliers")

    assert response.status_code == 200
    assert response.json()["data"].startswith("Error parsing response:")


def test_non_standard_json_constant_is_reported_in_data(client: TestClient, upstream) -> None:
    upstream.handler = lambda _: httpx.Response(
        200, content=b'{"total": NaN}', headers={"Content-Type": "application/json"}
    )

    response = client.get("/api/proxy?path=/Suppliers")

    assert response.status_code == 200
    assert response.json()["data"].startswith("Error parsing response:")
    _assert_cors(response)


def test_uninitialized_relay_returns_network_error_envelope(client: TestClient, upstream) -> None:
    client.app.state.relay = None

    response = client.get("/api/proxy?path=/Suppliers")

    assert response.status_code == 500
    assert response.json() == {
        "error": "Relay is not initialized",
        "status": 0,
        "statusText": "Network Error",
        "headers": {},
        "data": None,
    }
    _assert_cors(response)
    assert upstream.requests == []


def test_request_id_header_is_propagated(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-ID"] == "req-123"


def test_liveness_and_readiness_report_status(client: TestClient) -> None:
    assert client.get("/health/live").json() == {"status": "live"}

    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_readiness_reports_503_when_database_is_unreachable(client: TestClient) -> None:
    class BrokenSession:
        def execute(self, *args, **kwargs):
            raise RuntimeError("database is gone")

    client.app.dependency_overrides[get_session] = lambda: BrokenSession()

    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.json() == {"detail": "Database not ready"}
