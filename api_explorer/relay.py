from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import unquote_plus, urlencode

import httpx


logger = logging.getLogger("api_explorer.relay")

DEFAULT_UPSTREAM_BASE_URL = "https://api.managefy.com.br/integration"
PATH_PARAM = "path"
ACCESS_TOKEN_HEADER = "access-token"
NETWORK_ERROR_STATUS_TEXT = "Network Error"
MISSING_PATH_MESSAGE = "Path parameter is required"

RELAY_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS")
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

CORS_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": ", ".join(RELAY_METHODS),
    "Access-Control-Allow-Headers": f"Content-Type, {ACCESS_TOKEN_HEADER}",
}


class RelayError(RuntimeError):
    """Base error for relay failures."""


class MissingPathError(RelayError):
    """Raised when the routing path parameter is absent or empty."""

    def __init__(self) -> None:
        super().__init__(MISSING_PATH_MESSAGE)


class RelayClientError(RelayError):
    """Raised when a relay endpoint answers with something other than an envelope."""


@dataclass(frozen=True, slots=True)
class ForwardRequest:
    method: str
    path: str
    query: str = ""
    access_token: str | None = None
    body: bytes | None = None

    def __post_init__(self) -> None:
        method = self.method.upper()
        if method not in RELAY_METHODS:
            raise ValueError(f"Unsupported relay method: {self.method}")
        if not self.path:
            raise MissingPathError()
        object.__setattr__(self, "method", method)

    @property
    def outbound_body(self) -> bytes | None:
        if self.method not in BODY_METHODS or not self.body:
            return None
        return self.body


@dataclass(slots=True)
class ForwardResponse:
    """
    Result of one relay call.

    ``status == 0`` means no upstream response was obtained; ``error`` then
    carries the transport failure description.
    """

    status: int
    status_text: str
    headers: dict[str, str] = field(default_factory=dict)
    data: Any = None
    error: str | None = None

    @classmethod
    def network_error(cls, message: str) -> "ForwardResponse":
        return cls(status=0, status_text=NETWORK_ERROR_STATUS_TEXT, headers={}, data=None, error=message)

    @classmethod
    def from_envelope(cls, payload: Any) -> "ForwardResponse":
        if not isinstance(payload, dict) or not isinstance(payload.get("status"), int):
            raise RelayClientError(f"Relay envelope is missing a numeric status: {payload!r}")

        headers = payload.get("headers") or {}
        if not isinstance(headers, dict):
            raise RelayClientError("Relay envelope headers must be an object")

        status = payload["status"]
        error = payload.get("error")
        if status == 0 and not error:
            error = "Proxy request failed"
        return cls(
            status=status,
            status_text=str(payload.get("statusText") or ""),
            headers={str(key): str(value) for key, value in headers.items()},
            data=payload.get("data"),
            error=str(error) if status == 0 else None,
        )

    @property
    def is_transport_failure(self) -> bool:
        return self.status == 0

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def to_envelope(self) -> dict[str, Any]:
        if self.is_transport_failure:
            return {
                "error": self.error,
                "status": 0,
                "statusText": NETWORK_ERROR_STATUS_TEXT,
                "headers": {},
                "data": None,
            }
        return {
            "status": self.status,
            "statusText": self.status_text,
            "headers": dict(self.headers),
            "data": self.data,
        }


class RelayClient(Protocol):
    def forward(self, request: ForwardRequest) -> ForwardResponse:
        ...


def split_routing_path(raw_query: str) -> tuple[str | None, str]:
    """
    Split a raw query string into the routing ``path`` value and the rest.

    The remaining segments keep their original encoding and order. Only the
    first ``path`` occurrence is used; any further ones are dropped as well.
    """

    path: str | None = None
    remaining: list[str] = []
    for segment in raw_query.split("&"):
        if not segment:
            continue
        key, _, value = segment.partition("=")
        if unquote_plus(key) == PATH_PARAM:
            if path is None:
                path = unquote_plus(value)
            continue
        remaining.append(segment)
    return path, "&".join(remaining)


def parse_forward_request(
    *,
    method: str,
    raw_query: str,
    headers: Mapping[str, str],
    body: bytes | None = None,
) -> ForwardRequest:
    path, query = split_routing_path(raw_query or "")
    if not path:
        raise MissingPathError()

    access_token = headers.get(ACCESS_TOKEN_HEADER) or None
    return ForwardRequest(method=method, path=path, query=query, access_token=access_token, body=body)


def build_target_url(base_url: str, path: str, query: str = "") -> str:
    url = f"{base_url.rstrip('/')}{path}"
    query = query.lstrip("&")
    if not query:
        return url
    separator = "&" if "?" in path else "?"
    return f"{url}{separator}{query}"


def build_outbound_headers(access_token: str | None) -> dict[str, str]:
    headers = {
        "Accept": "*/*",
        "Content-Type": "application/json",
    }
    if access_token:
        headers[ACCESS_TOKEN_HEADER] = access_token
    return headers


def _mask_token(access_token: str | None) -> str:
    return "***" if access_token else "not set"


def _reject_constant(value: str) -> Any:
    raise ValueError(f"Unexpected JSON constant {value}")


def _decode_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    try:
        if "application/json" in content_type.lower():
            return json.loads(response.content, parse_constant=_reject_constant)
        return response.text
    except (ValueError, RecursionError) as exc:
        return f"Error parsing response: {exc}"


class ForwardingRelay:
    """Stateless relay that reissues documentation requests against one fixed upstream origin."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_UPSTREAM_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        resolved_base_url = base_url.strip()
        if not resolved_base_url:
            raise ValueError("Upstream base URL cannot be empty")
        self.base_url = resolved_base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def forward(self, request: ForwardRequest) -> ForwardResponse:
        target_url = build_target_url(self.base_url, request.path, request.query)
        headers = build_outbound_headers(request.access_token)

        logger.info(
            "relay_forward method=%s url=%s access_token=%s",
            request.method,
            target_url,
            _mask_token(request.access_token),
        )

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
                response = client.request(
                    request.method,
                    target_url,
                    headers=headers,
                    content=request.outbound_body,
                )
            return ForwardResponse(
                status=response.status_code,
                status_text=response.reason_phrase,
                headers=dict(response.headers.items()),
                data=_decode_body(response),
            )
        except httpx.RequestError as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("relay_network_error method=%s url=%s error=%s", request.method, target_url, message)
            return ForwardResponse.network_error(message)
        except Exception as exc:
            logger.exception("relay_failed method=%s url=%s", request.method, target_url)
            return ForwardResponse.network_error(str(exc) or "Proxy request failed")


class HttpRelayClient:
    """Calls a deployed relay endpoint and decodes its envelope."""

    def __init__(
        self,
        *,
        relay_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        resolved_url = relay_url.strip()
        if not resolved_url:
            raise ValueError("Relay URL cannot be empty")
        self.relay_url = resolved_url
        self.timeout = timeout
        self._transport = transport

    def forward(self, request: ForwardRequest) -> ForwardResponse:
        query = urlencode({PATH_PARAM: request.path})
        if request.query:
            query = f"{query}&{request.query}"
        url = f"{self.relay_url}?{query}"

        headers = {"Content-Type": "application/json"}
        if request.access_token:
            headers[ACCESS_TOKEN_HEADER] = request.access_token

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.request(request.method, url, headers=headers, content=request.outbound_body)
        except httpx.RequestError as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("relay_client_network_error url=%s error=%s", url, message)
            return ForwardResponse.network_error(message)

        try:
            payload = response.json()
        except ValueError as exc:
            raise RelayClientError(
                f"{response.status_code} {response.reason_phrase}: relay response is not JSON"
            ) from exc

        if isinstance(payload, dict) and "status" not in payload and payload.get("error"):
            raise RelayClientError(f"{response.status_code} {response.reason_phrase}: {payload['error']}")
        return ForwardResponse.from_envelope(payload)
