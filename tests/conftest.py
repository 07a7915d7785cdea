from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import api_explorer.main as app_main
from api_explorer.db import Base, build_engine, build_session_factory, get_session


UpstreamHandler = Callable[[httpx.Request], httpx.Response]


def new_session_factory(tmp_path: Path) -> Callable[[], Session]:
    from api_explorer import models  # noqa: F401

    engine = build_engine(f"sqlite:///{tmp_path / 'test_api_explorer.db'}")
    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)


class UpstreamStub:
    """Swappable upstream handler that records every request it sees."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: UpstreamHandler = lambda _: httpx.Response(200, json={})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture()
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest.fixture()
def session_factory(tmp_path: Path) -> Callable[[], Session]:
    return new_session_factory(tmp_path)


@pytest.fixture()
def client(
    monkeypatch: pytest.MonkeyPatch,
    upstream: UpstreamStub,
    session_factory: Callable[[], Session],
) -> Iterator[TestClient]:
    monkeypatch.setenv("API_EXPLORER_UPSTREAM_BASE_URL", "https://upstream.test/integration")
    monkeypatch.setenv("API_EXPLORER_CREDENTIAL_SCHEDULER_ENABLED", "0")
    monkeypatch.setattr(app_main, "SessionLocal", session_factory)
    monkeypatch.setattr(app_main, "init_db", lambda: None)
    monkeypatch.setattr(app_main, "_upstream_transport", httpx.MockTransport(upstream))

    def _test_session() -> Iterator[Session]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app_main.app.dependency_overrides[get_session] = _test_session
    try:
        with TestClient(app_main.app) as test_client:
            yield test_client
    finally:
        app_main.app.dependency_overrides.pop(get_session, None)
