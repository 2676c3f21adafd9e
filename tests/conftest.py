"""Shared test configuration with lightweight fixtures for fast execution."""

import os
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import httpx
import pytest

from calsync.config.settings import CalSyncSettings, reset_settings
from calsync.ics.fetcher import ICSFetcher
from calsync.service import CalendarSyncService
from calsync.store.database import SQLiteSubscriptionStore


class FixedClock:
    """Controllable clock injected wherever calsync asks for the current time."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class MockFeedServer:
    """In-process feed server backing an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.routes: dict[str, Callable[[httpx.Request], Any]] = {}
        self.requests: list[httpx.Request] = []

    def set_feed(
        self,
        url: str,
        content: Union[str, bytes],
        status_code: int = 200,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        body = content.encode("utf-8") if isinstance(content, str) else content
        response_headers = {"content-type": "text/calendar; charset=utf-8", **(headers or {})}
        self.routes[url] = lambda request: httpx.Response(
            status_code, content=body, headers=response_headers
        )

    def set_status(self, url: str, status_code: int, headers: Optional[dict[str, str]] = None) -> None:
        self.routes[url] = lambda request: httpx.Response(status_code, headers=headers or {})

    def set_handler(self, url: str, handler: Callable[[httpx.Request], Any]) -> None:
        self.routes[url] = handler

    def handle(self, request: httpx.Request) -> Any:
        self.requests.append(request)
        handler = self.routes.get(str(request.url))
        if handler is None:
            return httpx.Response(404, text="Not Found")
        return handler(request)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep CALSYNC_* variables and the settings singleton out of every test."""
    for key in list(os.environ):
        if key.startswith("CALSYNC_"):
            monkeypatch.delenv(key, raising=False)
    reset_settings()


@pytest.fixture
def test_settings(tmp_path: Any) -> CalSyncSettings:
    """Create settings backed by temporary directories and an in-memory database."""
    return CalSyncSettings(
        config_dir=tmp_path / "config",
        data_dir=tmp_path / "data",
        database_path=":memory:",
        request_timeout_seconds=5.0,
        sync_processing_budget_seconds=5.0,
        scheduler_tick_seconds=0.05,
        shutdown_timeout_seconds=1.0,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
async def store(clock: FixedClock) -> AsyncGenerator[SQLiteSubscriptionStore, None]:
    """In-memory subscription store, initialized and closed per test."""
    subscription_store = SQLiteSubscriptionStore(":memory:", clock=clock)
    await subscription_store.initialize()
    yield subscription_store
    await subscription_store.close()


@pytest.fixture
def feed_server() -> MockFeedServer:
    return MockFeedServer()


@pytest.fixture
async def http_client(feed_server: MockFeedServer) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(feed_server.handle))
    yield client
    await client.aclose()


@pytest.fixture
def fetcher(test_settings: CalSyncSettings, http_client: httpx.AsyncClient) -> ICSFetcher:
    return ICSFetcher(test_settings, client=http_client)


@pytest.fixture
async def service(
    test_settings: CalSyncSettings,
    store: SQLiteSubscriptionStore,
    fetcher: ICSFetcher,
    clock: FixedClock,
) -> AsyncGenerator[CalendarSyncService, None]:
    """Service wired to the in-memory store and the mock feed server."""
    sync_service = CalendarSyncService(test_settings, store=store, fetcher=fetcher, clock=clock)
    await sync_service.initialize()
    yield sync_service
    await sync_service.close()
