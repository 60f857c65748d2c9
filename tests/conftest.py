"""Shared test fixtures for the inbox pipeline."""
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio

from channels.base import ChannelRegistry
from channels.retry import RetryPolicy
from channels.whatsapp_adapter import WhatsAppAdapter
from core.events import EventBus

WEBHOOK_SECRET = "test-app-secret"
JWT_SECRET = "test-jwt-secret"


class FakeClock:
    """Deterministic UTC clock; ``advance`` moves time forward."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingSleep:
    """Stands in for asyncio.sleep in retry loops; records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class GraphApi:
    """
    httpx.MockTransport handler mimicking the WhatsApp Cloud API.

    ``responses`` is consumed in order; once empty every request succeeds.
    """

    def __init__(self, responses: list[Any] = None):
        self.responses = list(responses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            outcome = self.responses.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, int):
                return httpx.Response(outcome, json={"error": {"code": outcome}})
            return outcome
        return httpx.Response(200, json={"messages": [{"id": f"wamid.{len(self.requests)}"}]})

    @property
    def sent_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_recorder() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def graph_api() -> GraphApi:
    return GraphApi()


@pytest_asyncio.fixture
async def whatsapp(graph_api, sleep_recorder) -> WhatsAppAdapter:
    adapter = WhatsAppAdapter(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(graph_api)),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0),
        sleep=sleep_recorder,
    )
    await adapter.initialize({
        "access_token": "EAAG-test",
        "phone_number_id": "1234567890",
        "app_secret": WEBHOOK_SECRET,
        "verify_token": "verify-me",
    })
    yield adapter
    await adapter.shutdown()


@pytest.fixture
def registry(whatsapp) -> ChannelRegistry:
    registry = ChannelRegistry()
    registry.register(whatsapp)
    return registry


@pytest.fixture
def collect_events(bus) -> Callable[[str], list]:
    """Subscribe to a topic and return the list events are appended to."""

    def _collect(topic: str) -> list:
        events: list = []
        bus.subscribe(topic, events.append)
        return events

    return _collect
