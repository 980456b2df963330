import json
from dataclasses import dataclass, field

import httpx
import pytest

from common.clock import ManualClock
from common.storage import MemoryStorage
from parley.client.completion import CompletionClient
from parley.config import ClientConfig, Configuration
from parley.sessions.active import ActiveSession
from parley.sessions.store import SessionStore


@dataclass
class FakeEndpoint:
    status_code: int = 200
    body: object = field(default_factory=lambda: {"choices": [{"message": {"role": "assistant", "content": "ok"}}]})
    raw: str | None = None
    error: Exception | None = None
    requests: list[httpx.Request] = field(default_factory=list)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def reply(self, content: str) -> None:
        self.status_code = 200
        self.raw = None
        self.body = {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}

    def last_payload(self) -> dict:
        return json.loads(self.requests[-1].content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.raw is not None:
            return httpx.Response(self.status_code, text=self.raw)
        return httpx.Response(self.status_code, json=self.body)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_700_000_000_000, step=5)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def endpoint() -> FakeEndpoint:
    return FakeEndpoint()


@pytest.fixture
def client(endpoint, clock) -> CompletionClient:
    config = ClientConfig(api_base="https://api.test", timeout=5.0)
    return CompletionClient(config, clock=clock, transport=httpx.MockTransport(endpoint.handler))


@pytest.fixture
def store(storage) -> SessionStore:
    return SessionStore(storage)


@pytest.fixture
def make_active(storage, client, clock):
    def _make(api_key: str = "pplx-test", start: bool = True) -> ActiveSession:
        active = ActiveSession(
            store=SessionStore(storage),
            client=client,
            config=Configuration(api_key=api_key),
            clock=clock,
        )
        if start:
            active.start()
        return active

    return _make


@pytest.fixture
def active(make_active) -> ActiveSession:
    return make_active()
