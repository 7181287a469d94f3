"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Any

import pytest

from src.sync.backends import MemoryBackend
from src.sync.errors import BackendUnavailable, RemoteUnreachable
from src.sync.models import EndpointCandidate, RecordKind


class FailingBackend(MemoryBackend):
    """Memory backend that can be switched into a failing state."""

    def __init__(self, name: str = "flaky", failing: bool = False) -> None:
        super().__init__(name=name)
        self.failing = failing

    def _check(self) -> None:
        if self.failing:
            raise BackendUnavailable(self.name, "simulated outage")

    async def get(self, key: str) -> Any:
        self._check()
        return await super().get(key)

    async def update(self, key, fn):
        self._check()
        return await super().update(key, fn)


class FakeRemoteClient:
    """In-memory stand-in for RemoteClient.

    ``healthy`` holds the addresses whose health check succeeds.
    ``responses`` is consumed one entry per submit call: an exception
    instance is raised, anything else is returned. When it runs out every
    submit succeeds with a generated ``_id``.
    """

    def __init__(
        self,
        healthy: set[str] | None = None,
        responses: list[Any] | None = None,
        submit_delay: float = 0.0,
    ) -> None:
        self.healthy = set(healthy or ())
        self.responses = list(responses or [])
        self.submit_delay = submit_delay
        self.health_checks: list[str] = []
        self.submissions: list[tuple[str, RecordKind, dict[str, Any]]] = []
        self.closed = False

    async def check_health(self, endpoint: EndpointCandidate) -> dict[str, Any]:
        self.health_checks.append(endpoint.address)
        if endpoint.address not in self.healthy:
            raise RemoteUnreachable(f"{endpoint.address}: connection refused")
        return {"status": "ok"}

    async def submit(
        self, endpoint: EndpointCandidate, kind: RecordKind, payload: dict[str, Any]
    ) -> Any:
        self.submissions.append((endpoint.address, kind, payload))
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, BaseException):
                raise response
            return response
        return {"_id": f"remote-{len(self.submissions)}"}

    async def close(self) -> None:
        self.closed = True


PRIMARY = "http://localhost:3001"
SECONDARY = "https://tracker.example.com"


@pytest.fixture
def sample_payload() -> dict[str, Any]:
    """Sample application payload for testing."""
    return {
        "company": "Acme Corp",
        "jobTitle": "Backend Engineer",
        "jobUrl": "https://example.com/jobs/123",
        "status": "applied",
    }


@pytest.fixture
def candidates() -> list[EndpointCandidate]:
    return [
        EndpointCandidate(priority=0, address=PRIMARY),
        EndpointCandidate(priority=1, address=SECONDARY),
    ]


@pytest.fixture
def fake_client() -> FakeRemoteClient:
    return FakeRemoteClient(healthy={PRIMARY})


@pytest.fixture
def make_engine(candidates):
    """Factory wiring a SyncEngine over memory tiers and a fake client."""
    from src.sync.engine import SyncEngine
    from src.sync.prober import ConnectivityProber
    from src.sync.store_chain import LocalStoreChain

    def _make(client: FakeRemoteClient, backends=None, **engine_kwargs) -> SyncEngine:
        chain = LocalStoreChain(backends or [MemoryBackend()])
        prober = ConnectivityProber(candidates, client, probe_timeout=0.5)
        engine_kwargs.setdefault("retry_delay", 0)
        return SyncEngine(chain, prober, client, **engine_kwargs)

    return _make


@pytest.fixture
def make_client():
    """Factory for FakeRemoteClient instances."""
    return FakeRemoteClient


@pytest.fixture
def make_failing_backend():
    """Factory for FailingBackend instances."""
    return FailingBackend
