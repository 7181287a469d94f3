"""Tests for the Connectivity Prober."""

import asyncio

import pytest

from src.sync.models import ConnectivityStatus


class SlowClient:
    """Health checks that never answer in time."""

    def __init__(self):
        self.calls = 0

    async def check_health(self, endpoint):
        self.calls += 1
        await asyncio.sleep(10)


class BrokenClient:
    """Health checks that fail with an unexpected exception type."""

    def __init__(self, error: Exception):
        self.error = error
        self.calls = 0

    async def check_health(self, endpoint):
        self.calls += 1
        raise self.error


class TestProbe:
    """Test endpoint selection."""

    @pytest.mark.asyncio
    async def test_state_is_unknown_before_first_probe(self, candidates, fake_client):
        from src.sync.prober import ConnectivityProber

        prober = ConnectivityProber(candidates, fake_client)

        assert prober.state.status == ConnectivityStatus.UNKNOWN
        assert prober.current_endpoint() is None
        assert fake_client.health_checks == []

    @pytest.mark.asyncio
    async def test_selects_first_healthy_candidate(self, candidates, make_client):
        """Priority order should decide when several endpoints are healthy."""
        from src.sync.prober import ConnectivityProber

        client = make_client(
            healthy={"http://localhost:3001", "https://tracker.example.com"}
        )
        prober = ConnectivityProber(reversed(candidates), client)

        state = await prober.probe()

        assert state.online
        assert prober.current_endpoint().address == "http://localhost:3001"
        assert client.health_checks == ["http://localhost:3001"]

    @pytest.mark.asyncio
    async def test_falls_back_to_lower_priority(self, candidates, make_client):
        from src.sync.prober import ConnectivityProber

        client = make_client(healthy={"https://tracker.example.com"})
        prober = ConnectivityProber(candidates, client)

        await prober.probe()

        assert prober.current_endpoint().address == "https://tracker.example.com"

    @pytest.mark.asyncio
    async def test_offline_when_nothing_answers(self, candidates, make_client):
        from src.sync.prober import ConnectivityProber

        prober = ConnectivityProber(candidates, make_client())

        state = await prober.probe()

        assert state.status == ConnectivityStatus.OFFLINE
        assert prober.current_endpoint() is None

    @pytest.mark.asyncio
    async def test_timeout_counts_as_unreachable(self, candidates):
        """A hanging health check should be cut off by probe_timeout."""
        from src.sync.prober import ConnectivityProber

        client = SlowClient()
        prober = ConnectivityProber(candidates, client, probe_timeout=0.05)

        state = await asyncio.wait_for(prober.probe(), timeout=2)

        assert not state.online
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_counts_as_unreachable(self, candidates):
        """An undecodable health body should leave the prober offline, not raise."""
        from src.sync.prober import ConnectivityProber

        client = BrokenClient(
            UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        )
        prober = ConnectivityProber(candidates, client)

        state = await prober.probe()

        assert state.status == ConnectivityStatus.OFFLINE
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_probes_are_coalesced(self, candidates):
        """Callers arriving during a probe should share its result."""
        from src.sync.prober import ConnectivityProber

        client = SlowClient()
        prober = ConnectivityProber(candidates, client, probe_timeout=0.05)

        states = await asyncio.gather(*(prober.probe() for _ in range(4)))

        assert client.calls == 2
        assert all(state.status == ConnectivityStatus.OFFLINE for state in states)


class TestFailureReporting:
    """Test failure-driven re-probing."""

    @pytest.mark.asyncio
    async def test_reprobes_after_threshold(self, candidates, fake_client):
        from src.sync.prober import ConnectivityProber

        prober = ConnectivityProber(candidates, fake_client, failure_threshold=3)
        await prober.probe()
        fake_client.health_checks.clear()

        await prober.report_failure()
        await prober.report_failure()
        assert fake_client.health_checks == []
        assert prober.consecutive_failures == 2

        await prober.report_failure()
        assert fake_client.health_checks == ["http://localhost:3001"]
        assert prober.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_success_resets_counter(self, candidates, fake_client):
        from src.sync.prober import ConnectivityProber

        prober = ConnectivityProber(candidates, fake_client, failure_threshold=2)
        await prober.report_failure()
        prober.report_success()
        await prober.report_failure()

        assert prober.consecutive_failures == 1
        assert fake_client.health_checks == []


class TestListeners:
    """Test change notifications."""

    @pytest.mark.asyncio
    async def test_listener_called_on_transition_only(self, candidates, fake_client):
        from src.sync.prober import ConnectivityProber

        prober = ConnectivityProber(candidates, fake_client)
        transitions = []
        unsubscribe = prober.on_change(
            lambda old, new: transitions.append((old.status, new.status))
        )

        await prober.probe()
        await prober.probe()
        fake_client.healthy.clear()
        await prober.probe()
        unsubscribe()
        fake_client.healthy.add("http://localhost:3001")
        await prober.probe()

        assert transitions == [
            (ConnectivityStatus.UNKNOWN, ConnectivityStatus.ONLINE),
            (ConnectivityStatus.ONLINE, ConnectivityStatus.OFFLINE),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, candidates, fake_client):
        from src.sync.prober import ConnectivityProber

        def _boom(old, new):
            raise RuntimeError("listener bug")

        prober = ConnectivityProber(candidates, fake_client)
        prober.on_change(_boom)

        state = await prober.probe()
        assert state.online


class TestBackgroundLoop:
    """Test start/stop."""

    @pytest.mark.asyncio
    async def test_start_probes_and_stop_cancels(self, candidates, fake_client):
        from src.sync.prober import ConnectivityProber

        prober = ConnectivityProber(candidates, fake_client, probe_interval=0.01)
        await prober.start()
        assert prober.state.online

        await asyncio.sleep(0.05)
        await prober.stop()
        checks = len(fake_client.health_checks)
        assert checks >= 2

        await asyncio.sleep(0.05)
        assert len(fake_client.health_checks) == checks
