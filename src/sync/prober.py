"""Connectivity Prober: which remote endpoint, if any, is usable right now.

The cached ``ConnectivityState`` is answered without I/O. It is refreshed at
startup, after ``failure_threshold`` consecutive submission failures reported
by the engine, and on a coarse background interval.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable

from src.sync.errors import ProbeTimeout, RemoteError
from src.sync.models import ConnectivityState, EndpointCandidate
from src.sync.remote import RemoteClient

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectivityState, ConnectivityState], None]


class ConnectivityProber:
    """Probe endpoint candidates in priority order and cache the result."""

    def __init__(
        self,
        candidates: Iterable[EndpointCandidate],
        client: RemoteClient,
        *,
        probe_timeout: float = 5.0,
        probe_interval: float = 1800.0,
        failure_threshold: int = 3,
    ) -> None:
        self.candidates = tuple(sorted(candidates))
        self.client = client
        self.probe_timeout = probe_timeout
        self.probe_interval = probe_interval
        self.failure_threshold = failure_threshold

        self._state = ConnectivityState()
        self._consecutive_failures = 0
        self._listeners: list[StateListener] = []
        self._probe_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def current_endpoint(self) -> EndpointCandidate | None:
        """The endpoint to use, or None when offline or not yet probed."""
        return self._state.endpoint if self._state.online else None

    def on_change(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener(old, new)`` whenever status or endpoint changes."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    async def probe(self) -> ConnectivityState:
        """Check candidates in priority order; first healthy one wins.

        Concurrent callers share a single in-flight probe.
        """
        if self._probe_lock.locked():
            async with self._probe_lock:
                return self._state

        async with self._probe_lock:
            new_state = ConnectivityState.unreachable()
            for candidate in self.candidates:
                if await self._check(candidate):
                    new_state = ConnectivityState.reachable(candidate)
                    break
            old_state, self._state = self._state, new_state
            self._consecutive_failures = 0

        if new_state.online:
            logger.debug("Endpoint %s reachable", new_state.endpoint.address)
        else:
            logger.debug("No endpoint reachable (%d candidates)", len(self.candidates))
        changed = (old_state.status, old_state.endpoint) != (
            new_state.status,
            new_state.endpoint,
        )
        if changed:
            self._notify(old_state, new_state)
        return new_state

    async def _check(self, candidate: EndpointCandidate) -> bool:
        try:
            await asyncio.wait_for(
                self.client.check_health(candidate), timeout=self.probe_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("%s", ProbeTimeout(candidate.address, self.probe_timeout))
            return False
        except RemoteError as exc:
            logger.warning("Health check failed for %s: %s", candidate.address, exc)
            return False
        except Exception:
            logger.exception("Unexpected error checking %s", candidate.address)
            return False
        return True

    def _notify(self, old: ConnectivityState, new: ConnectivityState) -> None:
        if new.online:
            logger.info("Connectivity: online via %s", new.endpoint.address)
        else:
            logger.info("Connectivity: %s", new.status.value)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Connectivity listener failed")

    def report_success(self) -> None:
        self._consecutive_failures = 0

    async def report_failure(self) -> None:
        """Record a failed submission; re-probe once the threshold is reached."""
        self._consecutive_failures += 1
        if self._consecutive_failures >= self.failure_threshold:
            logger.info(
                "%d consecutive remote failures, re-probing endpoints",
                self._consecutive_failures,
            )
            await self.probe()

    async def start(self) -> None:
        """Probe once now, then keep re-probing in the background."""
        await self.probe()
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="connectivity-prober")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.probe_interval)
            try:
                await self.probe()
            except Exception:
                logger.exception("Background probe failed")
