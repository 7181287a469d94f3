"""Cross-Context Notifier: tell this context when shared local data changed.

Native backend change events are the primary signal. Because a context
cannot observe writes another process makes to a shared file, a low
frequency poll compares each key's "last write" marker with the value seen
before and fires the same callbacks when they differ. Callbacks must be
idempotent: one change may be reported by both paths.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Callable
from typing import Any

from src.sync.store_chain import LAST_WRITE_PREFIX, LocalStoreChain

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], Any]

_UNSEEN = object()


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class CrossContextNotifier:
    """Key-scoped change subscriptions with a polling backstop."""

    def __init__(self, chain: LocalStoreChain, poll_interval: float = 2.0) -> None:
        self.chain = chain
        self.poll_interval = poll_interval
        self._callbacks: dict[str, list[ChangeCallback]] = {}
        self._markers: dict[str, Any] = {}
        self._native_unsubscribers: list[Callable[[], None]] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._dispatches: set[asyncio.Task] = set()

    def on_change(self, key: str, callback: ChangeCallback) -> Callable[[], None]:
        """Call ``callback(key)`` whenever data stored under ``key`` changes.

        ``callback`` may be a plain function or a coroutine function.
        Returns a callable that removes the subscription.
        """
        self._callbacks.setdefault(key, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._callbacks.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    async def start(self) -> None:
        """Attach to native events and start the polling backstop."""
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        for backend in self.chain.backends:
            self._native_unsubscribers.append(backend.subscribe(self._on_native_change))
        await self.poll_once()
        self._task = asyncio.create_task(self._run(), name="change-poll")

    async def stop(self) -> None:
        for unsubscribe in self._native_unsubscribers:
            unsubscribe()
        self._native_unsubscribers.clear()
        tasks = [t for t in (self._task, *self._dispatches) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._dispatches.clear()
        self._loop = None

    def _on_native_change(self, key: str, _old: Any, new: Any) -> None:
        # May run on another thread or event loop: hop onto ours first.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        if key.startswith(LAST_WRITE_PREFIX):
            data_key = key[len(LAST_WRITE_PREFIX) :]
            loop.call_soon_threadsafe(self._remember_marker, data_key, new)
        elif key in self._callbacks:
            loop.call_soon_threadsafe(self._schedule_dispatch, key)

    def _remember_marker(self, key: str, value: Any) -> None:
        if key in self._callbacks:
            self._markers[key] = value

    def _schedule_dispatch(self, key: str) -> None:
        task = asyncio.ensure_future(self.dispatch(key))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)

    async def dispatch(self, key: str) -> None:
        """Invoke every callback subscribed to ``key``."""
        for callback in list(self._callbacks.get(key, [])):
            try:
                await _maybe_await(callback(key))
            except Exception:
                logger.exception("Change callback for %s failed", key)

    async def poll_once(self) -> list[str]:
        """Compare markers with what was last seen; fire callbacks on divergence.

        The first observation of a key only records a baseline.
        """
        changed: list[str] = []
        for key in list(self._callbacks):
            current = await self.chain.last_write_marker(key)
            previous = self._markers.get(key, _UNSEEN)
            self._markers[key] = current
            if previous is not _UNSEEN and previous != current:
                changed.append(key)

        for key in changed:
            logger.debug("Polling detected a change on %s", key)
            await self.dispatch(key)
        return changed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Change polling failed")
