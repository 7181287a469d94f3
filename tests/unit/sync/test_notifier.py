"""Tests for the Cross-Context Notifier."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.sync.backends import MemoryBackend
from src.sync.models import SyncRecord
from src.sync.store_chain import LocalStoreChain


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


class TestNativeEvents:
    """Test delivery of backend change events."""

    @pytest.mark.asyncio
    async def test_write_fires_subscribed_callback(self):
        from src.sync.notifier import CrossContextNotifier

        chain = LocalStoreChain([MemoryBackend()])
        notifier = CrossContextNotifier(chain, poll_interval=60)
        seen = []
        notifier.on_change("jobApplications", seen.append)
        await notifier.start()

        await chain.write_through(SyncRecord(payload={}))
        await _settle()
        await notifier.stop()

        assert "jobApplications" in seen

    @pytest.mark.asyncio
    async def test_other_keys_do_not_fire(self):
        from src.sync.notifier import CrossContextNotifier

        backend = MemoryBackend()
        notifier = CrossContextNotifier(LocalStoreChain([backend]), poll_interval=60)
        seen = []
        notifier.on_change("jobContacts", seen.append)
        await notifier.start()

        await backend.set("jobApplications", [])
        await _settle()
        await notifier.stop()

        assert seen == []

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self):
        from src.sync.notifier import CrossContextNotifier

        backend = MemoryBackend()
        notifier = CrossContextNotifier(LocalStoreChain([backend]), poll_interval=60)
        seen = []

        async def _callback(key):
            seen.append(key)

        notifier.on_change("jobApplications", _callback)
        await notifier.start()
        await backend.set("jobApplications", [])
        await _settle()
        await notifier.stop()

        assert seen == ["jobApplications"]

    @pytest.mark.asyncio
    async def test_dispatch_awaits_async_mock(self):
        from src.sync.notifier import CrossContextNotifier

        notifier = CrossContextNotifier(LocalStoreChain([MemoryBackend()]))
        callback = AsyncMock()
        notifier.on_change("jobContacts", callback)

        await notifier.dispatch("jobContacts")

        callback.assert_awaited_once_with("jobContacts")

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        from src.sync.notifier import CrossContextNotifier

        backend = MemoryBackend()
        notifier = CrossContextNotifier(LocalStoreChain([backend]), poll_interval=60)
        seen = []
        unsubscribe = notifier.on_change("jobApplications", seen.append)
        await notifier.start()

        unsubscribe()
        await backend.set("jobApplications", [])
        await _settle()
        await notifier.stop()

        assert seen == []

    @pytest.mark.asyncio
    async def test_callback_errors_are_isolated(self):
        from src.sync.notifier import CrossContextNotifier

        notifier = CrossContextNotifier(LocalStoreChain([MemoryBackend()]))
        seen = []

        def _boom(key):
            raise RuntimeError("callback bug")

        notifier.on_change("jobApplications", _boom)
        notifier.on_change("jobApplications", seen.append)

        await notifier.dispatch("jobApplications")

        assert seen == ["jobApplications"]


class TestPolling:
    """Test the marker-polling backstop."""

    @pytest.mark.asyncio
    async def test_first_poll_only_records_baseline(self):
        from src.sync.notifier import CrossContextNotifier

        chain = LocalStoreChain([MemoryBackend()])
        await chain.write_through(SyncRecord(payload={}))
        notifier = CrossContextNotifier(chain)
        seen = []
        notifier.on_change("jobApplications", seen.append)

        assert await notifier.poll_once() == []
        assert seen == []

    @pytest.mark.asyncio
    async def test_detects_write_from_another_context(self):
        """A write this notifier never saw natively should be found by polling."""
        from src.sync.notifier import CrossContextNotifier

        shared = MemoryBackend()
        ours = LocalStoreChain([shared])
        theirs = LocalStoreChain([shared])
        notifier = CrossContextNotifier(ours)
        seen = []
        notifier.on_change("jobApplications", seen.append)
        await notifier.poll_once()

        await theirs.write_through(SyncRecord(payload={}))
        changed = await notifier.poll_once()

        assert changed == ["jobApplications"]
        assert seen == ["jobApplications"]
        assert await notifier.poll_once() == []

    @pytest.mark.asyncio
    async def test_background_poll_fires(self):
        from src.sync.notifier import CrossContextNotifier

        shared = MemoryBackend()
        notifier = CrossContextNotifier(LocalStoreChain([shared]), poll_interval=0.01)
        seen = []
        notifier.on_change("jobResumes", seen.append)
        await notifier.start()
        # Detach native events so only polling can notice the write.
        for unsubscribe in notifier._native_unsubscribers:
            unsubscribe()

        await LocalStoreChain([shared]).write_through(
            SyncRecord.from_dict({"id": "r1", "kind": "resumes", "payload": {}})
        )
        await asyncio.sleep(0.1)
        await notifier.stop()

        assert seen == ["jobResumes"]
