"""One sync context: the engine and its collaborators, built from config.

Each process (background daemon or foreground command) constructs its own
``SyncService``. Contexts share nothing in memory; they meet only in the
local store files and learn about each other's writes through the notifier.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from src.sync.backends import JsonFileBackend, KeyValueBackend, SqliteBackend
from src.sync.config import SyncConfig
from src.sync.engine import SyncEngine
from src.sync.models import ConnectivityState, RecordKind, SyncStatus
from src.sync.notifier import CrossContextNotifier
from src.sync.prober import ConnectivityProber
from src.sync.remote import RemoteClient
from src.sync.store_chain import LocalStoreChain

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path("./data")


def build_backends(
    config: SyncConfig, data_dir: Path = DEFAULT_DATA_DIR
) -> list[KeyValueBackend]:
    """Storage tiers in priority order: SQLite first, JSON file second.

    Store files not set explicitly in ``config`` are placed in ``data_dir``.
    """
    db_path, json_path = config.store_paths(data_dir)
    backends: list[KeyValueBackend] = [SqliteBackend(db_path)]
    if json_path is not None:
        backends.append(
            JsonFileBackend(json_path, quota_bytes=config.store_json_quota_bytes)
        )
    return backends


@dataclass(frozen=True)
class SyncOverview:
    """Counts per status plus the connectivity state, for status displays."""

    connectivity: ConnectivityState
    counts: dict[SyncStatus, int]

    @property
    def pending(self) -> int:
        return self.counts.get(SyncStatus.UNSYNCED, 0) + self.counts.get(
            SyncStatus.FAILED, 0
        )


class SyncService:
    """Owns the lifecycle of every component and background task."""

    def __init__(
        self,
        engine: SyncEngine,
        notifier: CrossContextNotifier,
    ) -> None:
        self.engine = engine
        self.notifier = notifier
        self.chain = engine.chain
        self.prober = engine.prober
        self.client = engine.client
        self._background = False
        self._unsubscribers: list[Callable[[], None]] = []
        self._followups: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        *,
        data_dir: Path | None = None,
        backends: Sequence[KeyValueBackend] | None = None,
        client: RemoteClient | None = None,
    ) -> SyncService:
        client = client or RemoteClient()
        if backends is None:
            backends = build_backends(config, data_dir or DEFAULT_DATA_DIR)
        chain = LocalStoreChain(backends)
        prober = ConnectivityProber(
            config.endpoint_candidates(),
            client,
            probe_timeout=config.probe_timeout,
            probe_interval=config.probe_interval_ms / 1000,
            failure_threshold=config.failure_threshold,
        )
        engine = SyncEngine(
            chain,
            prober,
            client,
            max_attempts=config.max_attempts,
            submit_timeout=config.submit_timeout,
            retry_delay=config.retry_delay,
            reconcile_interval=config.reconcile_interval_ms / 1000,
            syncing_stale_after=config.syncing_stale_after,
        )
        notifier = CrossContextNotifier(
            chain, poll_interval=config.poll_fallback_ms / 1000
        )
        return cls(engine, notifier)

    async def start(self, *, background: bool = True) -> None:
        """Open the stores and probe once.

        With ``background`` the periodic tasks start too: reconciliation,
        re-probing and change polling. A short-lived foreground command can
        pass ``background=False`` and drive the engine directly.
        """
        await self.chain.initialize()
        if not background:
            await self.prober.probe()
            return

        self._background = True
        self._unsubscribers.append(self.prober.on_change(self._on_connectivity_change))
        await self.prober.start()
        for kind in RecordKind:
            self._unsubscribers.append(
                self.notifier.on_change(kind.storage_key, self.engine.refresh)
            )
        await self.notifier.start()
        await self.engine.start()
        logger.info(
            "Sync context started (tiers=%s, endpoints=%d)",
            ",".join(self.chain.tier_names),
            len(self.prober.candidates),
        )

    async def stop(self) -> None:
        """Cancel every background task and release every resource."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for task in list(self._followups):
            task.cancel()
        if self._followups:
            await asyncio.gather(*self._followups, return_exceptions=True)
        self._followups.clear()

        if self._background:
            await self.engine.stop()
            await self.notifier.stop()
            await self.prober.stop()
            self._background = False
        await self.client.close()
        await self.chain.close()
        logger.debug("Sync context stopped")

    async def __aenter__(self) -> SyncService:
        await self.start()
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.stop()

    def _on_connectivity_change(
        self, old: ConnectivityState, new: ConnectivityState
    ) -> None:
        if new.online and not old.online:
            logger.info("Back online, reconciling pending records")
            task = asyncio.ensure_future(self._reconcile_after_reconnect())
            self._followups.add(task)
            task.add_done_callback(self._followups.discard)

    async def overview(self) -> SyncOverview:
        counts = {status: 0 for status in SyncStatus}
        for record in await self.chain.read_all():
            counts[record.sync_status] += 1
        return SyncOverview(connectivity=self.prober.state, counts=counts)

    async def _reconcile_after_reconnect(self) -> None:
        try:
            await self.engine.reconcile()
        except Exception:
            logger.exception("Reconciliation after reconnect failed")
