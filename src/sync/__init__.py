"""Offline-first synchronization of tracker records.

Records are written to local storage first and delivered to the remote
tracker service when an endpoint is reachable.

Public API:
- SyncEngine: add, submit and reconcile records
- SyncService: one fully wired sync context with background tasks
- LocalStoreChain: ordered local storage tiers with fallback
- ConnectivityProber: cached reachability of remote endpoints
- CrossContextNotifier: change signals between contexts
- SyncRecord, SyncStatus, RecordKind: record data model
- SyncConfig: configuration settings
"""

from src.sync.config import SyncConfig, get_sync_config
from src.sync.engine import SyncEngine
from src.sync.errors import (
    PersistenceExhausted,
    ProbeTimeout,
    RemoteRejected,
    RemoteUnreachable,
    SyncError,
)
from src.sync.models import RecordKind, SyncRecord, SyncStatus
from src.sync.notifier import CrossContextNotifier
from src.sync.prober import ConnectivityProber
from src.sync.service import SyncService
from src.sync.store_chain import LocalStoreChain

__all__ = [
    "SyncEngine",
    "SyncService",
    "LocalStoreChain",
    "ConnectivityProber",
    "CrossContextNotifier",
    "SyncRecord",
    "SyncStatus",
    "RecordKind",
    "SyncConfig",
    "get_sync_config",
    "SyncError",
    "PersistenceExhausted",
    "RemoteRejected",
    "RemoteUnreachable",
    "ProbeTimeout",
]
