"""Local Store Chain: ordered persistence tiers with graceful fallback.

Records of each kind are stored as a list under the kind's storage key
(``jobApplications``, ``jobContacts``, ``jobResumes``). Writes go to the
highest-priority tier that accepts them. Reads come from the highest-priority
tier that answers; tiers are never merged on read. Records left on a lower
tier while a higher one was failing are moved up once it accepts data again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from src.sync.backends import NO_CHANGE, KeyValueBackend
from src.sync.errors import BackendUnavailable, PersistenceExhausted
from src.sync.models import RecordKind, SyncRecord, SyncStatus, utcnow

logger = logging.getLogger(__name__)

LAST_WRITE_PREFIX = "lastWrite:"

RecordChange = Callable[[SyncRecord], SyncRecord | None]


def last_write_key(storage_key: str) -> str:
    """Key of the denormalized "last write" marker for a data key."""
    return f"{LAST_WRITE_PREFIX}{storage_key}"


def _kinds(kind: RecordKind | None) -> list[RecordKind]:
    return [kind] if kind is not None else list(RecordKind)


def _parse_records(tier: str, value: Any) -> list[SyncRecord]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise BackendUnavailable(tier, "corrupt record list")
    records: list[SyncRecord] = []
    for item in value:
        try:
            records.append(SyncRecord.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Unreadable record entry in %s: %s", tier, exc)
    return records


class LocalStoreChain:
    """Durable record storage over an ordered list of backends."""

    def __init__(self, backends: Sequence[KeyValueBackend]) -> None:
        if not backends:
            raise ValueError("LocalStoreChain needs at least one backend")
        self.backends = list(backends)
        self._available = [True] * len(self.backends)

    @property
    def tier_names(self) -> list[str]:
        return [backend.name for backend in self.backends]

    def is_available(self, index: int) -> bool:
        return self._available[index]

    async def initialize(self) -> None:
        """Initialize every tier; a tier that fails starts out unavailable."""
        for index, backend in enumerate(self.backends):
            try:
                await backend.initialize()
            except BackendUnavailable as exc:
                self._mark(index, exc)

    async def close(self) -> None:
        for backend in self.backends:
            await backend.close()

    def _mark(self, index: int, error: BackendUnavailable | None = None) -> None:
        available = error is None
        if self._available[index] != available:
            name = self.backends[index].name
            if available:
                logger.info("Storage tier %s is available again", name)
            else:
                logger.warning("Storage tier %s became unavailable: %s", name, error)
        self._available[index] = available

    def _read_order(self) -> list[int]:
        indices = range(len(self.backends))
        return [i for i in indices if self._available[i]] + [
            i for i in indices if not self._available[i]
        ]

    async def write_through(self, record: SyncRecord) -> str:
        """Persist a record on the first tier that accepts it.

        Returns:
            The name of the tier holding the record.

        Raises:
            PersistenceExhausted: If every tier failed.
        """
        payload = record.to_dict()
        storage_key = record.kind.storage_key

        def _upsert(current: Any) -> list[dict[str, Any]]:
            items = [
                item
                for item in (current if isinstance(current, list) else [])
                if not (isinstance(item, dict) and item.get("id") == record.id)
            ]
            items.append(payload)
            return items

        errors: list[BackendUnavailable] = []
        for index, backend in enumerate(self.backends):
            try:
                await backend.update(storage_key, _upsert)
            except BackendUnavailable as exc:
                self._mark(index, exc)
                errors.append(exc)
                continue
            self._mark(index)
            await self._touch(backend, storage_key)
            if errors:
                logger.info(
                    "Record %s persisted to fallback tier %s", record.id, backend.name
                )
            try:
                await self._absorb_lower_tiers(index, storage_key)
            except BackendUnavailable as exc:
                logger.warning(
                    "Could not move stranded records into %s: %s", backend.name, exc
                )
            return backend.name

        raise PersistenceExhausted(errors)

    async def _absorb_lower_tiers(self, index: int, storage_key: str) -> int:
        """Move records stranded on lower-priority tiers up into tier ``index``.

        Records land on a lower tier only while a higher one is failing. The
        target's own copy of a record wins over a stranded one with the same
        id. Moved entries are cleared from the source afterwards.

        Returns:
            The number of records moved.

        Raises:
            BackendUnavailable: If the target tier rejected the move.
        """
        target = self.backends[index]
        moved = 0
        for lower in range(index + 1, len(self.backends)):
            source = self.backends[lower]
            try:
                value = await source.get(storage_key)
            except BackendUnavailable as exc:
                self._mark(lower, exc)
                continue
            if not isinstance(value, list):
                continue
            incoming = {
                item["id"]: item
                for item in value
                if isinstance(item, dict) and isinstance(item.get("id"), str)
            }
            if not incoming:
                continue
            added: list[dict[str, Any]] = []

            def _merge(current: Any) -> Any:
                items = current if isinstance(current, list) else []
                present = {item.get("id") for item in items if isinstance(item, dict)}
                added[:] = [v for k, v in incoming.items() if k not in present]
                if not added:
                    return NO_CHANGE
                return [*items, *added]

            await target.update(storage_key, _merge)

            def _is_moved(item: Any) -> bool:
                if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                    return False
                return incoming.get(item["id"]) == item

            def _drop(current: Any) -> Any:
                if not isinstance(current, list):
                    return NO_CHANGE
                remaining = [item for item in current if not _is_moved(item)]
                if len(remaining) == len(current):
                    return NO_CHANGE
                return remaining or None

            try:
                await source.update(storage_key, _drop)
            except BackendUnavailable as exc:
                self._mark(lower, exc)
            if added:
                moved += len(added)
                logger.info(
                    "Moved %d %s records from %s up to %s",
                    len(added),
                    storage_key,
                    source.name,
                    target.name,
                )

        if moved:
            await self._touch(target, storage_key)
        return moved

    async def _touch(self, backend: KeyValueBackend, storage_key: str) -> None:
        try:
            await backend.set(last_write_key(storage_key), utcnow().isoformat())
        except BackendUnavailable as exc:
            logger.warning(
                "Could not update last-write marker on %s: %s", backend.name, exc
            )

    async def read_all(self, kind: RecordKind | None = None) -> list[SyncRecord]:
        """Read every record from the highest-priority tier that answers.

        Tiers are tried in strict priority order. Records stranded on lower
        tiers are moved up into the tier being read before it is read.

        Raises:
            PersistenceExhausted: If no tier could be read.
        """
        errors: list[BackendUnavailable] = []
        for index, backend in enumerate(self.backends):
            try:
                records: list[SyncRecord] = []
                for record_kind in _kinds(kind):
                    await self._absorb_lower_tiers(index, record_kind.storage_key)
                    value = await backend.get(record_kind.storage_key)
                    records.extend(_parse_records(backend.name, value))
            except BackendUnavailable as exc:
                self._mark(index, exc)
                errors.append(exc)
                continue
            self._mark(index)
            return records

        raise PersistenceExhausted(errors)

    async def get(self, record_id: str) -> SyncRecord | None:
        for record in await self.read_all():
            if record.id == record_id:
                return record
        return None

    async def pending(self, stale_before: datetime | None = None) -> list[SyncRecord]:
        """The Pending Queue, oldest first, computed fresh from storage."""
        records = [r for r in await self.read_all() if r.is_pending(stale_before)]
        return sorted(records, key=lambda r: r.created_at)

    async def _modify(
        self,
        record_id: str,
        change: RecordChange,
        kind: RecordKind | None = None,
    ) -> tuple[bool, SyncRecord | None]:
        """Atomically apply ``change`` to the record wherever it is stored.

        Returns ``(found, updated)``; ``updated`` is None when the record was
        absent or ``change`` declined to modify it.
        """
        outcome: dict[str, Any] = {"found": False, "updated": None}

        def _apply(current: Any) -> Any:
            if not isinstance(current, list):
                return NO_CHANGE
            for position, item in enumerate(current):
                if not (isinstance(item, dict) and item.get("id") == record_id):
                    continue
                outcome["found"] = True
                updated = change(SyncRecord.from_dict(item))
                if updated is None:
                    return NO_CHANGE
                outcome["updated"] = updated
                items = list(current)
                items[position] = updated.to_dict()
                return items
            return NO_CHANGE

        for index in self._read_order():
            backend = self.backends[index]
            for record_kind in _kinds(kind):
                try:
                    await backend.update(record_kind.storage_key, _apply)
                except BackendUnavailable as exc:
                    self._mark(index, exc)
                    break
                if outcome["found"]:
                    if outcome["updated"] is not None:
                        await self._touch(backend, record_kind.storage_key)
                    return True, outcome["updated"]
        return False, None

    async def update_status(
        self,
        record_id: str,
        status: SyncStatus,
        *,
        kind: RecordKind | None = None,
        **fields: Any,
    ) -> SyncRecord | None:
        """Set a record's status (and optional extra fields).

        Idempotent; a record that no longer exists is silently skipped.
        """
        found, updated = await self._modify(
            record_id,
            lambda record: record.with_status(status, **fields),
            kind=kind,
        )
        if not found:
            logger.debug("Status update for missing record %s ignored", record_id)
        return updated

    async def claim(
        self,
        record_id: str,
        *,
        stale_before: datetime | None = None,
        kind: RecordKind | None = None,
    ) -> SyncRecord | None:
        """Atomically move a pending record to ``syncing``.

        Returns the claimed record, or None if it is missing, already being
        synced by another caller, or already synced.
        """
        now = utcnow()

        def _claim(record: SyncRecord) -> SyncRecord | None:
            if not record.is_pending(stale_before):
                return None
            return record.with_status(SyncStatus.SYNCING, last_sync_attempt_at=now)

        _found, claimed = await self._modify(record_id, _claim, kind=kind)
        return claimed

    async def release(
        self, record_id: str, *, kind: RecordKind | None = None
    ) -> SyncRecord | None:
        """Hand a ``syncing`` claim back as ``unsynced``."""

        def _release(record: SyncRecord) -> SyncRecord | None:
            if record.sync_status != SyncStatus.SYNCING:
                return None
            return record.with_status(SyncStatus.UNSYNCED)

        _found, released = await self._modify(record_id, _release, kind=kind)
        if released is not None:
            logger.info("Released claim on record %s", record_id)
        return released

    async def remove(self, record_id: str) -> bool:
        """Delete a record locally. Returns False if it was not found."""
        outcome = {"removed": False}

        def _drop(current: Any) -> Any:
            if not isinstance(current, list):
                return NO_CHANGE
            items = [
                item
                for item in current
                if not (isinstance(item, dict) and item.get("id") == record_id)
            ]
            if len(items) == len(current):
                return NO_CHANGE
            outcome["removed"] = True
            return items

        for index in self._read_order():
            backend = self.backends[index]
            for record_kind in RecordKind:
                try:
                    await backend.update(record_kind.storage_key, _drop)
                except BackendUnavailable as exc:
                    self._mark(index, exc)
                    break
                if outcome["removed"]:
                    await self._touch(backend, record_kind.storage_key)
                    return True
        return False

    async def last_write_marker(self, storage_key: str) -> str | None:
        """Current "last write" marker for a data key on the authoritative tier."""
        for index in self._read_order():
            try:
                value = await self.backends[index].get(last_write_key(storage_key))
            except BackendUnavailable as exc:
                self._mark(index, exc)
                continue
            return value if isinstance(value, str) else None
        return None
