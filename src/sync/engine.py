"""Sync Engine: local-first record writes with at-least-once remote delivery.

Record lifecycle::

    unsynced -> syncing -> synced (terminal)
                        -> failed -> syncing (next reconciliation)

A record is always written locally before any remote attempt. Remote
failures only change its status; the one error that reaches callers is
``PersistenceExhausted`` from ``add_record``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Any

from src.sync.errors import RemoteError, RemoteUnreachable
from src.sync.models import (
    AddResult,
    EndpointCandidate,
    RecordKind,
    ReconcileReport,
    SubmitResult,
    SyncRecord,
    SyncStatus,
    utcnow,
)
from src.sync.prober import ConnectivityProber
from src.sync.remote import RemoteClient, extract_remote_id
from src.sync.store_chain import LocalStoreChain

logger = logging.getLogger(__name__)


class SyncEngine:
    """Compose the store chain, prober and remote client for one context.

    Args:
        chain: Local persistence tiers.
        prober: Source of the current remote endpoint (read only).
        client: HTTP client used for submissions.
        max_attempts: Remote attempts per ``submit`` call.
        submit_timeout: Ceiling in seconds for each attempt.
        retry_delay: Fixed pause in seconds between attempts.
        reconcile_interval: Seconds between background reconciliation passes.
        syncing_stale_after: Seconds after which a ``syncing`` record left
            behind by a dead context becomes eligible again.
    """

    def __init__(
        self,
        chain: LocalStoreChain,
        prober: ConnectivityProber,
        client: RemoteClient,
        *,
        max_attempts: int = 3,
        submit_timeout: float = 10.0,
        retry_delay: float = 1.0,
        reconcile_interval: float = 300.0,
        syncing_stale_after: float = 300.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.chain = chain
        self.prober = prober
        self.client = client
        self.max_attempts = max_attempts
        self.submit_timeout = submit_timeout
        self.retry_delay = retry_delay
        self.reconcile_interval = reconcile_interval
        self.syncing_stale_after = syncing_stale_after

        self._reconcile_lock = asyncio.Lock()
        self._refresh_waiting = False
        self._task: asyncio.Task | None = None

    def _stale_before(self) -> datetime:
        return utcnow() - timedelta(seconds=self.syncing_stale_after)

    async def add_record(
        self,
        payload: dict[str, Any],
        kind: RecordKind = RecordKind.APPLICATIONS,
    ) -> AddResult:
        """Create a record, persist it locally and try to deliver it.

        When an endpoint is online the submission happens before returning,
        so the result carries ``synced`` or ``failed``. Offline, the record
        stays ``unsynced`` for the next reconciliation pass.

        Raises:
            PersistenceExhausted: If no local tier could store the record.
        """
        record = SyncRecord(payload=dict(payload), kind=kind)
        tier = await self.chain.write_through(record)
        logger.info("Stored %s record %s on %s", kind.value, record.id, tier)

        if self.prober.current_endpoint() is None:
            return AddResult(record=record, persisted_tier=tier)

        result = await self.submit(record)
        stored = await self.chain.get(record.id)
        return AddResult(record=stored or record, persisted_tier=tier, submit=result)

    async def submit(self, record: SyncRecord | str) -> SubmitResult:
        """Deliver one record with bounded retries.

        The record is claimed atomically first; one that is already
        ``syncing`` elsewhere or already ``synced`` is skipped without any
        remote call. Failures are returned, never raised; if the call is
        cancelled mid-flight the claim is released back to ``unsynced``.
        """
        record_id = record if isinstance(record, str) else record.id
        kind = None if isinstance(record, str) else record.kind

        endpoint = self.prober.current_endpoint()
        if endpoint is None:
            return SubmitResult(
                record_id=record_id,
                status=SyncStatus.UNSYNCED if kind is None else record.sync_status,
                error=str(RemoteUnreachable("no reachable endpoint")),
                skipped=True,
            )

        claimed = await self.chain.claim(
            record_id, stale_before=self._stale_before(), kind=kind
        )
        if claimed is None:
            existing = await self.chain.get(record_id)
            logger.debug("Record %s not claimable, skipping", record_id)
            return SubmitResult(
                record_id=record_id,
                status=existing.sync_status if existing else SyncStatus.UNSYNCED,
                skipped=True,
            )

        try:
            return await self._deliver(claimed, endpoint)
        except asyncio.CancelledError:
            await self.chain.release(record_id, kind=claimed.kind)
            raise
        except Exception as exc:
            logger.exception("Unexpected error while syncing record %s", record_id)
            error = str(exc) or type(exc).__name__
            await self.chain.update_status(
                record_id,
                SyncStatus.FAILED,
                kind=claimed.kind,
                attempts=claimed.attempts + 1,
                last_error=error,
            )
            return SubmitResult(
                record_id=record_id, status=SyncStatus.FAILED, attempts=1, error=error
            )

    async def _deliver(
        self, claimed: SyncRecord, endpoint: EndpointCandidate
    ) -> SubmitResult:
        """Attempt loop for a record this context has claimed."""
        record_id = claimed.id
        last_error: RemoteError | None = None
        attempts = 0
        attempted_at = utcnow()
        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            attempted_at = utcnow()
            try:
                response = await asyncio.wait_for(
                    self.client.submit(endpoint, claimed.kind, claimed.payload),
                    timeout=self.submit_timeout,
                )
            except asyncio.TimeoutError:
                last_error = RemoteUnreachable(
                    f"submission timed out after {self.submit_timeout:.1f}s"
                )
            except RemoteError as exc:
                last_error = exc
            else:
                self.prober.report_success()
                await self.chain.update_status(
                    record_id,
                    SyncStatus.SYNCED,
                    kind=claimed.kind,
                    last_sync_attempt_at=attempted_at,
                    attempts=claimed.attempts + attempt,
                    last_error=None,
                    remote_id=extract_remote_id(response),
                )
                logger.info("Record %s synced to %s", record_id, endpoint.address)
                return SubmitResult(
                    record_id=record_id, status=SyncStatus.SYNCED, attempts=attempt
                )

            logger.warning(
                "Attempt %d/%d for record %s failed: %s",
                attempt,
                self.max_attempts,
                record_id,
                last_error,
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay)

        await self.chain.update_status(
            record_id,
            SyncStatus.FAILED,
            kind=claimed.kind,
            last_sync_attempt_at=attempted_at,
            attempts=claimed.attempts + attempts,
            last_error=str(last_error),
        )
        await self.prober.report_failure()
        return SubmitResult(
            record_id=record_id,
            status=SyncStatus.FAILED,
            attempts=attempts,
            error=str(last_error),
        )

    async def reconcile(self) -> ReconcileReport:
        """Retry every pending record, one at a time.

        Passes within this context never overlap; a second caller waits for
        the running pass and then re-scans, finding nothing left to do.
        """
        async with self._reconcile_lock:
            return await self._reconcile_locked(include_failed=True)

    async def refresh(self, key: str | None = None) -> ReconcileReport | None:
        """Change-notification handler: re-read local data and push new records.

        Only ``unsynced`` (and stale ``syncing``) records are submitted here;
        ``failed`` ones wait for the timer so this context's own status
        writes cannot drive a retry loop against a rejecting endpoint.
        Bursts of notifications collapse into one queued pass.
        """
        if self._refresh_waiting:
            return None
        self._refresh_waiting = True
        try:
            await self._reconcile_lock.acquire()
        finally:
            self._refresh_waiting = False

        try:
            records = await self.chain.read_all()
            logger.debug(
                "Local data changed (%s), %d records visible",
                key or "any key",
                len(records),
            )
            return await self._reconcile_locked(include_failed=False)
        finally:
            self._reconcile_lock.release()

    async def _reconcile_locked(self, *, include_failed: bool) -> ReconcileReport:
        report = ReconcileReport()
        if self.prober.current_endpoint() is None:
            report.offline = True
            return report

        pending = await self.chain.pending(self._stale_before())
        if not include_failed:
            pending = [r for r in pending if r.sync_status != SyncStatus.FAILED]
        report.pending = len(pending)
        if pending:
            logger.info("Reconciling %d pending records", len(pending))

        for record in pending:
            if self.prober.current_endpoint() is None:
                logger.info("Went offline during reconciliation, stopping")
                report.offline = True
                break
            report.add(await self.submit(record))
        return report

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="sync-reconcile")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.reconcile_interval)
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Background reconciliation failed")
