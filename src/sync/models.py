"""Data models for the sync engine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def _parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class SyncStatus(str, Enum):
    """Delivery status of a record."""

    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


PENDING_STATUSES = frozenset({SyncStatus.UNSYNCED, SyncStatus.FAILED})


class RecordKind(str, Enum):
    """Kind of domain entity a record carries."""

    APPLICATIONS = "applications"
    CONTACTS = "contacts"
    RESUMES = "resumes"

    @property
    def resource_path(self) -> str:
        """Remote collection path the record is POSTed to."""
        return f"/api/{self.value}"

    @property
    def storage_key(self) -> str:
        """Key the records of this kind are stored under in every tier."""
        return _STORAGE_KEYS[self]


_STORAGE_KEYS = {
    RecordKind.APPLICATIONS: "jobApplications",
    RecordKind.CONTACTS: "jobContacts",
    RecordKind.RESUMES: "jobResumes",
}


@dataclass
class SyncRecord:
    """A locally tracked record and its delivery state.

    Attributes:
        id: Locally generated identifier, stable for the record's lifetime.
        kind: Which remote collection the record belongs to.
        payload: Caller-owned data sent as the POST body.
        sync_status: Current delivery status.
        created_at: Creation timestamp (never changes).
        last_sync_attempt_at: When the last remote attempt was made.
        attempts: Total remote attempts made for this record.
        last_error: Message of the most recent failed attempt.
        remote_id: Identifier assigned by the remote service on success.
    """

    payload: dict[str, Any]
    kind: RecordKind = RecordKind.APPLICATIONS
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sync_status: SyncStatus = SyncStatus.UNSYNCED
    created_at: datetime = field(default_factory=utcnow)
    last_sync_attempt_at: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    remote_id: str | None = None

    def is_pending(self, stale_before: datetime | None = None) -> bool:
        """Whether the record still needs delivery.

        A record left in ``syncing`` whose last attempt is older than
        ``stale_before`` is treated as pending: the context that claimed it
        did not finish.
        """
        if self.sync_status in PENDING_STATUSES:
            return True
        if self.sync_status == SyncStatus.SYNCING and stale_before is not None:
            started = self.last_sync_attempt_at or self.created_at
            return started < stale_before
        return False

    def with_status(self, status: SyncStatus, **changes: Any) -> SyncRecord:
        return replace(self, sync_status=status, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize the record to a JSON-safe dictionary."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload,
            "sync_status": self.sync_status.value,
            "created_at": self.created_at.isoformat(),
            "last_sync_attempt_at": self.last_sync_attempt_at.isoformat()
            if self.last_sync_attempt_at
            else None,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "remote_id": self.remote_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncRecord:
        """Deserialize a record from a dictionary."""
        return cls(
            id=data["id"],
            kind=RecordKind(data.get("kind", RecordKind.APPLICATIONS.value)),
            payload=dict(data.get("payload") or {}),
            sync_status=SyncStatus(data.get("sync_status", SyncStatus.UNSYNCED.value)),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
            last_sync_attempt_at=_parse_datetime(data.get("last_sync_attempt_at")),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            remote_id=data.get("remote_id"),
        )


@dataclass(frozen=True, order=True)
class EndpointCandidate:
    """A remote base address and its probing priority (lower goes first)."""

    priority: int
    address: str

    def url(self, path: str) -> str:
        return f"{self.address.rstrip('/')}{path}"


class ConnectivityStatus(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class ConnectivityState:
    """Snapshot of which endpoint, if any, is currently usable."""

    status: ConnectivityStatus = ConnectivityStatus.UNKNOWN
    endpoint: EndpointCandidate | None = None
    checked_at: datetime | None = None

    @property
    def online(self) -> bool:
        return self.status == ConnectivityStatus.ONLINE and self.endpoint is not None

    @classmethod
    def reachable(cls, endpoint: EndpointCandidate) -> ConnectivityState:
        return cls(ConnectivityStatus.ONLINE, endpoint, utcnow())

    @classmethod
    def unreachable(cls) -> ConnectivityState:
        return cls(ConnectivityStatus.OFFLINE, None, utcnow())


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of one ``SyncEngine.submit`` call."""

    record_id: str
    status: SyncStatus
    attempts: int = 0
    error: str | None = None
    skipped: bool = False

    @property
    def synced(self) -> bool:
        return self.status == SyncStatus.SYNCED


@dataclass(frozen=True)
class AddResult:
    """Outcome of ``SyncEngine.add_record``.

    ``persisted_tier`` names the local tier that durably holds the record;
    ``submit`` is None when no remote attempt was made (offline).
    """

    record: SyncRecord
    persisted_tier: str
    submit: SubmitResult | None = None

    @property
    def status(self) -> SyncStatus:
        if self.submit is not None and not self.submit.skipped:
            return self.submit.status
        return self.record.sync_status


@dataclass
class ReconcileReport:
    """Counters for one reconciliation pass."""

    pending: int = 0
    synced: int = 0
    failed: int = 0
    skipped: int = 0
    offline: bool = False
    results: list[SubmitResult] = field(default_factory=list)

    def add(self, result: SubmitResult) -> None:
        self.results.append(result)
        if result.skipped:
            self.skipped += 1
        elif result.synced:
            self.synced += 1
        else:
            self.failed += 1
