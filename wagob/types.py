"""
Shared types for the wagob indexer.

Entities mirrored from the ledger (Job, Escrow, ReputationAccount), the
bookkeeping records the reconciliation engine keeps next to them, and the
event types that flow between decoder, engine and notifier.
"""

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def to_epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def from_epoch(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


# 63 bits so the hash fits a signed SQLite INTEGER
ACCOUNT_HASH_MASK = (1 << 63) - 1


def account_hash(account: str) -> int:
    """Fixed-width key for a ledger account.

    Reputation is keyed by this value instead of the raw address string.
    """
    digest = hashlib.sha256(account.strip().lower().encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") & ACCOUNT_HASH_MASK


# === Enums ===


class JobStatus(str, Enum):
    """Job lifecycle status."""

    POSTED = "posted"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Wire order for JobStatusUpdated (u8)
JOB_STATUS_CODES: Tuple[JobStatus, ...] = (
    JobStatus.POSTED,
    JobStatus.ASSIGNED,
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
)

TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})


class JobCategory(str, Enum):
    SECURITY = "security"
    WATCHMAN = "watchman"
    GATE_SECURITY = "gate_security"
    NIGHT_GUARD = "night_guard"
    PATROL = "patrol"
    OTHER = "other"


JOB_CATEGORY_CODES: Tuple[JobCategory, ...] = tuple(JobCategory)


class EscrowStatus(str, Enum):
    """Escrow lifecycle status."""

    CREATED = "created"
    FUNDED = "funded"
    LOCKED = "locked"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    REFUNDED = "refunded"


TERMINAL_ESCROW_STATUSES = frozenset(
    {EscrowStatus.COMPLETED, EscrowStatus.REFUNDED, EscrowStatus.RESOLVED}
)


class Party(str, Enum):
    """Side of an escrow that funds are released to."""

    EMPLOYER = "employer"
    WORKER = "worker"


PARTY_CODES: Tuple[Party, ...] = (Party.EMPLOYER, Party.WORKER)


class EventKind(str, Enum):
    """Decoded ledger event kinds, plus the synthetic deadline refund."""

    JOB_CREATED = "job_created"
    WORKER_ASSIGNED = "worker_assigned"
    JOB_STATUS_UPDATED = "job_status_updated"
    JOB_CANCELLED = "job_cancelled"
    ESCROW_CREATED = "escrow_created"
    ESCROW_FUNDED = "escrow_funded"
    ESCROW_LOCKED = "escrow_locked"
    ESCROW_COMPLETED = "escrow_completed"
    ESCROW_DISPUTED = "escrow_disputed"
    ESCROW_RESOLVED = "escrow_resolved"
    RATING_SUBMITTED = "rating_submitted"
    DEADLINE_EXPIRED = "deadline_expired"


JOB_EVENT_KINDS = frozenset(
    {
        EventKind.JOB_CREATED,
        EventKind.WORKER_ASSIGNED,
        EventKind.JOB_STATUS_UPDATED,
        EventKind.JOB_CANCELLED,
    }
)

ESCROW_EVENT_KINDS = frozenset(
    {
        EventKind.ESCROW_CREATED,
        EventKind.ESCROW_FUNDED,
        EventKind.ESCROW_LOCKED,
        EventKind.ESCROW_COMPLETED,
        EventKind.ESCROW_DISPUTED,
        EventKind.ESCROW_RESOLVED,
        EventKind.DEADLINE_EXPIRED,
    }
)


class ApplyOutcome(str, Enum):
    """Result of applying one event."""

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    DEFERRED = "deferred"  # orphan or out-of-order, retried next cycle
    REJECTED = "rejected"  # validation / impossible transition
    ESCALATED = "escalated"  # retries exhausted, dead-lettered


class ContractKind(str, Enum):
    JOB_REGISTRY = "job_registry"
    ESCROW = "escrow"
    REPUTATION = "reputation"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


# === Entities ===


@dataclass
class Job:
    """A job listing mirrored from the job registry contract."""

    job_id: int
    employer_account: str
    wages_amount: int
    duration_hours: int
    category: JobCategory
    status: JobStatus = JobStatus.POSTED
    worker_account: Optional[str] = None
    cancellation_reason: Optional[str] = None
    transaction_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["category"] = self.category.value
        for key in ("created_at", "updated_at", "assigned_at", "completed_at", "cancelled_at"):
            data[key] = to_iso(data[key])
        return data


@dataclass
class Escrow:
    """Custodial holding of funds for one job."""

    escrow_id: int
    job_id: int
    amount: int
    employer_account: str
    worker_account: str
    deadline: datetime
    status: EscrowStatus = EscrowStatus.CREATED
    funded_amount: int = 0
    dispute_reason: Optional[str] = None
    disputed_by: Optional[str] = None
    resolved_to: Optional[Party] = None
    released_to: Optional[Party] = None
    released_amount: int = 0
    platform_fee: int = 0
    transaction_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ESCROW_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["resolved_to"] = self.resolved_to.value if self.resolved_to else None
        data["released_to"] = self.released_to.value if self.released_to else None
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = to_iso(value)
        return data


@dataclass
class ReputationAccount:
    """Weighted reputation for one account hash.

    ``weighted_score`` is fixed point with two decimals: 100..500 maps to
    1.00..5.00.
    """

    account_hash: int
    weighted_score: int
    rating_count: int
    last_updated_at: Optional[datetime] = None

    @property
    def score(self) -> float:
        return self.weighted_score / 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_hash": self.account_hash,
            "weighted_score": self.weighted_score,
            "score": self.score,
            "rating_count": self.rating_count,
            "last_updated_at": to_iso(self.last_updated_at),
        }


@dataclass
class Rating:
    job_id: int
    rater_account: str
    ratee_hash: int
    value: int
    transaction_hash: str
    created_at: Optional[datetime] = None


@dataclass
class ProcessedTransaction:
    """Dedup record, written in the same transaction as the mutation."""

    transaction_hash: str
    event_kind: str
    outcome: str
    detail: Optional[str] = None
    processed_at: Optional[datetime] = None


@dataclass
class DeferredEvent:
    transaction_hash: str
    event_kind: str
    entity_id: Optional[int]
    attempts: int
    last_error: Optional[str] = None
    first_seen_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None


@dataclass
class DeadLetter:
    transaction_hash: str
    event_kind: str
    entity_id: Optional[int]
    attempts: int
    error: str
    escalated_at: Optional[datetime] = None


@dataclass
class PollCursor:
    address: str
    last_sequence: int = 0
    last_transaction_hash: Optional[str] = None
    updated_at: Optional[datetime] = None


# === Ledger / events ===


@dataclass(frozen=True)
class LedgerTransaction:
    """A finalized transaction as returned by the ledger client."""

    transaction_hash: str
    sequence: int
    operation_tag: int
    payload: bytes
    timestamp: datetime
    # Set by the ledger client when the entry could not be parsed; decode rejects it
    malformed: Optional[str] = None


@dataclass(frozen=True)
class DecodedEvent:
    """A typed ledger event ready for the reconciliation engine."""

    kind: EventKind
    transaction_hash: str
    timestamp: datetime
    fields: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    @property
    def entity_type(self) -> str:
        return "escrow" if self.kind in ESCROW_EVENT_KINDS else "job"

    @property
    def entity_id(self) -> Optional[int]:
        if self.kind in ESCROW_EVENT_KINDS:
            return self.fields.get("escrow_id")
        return self.fields.get("job_id")


@dataclass(frozen=True)
class Unrecognized:
    """A transaction whose operation tag is not one of ours."""

    transaction_hash: str
    operation_tag: int


@dataclass
class DomainEvent:
    """Notification emitted after a committed transition."""

    kind: str
    entity_type: str
    entity_id: Any
    details: Dict[str, Any] = field(default_factory=dict)
    transaction_hash: Optional[str] = None
    occurred_at: Optional[datetime] = None


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    transaction_hash: str
    kind: EventKind
    error: Optional[Exception] = None
    notification: Optional[DomainEvent] = None
    invalidated: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome in (ApplyOutcome.APPLIED, ApplyOutcome.ALREADY_APPLIED)


@dataclass
class PendingNotification:
    """Outbox row: a committed transition whose notification is not yet delivered."""

    id: int
    notification: DomainEvent
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


# === Monitoring ===


@dataclass
class ContractHealth:
    """Polling health of one monitored contract address."""

    address: str
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_sequence: int = 0
    caught_up: bool = False
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "last_success_at": to_iso(self.last_success_at),
            "last_failure_at": to_iso(self.last_failure_at),
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_sequence": self.last_sequence,
            "caught_up": self.caught_up,
            "updated_at": to_iso(self.updated_at),
        }


@dataclass
class MetricSnapshot:
    address: str
    metric_name: str
    value: float
    recorded_at: Optional[datetime] = None


@dataclass
class Alert:
    address: str
    alert_type: str
    severity: AlertSeverity
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: AlertStatus = AlertStatus.ACTIVE
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "alert_type": self.alert_type,
            "severity": self.severity.value,
            "message": self.message,
            "metadata": self.metadata,
            "status": self.status.value,
            "created_at": to_iso(self.created_at),
            "resolved_at": to_iso(self.resolved_at),
        }
