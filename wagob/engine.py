"""Reconciliation engine.

Applies decoded ledger events to the state store under the Job and Escrow
state machines. Every ``apply`` is one write transaction:

1. dedup check against processed transactions
2. load the target entity (mutations on a missing entity are orphans)
3. validate the transition
4. persist the entity and the processed-transaction record together
5. write the notification to the outbox in the same transaction
6. after commit: invalidate cache keys, then publish and clear the outbox row

Handlers run inside a savepoint. Ordering anomalies (orphan events and
entities that have not yet reached the required state) roll back to the
savepoint and count one deferral attempt; after ``max_retry_cycles``
attempts the event is dead-lettered. Business rejections roll back to the
savepoint and are recorded as processed with outcome ``rejected`` so that a
redelivery is a no-op.

A notification the notifier refuses stays in the outbox and is retried by
``redeliver_notifications``.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from wagob import cache as cache_keys
from wagob.cache import TTLCache
from wagob.errors import (
    InvalidTransitionError,
    OrphanEventError,
    PermanentError,
    ReconciliationError,
    ValidationError,
)
from wagob.logging_config import log_apply
from wagob.notify import Notifier
from wagob.reputation import ReputationAggregator
from wagob.storage.sqlite import SQLiteStateStore
from wagob.types import (
    ApplyOutcome,
    ApplyResult,
    DeadLetter,
    DecodedEvent,
    DomainEvent,
    Escrow,
    EscrowStatus,
    EventKind,
    Job,
    JobStatus,
    Party,
    ProcessedTransaction,
    account_hash,
    from_epoch,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRY_CYCLES = 5

DEADLINE_REFUND_PREFIX = "deadline-refund:"

# Outbox rows younger than this that never failed belong to an apply in flight
DEFAULT_REDELIVERY_GRACE_SECONDS = 30.0

# Forward progress of each state machine. An entity whose rank is below the
# event's required starting state may still get there (defer); one at or
# beyond it never will (reject).
JOB_RANK = {
    JobStatus.POSTED: 0,
    JobStatus.ASSIGNED: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.CANCELLED: 2,
}

ESCROW_RANK = {
    EscrowStatus.CREATED: 0,
    EscrowStatus.FUNDED: 1,
    EscrowStatus.LOCKED: 2,
    EscrowStatus.DISPUTED: 3,
    EscrowStatus.COMPLETED: 4,
    EscrowStatus.RESOLVED: 4,
    EscrowStatus.REFUNDED: 4,
}


@dataclass
class _Change:
    """What a handler did, for post-commit bookkeeping."""

    kind: str
    entity_type: str
    entity_id: Any
    details: Dict[str, Any] = field(default_factory=dict)
    cache_keys: List[str] = field(default_factory=list)
    rejection: Optional[ValidationError] = None
    notify: bool = True


def deadline_refund_hash(escrow_id: int) -> str:
    return f"{DEADLINE_REFUND_PREFIX}{escrow_id}"


def _job_keys(job: Job, *statuses: Optional[JobStatus]) -> List[str]:
    keys = [cache_keys.job_key(job.job_id), cache_keys.job_list_prefix(None)]
    for status in statuses:
        if status is not None:
            keys.append(cache_keys.job_list_prefix(status.value))
    return keys


def _check_state(
    entity_type: str,
    entity_id: int,
    current,
    allowed: Iterable,
    ranks: Dict,
) -> None:
    """Raise unless ``current`` is one of ``allowed``.

    InvalidTransitionError when the entity is behind, PermanentError when it
    is past the required state or terminal.
    """
    allowed = tuple(allowed)
    if current in allowed:
        return
    expected = "|".join(s.value for s in allowed)
    if ranks[current] < min(ranks[s] for s in allowed):
        raise InvalidTransitionError(
            f"{entity_type} {entity_id} is {current.value}, expected {expected}",
            entity_type=entity_type,
            entity_id=entity_id,
            current_state=current.value,
            expected=tuple(s.value for s in allowed),
        )
    raise PermanentError(
        f"{entity_type} {entity_id} is {current.value}, can no longer reach {expected}",
        entity_type=entity_type,
        entity_id=entity_id,
    )


class ReconciliationEngine:
    """Applies decoded ledger events idempotently.

    Args:
        store: Canonical state store.
        cache: Cache invalidated after every committed mutation.
        notifier: Receives a DomainEvent after every committed transition.
        max_retry_cycles: Deferral attempts before an event is dead-lettered.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store: SQLiteStateStore,
        cache: Optional[TTLCache] = None,
        notifier: Optional[Notifier] = None,
        max_retry_cycles: int = DEFAULT_MAX_RETRY_CYCLES,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_retry_cycles < 1:
            raise ValueError("max_retry_cycles must be at least 1")
        self._store = store
        self._cache = cache
        self._notifier = notifier
        self._reputation = ReputationAggregator(store)
        self.max_retry_cycles = max_retry_cycles
        self._clock = clock
        self._redelivery_lock = threading.Lock()
        self._handlers: Dict[EventKind, Callable[[sqlite3.Connection, DecodedEvent, datetime], _Change]] = {
            EventKind.JOB_CREATED: self._job_created,
            EventKind.WORKER_ASSIGNED: self._worker_assigned,
            EventKind.JOB_STATUS_UPDATED: self._job_status_updated,
            EventKind.JOB_CANCELLED: self._job_cancelled,
            EventKind.ESCROW_CREATED: self._escrow_created,
            EventKind.ESCROW_FUNDED: self._escrow_funded,
            EventKind.ESCROW_LOCKED: self._escrow_locked,
            EventKind.ESCROW_COMPLETED: self._escrow_completed,
            EventKind.ESCROW_DISPUTED: self._escrow_disputed,
            EventKind.ESCROW_RESOLVED: self._escrow_resolved,
            EventKind.DEADLINE_EXPIRED: self._deadline_expired,
            EventKind.RATING_SUBMITTED: self._rating_submitted,
        }

    # === Entry points ===

    def apply(self, event: DecodedEvent) -> ApplyResult:
        """Apply one event. Safe to call repeatedly with the same event.

        Raises:
            TransientIOError: the store could not be reached. Raised before commit
                nothing was written; raised while clearing the outbox the event is
                recorded and its notification is redelivered later.
        """
        handler = self._handlers[event.kind]
        tx_hash = event.transaction_hash
        now = self._clock()
        change: Optional[_Change] = None
        notification: Optional[DomainEvent] = None
        outbox_id: Optional[int] = None

        with self._store.transaction() as conn:
            if self._store.is_processed(tx_hash, conn=conn):
                result = ApplyResult(ApplyOutcome.ALREADY_APPLIED, tx_hash, event.kind)
            else:
                try:
                    with self._store.savepoint(conn):
                        change = handler(conn, event, now)
                except (OrphanEventError, InvalidTransitionError) as e:
                    result = self._defer(conn, event, e, now)
                except (ValidationError, PermanentError) as e:
                    self._finish(conn, event, "rejected", str(e), now)
                    result = ApplyResult(ApplyOutcome.REJECTED, tx_hash, event.kind, error=e)
                else:
                    if change.rejection is not None:
                        self._finish(conn, event, "rejected", str(change.rejection), now)
                        outcome = ApplyOutcome.REJECTED
                    else:
                        self._finish(conn, event, "applied", None, now)
                        outcome = ApplyOutcome.APPLIED
                    result = ApplyResult(
                        outcome,
                        tx_hash,
                        event.kind,
                        error=change.rejection,
                        invalidated=list(change.cache_keys),
                    )
                    if change.notify:
                        notification = DomainEvent(
                            kind=change.kind,
                            entity_type=change.entity_type,
                            entity_id=change.entity_id,
                            details=change.details,
                            transaction_hash=tx_hash,
                            occurred_at=event.timestamp,
                        )
                        if self._notifier is not None:
                            outbox_id = self._store.add_pending_notification(
                                conn, notification, now
                            )

        # Committed; caches must reflect it before apply returns
        if change is not None:
            self._invalidate(change.cache_keys)
        if notification is not None:
            result.notification = notification
            if outbox_id is not None:
                self._deliver(outbox_id, notification)

        log_apply(result)
        return result

    def apply_deadline_refunds(self, now: Optional[datetime] = None) -> List[ApplyResult]:
        """Refund every funded or locked escrow whose deadline has passed.

        Each refund carries a synthetic transaction hash derived from the
        escrow id, so repeated passes refund an escrow exactly once.
        """
        now = now or self._clock()
        results = []
        for escrow in self._store.list_expired_escrows(now):
            event = DecodedEvent(
                kind=EventKind.DEADLINE_EXPIRED,
                transaction_hash=deadline_refund_hash(escrow.escrow_id),
                timestamp=now,
                fields={"escrow_id": escrow.escrow_id},
            )
            results.append(self.apply(event))
        return results

    def redeliver_notifications(
        self,
        limit: int = 100,
        grace_seconds: float = DEFAULT_REDELIVERY_GRACE_SECONDS,
    ) -> int:
        """Retry outbox entries that failed, or whose first delivery never ran.

        Returns:
            Number of notifications the notifier accepted.
        """
        if self._notifier is None:
            return 0
        with self._redelivery_lock:
            cutoff = self._clock() - timedelta(seconds=grace_seconds)
            pending = self._store.list_pending_notifications(created_before=cutoff, limit=limit)
            delivered = sum(1 for entry in pending if self._deliver(entry.id, entry.notification))
        if pending:
            logger.info(f"Redelivered {delivered}/{len(pending)} pending notifications")
        return delivered

    # === Bookkeeping ===

    def _finish(
        self,
        conn: sqlite3.Connection,
        event: DecodedEvent,
        outcome: str,
        detail: Optional[str],
        now: datetime,
    ) -> None:
        self._store.record_processed(
            conn,
            ProcessedTransaction(
                transaction_hash=event.transaction_hash,
                event_kind=event.kind.value,
                outcome=outcome,
                detail=detail,
                processed_at=now,
            ),
        )
        self._store.clear_deferral(conn, event.transaction_hash)

    def _defer(
        self,
        conn: sqlite3.Connection,
        event: DecodedEvent,
        error: ReconciliationError,
        now: datetime,
    ) -> ApplyResult:
        attempts = self._store.record_deferral(
            conn, event.transaction_hash, event.kind.value, event.entity_id, str(error), now
        )
        if attempts < self.max_retry_cycles:
            return ApplyResult(ApplyOutcome.DEFERRED, event.transaction_hash, event.kind, error=error)

        escalation = PermanentError(
            f"Gave up after {attempts} attempts: {error}",
            entity_type=error.entity_type,
            entity_id=error.entity_id,
        )
        self._store.add_dead_letter(
            conn,
            DeadLetter(
                transaction_hash=event.transaction_hash,
                event_kind=event.kind.value,
                entity_id=event.entity_id,
                attempts=attempts,
                error=str(error),
                escalated_at=now,
            ),
        )
        self._finish(conn, event, "escalated", str(escalation), now)
        return ApplyResult(
            ApplyOutcome.ESCALATED, event.transaction_hash, event.kind, error=escalation
        )

    def _invalidate(self, keys: List[str]) -> None:
        if self._cache is not None and keys:
            self._cache.invalidate_all(keys)

    def _deliver(self, outbox_id: int, notification: DomainEvent) -> bool:
        """Publish one outbox entry. The row is removed only once the notifier accepts it."""
        try:
            self._notifier.publish(notification)
        except Exception as e:
            logger.error(
                f"Failed to publish {notification.kind} for {notification.transaction_hash}, "
                f"kept for redelivery: {e}"
            )
            self._store.record_notification_failure(outbox_id, str(e))
            return False
        self._store.delete_pending_notification(outbox_id)
        return True

    # === Loading ===

    def _require_job(self, conn: sqlite3.Connection, job_id: int) -> Job:
        job = self._store.get_job(job_id, conn=conn)
        if job is None:
            raise OrphanEventError(
                f"Job {job_id} not indexed yet", entity_type="job", entity_id=job_id
            )
        return job

    def _require_escrow(self, conn: sqlite3.Connection, escrow_id: int) -> Escrow:
        escrow = self._store.get_escrow(escrow_id, conn=conn)
        if escrow is None:
            raise OrphanEventError(
                f"Escrow {escrow_id} not indexed yet", entity_type="escrow", entity_id=escrow_id
            )
        return escrow

    def _escrow_job(self, conn: sqlite3.Connection, escrow: Escrow) -> Job:
        job = self._store.get_job(escrow.job_id, conn=conn)
        if job is None:
            raise PermanentError(
                f"Escrow {escrow.escrow_id} references missing job {escrow.job_id}",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
            )
        return job

    # === Job handlers ===

    def _job_created(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        f = event.fields
        existing = self._store.get_job(f["job_id"], conn=conn)
        if existing is not None:
            raise PermanentError(
                f"Job {f['job_id']} already created by {existing.transaction_hash}",
                entity_type="job",
                entity_id=f["job_id"],
            )
        if f["wages"] <= 0:
            raise ValidationError(
                f"Job {f['job_id']} has non-positive wages", entity_type="job", entity_id=f["job_id"]
            )

        job = Job(
            job_id=f["job_id"],
            employer_account=f["employer"],
            wages_amount=f["wages"],
            duration_hours=f["duration_hours"],
            category=f["category"],
            status=JobStatus.POSTED,
            transaction_hash=event.transaction_hash,
            created_at=event.timestamp,
            updated_at=now,
        )
        self._store.insert_job(conn, job)
        return _Change(
            kind=event.kind.value,
            entity_type="job",
            entity_id=job.job_id,
            details={
                "employer": job.employer_account,
                "wages": job.wages_amount,
                "category": job.category.value,
            },
            cache_keys=_job_keys(job, JobStatus.POSTED),
        )

    def _worker_assigned(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        job = self._require_job(conn, event.fields["job_id"])
        _check_state("job", job.job_id, job.status, (JobStatus.POSTED,), JOB_RANK)

        job.worker_account = event.fields["worker"]
        job.status = JobStatus.ASSIGNED
        job.assigned_at = event.timestamp
        job.updated_at = now
        self._store.update_job(conn, job)
        return _Change(
            kind=event.kind.value,
            entity_type="job",
            entity_id=job.job_id,
            details={"worker": job.worker_account, "employer": job.employer_account},
            cache_keys=_job_keys(job, JobStatus.POSTED, JobStatus.ASSIGNED),
        )

    def _job_status_updated(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        job = self._require_job(conn, event.fields["job_id"])
        target: JobStatus = event.fields["status"]

        if target == job.status:
            # Ledger confirming a state we already mirror
            return _Change(
                kind=event.kind.value, entity_type="job", entity_id=job.job_id, notify=False
            )

        previous = job.status
        if target == JobStatus.COMPLETED:
            _check_state("job", job.job_id, job.status, (JobStatus.ASSIGNED,), JOB_RANK)
            job.completed_at = event.timestamp
        elif target == JobStatus.CANCELLED:
            _check_state(
                "job", job.job_id, job.status, (JobStatus.POSTED, JobStatus.ASSIGNED), JOB_RANK
            )
            job.cancelled_at = event.timestamp
        else:
            raise ValidationError(
                f"Job {job.job_id} cannot move to {target.value} by status update",
                entity_type="job",
                entity_id=job.job_id,
            )

        job.status = target
        job.updated_at = now
        self._store.update_job(conn, job)
        return _Change(
            kind=event.kind.value,
            entity_type="job",
            entity_id=job.job_id,
            details={"from": previous.value, "to": target.value},
            cache_keys=_job_keys(job, previous, target),
        )

    def _job_cancelled(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        job = self._require_job(conn, event.fields["job_id"])
        _check_state(
            "job", job.job_id, job.status, (JobStatus.POSTED, JobStatus.ASSIGNED), JOB_RANK
        )

        previous = job.status
        # worker_account is kept when cancelled after assignment
        job.status = JobStatus.CANCELLED
        job.cancellation_reason = event.fields.get("reason") or None
        job.cancelled_at = event.timestamp
        job.updated_at = now
        self._store.update_job(conn, job)
        return _Change(
            kind=event.kind.value,
            entity_type="job",
            entity_id=job.job_id,
            details={"from": previous.value, "reason": job.cancellation_reason},
            cache_keys=_job_keys(job, previous, JobStatus.CANCELLED),
        )

    # === Escrow handlers ===

    def _escrow_created(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        f = event.fields
        escrow_id = f["escrow_id"]
        existing = self._store.get_escrow(escrow_id, conn=conn)
        if existing is not None:
            raise PermanentError(
                f"Escrow {escrow_id} already created by {existing.transaction_hash}",
                entity_type="escrow",
                entity_id=escrow_id,
            )

        job = self._require_job(conn, f["job_id"])
        _check_state("job", job.job_id, job.status, (JobStatus.ASSIGNED,), JOB_RANK)

        other = self._store.get_escrow_by_job(job.job_id, conn=conn)
        if other is not None:
            raise ValidationError(
                f"Job {job.job_id} already has escrow {other.escrow_id}",
                entity_type="escrow",
                entity_id=escrow_id,
            )
        if f["employer"] != job.employer_account or f["worker"] != job.worker_account:
            raise ValidationError(
                f"Escrow {escrow_id} parties do not match job {job.job_id}",
                entity_type="escrow",
                entity_id=escrow_id,
            )
        if f["amount"] <= 0:
            raise ValidationError(
                f"Escrow {escrow_id} has non-positive amount",
                entity_type="escrow",
                entity_id=escrow_id,
            )

        escrow = Escrow(
            escrow_id=escrow_id,
            job_id=job.job_id,
            amount=f["amount"],
            employer_account=f["employer"],
            worker_account=f["worker"],
            deadline=from_epoch(f["deadline"]),
            status=EscrowStatus.CREATED,
            transaction_hash=event.transaction_hash,
            created_at=event.timestamp,
            updated_at=now,
        )
        self._store.insert_escrow(conn, escrow)
        return _Change(
            kind=event.kind.value,
            entity_type="escrow",
            entity_id=escrow_id,
            details={"job_id": job.job_id, "amount": escrow.amount},
            cache_keys=[cache_keys.escrow_job_key(job.job_id)],
        )

    def _escrow_funded(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        escrow = self._require_escrow(conn, event.fields["escrow_id"])
        _check_state(
            "escrow",
            escrow.escrow_id,
            escrow.status,
            (EscrowStatus.CREATED, EscrowStatus.FUNDED),
            ESCROW_RANK,
        )
        job = self._escrow_job(conn, escrow)

        # The deposit happened on-chain and is mirrored either way; only the
        # lock depends on the amount matching the wages.
        amount = event.fields["amount"]
        escrow.funded_amount = amount
        escrow.status = EscrowStatus.FUNDED
        escrow.funded_at = event.timestamp
        rejection = None
        if amount == job.wages_amount:
            escrow.status = EscrowStatus.LOCKED
            escrow.locked_at = event.timestamp
        else:
            rejection = ValidationError(
                f"Escrow {escrow.escrow_id} funded with {amount}, job {job.job_id} "
                f"wages are {job.wages_amount}; not locked",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
            )
        escrow.updated_at = now
        self._store.update_escrow(conn, escrow)
        return _Change(
            kind=event.kind.value,
            entity_type="escrow",
            entity_id=escrow.escrow_id,
            details={
                "job_id": escrow.job_id,
                "amount": amount,
                "status": escrow.status.value,
            },
            cache_keys=[cache_keys.escrow_job_key(escrow.job_id)],
            rejection=rejection,
        )

    def _escrow_locked(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        escrow = self._require_escrow(conn, event.fields["escrow_id"])
        if escrow.status == EscrowStatus.LOCKED:
            return _Change(
                kind=event.kind.value,
                entity_type="escrow",
                entity_id=escrow.escrow_id,
                notify=False,
            )
        _check_state(
            "escrow", escrow.escrow_id, escrow.status, (EscrowStatus.FUNDED,), ESCROW_RANK
        )
        job = self._escrow_job(conn, escrow)
        if escrow.funded_amount != job.wages_amount:
            raise ValidationError(
                f"Escrow {escrow.escrow_id} holds {escrow.funded_amount}, "
                f"job {job.job_id} wages are {job.wages_amount}",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
            )

        escrow.status = EscrowStatus.LOCKED
        escrow.locked_at = event.timestamp
        escrow.updated_at = now
        self._store.update_escrow(conn, escrow)
        return _Change(
            kind=event.kind.value,
            entity_type="escrow",
            entity_id=escrow.escrow_id,
            details={"job_id": escrow.job_id},
            cache_keys=[cache_keys.escrow_job_key(escrow.job_id)],
        )

    def _check_release(self, escrow: Escrow, payout: int, fee: int) -> None:
        if payout + fee > escrow.funded_amount:
            raise ValidationError(
                f"Escrow {escrow.escrow_id} release {payout} + fee {fee} "
                f"exceeds funded {escrow.funded_amount}",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
            )

    def _escrow_completed(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        f = event.fields
        escrow = self._require_escrow(conn, f["escrow_id"])
        if escrow.status == EscrowStatus.DISPUTED:
            raise PermanentError(
                f"Escrow {escrow.escrow_id} is disputed; auto-release is frozen",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
            )
        _check_state(
            "escrow", escrow.escrow_id, escrow.status, (EscrowStatus.LOCKED,), ESCROW_RANK
        )
        if f["confirmer"] != escrow.employer_account:
            raise ValidationError(
                f"Escrow {escrow.escrow_id} completion confirmed by {f['confirmer']}, "
                "not the employer",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
            )
        self._check_release(escrow, f["payout"], f["fee"])

        escrow.status = EscrowStatus.COMPLETED
        escrow.released_to = Party.WORKER
        escrow.released_amount = f["payout"]
        escrow.platform_fee = f["fee"]
        escrow.completed_at = event.timestamp
        escrow.updated_at = now
        self._store.update_escrow(conn, escrow)
        return _Change(
            kind=event.kind.value,
            entity_type="escrow",
            entity_id=escrow.escrow_id,
            details={
                "job_id": escrow.job_id,
                "worker": escrow.worker_account,
                "payout": escrow.released_amount,
                "fee": escrow.platform_fee,
            },
            cache_keys=[cache_keys.escrow_job_key(escrow.job_id)],
        )

    def _escrow_disputed(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        f = event.fields
        escrow = self._require_escrow(conn, f["escrow_id"])
        _check_state(
            "escrow", escrow.escrow_id, escrow.status, (EscrowStatus.LOCKED,), ESCROW_RANK
        )
        raiser = f["raiser"]
        if raiser not in (escrow.employer_account, escrow.worker_account):
            raise ValidationError(
                f"Escrow {escrow.escrow_id} dispute raised by non-party {raiser}",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
            )
        if event.timestamp >= escrow.deadline:
            raise ValidationError(
                f"Escrow {escrow.escrow_id} dispute at {event.timestamp.isoformat()} "
                f"is past deadline {escrow.deadline.isoformat()}",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
            )

        escrow.status = EscrowStatus.DISPUTED
        escrow.dispute_reason = f.get("reason") or None
        escrow.disputed_by = raiser
        escrow.disputed_at = event.timestamp
        escrow.updated_at = now
        self._store.update_escrow(conn, escrow)
        return _Change(
            kind=event.kind.value,
            entity_type="escrow",
            entity_id=escrow.escrow_id,
            details={
                "job_id": escrow.job_id,
                "raised_by": raiser,
                "reason": escrow.dispute_reason,
            },
            cache_keys=[cache_keys.escrow_job_key(escrow.job_id)],
        )

    def _escrow_resolved(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        f = event.fields
        escrow = self._require_escrow(conn, f["escrow_id"])
        _check_state(
            "escrow", escrow.escrow_id, escrow.status, (EscrowStatus.DISPUTED,), ESCROW_RANK
        )
        self._check_release(escrow, f["payout"], f["fee"])

        winner: Party = f["winner"]
        escrow.status = EscrowStatus.RESOLVED
        escrow.resolved_to = winner
        escrow.released_to = winner
        escrow.released_amount = f["payout"]
        escrow.platform_fee = f["fee"]
        escrow.resolved_at = event.timestamp
        escrow.updated_at = now
        self._store.update_escrow(conn, escrow)
        return _Change(
            kind=event.kind.value,
            entity_type="escrow",
            entity_id=escrow.escrow_id,
            details={
                "job_id": escrow.job_id,
                "resolved_to": winner.value,
                "payout": escrow.released_amount,
                "fee": escrow.platform_fee,
            },
            cache_keys=[cache_keys.escrow_job_key(escrow.job_id)],
        )

    def _deadline_expired(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        escrow = self._require_escrow(conn, event.fields["escrow_id"])
        _check_state(
            "escrow",
            escrow.escrow_id,
            escrow.status,
            (EscrowStatus.FUNDED, EscrowStatus.LOCKED),
            ESCROW_RANK,
        )
        if event.timestamp <= escrow.deadline:
            raise InvalidTransitionError(
                f"Escrow {escrow.escrow_id} deadline {escrow.deadline.isoformat()} not reached",
                entity_type="escrow",
                entity_id=escrow.escrow_id,
                current_state=escrow.status.value,
            )

        previous = escrow.status
        escrow.status = EscrowStatus.REFUNDED
        escrow.released_to = Party.EMPLOYER
        escrow.released_amount = escrow.funded_amount
        escrow.refunded_at = event.timestamp
        escrow.updated_at = now
        self._store.update_escrow(conn, escrow)
        return _Change(
            kind="escrow_refunded",
            entity_type="escrow",
            entity_id=escrow.escrow_id,
            details={
                "job_id": escrow.job_id,
                "from": previous.value,
                "employer": escrow.employer_account,
                "amount": escrow.released_amount,
            },
            cache_keys=[cache_keys.escrow_job_key(escrow.job_id)],
        )

    # === Reputation ===

    def _rating_submitted(self, conn, event: DecodedEvent, now: datetime) -> _Change:
        f = event.fields
        job = self._require_job(conn, f["job_id"])
        rater = f["rater"]
        if job.worker_account is None:
            raise InvalidTransitionError(
                f"Job {job.job_id} has no worker to rate yet",
                entity_type="job",
                entity_id=job.job_id,
                current_state=job.status.value,
            )
        if rater not in (job.employer_account, job.worker_account):
            raise ValidationError(
                f"Job {job.job_id} rated by non-party {rater}", entity_type="job", entity_id=job.job_id
            )

        counterparty = job.worker_account if rater == job.employer_account else job.employer_account
        ratee_hash = account_hash(f["ratee"])
        if ratee_hash != account_hash(counterparty):
            raise ValidationError(
                f"Job {job.job_id} rating targets {f['ratee']}, not the counterparty",
                entity_type="job",
                entity_id=job.job_id,
            )

        account = self._reputation.submit_rating(
            conn,
            job_id=job.job_id,
            rater_account=rater,
            ratee_hash=ratee_hash,
            rating_value=f["rating"],
            transaction_hash=event.transaction_hash,
            at=event.timestamp,
        )
        return _Change(
            kind=event.kind.value,
            entity_type="reputation",
            entity_id=ratee_hash,
            details={
                "job_id": job.job_id,
                "rater": rater,
                "rating": f["rating"],
                "score": account.weighted_score,
                "rating_count": account.rating_count,
            },
            cache_keys=[cache_keys.reputation_key(ratee_hash)],
        )
