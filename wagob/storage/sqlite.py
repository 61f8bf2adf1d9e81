"""SQLite state store for the wagob indexer.

Canonical storage for jobs, escrows, reputation and the reconciliation
bookkeeping (processed transactions, deferred events, dead letters, poll
cursors), the notification outbox and contract monitoring (health, metric
snapshots, alerts).

Write paths take an explicit connection so the reconciliation engine can
group an entity mutation and its dedup record in one ``transaction()``.
Read paths accept an optional connection and open their own otherwise.
"""

import contextlib
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from wagob.errors import TransientIOError
from wagob.types import (
    Alert,
    AlertSeverity,
    AlertStatus,
    ContractHealth,
    DeadLetter,
    DeferredEvent,
    DomainEvent,
    Escrow,
    EscrowStatus,
    Job,
    JobCategory,
    JobStatus,
    MetricSnapshot,
    Party,
    PendingNotification,
    PollCursor,
    ProcessedTransaction,
    Rating,
    ReputationAccount,
    from_epoch,
    parse_datetime,
    to_epoch,
    to_iso,
    utc_now,
)

from .schema import init_db, validate_table_name

logger = logging.getLogger(__name__)

JOB_COLUMNS = (
    "job_id",
    "employer_account",
    "worker_account",
    "wages_amount",
    "duration_hours",
    "category",
    "status",
    "cancellation_reason",
    "transaction_hash",
    "created_at",
    "updated_at",
    "assigned_at",
    "completed_at",
    "cancelled_at",
)

ESCROW_COLUMNS = (
    "escrow_id",
    "job_id",
    "amount",
    "funded_amount",
    "employer_account",
    "worker_account",
    "status",
    "deadline",
    "dispute_reason",
    "disputed_by",
    "resolved_to",
    "released_to",
    "released_amount",
    "platform_fee",
    "transaction_hash",
    "created_at",
    "updated_at",
    "funded_at",
    "locked_at",
    "completed_at",
    "disputed_at",
    "resolved_at",
    "refunded_at",
)

_JOB_TIMESTAMPS = ("created_at", "updated_at", "assigned_at", "completed_at", "cancelled_at")
_ESCROW_TIMESTAMPS = (
    "created_at",
    "updated_at",
    "funded_at",
    "locked_at",
    "completed_at",
    "disputed_at",
    "resolved_at",
    "refunded_at",
)

OPEN_ESCROW_STATUSES = (EscrowStatus.FUNDED.value, EscrowStatus.LOCKED.value)


# === Row conversion ===


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        job_id=row["job_id"],
        employer_account=row["employer_account"],
        worker_account=row["worker_account"],
        wages_amount=row["wages_amount"],
        duration_hours=row["duration_hours"],
        category=JobCategory(row["category"]),
        status=JobStatus(row["status"]),
        cancellation_reason=row["cancellation_reason"],
        transaction_hash=row["transaction_hash"],
        **{key: parse_datetime(row[key]) for key in _JOB_TIMESTAMPS},
    )


def _job_params(job: Job) -> Dict[str, Any]:
    params = {column: getattr(job, column) for column in JOB_COLUMNS}
    params["status"] = job.status.value
    params["category"] = job.category.value
    for key in _JOB_TIMESTAMPS:
        params[key] = to_iso(params[key])
    return params


def _row_to_escrow(row: sqlite3.Row) -> Escrow:
    return Escrow(
        escrow_id=row["escrow_id"],
        job_id=row["job_id"],
        amount=row["amount"],
        funded_amount=row["funded_amount"],
        employer_account=row["employer_account"],
        worker_account=row["worker_account"],
        status=EscrowStatus(row["status"]),
        deadline=from_epoch(row["deadline"]),
        dispute_reason=row["dispute_reason"],
        disputed_by=row["disputed_by"],
        resolved_to=Party(row["resolved_to"]) if row["resolved_to"] else None,
        released_to=Party(row["released_to"]) if row["released_to"] else None,
        released_amount=row["released_amount"],
        platform_fee=row["platform_fee"],
        transaction_hash=row["transaction_hash"],
        **{key: parse_datetime(row[key]) for key in _ESCROW_TIMESTAMPS},
    )


def _escrow_params(escrow: Escrow) -> Dict[str, Any]:
    params = {column: getattr(escrow, column) for column in ESCROW_COLUMNS}
    params["status"] = escrow.status.value
    params["deadline"] = to_epoch(escrow.deadline)
    params["resolved_to"] = escrow.resolved_to.value if escrow.resolved_to else None
    params["released_to"] = escrow.released_to.value if escrow.released_to else None
    for key in _ESCROW_TIMESTAMPS:
        params[key] = to_iso(params[key])
    return params


def _insert_sql(table: str, columns) -> str:
    validate_table_name(table)
    names = ", ".join(columns)
    placeholders = ", ".join(f":{c}" for c in columns)
    return f"INSERT INTO {table} ({names}) VALUES ({placeholders})"


def _update_sql(table: str, columns, key: str) -> str:
    validate_table_name(table)
    assignments = ", ".join(f"{c} = :{c}" for c in columns if c != key)
    return f"UPDATE {table} SET {assignments} WHERE {key} = :{key}"


class SQLiteStateStore:
    """SQLite-backed state store.

    Connections are opened per operation. Writers use ``BEGIN IMMEDIATE`` so
    the database write lock serializes every read-modify-write of an entity.
    """

    def __init__(self, db_path: Union[str, Path], timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")
        return conn

    def _init_db(self) -> None:
        with contextlib.closing(self._get_conn()) as conn:
            init_db(conn)

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Read connection that is always closed."""
        try:
            conn = self._get_conn()
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"State store unavailable: {e}") from e
        try:
            yield conn
        except sqlite3.OperationalError as e:
            raise TransientIOError(f"State store read failed: {e}") from e
        finally:
            conn.close()

    @contextlib.contextmanager
    def _use(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with self._connect() as own:
                yield own

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction that commits on success and rolls back on error.

        Handles:
        - BEGIN IMMEDIATE so the write lock is taken before any read
        - Commit on success, rollback on any exception
        - Lock timeouts surfaced as TransientIOError
        """
        with self._connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise TransientIOError(f"Could not acquire write lock: {e}") from e
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException as e:
                logger.debug(f"Transaction failed, rolling back: {e!r}")
                conn.execute("ROLLBACK")
                raise

    @staticmethod
    @contextlib.contextmanager
    def savepoint(conn: sqlite3.Connection, name: str = "apply") -> Iterator[None]:
        """Nested savepoint; rolls back only its own writes on error."""
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        conn.execute(f"RELEASE SAVEPOINT {name}")

    def close(self) -> None:
        """No persistent connections; exists for API symmetry."""

    # === Jobs ===

    def get_job(self, job_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Job]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def insert_job(self, conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(_insert_sql("jobs", JOB_COLUMNS), _job_params(job))

    def update_job(self, conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(_update_sql("jobs", JOB_COLUMNS, "job_id"), _job_params(job))

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        category: Optional[JobCategory] = None,
        before_job_id: Optional[int] = None,
        limit: int = 20,
    ) -> List[Job]:
        """List jobs newest first (by ledger id), optionally filtered."""
        clauses = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if category is not None:
            clauses.append("category = ?")
            params.append(JobCategory(category).value)
        if before_job_id is not None:
            clauses.append("job_id < ?")
            params.append(before_job_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY job_id DESC LIMIT ?", params
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    # === Escrows ===

    def get_escrow(
        self, escrow_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Escrow]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM escrows WHERE escrow_id = ?", (escrow_id,)).fetchone()
        return _row_to_escrow(row) if row else None

    def get_escrow_by_job(
        self, job_id: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Escrow]:
        with self._use(conn) as c:
            row = c.execute("SELECT * FROM escrows WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_escrow(row) if row else None

    def insert_escrow(self, conn: sqlite3.Connection, escrow: Escrow) -> None:
        conn.execute(_insert_sql("escrows", ESCROW_COLUMNS), _escrow_params(escrow))

    def update_escrow(self, conn: sqlite3.Connection, escrow: Escrow) -> None:
        conn.execute(_update_sql("escrows", ESCROW_COLUMNS, "escrow_id"), _escrow_params(escrow))

    def list_expired_escrows(self, now: datetime) -> List[Escrow]:
        """Funded or locked escrows whose deadline is strictly before ``now``."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM escrows
                   WHERE status IN (?, ?) AND deadline < ?
                   ORDER BY deadline, escrow_id""",
                (*OPEN_ESCROW_STATUSES, to_epoch(now)),
            ).fetchall()
        return [_row_to_escrow(row) for row in rows]

    # === Reputation ===

    def get_reputation(
        self, account_hash: int, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[ReputationAccount]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM reputation_accounts WHERE account_hash = ?", (account_hash,)
            ).fetchone()
        if not row:
            return None
        return ReputationAccount(
            account_hash=row["account_hash"],
            weighted_score=row["weighted_score"],
            rating_count=row["rating_count"],
            last_updated_at=parse_datetime(row["last_updated_at"]),
        )

    def save_reputation(self, conn: sqlite3.Connection, account: ReputationAccount) -> None:
        conn.execute(
            """INSERT INTO reputation_accounts
                   (account_hash, weighted_score, rating_count, last_updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(account_hash) DO UPDATE SET
                   weighted_score = excluded.weighted_score,
                   rating_count = excluded.rating_count,
                   last_updated_at = excluded.last_updated_at""",
            (
                account.account_hash,
                account.weighted_score,
                account.rating_count,
                to_iso(account.last_updated_at),
            ),
        )

    def get_rating(
        self, job_id: int, rater_account: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Rating]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM ratings WHERE job_id = ? AND rater_account = ?",
                (job_id, rater_account),
            ).fetchone()
        if not row:
            return None
        return Rating(
            job_id=row["job_id"],
            rater_account=row["rater_account"],
            ratee_hash=row["ratee_hash"],
            value=row["value"],
            transaction_hash=row["transaction_hash"],
            created_at=parse_datetime(row["created_at"]),
        )

    def insert_rating(self, conn: sqlite3.Connection, rating: Rating) -> None:
        conn.execute(
            """INSERT INTO ratings
                   (job_id, rater_account, ratee_hash, value, transaction_hash, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                rating.job_id,
                rating.rater_account,
                rating.ratee_hash,
                rating.value,
                rating.transaction_hash,
                to_iso(rating.created_at),
            ),
        )

    def count_ratings(self, ratee_hash: int) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM ratings WHERE ratee_hash = ?", (ratee_hash,)
            ).fetchone()[0]

    # === Processed transactions (dedup) ===

    def get_processed(
        self, transaction_hash: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[ProcessedTransaction]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM processed_transactions WHERE transaction_hash = ?",
                (transaction_hash,),
            ).fetchone()
        if not row:
            return None
        return ProcessedTransaction(
            transaction_hash=row["transaction_hash"],
            event_kind=row["event_kind"],
            outcome=row["outcome"],
            detail=row["detail"],
            processed_at=parse_datetime(row["processed_at"]),
        )

    def is_processed(
        self, transaction_hash: str, conn: Optional[sqlite3.Connection] = None
    ) -> bool:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT 1 FROM processed_transactions WHERE transaction_hash = ?",
                (transaction_hash,),
            ).fetchone()
        return row is not None

    def record_processed(self, conn: sqlite3.Connection, record: ProcessedTransaction) -> None:
        conn.execute(
            """INSERT INTO processed_transactions
                   (transaction_hash, event_kind, outcome, detail, processed_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                record.transaction_hash,
                record.event_kind,
                record.outcome,
                record.detail,
                to_iso(record.processed_at or utc_now()),
            ),
        )

    def count_processed(self, transaction_hash: Optional[str] = None) -> int:
        with self._connect() as conn:
            if transaction_hash is None:
                return conn.execute("SELECT COUNT(*) FROM processed_transactions").fetchone()[0]
            return conn.execute(
                "SELECT COUNT(*) FROM processed_transactions WHERE transaction_hash = ?",
                (transaction_hash,),
            ).fetchone()[0]

    # === Deferred events and dead letters ===

    def record_deferral(
        self,
        conn: sqlite3.Connection,
        transaction_hash: str,
        event_kind: str,
        entity_id: Optional[int],
        error: str,
        now: datetime,
    ) -> int:
        """Count one more failed attempt. Returns the attempt total."""
        ts = to_iso(now)
        conn.execute(
            """INSERT INTO deferred_events
                   (transaction_hash, event_kind, entity_id, attempts, last_error,
                    first_seen_at, last_attempt_at)
               VALUES (?, ?, ?, 1, ?, ?, ?)
               ON CONFLICT(transaction_hash) DO UPDATE SET
                   attempts = attempts + 1,
                   last_error = excluded.last_error,
                   last_attempt_at = excluded.last_attempt_at""",
            (transaction_hash, event_kind, entity_id, error[:500], ts, ts),
        )
        row = conn.execute(
            "SELECT attempts FROM deferred_events WHERE transaction_hash = ?",
            (transaction_hash,),
        ).fetchone()
        return row["attempts"]

    def clear_deferral(self, conn: sqlite3.Connection, transaction_hash: str) -> None:
        conn.execute("DELETE FROM deferred_events WHERE transaction_hash = ?", (transaction_hash,))

    def get_deferred(
        self, transaction_hash: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[DeferredEvent]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM deferred_events WHERE transaction_hash = ?", (transaction_hash,)
            ).fetchone()
        return self._row_to_deferred(row) if row else None

    def list_deferred(self, limit: int = 100) -> List[DeferredEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM deferred_events ORDER BY first_seen_at LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_deferred(row) for row in rows]

    @staticmethod
    def _row_to_deferred(row: sqlite3.Row) -> DeferredEvent:
        return DeferredEvent(
            transaction_hash=row["transaction_hash"],
            event_kind=row["event_kind"],
            entity_id=row["entity_id"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            first_seen_at=parse_datetime(row["first_seen_at"]),
            last_attempt_at=parse_datetime(row["last_attempt_at"]),
        )

    def add_dead_letter(self, conn: sqlite3.Connection, letter: DeadLetter) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO dead_letters
                   (transaction_hash, event_kind, entity_id, attempts, error, escalated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                letter.transaction_hash,
                letter.event_kind,
                letter.entity_id,
                letter.attempts,
                letter.error[:500],
                to_iso(letter.escalated_at or utc_now()),
            ),
        )

    def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM dead_letters ORDER BY escalated_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            DeadLetter(
                transaction_hash=row["transaction_hash"],
                event_kind=row["event_kind"],
                entity_id=row["entity_id"],
                attempts=row["attempts"],
                error=row["error"],
                escalated_at=parse_datetime(row["escalated_at"]),
            )
            for row in rows
        ]

    def requeue_dead_letter(self, transaction_hash: str) -> bool:
        """Forget an escalated transaction so the next observation retries it.

        Returns:
            True if a dead letter was found and removed.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM dead_letters WHERE transaction_hash = ?", (transaction_hash,)
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                "DELETE FROM processed_transactions WHERE transaction_hash = ? AND outcome = ?",
                (transaction_hash, "escalated"),
            )
            conn.execute(
                "DELETE FROM deferred_events WHERE transaction_hash = ?", (transaction_hash,)
            )
        return True

    # === Poll cursors ===

    def get_cursor(self, address: str) -> PollCursor:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM poll_cursors WHERE address = ?", (address,)
            ).fetchone()
        if not row:
            return PollCursor(address=address)
        return PollCursor(
            address=row["address"],
            last_sequence=row["last_sequence"],
            last_transaction_hash=row["last_transaction_hash"],
            updated_at=parse_datetime(row["updated_at"]),
        )

    def save_cursor(self, cursor: PollCursor) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO poll_cursors
                       (address, last_sequence, last_transaction_hash, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(address) DO UPDATE SET
                       last_sequence = excluded.last_sequence,
                       last_transaction_hash = excluded.last_transaction_hash,
                       updated_at = excluded.updated_at""",
                (
                    cursor.address,
                    cursor.last_sequence,
                    cursor.last_transaction_hash,
                    to_iso(cursor.updated_at or utc_now()),
                ),
            )

    def list_cursors(self) -> List[PollCursor]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM poll_cursors ORDER BY address").fetchall()
        return [
            PollCursor(
                address=row["address"],
                last_sequence=row["last_sequence"],
                last_transaction_hash=row["last_transaction_hash"],
                updated_at=parse_datetime(row["updated_at"]),
            )
            for row in rows
        ]

    # === Notification outbox ===

    def add_pending_notification(
        self, conn: sqlite3.Connection, notification: DomainEvent, now: datetime
    ) -> int:
        cursor = conn.execute(
            """INSERT INTO pending_notifications
                   (transaction_hash, kind, entity_type, entity_id, details, occurred_at,
                    created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                notification.transaction_hash,
                notification.kind,
                notification.entity_type,
                notification.entity_id,
                json.dumps(notification.details, default=str),
                to_iso(notification.occurred_at),
                to_iso(now),
            ),
        )
        return cursor.lastrowid

    def list_pending_notifications(
        self, created_before: Optional[datetime] = None, limit: int = 100
    ) -> List[PendingNotification]:
        """Oldest first. With ``created_before``, rows that already failed
        once are included regardless of age."""
        with self._connect() as conn:
            if created_before is None:
                rows = conn.execute(
                    "SELECT * FROM pending_notifications ORDER BY id LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT * FROM pending_notifications
                       WHERE attempts > 0 OR created_at < ?
                       ORDER BY id LIMIT ?""",
                    (to_iso(created_before), limit),
                ).fetchall()
        return [
            PendingNotification(
                id=row["id"],
                notification=DomainEvent(
                    kind=row["kind"],
                    entity_type=row["entity_type"],
                    entity_id=row["entity_id"],
                    details=json.loads(row["details"]),
                    transaction_hash=row["transaction_hash"],
                    occurred_at=parse_datetime(row["occurred_at"]),
                ),
                attempts=row["attempts"],
                last_error=row["last_error"],
                created_at=parse_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def delete_pending_notification(self, notification_id: int) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM pending_notifications WHERE id = ?", (notification_id,))

    def record_notification_failure(self, notification_id: int, error: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """UPDATE pending_notifications
                   SET attempts = attempts + 1, last_error = ?
                   WHERE id = ?""",
                (error[:500], notification_id),
            )

    # === Contract monitoring ===

    def get_contract_health(
        self, address: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[ContractHealth]:
        with self._use(conn) as c:
            row = c.execute(
                "SELECT * FROM contract_health WHERE address = ?", (address,)
            ).fetchone()
        return self._row_to_health(row) if row else None

    def list_contract_health(self) -> List[ContractHealth]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM contract_health ORDER BY address").fetchall()
        return [self._row_to_health(row) for row in rows]

    @staticmethod
    def _row_to_health(row: sqlite3.Row) -> ContractHealth:
        return ContractHealth(
            address=row["address"],
            last_success_at=parse_datetime(row["last_success_at"]),
            last_failure_at=parse_datetime(row["last_failure_at"]),
            consecutive_failures=row["consecutive_failures"],
            last_error=row["last_error"],
            last_sequence=row["last_sequence"],
            caught_up=bool(row["caught_up"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    def save_contract_health(self, conn: sqlite3.Connection, health: ContractHealth) -> None:
        conn.execute(
            """INSERT INTO contract_health
                   (address, last_success_at, last_failure_at, consecutive_failures,
                    last_error, last_sequence, caught_up, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(address) DO UPDATE SET
                   last_success_at = excluded.last_success_at,
                   last_failure_at = excluded.last_failure_at,
                   consecutive_failures = excluded.consecutive_failures,
                   last_error = excluded.last_error,
                   last_sequence = excluded.last_sequence,
                   caught_up = excluded.caught_up,
                   updated_at = excluded.updated_at""",
            (
                health.address,
                to_iso(health.last_success_at),
                to_iso(health.last_failure_at),
                health.consecutive_failures,
                health.last_error[:500] if health.last_error else None,
                health.last_sequence,
                int(health.caught_up),
                to_iso(health.updated_at),
            ),
        )

    def add_metric_snapshots(
        self, conn: sqlite3.Connection, snapshots: List[MetricSnapshot]
    ) -> None:
        conn.executemany(
            """INSERT INTO metric_snapshots (address, metric_name, value, recorded_at)
               VALUES (?, ?, ?, ?)""",
            [
                (s.address, s.metric_name, s.value, to_iso(s.recorded_at or utc_now()))
                for s in snapshots
            ],
        )

    def metric_stats(
        self,
        address: str,
        metric_name: str,
        since: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Tuple[int, float]:
        """(count, sum) of a metric recorded at or after ``since``."""
        with self._use(conn) as c:
            row = c.execute(
                """SELECT COUNT(*) AS n, COALESCE(SUM(value), 0) AS total
                   FROM metric_snapshots
                   WHERE address = ? AND metric_name = ? AND recorded_at >= ?""",
                (address, metric_name, to_iso(since)),
            ).fetchone()
        return row["n"], row["total"]

    def prune_metric_snapshots(self, conn: sqlite3.Connection, before: datetime) -> int:
        cursor = conn.execute(
            "DELETE FROM metric_snapshots WHERE recorded_at < ?", (to_iso(before),)
        )
        return cursor.rowcount

    @staticmethod
    def _row_to_alert(row: sqlite3.Row) -> Alert:
        return Alert(
            id=row["id"],
            address=row["address"],
            alert_type=row["alert_type"],
            severity=AlertSeverity(row["severity"]),
            message=row["message"],
            metadata=json.loads(row["metadata"]),
            status=AlertStatus(row["status"]),
            created_at=parse_datetime(row["created_at"]),
            resolved_at=parse_datetime(row["resolved_at"]),
        )

    def find_active_alert(
        self, address: str, alert_type: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Alert]:
        with self._use(conn) as c:
            row = c.execute(
                """SELECT * FROM alerts
                   WHERE address = ? AND alert_type = ? AND status = ?
                   ORDER BY id DESC LIMIT 1""",
                (address, alert_type, AlertStatus.ACTIVE.value),
            ).fetchone()
        return self._row_to_alert(row) if row else None

    def add_alert(self, conn: sqlite3.Connection, alert: Alert) -> int:
        cursor = conn.execute(
            """INSERT INTO alerts
                   (address, alert_type, severity, message, metadata, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                alert.address,
                alert.alert_type,
                alert.severity.value,
                alert.message,
                json.dumps(alert.metadata, default=str),
                alert.status.value,
                to_iso(alert.created_at or utc_now()),
            ),
        )
        alert.id = cursor.lastrowid
        return alert.id

    def list_alerts(
        self, status: Optional[AlertStatus] = None, limit: int = 50
    ) -> List[Alert]:
        """Newest first."""
        with self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM alerts ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM alerts WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (AlertStatus(status).value, limit),
                ).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def resolve_alerts(
        self,
        conn: sqlite3.Connection,
        at: datetime,
        alert_id: Optional[int] = None,
        address: Optional[str] = None,
        alert_type: Optional[str] = None,
    ) -> int:
        """Resolve active alerts by id, or by address and type. Returns the count."""
        if alert_id is not None:
            where, params = "id = ?", [alert_id]
        elif address is not None and alert_type is not None:
            where, params = "address = ? AND alert_type = ?", [address, alert_type]
        else:
            raise ValueError("resolve_alerts needs an alert id, or an address and type")
        cursor = conn.execute(
            f"UPDATE alerts SET status = ?, resolved_at = ? WHERE {where} AND status = ?",
            (AlertStatus.RESOLVED.value, to_iso(at), *params, AlertStatus.ACTIVE.value),
        )
        return cursor.rowcount

    # === Stats ===

    def get_stats(self) -> Dict[str, Any]:
        """Row counts and status breakdowns for operator status output."""
        with self._connect() as conn:
            counts = {}
            for table in (
                "jobs",
                "escrows",
                "reputation_accounts",
                "ratings",
                "processed_transactions",
                "deferred_events",
                "dead_letters",
                "pending_notifications",
            ):
                validate_table_name(table)
                counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            jobs_by_status = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
                ).fetchall()
            }
            escrows_by_status = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS count FROM escrows GROUP BY status"
                ).fetchall()
            }
            active_alerts = conn.execute(
                "SELECT COUNT(*) FROM alerts WHERE status = ?", (AlertStatus.ACTIVE.value,)
            ).fetchone()[0]
        return {
            "counts": counts,
            "jobs_by_status": jobs_by_status,
            "escrows_by_status": escrows_by_status,
            "active_alerts": active_alerts,
        }
