"""Poll scheduler.

Drives the indexer: for each monitored contract address, fetch transactions
after the persisted cursor, decode them, apply them in ledger order, move the
cursor, then (on the escrow contract, once caught up) run a deadline-refund
pass and retry undelivered notifications.

- At most one cycle per address is in flight; an overlapping request is
  skipped and reported.
- The cursor only advances over the contiguous prefix of transactions that
  were not deferred, so a deferred transaction is fetched again next cycle.
- Deadline refunds only run when the escrow contract has no unapplied
  backlog: nothing deferred and a short batch. Otherwise a completion still
  waiting in the backlog could lose to a synthetic refund.
- Transient failures put the address into exponential back-off.
- Store work runs in worker threads; cancelling a cycle never leaves a
  half-applied event because every apply is one SQLite transaction.
"""

import asyncio
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from wagob.config import ContractRegistry, Settings
from wagob.decoder import decode
from wagob.engine import ReconciliationEngine
from wagob.errors import DecodeError, TransientIOError
from wagob.ledger import MAX_FETCH_LIMIT, LedgerClient
from wagob.logging_config import log_cycle
from wagob.monitoring import ContractMonitor
from wagob.storage.sqlite import SQLiteStateStore
from wagob.types import ApplyOutcome, ContractKind, PollCursor, Unrecognized, utc_now

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (asyncio.TimeoutError, TransientIOError, sqlite3.OperationalError)


@dataclass
class CycleReport:
    """What one poll cycle did for one address."""

    address: str
    fetched: int = 0
    applied: int = 0
    already_applied: int = 0
    deferred: int = 0
    rejected: int = 0
    escalated: int = 0
    decode_errors: int = 0
    unrecognized: int = 0
    refunds: int = 0
    redelivered: int = 0
    cursor: int = 0
    caught_up: bool = False  # no backlog left after this cycle
    skipped: Optional[str] = None  # "in_progress" or "backoff"
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.skipped is None and self.error is None

    def to_dict(self) -> Dict:
        return asdict(self)


def backoff_delay(failures: int, base: float, maximum: float) -> float:
    """Seconds to wait after ``failures`` consecutive failures."""
    if failures <= 0:
        return 0.0
    return min(base * 2 ** (failures - 1), maximum)


class PollScheduler:
    def __init__(
        self,
        ledger: LedgerClient,
        engine: ReconciliationEngine,
        store: SQLiteStateStore,
        registry: ContractRegistry,
        poll_interval: float = 10.0,
        fetch_limit: int = 20,
        fetch_timeout: float = 15.0,
        backoff_base: float = 10.0,
        backoff_max: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        monitor: Optional[ContractMonitor] = None,
        redelivery_grace: float = 30.0,
        redelivery_batch: int = 100,
    ):
        self.ledger = ledger
        self.engine = engine
        self.store = store
        self.registry = registry
        self.poll_interval = poll_interval
        self.fetch_limit = max(1, min(fetch_limit, MAX_FETCH_LIMIT))
        self.fetch_timeout = fetch_timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self.monitor = monitor
        self.redelivery_grace = redelivery_grace
        self.redelivery_batch = redelivery_batch

        self._locks: Dict[str, asyncio.Lock] = {}
        self._failures: Dict[str, int] = {}
        self._backoff_until: Dict[str, float] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stopping: Optional[asyncio.Event] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        ledger: LedgerClient,
        engine: ReconciliationEngine,
        store: SQLiteStateStore,
        registry: ContractRegistry,
        monitor: Optional[ContractMonitor] = None,
    ) -> "PollScheduler":
        return cls(
            ledger,
            engine,
            store,
            registry,
            poll_interval=settings.poll_interval_seconds,
            fetch_limit=settings.fetch_limit,
            fetch_timeout=settings.fetch_timeout_seconds,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
            monitor=monitor,
            redelivery_grace=settings.redelivery_grace_seconds,
            redelivery_batch=settings.redelivery_batch,
        )

    # === Back-off ===

    def failures(self, address: str) -> int:
        return self._failures.get(address, 0)

    def in_backoff(self, address: str) -> bool:
        return self._clock() < self._backoff_until.get(address, 0.0)

    def _record_failure(self, address: str) -> float:
        failures = self._failures.get(address, 0) + 1
        self._failures[address] = failures
        delay = backoff_delay(failures, self.backoff_base, self.backoff_max)
        self._backoff_until[address] = self._clock() + delay
        logger.warning(f"{address}: {failures} consecutive failures, backing off {delay:.0f}s")
        return delay

    def _record_success(self, address: str) -> None:
        if self._failures.pop(address, None):
            logger.info(f"{address}: recovered, back-off cleared")
        self._backoff_until.pop(address, None)

    # === Cycles ===

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._locks.get(address)
        if lock is None:
            lock = self._locks[address] = asyncio.Lock()
        return lock

    async def run_cycle(self, address: Optional[str] = None) -> List[CycleReport]:
        """Run one cycle for ``address``, or for every monitored address."""
        if address is not None:
            self.registry.require(address)
            addresses = [address]
        else:
            addresses = self.registry.addresses
        return [await self.run_address(a) for a in addresses]

    async def run_address(self, address: str) -> CycleReport:
        report = CycleReport(address=address)
        lock = self._lock_for(address)
        if lock.locked():
            report.skipped = "in_progress"
        elif self.in_backoff(address):
            report.skipped = "backoff"
        else:
            async with lock:
                try:
                    await self._poll(address, report)
                except TRANSIENT_ERRORS as e:
                    report.error = f"{type(e).__name__}: {e}"
                    self._record_failure(address)
                else:
                    self._record_success(address)
        log_cycle(report)
        await self._observe(report)
        return report

    async def _observe(self, report: CycleReport) -> None:
        if self.monitor is None:
            return
        try:
            await asyncio.to_thread(self.monitor.record_cycle, report)
        except TRANSIENT_ERRORS as e:
            # Health is rebuilt from the next cycle
            logger.warning(f"Could not record health for {report.address}: {e}")

    async def _poll(self, address: str, report: CycleReport) -> None:
        contract = self.registry.get(address)
        cursor = await asyncio.to_thread(self.store.get_cursor, address)
        report.cursor = cursor.last_sequence

        transactions = await asyncio.wait_for(
            self.ledger.fetch_transactions(address, cursor.last_sequence, self.fetch_limit),
            timeout=self.fetch_timeout,
        )
        report.fetched = len(transactions)

        advance_to = None
        blocked = False
        for tx in transactions:
            try:
                event = decode(tx)
            except DecodeError as e:
                logger.warning(f"Skipping undecodable transaction {tx.transaction_hash}: {e}")
                report.decode_errors += 1
            else:
                if isinstance(event, Unrecognized) or (
                    contract is not None and not contract.accepts(event.kind)
                ):
                    logger.debug(
                        f"Ignoring transaction {tx.transaction_hash} "
                        f"(op 0x{tx.operation_tag:08x}) on {address}"
                    )
                    report.unrecognized += 1
                else:
                    result = await asyncio.to_thread(self.engine.apply, event)
                    self._count(report, result.outcome)
                    if result.outcome == ApplyOutcome.DEFERRED:
                        blocked = True
            if not blocked:
                advance_to = tx

        if advance_to is not None:
            await asyncio.to_thread(
                self.store.save_cursor,
                PollCursor(
                    address=address,
                    last_sequence=advance_to.sequence,
                    last_transaction_hash=advance_to.transaction_hash,
                    updated_at=utc_now(),
                ),
            )
            report.cursor = advance_to.sequence

        report.caught_up = not blocked and len(transactions) < self.fetch_limit
        if contract is not None and contract.kind == ContractKind.ESCROW and report.caught_up:
            refunds = await asyncio.to_thread(self.engine.apply_deadline_refunds)
            report.refunds = sum(1 for r in refunds if r.outcome == ApplyOutcome.APPLIED)

        report.redelivered = await asyncio.to_thread(
            self.engine.redeliver_notifications, self.redelivery_batch, self.redelivery_grace
        )

    @staticmethod
    def _count(report: CycleReport, outcome: ApplyOutcome) -> None:
        if outcome == ApplyOutcome.APPLIED:
            report.applied += 1
        elif outcome == ApplyOutcome.ALREADY_APPLIED:
            report.already_applied += 1
        elif outcome == ApplyOutcome.DEFERRED:
            report.deferred += 1
        elif outcome == ApplyOutcome.REJECTED:
            report.rejected += 1
        elif outcome == ApplyOutcome.ESCALATED:
            report.escalated += 1

    # === Lifecycle ===

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Launch one polling task per monitored address."""
        if self._tasks:
            return
        if not len(self.registry):
            raise ValueError("No contract addresses configured")
        self._stopping = asyncio.Event()
        for address in self.registry.addresses:
            self._tasks[address] = asyncio.create_task(
                self._loop(address), name=f"wagob-poll-{address}"
            )
        logger.info(f"Polling {len(self._tasks)} addresses every {self.poll_interval}s")

    async def _loop(self, address: str) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_address(address)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Poll cycle for {address} failed: {e}", exc_info=True)
                self._record_failure(address)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        """Cancel polling tasks and wait for them to finish."""
        if self._stopping is not None:
            self._stopping.set()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Polling stopped")

    async def wait(self) -> None:
        """Block until every polling task has exited."""
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
