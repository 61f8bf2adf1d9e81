"""
Pytest fixtures and test configuration for wagob tests.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from wagob.cache import TTLCache
from wagob.decoder import OPCODES, decode, encode_payload
from wagob.engine import ReconciliationEngine
from wagob.notify import QueueNotifier
from wagob.storage.sqlite import SQLiteStateStore
from wagob.types import EventKind, LedgerTransaction, to_epoch

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

EMPLOYER = "0:" + "a1" * 32
WORKER = "0:" + "b2" * 32
OUTSIDER = "0:" + "c3" * 32


class FakeClock:
    """Settable clock for the engine (aware UTC datetimes)."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_event_for(kind: EventKind, tx_hash: str, sequence: int = 1, timestamp=None, **fields):
    """Decoded event for a fixed transaction hash, outside any fixture."""
    return decode(
        LedgerTransaction(
            transaction_hash=tx_hash,
            sequence=sequence,
            operation_tag=OPCODES[kind],
            payload=encode_payload(kind, **fields),
            timestamp=timestamp or T0,
        )
    )


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "wagob.db"


@pytest.fixture
def store(temp_db):
    """SQLiteStateStore on a temp file."""
    store = SQLiteStateStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def cache():
    return TTLCache()


@pytest.fixture
def notifier():
    return QueueNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(store, cache, notifier, clock):
    return ReconciliationEngine(store, cache=cache, notifier=notifier, clock=clock)


@pytest.fixture
def make_tx():
    """Build a LedgerTransaction with an encoded payload.

    Usage: make_tx(EventKind.JOB_CREATED, job_id=1, ..., sequence=5)
    """
    counter = itertools.count(1)

    def _make(kind: EventKind, sequence=None, tx_hash=None, timestamp=None, **fields):
        n = next(counter)
        sequence = n if sequence is None else sequence
        return LedgerTransaction(
            transaction_hash=tx_hash or f"tx-{kind.value}-{sequence}-{n}",
            sequence=sequence,
            operation_tag=OPCODES[kind],
            payload=encode_payload(kind, **fields),
            timestamp=timestamp or T0,
        )

    return _make


@pytest.fixture
def make_event(make_tx):
    """Build a DecodedEvent by encoding and decoding a payload."""

    def _make(kind: EventKind, tx_hash=None, timestamp=None, **fields):
        return decode(make_tx(kind, tx_hash=tx_hash, timestamp=timestamp, **fields))

    return _make


@pytest.fixture
def seed(engine, make_event):
    """Drive entities into a given state through the engine."""

    class Seeder:
        def job(self, job_id=1, wages=800, employer=EMPLOYER, worker=WORKER, category="security"):
            engine.apply(
                make_event(
                    EventKind.JOB_CREATED,
                    job_id=job_id,
                    employer=employer,
                    wages=wages,
                    duration_hours=12,
                    category=category,
                )
            )
            if worker is not None:
                engine.apply(make_event(EventKind.WORKER_ASSIGNED, job_id=job_id, worker=worker))

        def escrow(
            self,
            escrow_id=9,
            job_id=1,
            wages=800,
            amount=None,
            deadline=None,
            fund=None,
        ):
            self.job(job_id=job_id, wages=wages)
            engine.apply(
                make_event(
                    EventKind.ESCROW_CREATED,
                    escrow_id=escrow_id,
                    job_id=job_id,
                    employer=EMPLOYER,
                    worker=WORKER,
                    amount=amount or wages,
                    deadline=to_epoch(deadline or T0 + timedelta(days=7)),
                )
            )
            if fund is not None:
                engine.apply(make_event(EventKind.ESCROW_FUNDED, escrow_id=escrow_id, amount=fund))

        def locked_escrow(self, escrow_id=9, job_id=1, wages=800, deadline=None):
            self.escrow(escrow_id=escrow_id, job_id=job_id, wages=wages, deadline=deadline, fund=wages)

    return Seeder()
