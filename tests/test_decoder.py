"""Tests for the transaction decoder."""

import struct

import pytest

from conftest import EMPLOYER, T0, WORKER
from wagob.decoder import (
    OP_CREATE_JOB,
    OP_FUND_ESCROW,
    OP_RESOLVE_DISPUTE,
    OP_SUBMIT_RATING,
    OPCODES,
    decode,
    encode_payload,
)
from wagob.errors import DecodeError
from wagob.types import (
    EventKind,
    JobCategory,
    JobStatus,
    LedgerTransaction,
    Party,
    Unrecognized,
)


def _tx(op: int, payload: bytes, tx_hash: str = "abc") -> LedgerTransaction:
    return LedgerTransaction(
        transaction_hash=tx_hash, sequence=1, operation_tag=op, payload=payload, timestamp=T0
    )


class TestOpcodes:
    """Operation tags are fixed by the deployed contracts."""

    def test_known_tags(self):
        assert OPCODES[EventKind.JOB_CREATED] == 0x7362D09C
        assert OPCODES[EventKind.ESCROW_FUNDED] == 0x2FCB26A8
        assert OPCODES[EventKind.RATING_SUBMITTED] == 0x9E6F2A84

    def test_tags_are_unique(self):
        assert len(set(OPCODES.values())) == len(OPCODES)

    def test_deadline_is_not_a_ledger_event(self):
        assert EventKind.DEADLINE_EXPIRED not in OPCODES


class TestDecode:
    """Decoding well-formed payloads."""

    def test_job_created(self):
        payload = encode_payload(
            EventKind.JOB_CREATED,
            query_id=42,
            job_id=1,
            employer=EMPLOYER,
            wages=800,
            duration_hours=12,
            category="night_guard",
        )
        event = decode(_tx(OP_CREATE_JOB, payload, "h1"))

        assert event.kind == EventKind.JOB_CREATED
        assert event.transaction_hash == "h1"
        assert event.timestamp == T0
        assert event.fields["query_id"] == 42
        assert event.fields["job_id"] == 1
        assert event.fields["employer"] == EMPLOYER
        assert event.fields["wages"] == 800
        assert event.fields["duration_hours"] == 12
        assert event.fields["category"] == JobCategory.NIGHT_GUARD
        assert event.entity_type == "job"
        assert event.entity_id == 1

    def test_status_and_party_enums(self):
        status = decode(
            _tx(
                OPCODES[EventKind.JOB_STATUS_UPDATED],
                encode_payload(EventKind.JOB_STATUS_UPDATED, job_id=3, status=2),
            )
        )
        assert status.fields["status"] == JobStatus.COMPLETED

        resolved = decode(
            _tx(
                OP_RESOLVE_DISPUTE,
                encode_payload(EventKind.ESCROW_RESOLVED, escrow_id=9, winner=1, payout=700, fee=20),
            )
        )
        assert resolved.fields["winner"] == Party.WORKER
        assert resolved.entity_type == "escrow"
        assert resolved.entity_id == 9

    def test_string_field_utf8(self):
        payload = encode_payload(EventKind.JOB_CANCELLED, job_id=4, reason="guard unavailable ✓")
        event = decode(_tx(OPCODES[EventKind.JOB_CANCELLED], payload))
        assert event.fields["reason"] == "guard unavailable ✓"

    def test_empty_string(self):
        payload = encode_payload(EventKind.JOB_CANCELLED, job_id=4, reason="")
        assert decode(_tx(OPCODES[EventKind.JOB_CANCELLED], payload)).fields["reason"] == ""

    def test_negative_workchain_account(self):
        masterchain = "-1:" + "ff" * 32
        payload = encode_payload(
            EventKind.RATING_SUBMITTED, job_id=5, rater=masterchain, ratee=WORKER, rating=4
        )
        event = decode(_tx(OP_SUBMIT_RATING, payload))
        assert event.fields["rater"] == masterchain
        assert event.fields["ratee"] == WORKER

    def test_unknown_tag_is_unrecognized(self):
        result = decode(_tx(0xDEADBEEF, b"\x00" * 8, "zzz"))
        assert isinstance(result, Unrecognized)
        assert result.transaction_hash == "zzz"
        assert result.operation_tag == 0xDEADBEEF

    def test_decode_is_deterministic(self):
        tx = _tx(OP_FUND_ESCROW, encode_payload(EventKind.ESCROW_FUNDED, escrow_id=9, amount=800))
        assert decode(tx) == decode(tx)


class TestDecodeErrors:
    """Malformed payloads raise DecodeError, never a default."""

    def test_truncated_payload(self):
        payload = encode_payload(EventKind.ESCROW_FUNDED, escrow_id=9, amount=800)
        with pytest.raises(DecodeError, match="truncated") as exc_info:
            decode(_tx(OP_FUND_ESCROW, payload[:-1], "short"))
        assert exc_info.value.transaction_hash == "short"
        assert exc_info.value.op == OP_FUND_ESCROW

    def test_malformed_ledger_entry(self):
        payload = encode_payload(EventKind.ESCROW_FUNDED, escrow_id=9, amount=800)
        raw = LedgerTransaction("bad", 1, OP_FUND_ESCROW, payload, T0, malformed="ValueError: x")
        with pytest.raises(DecodeError, match="Malformed ledger entry") as exc_info:
            decode(raw)
        assert exc_info.value.transaction_hash == "bad"

    def test_trailing_bytes(self):
        payload = encode_payload(EventKind.ESCROW_FUNDED, escrow_id=9, amount=800)
        with pytest.raises(DecodeError, match="trailing"):
            decode(_tx(OP_FUND_ESCROW, payload + b"\x00"))

    def test_empty_payload(self):
        with pytest.raises(DecodeError):
            decode(_tx(OP_FUND_ESCROW, b""))

    def test_category_out_of_range(self):
        payload = encode_payload(
            EventKind.JOB_CREATED,
            job_id=1,
            employer=EMPLOYER,
            wages=800,
            duration_hours=12,
            category=200,
        )
        with pytest.raises(DecodeError, match="category out of range"):
            decode(_tx(OP_CREATE_JOB, payload))

    def test_status_out_of_range(self):
        payload = encode_payload(EventKind.JOB_STATUS_UPDATED, job_id=1, status=4)
        with pytest.raises(DecodeError, match="status"):
            decode(_tx(OPCODES[EventKind.JOB_STATUS_UPDATED], payload))

    def test_invalid_utf8(self):
        payload = struct.pack(">QQH", 0, 4, 2) + b"\xff\xfe"
        with pytest.raises(DecodeError, match="utf-8"):
            decode(_tx(OPCODES[EventKind.JOB_CANCELLED], payload))

    def test_string_length_past_end(self):
        payload = struct.pack(">QQH", 0, 4, 50) + b"short"
        with pytest.raises(DecodeError, match="truncated"):
            decode(_tx(OPCODES[EventKind.JOB_CANCELLED], payload))


class TestEncodePayload:
    """The encoder used by fixtures and tooling."""

    def test_missing_field(self):
        with pytest.raises(ValueError, match="amount"):
            encode_payload(EventKind.ESCROW_FUNDED, escrow_id=9)

    def test_bad_account(self):
        with pytest.raises(ValueError, match="Invalid raw account"):
            encode_payload(EventKind.WORKER_ASSIGNED, job_id=1, worker="EQabc")

    def test_enum_member_and_string_agree(self):
        a = encode_payload(EventKind.JOB_STATUS_UPDATED, job_id=1, status=JobStatus.CANCELLED)
        b = encode_payload(EventKind.JOB_STATUS_UPDATED, job_id=1, status="cancelled")
        assert a == b
