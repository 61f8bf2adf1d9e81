"""Transaction decoder for the job registry, escrow and reputation contracts.

Maps a raw ledger transaction to a typed ``DecodedEvent``. Dispatch is purely
on the 32-bit operation tag; payloads are big-endian and start with a u64
query id:

    op::create_job      0x7362d09c  job_id u64, employer, wages u64, duration u32, category u8
    op::assign_worker   0x235caf52  job_id u64, worker
    op::update_status   0x5fcc3d14  job_id u64, status u8
    op::cancel_job      0x4c8e1f27  job_id u64, reason str
    op::create_escrow   0x8f4a33db  escrow_id u64, job_id u64, employer, worker, amount u64, deadline u64
    op::fund            0x2fcb26a8  escrow_id u64, amount u64
    op::lock            0x5de7c0ab  escrow_id u64
    op::confirm         0x6a8d4f12  escrow_id u64, confirmer, payout u64, fee u64
    op::dispute         0x7b3e5c91  escrow_id u64, raiser, reason str
    op::resolve         0x1d9b7e63  escrow_id u64, winner u8, payout u64, fee u64
    op::submit_rating   0x9e6f2a84  job_id u64, rater, ratee, rating u8

Accounts are a signed workchain byte followed by a 32-byte hash and are
rendered in raw form (``"0:ab12..."``). Strings are a u16 length followed by
UTF-8 bytes.

The decoder is pure: no I/O, no shared state.
"""

import struct
from typing import Any, Callable, Dict, Tuple, Union

from wagob.errors import DecodeError
from wagob.types import (
    JOB_CATEGORY_CODES,
    JOB_STATUS_CODES,
    PARTY_CODES,
    DecodedEvent,
    EventKind,
    LedgerTransaction,
    Unrecognized,
)

OP_CREATE_JOB = 0x7362D09C
OP_ASSIGN_WORKER = 0x235CAF52
OP_UPDATE_STATUS = 0x5FCC3D14
OP_CANCEL_JOB = 0x4C8E1F27
OP_CREATE_ESCROW = 0x8F4A33DB
OP_FUND_ESCROW = 0x2FCB26A8
OP_LOCK_ESCROW = 0x5DE7C0AB
OP_CONFIRM_COMPLETION = 0x6A8D4F12
OP_RAISE_DISPUTE = 0x7B3E5C91
OP_RESOLVE_DISPUTE = 0x1D9B7E63
OP_SUBMIT_RATING = 0x9E6F2A84

OPCODES: Dict[EventKind, int] = {
    EventKind.JOB_CREATED: OP_CREATE_JOB,
    EventKind.WORKER_ASSIGNED: OP_ASSIGN_WORKER,
    EventKind.JOB_STATUS_UPDATED: OP_UPDATE_STATUS,
    EventKind.JOB_CANCELLED: OP_CANCEL_JOB,
    EventKind.ESCROW_CREATED: OP_CREATE_ESCROW,
    EventKind.ESCROW_FUNDED: OP_FUND_ESCROW,
    EventKind.ESCROW_LOCKED: OP_LOCK_ESCROW,
    EventKind.ESCROW_COMPLETED: OP_CONFIRM_COMPLETION,
    EventKind.ESCROW_DISPUTED: OP_RAISE_DISPUTE,
    EventKind.ESCROW_RESOLVED: OP_RESOLVE_DISPUTE,
    EventKind.RATING_SUBMITTED: OP_SUBMIT_RATING,
}

ACCOUNT_HASH_BYTES = 32
MAX_STRING_BYTES = 1024

# Field layouts after the query id. Types: u8, u16, u32, u64, account, str,
# category, status, party.
LAYOUTS: Dict[EventKind, Tuple[Tuple[str, str], ...]] = {
    EventKind.JOB_CREATED: (
        ("job_id", "u64"),
        ("employer", "account"),
        ("wages", "u64"),
        ("duration_hours", "u32"),
        ("category", "category"),
    ),
    EventKind.WORKER_ASSIGNED: (("job_id", "u64"), ("worker", "account")),
    EventKind.JOB_STATUS_UPDATED: (("job_id", "u64"), ("status", "status")),
    EventKind.JOB_CANCELLED: (("job_id", "u64"), ("reason", "str")),
    EventKind.ESCROW_CREATED: (
        ("escrow_id", "u64"),
        ("job_id", "u64"),
        ("employer", "account"),
        ("worker", "account"),
        ("amount", "u64"),
        ("deadline", "u64"),
    ),
    EventKind.ESCROW_FUNDED: (("escrow_id", "u64"), ("amount", "u64")),
    EventKind.ESCROW_LOCKED: (("escrow_id", "u64"),),
    EventKind.ESCROW_COMPLETED: (
        ("escrow_id", "u64"),
        ("confirmer", "account"),
        ("payout", "u64"),
        ("fee", "u64"),
    ),
    EventKind.ESCROW_DISPUTED: (
        ("escrow_id", "u64"),
        ("raiser", "account"),
        ("reason", "str"),
    ),
    EventKind.ESCROW_RESOLVED: (
        ("escrow_id", "u64"),
        ("winner", "party"),
        ("payout", "u64"),
        ("fee", "u64"),
    ),
    EventKind.RATING_SUBMITTED: (
        ("job_id", "u64"),
        ("rater", "account"),
        ("ratee", "account"),
        ("rating", "u8"),
    ),
}

_KIND_BY_OP = {op: kind for kind, op in OPCODES.items()}

_ENUMS = {
    "category": JOB_CATEGORY_CODES,
    "status": JOB_STATUS_CODES,
    "party": PARTY_CODES,
}

_INTS = {"u8": ">B", "u16": ">H", "u32": ">I", "u64": ">Q"}


class _Reader:
    """Cursor over a payload that raises DecodeError instead of struct.error."""

    def __init__(self, payload: bytes, tx_hash: str, op: int):
        self._buf = payload
        self._pos = 0
        self._tx_hash = tx_hash
        self._op = op

    def _fail(self, message: str) -> DecodeError:
        return DecodeError(message, transaction_hash=self._tx_hash, op=self._op)

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._buf):
            raise self._fail(
                f"payload truncated: need {end} bytes, have {len(self._buf)}"
            )
        chunk = self._buf[self._pos : end]
        self._pos = end
        return chunk

    def uint(self, fmt: str) -> int:
        return struct.unpack(_INTS[fmt], self.take(struct.calcsize(_INTS[fmt])))[0]

    def account(self) -> str:
        workchain = struct.unpack(">b", self.take(1))[0]
        return f"{workchain}:{self.take(ACCOUNT_HASH_BYTES).hex()}"

    def string(self) -> str:
        length = self.uint("u16")
        if length > MAX_STRING_BYTES:
            raise self._fail(f"string too long: {length} bytes")
        raw = self.take(length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise self._fail(f"invalid utf-8 string: {e}") from e

    def enum(self, name: str, field_name: str):
        code = self.uint("u8")
        members = _ENUMS[name]
        if code >= len(members):
            raise self._fail(f"{field_name} out of range: {code}")
        return members[code]

    def finish(self) -> None:
        if self._pos != len(self._buf):
            raise self._fail(f"unexpected trailing bytes: {len(self._buf) - self._pos}")


def decode(raw: LedgerTransaction) -> Union[DecodedEvent, Unrecognized]:
    """Decode a ledger transaction.

    Returns ``Unrecognized`` for operation tags that are not ours.

    Raises:
        DecodeError: payload has the wrong length or an out-of-range value, or
            the ledger entry itself was malformed
    """
    if raw.malformed is not None:
        raise DecodeError(
            f"Malformed ledger entry {raw.transaction_hash}: {raw.malformed}",
            transaction_hash=raw.transaction_hash,
            op=raw.operation_tag,
        )
    kind = _KIND_BY_OP.get(raw.operation_tag)
    if kind is None:
        return Unrecognized(raw.transaction_hash, raw.operation_tag)

    reader = _Reader(bytes(raw.payload), raw.transaction_hash, raw.operation_tag)
    fields: Dict[str, Any] = {"query_id": reader.uint("u64")}
    for name, ftype in LAYOUTS[kind]:
        if ftype in _INTS:
            fields[name] = reader.uint(ftype)
        elif ftype == "account":
            fields[name] = reader.account()
        elif ftype == "str":
            fields[name] = reader.string()
        else:
            fields[name] = reader.enum(ftype, name)
    reader.finish()

    return DecodedEvent(
        kind=kind,
        transaction_hash=raw.transaction_hash,
        timestamp=raw.timestamp,
        fields=fields,
        sequence=raw.sequence,
    )


# === Encoding (fixtures, tooling) ===


def _encode_account(account: str) -> bytes:
    try:
        wc_text, hash_hex = account.split(":", 1)
        workchain = int(wc_text)
        digest = bytes.fromhex(hash_hex)
    except ValueError as e:
        raise ValueError(f"Invalid raw account: {account!r}") from e
    if len(digest) != ACCOUNT_HASH_BYTES:
        raise ValueError(f"Invalid raw account: {account!r}")
    return struct.pack(">b", workchain) + digest


def _encode_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > MAX_STRING_BYTES:
        raise ValueError(f"string too long: {len(raw)} bytes")
    return struct.pack(">H", len(raw)) + raw


def _encode_enum(name: str, value) -> bytes:
    members = _ENUMS[name]
    if isinstance(value, int):
        return struct.pack(">B", value)
    return struct.pack(">B", members.index(members[0].__class__(value)))


_ENCODERS: Dict[str, Callable[[Any], bytes]] = {
    "account": _encode_account,
    "str": _encode_string,
}


def encode_payload(kind: EventKind, query_id: int = 0, **fields) -> bytes:
    """Build the binary payload for ``kind``; the inverse of ``decode``."""
    parts = [struct.pack(">Q", query_id)]
    for name, ftype in LAYOUTS[kind]:
        if name not in fields:
            raise ValueError(f"missing field {name!r} for {kind.value}")
        value = fields[name]
        if ftype in _INTS:
            parts.append(struct.pack(_INTS[ftype], value))
        elif ftype in _ENCODERS:
            parts.append(_ENCODERS[ftype](value))
        else:
            parts.append(_encode_enum(ftype, value))
    return b"".join(parts)
