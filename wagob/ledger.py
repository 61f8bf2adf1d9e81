"""Ledger client boundary.

The scheduler only needs ``fetch_transactions(address, since_sequence,
limit)``, returning finalized transactions with ``sequence > since_sequence``
in ascending order. Two implementations:

- ``HttpLedgerClient`` reads a JSON indexer endpoint over httpx:
  ``GET {base}/transactions?address=..&since=..&limit=..`` returning
  ``{"transactions": [{"hash", "sequence", "op", "payload", "timestamp"}]}``
  where ``payload`` is hex and ``timestamp`` is epoch seconds.
- ``InMemoryLedger`` holds transactions per address, for tests and replay.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol

import httpx

from wagob.config import ContractRegistry
from wagob.errors import TransientIOError
from wagob.types import LedgerTransaction, from_epoch

logger = logging.getLogger(__name__)

MAX_FETCH_LIMIT = 100


class LedgerClient(Protocol):
    async def fetch_transactions(
        self, address: str, since_sequence: int, limit: int
    ) -> List[LedgerTransaction]: ...


def _parse_op(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    return int(text, 16) if text.startswith("0x") else int(text)


def _parse_transaction(item: Dict[str, Any]) -> LedgerTransaction:
    """Parse one JSON transaction entry.

    Raises:
        KeyError, ValueError, TypeError: entry is malformed
    """
    payload = item.get("payload") or ""
    if payload.startswith("0x"):
        payload = payload[2:]
    return LedgerTransaction(
        transaction_hash=str(item["hash"]),
        sequence=int(item["sequence"]),
        operation_tag=_parse_op(item["op"]),
        payload=bytes.fromhex(payload),
        timestamp=from_epoch(int(item["timestamp"])),
    )


def _placeholder(item: Any, error: Exception) -> Optional[LedgerTransaction]:
    """Stand-in for an entry that has a hash and sequence but bad content.

    Returns None when the entry cannot even be positioned in the stream.
    """
    if not isinstance(item, dict):
        return None
    try:
        transaction_hash = item["hash"]
        sequence = int(item["sequence"])
    except (KeyError, ValueError, TypeError):
        return None
    if not transaction_hash or not isinstance(transaction_hash, (str, int)):
        return None
    transaction_hash = str(transaction_hash)
    try:
        op = _parse_op(item.get("op", 0))
    except (ValueError, TypeError):
        op = 0
    try:
        timestamp = from_epoch(int(item["timestamp"]))
    except (KeyError, ValueError, TypeError, OverflowError, OSError):
        timestamp = None
    return LedgerTransaction(
        transaction_hash=transaction_hash,
        sequence=sequence,
        operation_tag=op,
        payload=b"",
        timestamp=timestamp,
        malformed=f"{type(error).__name__}: {error}",
    )


class HttpLedgerClient:
    """Reads contract transactions from a JSON ledger indexer.

    Args:
        base_url: Indexer API root, e.g. ``https://testnet.toncenter.com/api/v3``.
        registry: Monitored contracts; unknown addresses are refused.
        api_key: Sent as ``X-API-Key`` when set.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        registry: ContractRegistry,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.registry = registry
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}{path}", params=params, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            raise TransientIOError(
                f"Ledger API returned {e.response.status_code} for {path}"
            ) from e
        except httpx.HTTPError as e:
            raise TransientIOError(f"Ledger API request failed: {e!r}") from e
        except ValueError as e:
            raise TransientIOError(f"Ledger API returned invalid JSON: {e}") from e

    async def fetch_transactions(
        self, address: str, since_sequence: int, limit: int
    ) -> List[LedgerTransaction]:
        """Fetch finalized transactions after ``since_sequence``.

        Raises:
            ValueError: address is not a monitored contract
            TransientIOError: network failure, malformed response, or an entry
                without a usable hash and sequence
        """
        contract = self.registry.require(address)
        limit = max(1, min(limit, MAX_FETCH_LIMIT))
        data = await self._get_json(
            "/transactions",
            {
                "address": address,
                "since": since_sequence,
                "limit": limit,
                "version": contract.version,
            },
        )

        if not isinstance(data, dict) or not isinstance(data.get("transactions"), list):
            raise TransientIOError(f"Ledger API response for {address} has no transaction list")

        transactions = []
        for item in data["transactions"]:
            try:
                tx = _parse_transaction(item)
            except (KeyError, ValueError, TypeError, AttributeError, OverflowError, OSError) as e:
                tx = _placeholder(item, e)
                if tx is None:
                    # Unpositioned entry; a partial batch could skip past it
                    raise TransientIOError(
                        f"Malformed ledger transaction for {address}: {e!r}"
                    ) from e
                logger.warning(
                    f"Ledger entry {tx.transaction_hash} (seq {tx.sequence}) for {address} "
                    f"is malformed: {tx.malformed}"
                )
            if tx.sequence > since_sequence:
                transactions.append(tx)

        transactions.sort(key=lambda tx: tx.sequence)
        logger.debug(f"Fetched {len(transactions)} transactions for {address} since {since_sequence}")
        return transactions[:limit]


class InMemoryLedger:
    """Ledger held in memory, with optional failure injection."""

    def __init__(self):
        self._transactions: Dict[str, List[LedgerTransaction]] = defaultdict(list)
        self.fail_next: Optional[Exception] = None
        self.fetch_count = 0

    def add(self, address: str, *transactions: LedgerTransaction) -> None:
        self._transactions[address].extend(transactions)
        self._transactions[address].sort(key=lambda tx: tx.sequence)

    async def fetch_transactions(
        self, address: str, since_sequence: int, limit: int
    ) -> List[LedgerTransaction]:
        self.fetch_count += 1
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        matching = [tx for tx in self._transactions.get(address, []) if tx.sequence > since_sequence]
        return matching[:limit]
