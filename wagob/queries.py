"""Read-only query surface, fronted by the cache.

Everything here reads committed state only; mutations go through the
reconciliation engine, which invalidates the keys these queries populate.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from wagob import cache as cache_keys
from wagob.cache import TTL_MEDIUM, TTL_REPUTATION, TTL_SHORT, TTLCache
from wagob.storage.sqlite import SQLiteStateStore
from wagob.types import (
    Escrow,
    Job,
    JobCategory,
    JobStatus,
    ReputationAccount,
    account_hash,
)

logger = logging.getLogger(__name__)

MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


@dataclass
class JobPage:
    items: List[Job] = field(default_factory=list)
    next_cursor: Optional[int] = None  # pass back as ``cursor`` for the next page

    def to_dict(self):
        return {
            "items": [job.to_dict() for job in self.items],
            "next_cursor": self.next_cursor,
        }


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return max(MIN_PAGE_SIZE, min(int(limit), MAX_PAGE_SIZE))


class QueryService:
    """Cached reads over the state store.

    Args:
        store: State store.
        cache: Shared with the reconciliation engine so its invalidations apply.
        job_list_ttl, job_ttl, reputation_ttl: Entry TTLs in seconds.
    """

    def __init__(
        self,
        store: SQLiteStateStore,
        cache: TTLCache,
        job_list_ttl: int = TTL_SHORT,
        job_ttl: int = TTL_MEDIUM,
        reputation_ttl: int = TTL_REPUTATION,
    ):
        self._store = store
        self._cache = cache
        self.job_list_ttl = job_list_ttl
        self.job_ttl = job_ttl
        self.reputation_ttl = reputation_ttl

    def _read(self, key: str, loader, ttl: int):
        # Callers get their own copy; cached entities stay as loaded
        return copy.deepcopy(self._cache.get_or_load(key, loader, ttl))

    def get_job(self, job_id: int) -> Optional[Job]:
        return self._read(
            cache_keys.job_key(job_id), lambda: self._store.get_job(job_id), self.job_ttl
        )

    def list_jobs(
        self,
        status: Optional[Union[JobStatus, str]] = None,
        category: Optional[Union[JobCategory, str]] = None,
        cursor: Optional[int] = None,
        limit: Optional[int] = DEFAULT_PAGE_SIZE,
    ) -> JobPage:
        """Jobs newest first by ledger id.

        Raises:
            ValueError: unknown status or category
        """
        status = JobStatus(status) if status is not None else None
        category = JobCategory(category) if category is not None else None
        limit = clamp_limit(limit)
        key = cache_keys.job_list_key(
            status.value if status else None,
            category.value if category else None,
            cursor,
            limit,
        )

        def load() -> JobPage:
            # One extra row tells us whether another page exists
            rows = self._store.list_jobs(
                status=status, category=category, before_job_id=cursor, limit=limit + 1
            )
            items = rows[:limit]
            next_cursor = items[-1].job_id if len(rows) > limit else None
            return JobPage(items=items, next_cursor=next_cursor)

        return self._read(key, load, self.job_list_ttl)

    def get_escrow_by_job(self, job_id: int) -> Optional[Escrow]:
        return self._read(
            cache_keys.escrow_job_key(job_id),
            lambda: self._store.get_escrow_by_job(job_id),
            self.job_ttl,
        )

    def get_reputation(self, ratee_hash: int) -> Optional[ReputationAccount]:
        return self._read(
            cache_keys.reputation_key(ratee_hash),
            lambda: self._store.get_reputation(ratee_hash),
            self.reputation_ttl,
        )

    def get_reputation_for_account(self, account: str) -> Optional[ReputationAccount]:
        return self.get_reputation(account_hash(account))
