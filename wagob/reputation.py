"""Reputation aggregator.

Maintains a weighted running score per account hash. Each new rating weighs
slightly more than the accumulated history (100 vs 95), so the score drifts
toward recent behaviour instead of settling on a lifetime average.

Scores are fixed point with two decimals (100..500 for 1.00..5.00) and use
integer floor division.

The aggregator never opens its own transaction: it is called by the
reconciliation engine with the engine's connection, so the rating, the
account update and the dedup record commit together.
"""

import logging
import sqlite3
from datetime import datetime

from wagob.errors import DuplicateRatingError, ValidationError
from wagob.storage.sqlite import SQLiteStateStore
from wagob.types import Rating, ReputationAccount

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
SCORE_SCALE = 100
WEIGHT_NEW = 100
WEIGHT_OLD = 95


def weighted_score(rating_value: int, old_score: int) -> int:
    """Fold one rating into an existing fixed-point score."""
    return (rating_value * SCORE_SCALE * WEIGHT_NEW + old_score * WEIGHT_OLD) // (
        WEIGHT_NEW + WEIGHT_OLD
    )


class ReputationAggregator:
    def __init__(self, store: SQLiteStateStore):
        self._store = store

    def submit_rating(
        self,
        conn: sqlite3.Connection,
        job_id: int,
        rater_account: str,
        ratee_hash: int,
        rating_value: int,
        transaction_hash: str,
        at: datetime,
    ) -> ReputationAccount:
        """Apply one rating inside the caller's transaction.

        Raises:
            ValidationError: rating outside 1..5
            DuplicateRatingError: (job_id, rater) already rated; nothing is written
        """
        if not MIN_RATING <= rating_value <= MAX_RATING:
            raise ValidationError(
                f"Rating {rating_value} outside {MIN_RATING}..{MAX_RATING}",
                entity_type="job",
                entity_id=job_id,
            )

        existing = self._store.get_rating(job_id, rater_account, conn=conn)
        if existing is not None:
            raise DuplicateRatingError(
                f"Job {job_id} already rated by {rater_account} "
                f"(tx {existing.transaction_hash})",
                entity_type="job",
                entity_id=job_id,
            )

        account = self._store.get_reputation(ratee_hash, conn=conn)
        old_score = account.weighted_score if account else rating_value * SCORE_SCALE
        new_score = weighted_score(rating_value, old_score)

        if account is None:
            account = ReputationAccount(
                account_hash=ratee_hash, weighted_score=new_score, rating_count=0
            )
        account.weighted_score = new_score
        account.rating_count += 1
        account.last_updated_at = at

        self._store.insert_rating(
            conn,
            Rating(
                job_id=job_id,
                rater_account=rater_account,
                ratee_hash=ratee_hash,
                value=rating_value,
                transaction_hash=transaction_hash,
                created_at=at,
            ),
        )
        self._store.save_reputation(conn, account)
        logger.debug(
            f"Reputation {ratee_hash}: {old_score} -> {new_score} "
            f"({account.rating_count} ratings)"
        )
        return account
