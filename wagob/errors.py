"""Error taxonomy for the wagob indexer.

DecodeError         malformed payload; logged and skipped by the scheduler
OrphanEventError    mutation for an entity that does not exist locally yet
InvalidTransition   entity is behind the state the event requires
ValidationError     business rule violation; entity keeps its last-good state
PermanentError      impossible transition or exhausted retries
TransientIOError    ledger or store unavailable; retried with back-off
DeliveryError       notifier refused an event; redelivered from the outbox

"Already applied" is an outcome, not an error (see ``ApplyOutcome``).
"""

from typing import Optional


class WagobError(Exception):
    """Base class for all wagob errors."""


class DecodeError(WagobError):
    """Raised when a transaction payload cannot be decoded."""

    def __init__(self, message: str, transaction_hash: Optional[str] = None, op: int = 0):
        super().__init__(message)
        self.transaction_hash = transaction_hash
        self.op = op


class ReconciliationError(WagobError):
    """Base class for errors raised while applying an event."""

    retryable = False

    def __init__(self, message: str, entity_type: Optional[str] = None, entity_id=None):
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id


class OrphanEventError(ReconciliationError):
    """The event references an entity that has not been created locally."""

    retryable = True


class InvalidTransitionError(ReconciliationError):
    """The entity has not yet reached the state the event starts from.

    Usually caused by re-ordering across contract addresses; the event is
    deferred and retried on a later cycle.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id=None,
        current_state: Optional[str] = None,
        expected: tuple = (),
    ):
        super().__init__(message, entity_type, entity_id)
        self.current_state = current_state
        self.expected = expected


class ValidationError(ReconciliationError):
    """A business rule rejected the event (amount mismatch, wrong party, ...)."""


class DuplicateRatingError(ValidationError):
    """A rating for the same (job, rater) pair was already applied."""


class PermanentError(ReconciliationError):
    """The event can never be applied; requires operator attention."""


class TransientIOError(WagobError):
    """Ledger or store temporarily unavailable."""


class DeliveryError(WagobError):
    """A notification was not accepted by the notifier; it stays in the outbox."""
