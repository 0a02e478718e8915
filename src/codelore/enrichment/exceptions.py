"""Custom exceptions for the enrichment subsystem."""

from __future__ import annotations


class EnrichmentError(Exception):
    """Base class for enrichment failures."""

    pass


class ChunkNotFoundError(EnrichmentError, KeyError):
    """Raised when a chunk doesn't exist in the graph store.

    The queue runner treats this like any other research failure: the
    item is retried with backoff until it exhausts its attempts, and the
    orphan cleanup eventually removes it.
    """

    pass


class EnrichmentParseError(EnrichmentError):
    """Raised when the model's structured output cannot be parsed or validated."""

    pass


class LLMRequestError(EnrichmentError):
    """Raised when a request to the language model service fails."""

    pass


class FeatureDisabledError(EnrichmentError):
    """Raised when on-demand enrichment is requested while disabled."""

    pass


class ConfigurationError(EnrichmentError):
    """Raised when enrichment settings fail validation."""

    pass


class InvalidStateTransitionError(ValueError):
    """Raised when an invalid queue item state transition is attempted.

    This exception indicates a violation of the state machine's
    transition rules defined in VALID_TRANSITIONS.

    Example:
        Attempting to transition from COMPLETE to PROCESSING would
        raise this exception since an item must be re-queued first.
    """

    pass


class StateTransitionRaceError(RuntimeError):
    """Raised when optimistic locking detects a concurrent state modification.

    This occurs when a queue item's status changes between the time it was
    read and the time an update was attempted (the SQL WHERE clause on the
    expected status matched no row).
    """

    pass


class QueueItemNotFoundError(KeyError):
    """Raised when a queue item id doesn't exist in the store."""

    pass
