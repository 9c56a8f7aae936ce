"""Error hierarchy for the generation pipeline.

This module defines the exception hierarchy for pipeline errors:
- ServiceError: Base for all service errors
- TransientProviderError: Retryable provider errors (network, rate limits, timeouts)
- ModelUnavailable: One model cannot serve requests (unknown model, bad credentials)
- PermanentProviderError: Non-retryable provider errors (policy rejection, bad input)
- QueueUnavailable: Queue infrastructure is down, aborts the current pass
- LedgerUnavailable: Job ledger could not be read or written for one job
- InvariantViolation: A bug signal, e.g. an illegal state transition
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class ProviderError(ServiceError):
    """Base exception for generation provider errors."""

    pass


class TransientProviderError(ProviderError):
    """Provider error that may succeed on another model or a later retry.

    Examples:
    - Network timeouts and connection resets
    - Rate limit exceeded (429)
    - Service unavailable (500, 502, 503, 504)
    - Provider returned no media in an otherwise successful response
    """

    pass


class ProviderTimeout(TransientProviderError):
    """Provider call exceeded its per-attempt timeout."""

    pass


class ModelUnavailable(TransientProviderError):
    """One model or provider cannot serve any request right now.

    Unknown or retired model ids (404), rejected or missing credentials
    (401/403). Another model in the chain may still succeed.
    """

    pass


class PermanentProviderError(ProviderError):
    """Provider error that will not succeed on retry or on another model.

    Examples:
    - Content policy rejection
    - Malformed or unsupported input (400)
    """

    pass


class QueueUnavailable(ServiceError):
    """Queue backend could not be reached. The pass is aborted, messages stay queued."""

    pass


class LedgerUnavailable(ServiceError):
    """Job ledger operation failed. The affected message is released for retry."""

    pass


class StorageError(ServiceError):
    """Artifact blob could not be written."""

    pass


class InvariantViolation(ServiceError):
    """Pipeline invariant broken (illegal transition, artifact mismatch).

    Always logged at error level. Never applied to the ledger.
    """

    pass
