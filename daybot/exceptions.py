"""
Exception hierarchy for the daily execution engine.

Hierarchy:

    TradingSystemError (base)
    ├── ConfigurationError  : missing credentials / settings, fatal for the call
    ├── OperationalError    : transient/retryable (broker, market data, network)
    │   └── UpstreamUnavailable
    │       ├── AuthenticationError
    │       └── RateLimitError
    ├── DataError           : bad input, abort the current step
    │   ├── ValidationError
    │   │   ├── InsufficientFunds
    │   │   └── NoReferencePrice
    │   ├── OrderRejected
    │   └── ReconciliationMismatch
    └── ConcurrencyConflict : another caller won a conditional write

Rules:
    - ConfigurationError: surface as 5xx, never retry.
    - UpstreamUnavailable: retry with a bounded policy where a fresh attempt is
      meaningful (recommendation, order submission), otherwise skip the step
      and release any claim held.
    - ValidationError: abort the entry attempt, release the claim, keep the
      message as a diagnostic reason.
    - ReconciliationMismatch: never escapes a fill handler; the event is
      dropped with a logged reason.
    - ConcurrencyConflict: a normal no-op outcome, not a failure.
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""


class TradingSystemError(Exception):
    """Base exception for all daybot errors."""
    pass


class ConfigurationError(TradingSystemError):
    """Required configuration (credentials, secrets, URLs) is missing."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradingSystemError):
    """Transient/retryable error: broker API, network, timeouts."""
    pass


class UpstreamUnavailable(OperationalError):
    """A collaborator timed out or answered with a non-2xx status.

    Attributes:
        status: HTTP status when one was received, else None.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(UpstreamUnavailable):
    """Collaborator rejected our credentials (401/403).

    Retrying will not help; callers should surface it rather than loop.
    """
    pass


class RateLimitError(UpstreamUnavailable):
    """Collaborator rate limit exceeded (429)."""
    pass


# ============ DATA (bad input, abort step) ============

class DataError(TradingSystemError):
    """Bad or insufficient data for the current step."""
    pass


class ValidationError(DataError):
    """Input failed validation (no price, no shares, malformed payload)."""
    pass


class InsufficientFunds(ValidationError):
    """Available cash/budget does not cover a single share."""
    pass


class NoReferencePrice(ValidationError):
    """No snapshot, recommendation or quote price could be resolved."""
    pass


class OrderRejected(DataError):
    """The venue refused an order (business rejection, not transport)."""
    pass


class ReconciliationMismatch(DataError):
    """A fill references no known position and cannot be adopted."""
    pass


class ConcurrencyConflict(TradingSystemError):
    """A conditional write lost to a concurrent writer.

    Treatment: log and return the no-op outcome.
    """
    pass
