"""Error taxonomy shared by the ledger, state machines, and HTTP layers."""


class CreditflowError(Exception):
    """Base class for all domain errors."""


class ValidationError(CreditflowError):
    """Malformed input; rejected immediately and never retried."""


class SignatureVerificationError(ValidationError):
    """Webhook signature header is missing, malformed, stale, or wrong."""


class PayloadError(ValidationError):
    """Webhook body does not match the expected provider shape."""


class ConflictError(CreditflowError):
    """Operation conflicts with current state; expected and non-fatal."""


class InvalidTransition(ConflictError):
    """Requested state change is not allowed by the state machine."""


class ConcurrencyConflict(ConflictError):
    """A guarded write lost a race against a concurrent writer."""


class RetryLimitExceeded(ConflictError):
    """A generation has already been retried the maximum number of times."""


class NotFoundError(CreditflowError):
    """Referenced entity does not exist."""


class DependencyError(CreditflowError):
    """Backing store (or another dependency) is unavailable."""
