"""
Exception taxonomy for the subscription lifecycle.

User-facing errors are terminal for the request. Retryable errors signal a
transient infrastructure failure that the caller may retry.
"""


# ============================================================================
# User-facing errors
# ============================================================================

class SubscriptionError(Exception):
    """Base class for all subscription lifecycle errors."""
    pass


class ValidationError(SubscriptionError):
    """Raised when an email address or site ID is malformed."""
    pass


class NotFound(SubscriptionError):
    """Raised when a confirm request targets an unknown subscriber record."""
    pass


class InvalidToken(SubscriptionError):
    """Raised when a confirmation token does not match the record's commitment."""
    pass


class StaleGeneration(InvalidToken):
    """Raised when a token was issued for a superseded token generation."""
    pass


# ============================================================================
# Retryable / infrastructure errors
# ============================================================================

class RetryableError(SubscriptionError):
    """Raised for transient failures; the caller may retry the request."""
    pass


class StoreUnavailable(RetryableError):
    """Raised when the subscriber table is throttled, unreachable or erroring."""
    pass


class NotifierUnavailable(RetryableError):
    """Raised when a confirmation request could not be handed to the dispatcher."""
    pass


# ============================================================================
# Internal errors
# ============================================================================

class GenerationConflict(Exception):
    """Raised by the store when a conditional upsert lost a race for its key."""
    pass


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass
