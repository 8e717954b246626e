"""
Subscription lifecycle exceptions

Facade errors carry a stable code that route handlers return to callers.
Provider errors are raised by billing gateways and never leave the service layer.
"""


class SubscriptionError(Exception):
    """Base class for errors surfaced to facade callers"""

    code = "SUBSCRIPTION_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class NoActiveSubscription(SubscriptionError):
    """Action requires a paid subscription but none exists"""

    code = "NO_ACTIVE_SUBSCRIPTION"


class InvalidTierOrInterval(SubscriptionError):
    code = "INVALID_TIER_OR_INTERVAL"


class AlreadyAtTargetTier(SubscriptionError):
    code = "ALREADY_AT_TARGET_TIER"
    http_status = 409


class ActionNotApplicable(SubscriptionError):
    """Action is valid in general but not in the record's current state"""

    code = "ACTION_NOT_APPLICABLE"
    http_status = 409


class ProviderUnavailable(SubscriptionError):
    """Billing provider failed transiently; the caller decides whether to retry"""

    code = "PROVIDER_UNAVAILABLE"
    http_status = 503


class BillingActionFailed(SubscriptionError):
    """Provider rejected the request (not retryable as-is)"""

    code = "BILLING_ACTION_FAILED"
    http_status = 402


class RecordNotFound(SubscriptionError):
    code = "RECORD_NOT_FOUND"
    http_status = 404


# ========== Provider (gateway) errors ==========

class ProviderError(Exception):
    """Non-transient billing provider failure"""


class ProviderNotFound(ProviderError):
    """Provider has no such object (e.g. deleted out of band)"""


class ProviderTransientError(ProviderError):
    """Timeout, connection error, rate limit or provider 5xx"""


# ========== Persistence / webhook boundary ==========

class VersionConflict(Exception):
    """Stored record changed between read and write"""


class SignatureVerificationFailed(Exception):
    """Webhook payload failed signature verification"""
