"""Exceptions raised by payment services and translated to HTTP by the routes"""


class PaysyncError(Exception):
    """Base class for domain errors"""


class PaymentVerificationError(PaysyncError):
    """The gateway or billing service reported the payment as not successful"""

    def __init__(self, message: str, details: str = None):
        super().__init__(message)
        self.details = details


class ProviderAuthError(PaysyncError):
    """The provider rejected our credentials or permissions"""


class ProviderUnavailableError(PaysyncError):
    """Timeout, 5xx or transport failure talking to a provider; safe to retry"""


class ProviderNotConfiguredError(PaysyncError):
    """The provider client was not configured for this deployment"""


class TransactionAbortedError(PaysyncError):
    """A store transaction kept conflicting until the retry budget ran out"""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class ReferenceConflictError(PaysyncError):
    """The reference was already applied to a different account"""
