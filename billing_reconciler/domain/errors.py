"""Exception hierarchy shared by the billing services and API routers."""

from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class MissingSignatureError(BillingError):
    status_code = 400


class InvalidSignatureError(BillingError):
    status_code = 401


class InvalidBillingRequestError(BillingError):
    status_code = 400


class SubscriptionNotFoundError(BillingError):
    status_code = 404


class SubscriptionConflictError(BillingError):
    status_code = 409


class PaymentProviderError(BillingError):
    """A payment provider call failed; ``status_code`` reflects the provider error class."""

    status_code = 502


class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration is missing."""
