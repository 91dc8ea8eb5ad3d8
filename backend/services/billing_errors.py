"""Billing error taxonomy.

Every billing failure surfaces as a BillingError subclass carrying a stable
code, a human-readable message and the HTTP status the API responds with.
The FastAPI handler in server.py renders them as:

    {"success": false, "error": {"code": ..., "message": ..., "details": ...}}

Propagation rules:
- Validation and price resolution errors are raised before any Stripe call
- Stripe failures are mapped once, in services/stripe_client.py
- A ProviderTimeoutError means the outcome is unknown, callers must reconcile
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for all billing errors."""

    code = "BILLING_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(BillingError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidPriceError(BillingError):
    """Price id is malformed, unresolvable at checkout, or has the wrong billing mode."""
    code = "INVALID_PRICE"
    status_code = 400


class NotFoundError(BillingError):
    code = "NOT_FOUND"
    status_code = 404


class UnknownPriceError(NotFoundError):
    code = "UNKNOWN_PRICE"


class AlreadySubscribedError(BillingError):
    code = "ALREADY_SUBSCRIBED"
    status_code = 409


class ConflictError(BillingError):
    code = "CONFLICT"
    status_code = 409


class InsufficientCreditsError(BillingError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402


class AccountDisputedError(BillingError):
    """A payment dispute is open on the account; credit usage is frozen."""
    code = "ACCOUNT_DISPUTED"
    status_code = 403


class ProviderError(BillingError):
    """Stripe rejected or failed the call.

    status_code is the provider's own 4xx when it blames the request,
    otherwise 502.
    """
    code = "PROVIDER_ERROR"
    status_code = 502


class ProviderTimeoutError(ProviderError):
    code = "PROVIDER_TIMEOUT"
    status_code = 504


class InternalError(BillingError):
    code = "INTERNAL_ERROR"
    status_code = 500


class PriceConfigurationError(Exception):
    """Plan/pack configuration is inconsistent. Raised at startup, never at request time."""
