"""
Billing error taxonomy. Every error carries a message that is safe to show to the
caller; views turn them into JSON responses using status_code and code.
"""


class BillingError(Exception):
    """Base class. message is safe to show to the user."""

    status_code = 400
    code = "BILLING_ERROR"

    def __init__(self, message: str, context: dict = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class PurchaseValidationError(BillingError):
    """Bad or missing input, carrier mismatch, inactive bundle. Never retried."""

    code = "VALIDATION_ERROR"


class WalletError(BillingError):
    """Wallet operation rejected. Nothing was written."""

    code = "WALLET_ERROR"


class InsufficientFunds(WalletError):
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, required, available):
        self.required = required
        self.available = available
        super().__init__(
            "Insufficient wallet balance.",
            context={
                "required": str(required),
                "available": str(available),
                "shortfall": str(required - available),
            },
        )


class WebhookAuthenticationError(BillingError):
    """Signature mismatch. Details are logged, never returned."""

    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Invalid signature."):
        super().__init__(message)


class ProviderError(BillingError):
    """Payment or delivery gateway failed. phase is "payment" or "delivery"."""

    status_code = 502
    code = "PROVIDER_ERROR"

    def __init__(self, message: str, phase: str, context: dict = None):
        self.phase = phase
        super().__init__(message, context={"phase": phase, **(context or {})})


class ConcurrencyConflict(BillingError):
    status_code = 503
    code = "CONCURRENCY_CONFLICT"

    def __init__(self, message: str = "This order is being updated. Please try again."):
        super().__init__(message)


class NotFound(BillingError):
    status_code = 404
    code = "NOT_FOUND"


class DuplicateLedgerReference(WalletError):
    """A ledger entry with this reference already exists."""

    status_code = 409
    code = "DUPLICATE_REFERENCE"
