"""
GlobalConnect — core/errors.py
─────────────────────────────────────────────────────────────────
Error taxonomy shared by every billing component.

Each error knows its HTTP status and a stable machine code, so
routes just let them propagate and main.py renders them as:

    {"error": "insufficient_balance", "detail": "..."}
─────────────────────────────────────────────────────────────────
"""


class BillingError(Exception):
    """Base exception for all business-rule and persistence failures."""

    status_code = 400
    code = "billing_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


# ── 400: business rules ──────────────────────
class InsufficientBalance(BillingError):
    code = "insufficient_balance"

class UnsupportedDestination(BillingError):
    code = "unsupported_destination"

class InvalidAmount(BillingError):
    code = "invalid_amount"

class InvalidProvider(BillingError):
    code = "invalid_provider"

class InvalidSignature(BillingError):
    code = "invalid_signature"

class InvalidPayload(BillingError):
    code = "invalid_payload"

class InvalidTransition(BillingError):
    code = "invalid_transition"

class CapacityExceeded(BillingError):
    code = "capacity_exceeded"

class CreditLimitExceeded(BillingError):
    code = "credit_limit_exceeded"


# ── 401 / 403 ────────────────────────────────
class Unauthenticated(BillingError):
    status_code = 401
    code = "unauthenticated"

class PermissionDenied(BillingError):
    status_code = 403
    code = "permission_denied"


# ── 404 / 409 ────────────────────────────────
class NotFound(BillingError):
    status_code = 404
    code = "not_found"

class AlreadySettled(BillingError):
    """Duplicate end-of-call or duplicate ledger reference."""
    status_code = 409
    code = "already_settled"

class Conflict(BillingError):
    status_code = 409
    code = "conflict"


# ── 5xx: infrastructure ──────────────────────
class ProviderError(BillingError):
    status_code = 502
    code = "provider_error"

class PersistenceFailure(BillingError):
    """Transient store failure that survived the adapter's retries."""
    status_code = 503
    code = "persistence_failure"
