"""Domain error taxonomy shared by the billing core"""

from typing import Optional


class BillingError(Exception):
    """Base class for errors raised by the billing core"""

    status_code = 400

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BillingError):
    """Bad input, illegal state transition or missing linkage"""

    status_code = 400


class NotFoundError(BillingError):
    """Subscription, plan, client or token does not exist (in the current tenant)"""

    status_code = 404

    def __init__(self, resource: str, identifier=None):
        message = f"{resource} not found" if identifier is None else f"{resource} {identifier} not found"
        super().__init__(message, {"resource": resource, "id": identifier})


class ConflictError(BillingError):
    """Duplicate active subscription or a lost optimistic lock"""

    status_code = 409

    ALREADY_EXISTS = "already_exists"
    LOST_RACE = "lost_race"

    def __init__(self, message: str, reason: str = ALREADY_EXISTS, details: Optional[dict] = None):
        super().__init__(message, details)
        self.reason = reason


class GatewayError(BillingError):
    """The payment provider call failed"""

    status_code = 502


class IdempotencyShortCircuit(BillingError):
    """Duplicate webhook delivery; callers treat it as a successful no-op"""

    status_code = 200


class TenantContextError(BillingError):
    """Data access attempted outside of (or across) a tenant scope"""

    status_code = 403
