"""
Error taxonomy for billing and subscription operations.

Every error carries the HTTP status it maps to; the handlers registered in
``app.main`` serialize them as ``{"error": message}``.
"""


class BillingError(Exception):
    """Base class for errors surfaced at the HTTP boundary."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Missing or malformed request fields."""
    status_code = 400


class NotFoundError(BillingError):
    """Restaurant or subscription absent."""
    status_code = 404


class ConflictError(BillingError):
    """The requested transition does not apply to the current state."""
    status_code = 400


class UpstreamBillingError(BillingError):
    """The payment provider call failed; its message is passed through."""
    status_code = 500


class SignatureVerificationError(BillingError):
    """Webhook signature did not verify. Raised before any state mutation."""
    status_code = 400


class InvalidPlan(ValidationError):
    def __init__(self, plan_id: str | None = None):
        super().__init__("Invalid plan")
        self.plan_id = plan_id


class MissingCustomerId(ValidationError):
    def __init__(self):
        super().__init__("Customer ID required")


class InvalidFormat(ValidationError):
    def __init__(self, message: str = "Invalid subscription ID format"):
        super().__init__(message)


class InvalidPlanConfiguration(ValidationError):
    def __init__(self):
        super().__init__("Invalid plan configuration")


class NoPendingChange(ConflictError):
    def __init__(self):
        super().__init__("No pending plan change found")


class NoActiveSubscription(ConflictError):
    def __init__(self):
        super().__init__("No active subscription found")


class NotConfigured(ConflictError):
    def __init__(self):
        super().__init__("No metered billing configured")
