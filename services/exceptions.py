"""
Service Exceptions
==================
Error taxonomy shared by the line pool and billing services.

Every error carries a user-facing message and the HTTP status the routers
answer with, so a router can translate any of them with one handler.
"""


class LineServiceError(Exception):
    """Base class for every error raised by the service layer."""
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str = None, details: str = ""):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ResourceExhausted(LineServiceError):
    """No claimable line is left in the pool (or every candidate was taken)."""
    status_code = 409
    default_message = "No phone numbers are available right now. Please try again later."


class ProvisioningFailed(LineServiceError):
    """
    Linking a line failed.

    `state` tells what happened to the claim: "RolledBack" when the line went
    back to the pool, "Failed" when it is still held by the account.
    """
    status_code = 502
    default_message = "Could not connect a phone number. Please try again."

    def __init__(self, message: str = None, details: str = "", state: str = "Failed"):
        super().__init__(message, details)
        self.state = state


class DeprovisioningFailed(LineServiceError):
    """Unlinking a line failed; local state is untouched."""
    status_code = 502
    default_message = "Could not disconnect the phone number. Please try again."


class EventUnattributable(LineServiceError):
    """A billing event could not be matched to any account."""
    status_code = 200
    default_message = "Billing event could not be attributed to an account"


class TransientProviderLag(LineServiceError):
    """Provider returned an active subscription without its period bounds."""
    default_message = "Subscription period not yet populated by the provider"


class UpstreamUnavailable(LineServiceError):
    """A provider call failed or timed out."""
    status_code = 502
    default_message = "An upstream provider is unavailable. Please try again."


class NoAssignedLine(LineServiceError):
    status_code = 404
    default_message = "No phone number is assigned to this account"


class AccountNotFound(LineServiceError):
    status_code = 404
    default_message = "Account not found"


class InvalidBillingEvent(LineServiceError):
    """Webhook signature or payload was rejected."""
    status_code = 400
    default_message = "Invalid billing event"
