"""
Dispatch Error Taxonomy
Exceptions raised by the outbound contact core.
"""
from typing import Optional


class DispatchError(Exception):
    """Base class for outbound contact errors."""

    default_message = "Dispatch error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class RateLimitDeferred(DispatchError):
    """
    Tenant quota or concurrency gate exhausted.

    Soft condition: the caller should retry later. No attempt is recorded.
    """

    default_message = "Rate limit reached"


class InvalidParameters(DispatchError):
    """Caller supplied missing or malformed parameters. No attempt is recorded."""

    default_message = "Missing required parameters"


class LeadNotFoundError(InvalidParameters):
    """Lead does not exist or belongs to another tenant."""

    default_message = "Lead not found"


class InvalidTenantConfig(DispatchError):
    """Tenant dispatch configuration is missing or incomplete."""

    default_message = "Invalid tenant configuration"


class DispatchFailed(DispatchError):
    """Provider rejected the send. The attempt is recorded as failed."""

    default_message = "Provider rejected the message"


class OriginationFailed(DispatchError):
    """AMI session or Originate command failed. The CallLog is marked failed."""

    default_message = "AMI connection failed"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ReconciliationMismatch(DispatchError):
    """A status callback referenced an unknown attempt."""

    default_message = "No attempt matches the external id"


class InvalidStatusTransition(DispatchError):
    """A call status update would move a CallLog backwards or out of a terminal state."""

    default_message = "Invalid status transition"


class CallNotFoundError(InvalidParameters):
    """CallLog does not exist or belongs to another tenant."""

    default_message = "Call log not found"
