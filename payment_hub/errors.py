from enum import Enum
from typing import Any, Optional


class FailureReason(str, Enum):
    VALIDATION = "validation"
    TRANSPORT = "transport"
    PROCESSOR_REJECTED = "processor_rejected"
    UNRECOGNIZED_RESPONSE = "unrecognized_response"
    AUTHENTICITY = "authenticity"


class PaymentHubError(Exception):
    """Base class for failures raised inside hub components."""

    reason: FailureReason

    def __init__(self, message: str, raw: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.raw = raw


class ValidationError(PaymentHubError):
    """Malformed or missing input, rejected before any network call"""

    reason = FailureReason.VALIDATION


class TransportError(PaymentHubError):
    """Network error, timeout or non-2xx answer from the processor"""

    reason = FailureReason.TRANSPORT


class ProcessorRejectedError(PaymentHubError):
    """The processor answered with its own error envelope"""

    reason = FailureReason.PROCESSOR_REJECTED


class UnrecognizedResponseShapeError(PaymentHubError):
    """The processor answered with a shape the hub does not know; raw holds the body"""

    reason = FailureReason.UNRECOGNIZED_RESPONSE


class AuthenticityError(PaymentHubError):
    """Signature or shared-secret mismatch on an inbound notification"""

    reason = FailureReason.AUTHENTICITY

