"""Checkout error codes and the few exceptions that cross module seams.

Terminal outcomes carry one of the `error_code` strings below; exceptions are
only raised where a caller has to react to them.
"""

USER_CANCELLED = "USER_CANCELLED"
GATEWAY_ERROR = "GATEWAY_ERROR"
GATEWAY_REFERENCE_MISMATCH = "GATEWAY_REFERENCE_MISMATCH"
VERIFICATION_UNREACHABLE = "VERIFICATION_UNREACHABLE"
VERIFICATION_REJECTED = "VERIFICATION_REJECTED"
INTERNAL_FAULT = "INTERNAL_FAULT"


class PaymentInProgressError(RuntimeError):
    """A checkout was started while the previous attempt is still in flight."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"payment {reference} is still in progress")
        self.reference = reference


class GatewayError(Exception):
    """The hosted checkout failed before producing an approval or dismissal."""


class VerificationUnreachable(Exception):
    """The verification authority gave no usable answer."""
