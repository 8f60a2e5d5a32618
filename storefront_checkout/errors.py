"""Error taxonomy for the checkout engine.

Recoverable failures travel as result models carrying an ``ErrorKind``.
The exceptions below are reserved for conditions that should interrupt the
in-flight operation: bad configuration, malformed backend responses and
misuse of the payment state machine.
"""

from enum import Enum


class ErrorKind(str, Enum):
    # local validation
    STOCK_EXCEEDED = "stock_exceeded"
    INVALID_QUANTITY = "invalid_quantity"
    ITEM_NOT_FOUND = "item_not_found"
    INVALID_FORMAT = "invalid_format"
    MISSING_ADDRESS = "missing_address"
    EMPTY_CART = "empty_cart"
    # coupon applicability
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    NOT_APPLICABLE = "not_applicable"
    ALREADY_APPLIED = "already_applied"
    COUPON_NO_LONGER_VALID = "coupon_no_longer_valid"
    # remote
    REMOTE_REJECTED = "remote_rejected"
    NETWORK = "network"
    AUTH_REQUIRED = "auth_required"
    # payment
    GATEWAY_FAILURE = "gateway_failure"
    VERIFICATION_FAILED = "verification_failed"
    TOTAL_MISMATCH = "total_mismatch"
    CANCELLED = "cancelled"
    SUBMISSION_IN_PROGRESS = "submission_in_progress"


SERVER_ERROR_MESSAGE = "Server error. Please try again later."
NETWORK_ERROR_MESSAGE = "Network error. Please check your connection and try again."
AUTH_REQUIRED_MESSAGE = "Authentication required"

MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.STOCK_EXCEEDED: "Only {stock} unit(s) of this item are available.",
    ErrorKind.INVALID_QUANTITY: "Quantity must be at least 1.",
    ErrorKind.ITEM_NOT_FOUND: "This item is no longer in your cart.",
    ErrorKind.INVALID_FORMAT: "Please enter a valid coupon code.",
    ErrorKind.MISSING_ADDRESS: "Please select a delivery address.",
    ErrorKind.EMPTY_CART: "Your cart is empty. Please add items to proceed.",
    ErrorKind.NOT_FOUND: "Invalid coupon code. Please try a valid code from the list.",
    ErrorKind.EXPIRED: "This coupon has expired.",
    ErrorKind.NOT_APPLICABLE: "Minimum order amount of ₹{minimum} required for this coupon.",
    ErrorKind.ALREADY_APPLIED: "Coupon {code} is already applied.",
    ErrorKind.COUPON_NO_LONGER_VALID: (
        "Coupon {code} is no longer valid for this cart. Remove it or add items to continue."
    ),
    ErrorKind.NETWORK: NETWORK_ERROR_MESSAGE,
    ErrorKind.AUTH_REQUIRED: AUTH_REQUIRED_MESSAGE,
    ErrorKind.TOTAL_MISMATCH: "Your order total has changed. Please review your cart and try again.",
    ErrorKind.CANCELLED: "Payment was cancelled. You can try again.",
    ErrorKind.SUBMISSION_IN_PROGRESS: "Your order is already being processed.",
}


def message_for(kind: ErrorKind, **params: object) -> str:
    """Render the user-facing message for an error kind."""
    template = MESSAGES.get(kind, kind.value.replace("_", " ").capitalize())
    return template.format(**params)


class CheckoutError(Exception):
    """Base exception for checkout errors."""
    pass


class ConfigurationError(CheckoutError):
    """Required configuration is missing or invalid."""


class MalformedResponseError(CheckoutError):
    """The backend answered with something that is not a valid envelope."""

    def __init__(self, endpoint: str, detail: str) -> None:
        super().__init__(f"Malformed response from {endpoint}: {detail}")
        self.endpoint = endpoint
        self.detail = detail


class InvalidTransitionError(CheckoutError):
    """A payment session was asked to move along an edge it does not have."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition payment session from {current} to {target}")
        self.current = current
        self.target = target
