"""Checkout pricing, coupon, cart sync and payment orchestration for the storefront."""

from .cart import CartStore, MutationResult, MutationStatus
from .checkout import CheckoutSession
from .config import CheckoutConfig, PricingPolicy
from .coupons import CouponManager, CouponResult
from .errors import CheckoutError, ErrorKind
from .gateway import GatewaySession, HostedCheckoutGateway, PaymentGateway
from .guest_cart import GuestCartBridge
from .models import (
    Address,
    CartLineItem,
    CartSnapshot,
    Coupon,
    CouponKind,
    OrderTotals,
    PaymentMethod,
    PaymentState,
)
from .payments import PaymentOrchestrator, PaymentOutcome
from .pricing import compute_totals
from .storefront_client import StorefrontClient

__version__ = "0.1.0"

__all__ = [
    "Address",
    "CartLineItem",
    "CartSnapshot",
    "CartStore",
    "CheckoutConfig",
    "CheckoutError",
    "CheckoutSession",
    "Coupon",
    "CouponKind",
    "CouponManager",
    "CouponResult",
    "ErrorKind",
    "GatewaySession",
    "GuestCartBridge",
    "HostedCheckoutGateway",
    "MutationResult",
    "MutationStatus",
    "OrderTotals",
    "PaymentGateway",
    "PaymentMethod",
    "PaymentOrchestrator",
    "PaymentOutcome",
    "PaymentState",
    "PricingPolicy",
    "StorefrontClient",
    "compute_totals",
]
