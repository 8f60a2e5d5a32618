"""Order total computation."""

import logging
from decimal import Decimal
from typing import Optional

from .config import PricingPolicy
from .models import (
    CartSnapshot,
    Coupon,
    CouponKind,
    OrderTotals,
    PaymentMethod,
    to_money,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def coupon_discount(coupon: Optional[Coupon], subtotal: Decimal) -> Decimal:
    """Discount a coupon grants on a subtotal; zero when it does not apply."""
    if coupon is None or not coupon.is_applicable(subtotal):
        return ZERO

    if coupon.kind is CouponKind.FIXED:
        discount = min(coupon.value, subtotal)
    else:
        discount = subtotal * coupon.value / 100
        if coupon.max_discount_amount is not None:
            discount = min(discount, coupon.max_discount_amount)
        discount = min(discount, subtotal)

    return to_money(max(discount, ZERO))


def payment_adjustment(
    method: PaymentMethod, subtotal: Decimal, policy: PricingPolicy
) -> Decimal:
    """Signed contribution of the payment method: negative discount, positive surcharge."""
    if method is PaymentMethod.PREPAID:
        return -to_money(subtotal * policy.prepaid_discount_rate)
    return to_money(policy.cod_surcharge)


def shipping_fee(subtotal: Decimal, policy: PricingPolicy) -> Decimal:
    if subtotal >= policy.free_shipping_threshold:
        return ZERO
    return to_money(policy.flat_shipping_fee)


def compute_totals(
    snapshot: CartSnapshot,
    coupon: Optional[Coupon],
    payment_method: PaymentMethod,
    policy: Optional[PricingPolicy] = None,
) -> OrderTotals:
    """
    Compute order totals for a cart, an optional coupon and a payment method.

    Pure: the same inputs always give the same totals. The total is clamped
    at zero.
    """
    policy = policy or PricingPolicy()

    subtotal = to_money(snapshot.subtotal)
    product_discount = to_money(
        max(sum((item.line_savings for item in snapshot.items), ZERO), ZERO)
    )
    discount = coupon_discount(coupon, subtotal)
    adjustment = payment_adjustment(payment_method, subtotal, policy)
    shipping = shipping_fee(subtotal, policy)

    total = subtotal - discount + adjustment + shipping
    if policy.deduct_product_discount:
        total -= product_discount

    return OrderTotals(
        subtotal=subtotal,
        product_discount=product_discount,
        coupon_discount=discount,
        payment_adjustment=adjustment,
        shipping_fee=shipping,
        total=to_money(max(total, ZERO)),
    )


class TotalsTracker:
    """
    Keeps the totals computed from the most recent inputs.

    Every input change takes a new revision. A result is only published if it
    was computed for the newest revision, so a slow computation for
    superseded inputs can never overwrite a newer one.
    """

    def __init__(self, policy: Optional[PricingPolicy] = None) -> None:
        self.policy = policy or PricingPolicy()
        self._revision = 0
        self._published_revision = -1
        self._totals: Optional[OrderTotals] = None

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def totals(self) -> Optional[OrderTotals]:
        return self._totals

    def is_current(self) -> bool:
        """True when the published totals reflect the latest inputs."""
        return self._published_revision == self._revision

    def invalidate(self) -> int:
        """Mark inputs as changed and return the revision of the new inputs."""
        self._revision += 1
        return self._revision

    def publish(self, revision: int, totals: OrderTotals) -> bool:
        if revision != self._revision:
            logger.debug(f"Discarding totals for stale revision {revision} (latest {self._revision})")
            return False
        self._totals = totals
        self._published_revision = revision
        return True

    def recompute(
        self,
        snapshot: CartSnapshot,
        coupon: Optional[Coupon],
        payment_method: PaymentMethod,
    ) -> OrderTotals:
        revision = self.invalidate()
        totals = compute_totals(snapshot, coupon, payment_method, self.policy)
        self.publish(revision, totals)
        return totals
