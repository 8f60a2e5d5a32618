"""Checkout session: cart, coupon, totals and order submission wired together."""

import logging
from typing import Callable, Optional

import httpx

from .auth import AuthManager
from .cart import CartLoadResult, CartStore
from .config import CheckoutConfig
from .coupons import CouponManager, CouponResult
from .gateway import PaymentGateway
from .guest_cart import GuestCartBridge
from .models import Address, AvailableCoupon, CartSnapshot, OrderTotals, PaymentMethod
from .payments import PaymentOrchestrator, PaymentOutcome
from .pricing import TotalsTracker
from .storage import LocalStore
from .storefront_client import StorefrontClient

logger = logging.getLogger(__name__)


class CheckoutSession:
    """
    One shopper's checkout.

    Totals are recomputed whenever the cart, the coupon or the payment
    method changes, and once more right before the order is submitted.
    """

    def __init__(
        self,
        config: CheckoutConfig,
        client: StorefrontClient,
        gateway: PaymentGateway,
        store: Optional[LocalStore] = None,
        navigate: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config
        self.client = client
        self.store = store
        self.cart = CartStore(client, store)
        self.coupons = CouponManager(client)
        self.tracker = TotalsTracker(config.pricing)
        self.payments = PaymentOrchestrator(
            client,
            gateway,
            coupons=self.coupons,
            cart=self.cart,
            store=store,
            currency=config.currency,
            gateway_key_id=config.gateway_key_id,
            merchant_name=config.merchant_name,
            gateway_timeout_seconds=config.gateway_timeout_seconds,
            redirect_delay_seconds=config.redirect_delay_seconds,
            navigate=navigate,
        )
        self.address: Optional[Address] = None
        self.payment_method = PaymentMethod.PREPAID

        self._unsubscribe = self.cart.subscribe(self._on_cart_changed)
        self._recompute()

    @classmethod
    def from_config(
        cls,
        config: CheckoutConfig,
        gateway: PaymentGateway,
        auth_manager: Optional[AuthManager] = None,
        navigate: Optional[Callable[[str], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CheckoutSession":
        auth_manager = auth_manager or AuthManager()
        client = StorefrontClient.from_config(config, auth_manager, transport=transport)
        store = LocalStore(config.storage_dir)
        return cls(config, client, gateway, store=store, navigate=navigate)

    def guest_bridge(self, auth_manager: AuthManager) -> GuestCartBridge:
        if self.store is None:
            raise ValueError("A local store is required for the guest cart")
        return GuestCartBridge(self.client, auth_manager, self.store, cart=self.cart)

    @property
    def snapshot(self) -> CartSnapshot:
        return self.cart.snapshot

    @property
    def totals(self) -> OrderTotals:
        if not self.tracker.is_current() or self.tracker.totals is None:
            return self._recompute()
        return self.tracker.totals

    def _recompute(self) -> OrderTotals:
        return self.tracker.recompute(self.cart.snapshot, self.coupons.active, self.payment_method)

    def _on_cart_changed(self, snapshot: CartSnapshot) -> None:
        if snapshot.is_empty and self.coupons.active is not None:
            logger.info(f"Cart emptied, dropping coupon {self.coupons.active.code}")
            self.coupons.restore(None)
        self._recompute()

    async def load(self) -> CartLoadResult:
        """Cold start: adopt the remote cart and whatever coupon is attached to it."""
        result = await self.cart.fetch_cart()
        if result.success:
            self.coupons.restore(result.coupon)
            self._recompute()
        return result

    async def sync_external_changes(self) -> bool:
        """Pick up cart and coupon changes made by another process."""
        refreshed = await self.cart.sync_external_changes()
        if refreshed:
            self.coupons.restore(self.cart.applied_coupon)
            self._recompute()
        return refreshed

    def select_address(self, address: Optional[Address]) -> None:
        self.address = address

    def select_payment_method(self, method: PaymentMethod) -> OrderTotals:
        self.payment_method = method
        return self._recompute()

    async def apply_coupon(self, code: str) -> CouponResult:
        result = await self.coupons.apply(code, self.cart.snapshot)
        if result.success:
            await self._refresh_after_coupon_change()
        return result

    async def remove_coupon(self) -> CouponResult:
        result = await self.coupons.remove()
        await self._refresh_after_coupon_change()
        return result

    async def _refresh_after_coupon_change(self) -> None:
        loaded = await self.cart.fetch_cart()
        if not loaded.success:
            logger.warning(f"Cart refresh after coupon change failed: {loaded.message}")
        self._recompute()

    async def available_coupons(self) -> list[AvailableCoupon]:
        return await self.coupons.list_available(self.cart.snapshot)

    async def place_order(self) -> PaymentOutcome:
        """Recompute totals from the latest inputs and submit the order."""
        totals = self._recompute()
        return await self.payments.submit(
            self.address, self.cart.snapshot, totals, self.payment_method
        )

    async def close(self) -> None:
        self._unsubscribe()
        await self.client.close()
