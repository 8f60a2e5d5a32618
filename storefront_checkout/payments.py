"""Order submission and the prepaid payment handshake."""

import asyncio
import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from .cart import CartStore
from .coupons import CouponManager
from .errors import (
    SERVER_ERROR_MESSAGE,
    ErrorKind,
    InvalidTransitionError,
    MalformedResponseError,
    message_for,
)
from .gateway import (
    GatewayCheckoutRequest,
    GatewayOutcome,
    GatewayResult,
    GatewaySession,
    PaymentGateway,
    Prefill,
)
from .models import (
    Address,
    ApiResponse,
    CartSnapshot,
    OrderTotals,
    PaymentMethod,
    PaymentSession,
    PaymentState,
    RemotePaymentOrder,
)
from .storage import LocalStore
from .storefront_client import StorefrontClient

logger = logging.getLogger(__name__)

TRANSITIONS: dict[PaymentState, frozenset[PaymentState]] = {
    PaymentState.IDLE: frozenset({PaymentState.CREATING_REMOTE_ORDER}),
    PaymentState.CREATING_REMOTE_ORDER: frozenset(
        {PaymentState.AWAITING_GATEWAY_RESULT, PaymentState.COMPLETED, PaymentState.FAILED}
    ),
    PaymentState.AWAITING_GATEWAY_RESULT: frozenset(
        {PaymentState.VERIFYING_AND_FINALIZING, PaymentState.FAILED, PaymentState.CANCELLED}
    ),
    PaymentState.VERIFYING_AND_FINALIZING: frozenset(
        {PaymentState.COMPLETED, PaymentState.FAILED}
    ),
    PaymentState.COMPLETED: frozenset({PaymentState.IDLE}),
    PaymentState.FAILED: frozenset({PaymentState.IDLE}),
    PaymentState.CANCELLED: frozenset({PaymentState.IDLE}),
}


class PaymentOutcome(BaseModel):
    """Result of one order submission."""

    success: bool
    state: PaymentState
    message: str = ""
    error: Optional[ErrorKind] = None
    order_number: Optional[str] = None


def _order_number(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    order = data.get("order") if isinstance(data.get("order"), dict) else data
    number = order.get("order_number") or order.get("orderNumber")
    return str(number) if number is not None else None


class RedirectCountdown:
    """
    Navigates to a target after a fixed delay unless the user leaves first.

    ``navigate_now`` short-circuits the wait; ``cancel`` drops it. Without a
    ``navigate`` callback the window still runs and only marks itself fired.
    """

    def __init__(
        self,
        delay: float,
        navigate: Optional[Callable[[str], None]] = None,
        target: str = "/",
    ) -> None:
        self.delay = delay
        self.navigate = navigate
        self.target = target
        self.fired = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._handle is None and not self.fired:
            self._handle = asyncio.get_running_loop().call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.navigate_now()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def navigate_now(self, path: Optional[str] = None) -> None:
        self.cancel()
        if self.fired:
            return
        self.fired = True
        if self.navigate is not None:
            self.navigate(path or self.target)


class PaymentOrchestrator:
    """
    Drives an order from submission to a terminal state.

    Prepaid: IDLE → CREATING_REMOTE_ORDER → AWAITING_GATEWAY_RESULT →
    VERIFYING_AND_FINALIZING → COMPLETED, with FAILED and CANCELLED exits.
    Cash on delivery: IDLE → CREATING_REMOTE_ORDER → COMPLETED in one call.

    Terminal sessions go back to IDLE on the next submission. Nothing is
    retried automatically.
    """

    def __init__(
        self,
        client: StorefrontClient,
        gateway: PaymentGateway,
        coupons: Optional[CouponManager] = None,
        cart: Optional[CartStore] = None,
        store: Optional[LocalStore] = None,
        *,
        currency: str = "INR",
        gateway_key_id: Optional[str] = None,
        merchant_name: str = "",
        gateway_timeout_seconds: int = 900,
        redirect_delay_seconds: float = 5.0,
        navigate: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.client = client
        self.gateway = gateway
        self.coupons = coupons
        self.cart = cart
        self.store = store
        self.currency = currency
        self.gateway_key_id = gateway_key_id
        self.merchant_name = merchant_name
        self.gateway_timeout_seconds = gateway_timeout_seconds
        self.redirect_delay_seconds = redirect_delay_seconds
        self.navigate = navigate

        self._session = PaymentSession()
        self._gateway_session: Optional[GatewaySession] = None
        self.countdown: Optional[RedirectCountdown] = None

    @property
    def session(self) -> PaymentSession:
        return self._session

    @property
    def state(self) -> PaymentState:
        return self._session.state

    @property
    def gateway_session(self) -> Optional[GatewaySession]:
        return self._gateway_session

    def _transition(self, target: PaymentState, **changes: Any) -> None:
        current = self._session.state
        if target not in TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        logger.info(f"Payment session {current.value} -> {target.value}")
        self._session = self._session.model_copy(update={"state": target, **changes})

    def _finish(self, target: PaymentState, error: Optional[ErrorKind], message: str) -> PaymentOutcome:
        self._transition(target, failure_reason=message)
        return PaymentOutcome(success=False, state=target, error=error, message=message)

    def reset(self) -> None:
        """Return a terminal session to IDLE so a new submission can start."""
        if self._session.state is PaymentState.IDLE:
            return
        self._transition(PaymentState.IDLE)
        self._session = PaymentSession()
        self._gateway_session = None
        if self.countdown is not None:
            self.countdown.cancel()
            self.countdown = None

    def _reject(self, kind: ErrorKind, message: Optional[str] = None, **params: object) -> PaymentOutcome:
        return PaymentOutcome(
            success=False,
            state=self._session.state,
            error=kind,
            message=message or message_for(kind, **params),
        )

    async def submit(
        self,
        address: Optional[Address],
        snapshot: CartSnapshot,
        totals: OrderTotals,
        payment_method: PaymentMethod,
    ) -> PaymentOutcome:
        """
        Submit an order.

        Local validation failures (missing address, empty cart, coupon no
        longer valid) leave the session in IDLE. Backend and gateway failures
        end in FAILED with the backend's message kept verbatim; a dismissed
        or timed-out gateway ends in CANCELLED.
        """
        state = self._session.state
        if not (state is PaymentState.IDLE or state.is_terminal):
            return self._reject(ErrorKind.SUBMISSION_IN_PROGRESS)
        self.reset()

        if address is None:
            return self._reject(ErrorKind.MISSING_ADDRESS)
        if snapshot.is_empty:
            return self._reject(ErrorKind.EMPTY_CART)

        coupon_code = None
        if self.coupons is not None:
            check = self.coupons.revalidate(snapshot)
            if not check.success:
                return self._reject(ErrorKind.COUPON_NO_LONGER_VALID, message=check.message)
            coupon_code = check.coupon.code if check.coupon else None

        if payment_method is PaymentMethod.PREPAID and totals.total_minor_units <= 0:
            return self._reject(
                ErrorKind.GATEWAY_FAILURE,
                message="Order total must be greater than zero for online payment.",
            )

        self._transition(PaymentState.CREATING_REMOTE_ORDER, payment_method=payment_method)
        self._save_order_in_progress(address, snapshot, totals, payment_method, coupon_code)

        try:
            if payment_method is PaymentMethod.CASH_ON_DELIVERY:
                return await self._place_cash_on_delivery(address, coupon_code)
            return await self._run_handshake(address, totals, coupon_code)
        except MalformedResponseError:
            if not self._session.state.is_terminal:
                self._transition(PaymentState.FAILED, failure_reason=SERVER_ERROR_MESSAGE)
            raise

    async def _place_cash_on_delivery(
        self, address: Address, coupon_code: Optional[str]
    ) -> PaymentOutcome:
        response = await self.client.create_order(
            address.id, PaymentMethod.CASH_ON_DELIVERY, coupon_code
        )
        if not response.success:
            return self._finish(
                PaymentState.FAILED, ErrorKind.REMOTE_REJECTED, response.message or SERVER_ERROR_MESSAGE
            )

        order_number = _order_number(response.data)
        if order_number is None:
            raise MalformedResponseError("/orders", "order number missing")
        return self._complete(order_number, response)

    async def _run_handshake(
        self, address: Address, totals: OrderTotals, coupon_code: Optional[str]
    ) -> PaymentOutcome:
        response = await self.client.create_payment_order(address.id, coupon_code)
        if not response.success:
            return self._finish(
                PaymentState.FAILED, ErrorKind.REMOTE_REJECTED, response.message or SERVER_ERROR_MESSAGE
            )

        try:
            remote = RemotePaymentOrder.model_validate(response.data)
        except ValidationError as e:
            raise MalformedResponseError("/payments/create-order", str(e)) from e

        amount = totals.total_minor_units
        if remote.amount is not None and remote.amount != amount:
            logger.warning(
                f"Backend order amount {remote.amount} differs from computed total {amount}"
            )
            return self._finish(
                PaymentState.FAILED, ErrorKind.TOTAL_MISMATCH, message_for(ErrorKind.TOTAL_MISMATCH)
            )

        request = GatewayCheckoutRequest(
            remote_order_id=remote.remote_order_id,
            amount=amount,
            currency=remote.currency or self.currency,
            key_id=remote.key_id or self.gateway_key_id,
            merchant_name=self.merchant_name,
            description=f"Order #{remote.internal_order_id}",
            prefill=Prefill(
                name=address.full_name or None,
                email=address.email,
                contact=address.phone,
            ),
            notes={"address_id": address.id, "coupon_code": coupon_code},
            timeout_seconds=self.gateway_timeout_seconds,
        )

        self._transition(
            PaymentState.AWAITING_GATEWAY_RESULT,
            remote_order_id=remote.remote_order_id,
            internal_order_id=remote.internal_order_id,
        )
        gateway_session = self.gateway.create_session(request)
        self._gateway_session = gateway_session
        self.gateway.open(gateway_session)

        result = await gateway_session.wait()
        return await self._on_gateway_result(result)

    async def _on_gateway_result(self, result: GatewayResult) -> PaymentOutcome:
        if result.outcome is GatewayOutcome.DISMISSED:
            logger.info(f"Gateway dismissed (timed_out={result.timed_out})")
            return self._finish(
                PaymentState.CANCELLED, ErrorKind.CANCELLED, result.reason or message_for(ErrorKind.CANCELLED)
            )

        if result.outcome is GatewayOutcome.FAILED:
            logger.warning(f"Gateway reported failure: {result.reason}")
            return self._finish(
                PaymentState.FAILED, ErrorKind.GATEWAY_FAILURE, result.reason or "Payment failed"
            )

        self._transition(
            PaymentState.VERIFYING_AND_FINALIZING, gateway_reference=result.payment_reference
        )
        session = self._session
        response = await self.client.verify_payment(
            payment_reference=result.payment_reference or "",
            gateway_order_id=result.gateway_order_id or session.remote_order_id or "",
            gateway_signature=result.gateway_signature or "",
            internal_order_id=session.internal_order_id or 0,
        )
        if not response.success:
            return self._finish(
                PaymentState.FAILED,
                ErrorKind.VERIFICATION_FAILED,
                response.message or "Payment verification failed",
            )

        order_number = _order_number(response.data)
        if order_number is None:
            order_number = str(session.internal_order_id)
        return self._complete(order_number, response)

    def _complete(self, order_number: str, response: ApiResponse) -> PaymentOutcome:
        self._transition(PaymentState.COMPLETED, order_number=order_number)
        logger.info(f"Order {order_number} completed")

        if self.cart is not None:
            self.cart.reset()
        if self.store is not None:
            self.store.clear_current_order()
        if self.coupons is not None:
            self.coupons.restore(None)

        self.countdown = RedirectCountdown(self.redirect_delay_seconds, self.navigate)
        self.countdown.start()

        return PaymentOutcome(
            success=True,
            state=PaymentState.COMPLETED,
            order_number=order_number,
            message=response.message or "Order placed successfully",
        )

    def _save_order_in_progress(
        self,
        address: Address,
        snapshot: CartSnapshot,
        totals: OrderTotals,
        payment_method: PaymentMethod,
        coupon_code: Optional[str],
    ) -> None:
        if self.store is None:
            return
        self.store.save_current_order(
            {
                "items": [item.model_dump(mode="json") for item in snapshot.items],
                "totals": totals.model_dump(mode="json"),
                "address_id": address.id,
                "coupon_code": coupon_code,
                "payment_method": payment_method.value,
            }
        )
