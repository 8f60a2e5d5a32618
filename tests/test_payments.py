"""Tests for the payment orchestrator and its gateway handshake."""
from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import Mock

import pytest

from storefront_checkout.cart import CartStore
from storefront_checkout.coupons import CouponManager
from storefront_checkout.errors import ErrorKind, InvalidTransitionError, MalformedResponseError
from storefront_checkout.gateway import GatewayCheckoutRequest, GatewaySession, HostedCheckoutGateway
from storefront_checkout.models import Coupon, CouponKind, PaymentMethod, PaymentState
from storefront_checkout.payments import PaymentOrchestrator, RedirectCountdown
from storefront_checkout.pricing import compute_totals

from .conftest import FakeBackend, ScriptedGateway, make_item, snapshot_of

CREATE_ORDER_BODY = {
    "success": True,
    "message": "Order created",
    "data": {"razorpay_order_id": "order_RZP123", "order_id": 501, "amount": 181000, "currency": "INR"},
}


def succeed(session: GatewaySession) -> None:
    session.succeed("pay_ABC", session.request.remote_order_id, "sig_XYZ")


@pytest.fixture
def snapshot():
    return snapshot_of(make_item(unit_price=Decimal("1800"), original_unit_price=Decimal("1800"), quantity=1))


def build(client, gateway, **kwargs) -> PaymentOrchestrator:
    return PaymentOrchestrator(client, gateway, merchant_name="Pashupatinath Rudraksh", **kwargs)


@pytest.mark.asyncio
class TestCashOnDelivery:
    """Orders without a gateway handshake."""

    async def test_cod_order_completes(self, client, backend: FakeBackend, address, snapshot):
        """Should create the order in one call and finish COMPLETED."""
        backend.on(
            "POST",
            "/orders",
            {"success": True, "message": "Order placed", "data": {"order": {"order_number": "PR-1001"}}},
        )
        gateway = ScriptedGateway()
        orchestrator = build(client, gateway)
        totals = compute_totals(snapshot, None, PaymentMethod.CASH_ON_DELIVERY)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.CASH_ON_DELIVERY)

        assert outcome.success is True
        assert outcome.state is PaymentState.COMPLETED
        assert outcome.order_number == "PR-1001"
        assert gateway.opened == []
        body = FakeBackend.body(backend.calls("POST", "/orders")[0])
        assert body["payment_method"] == "cod"
        assert body["address_id"] == 3

    async def test_backend_message_kept_verbatim(self, client, backend: FakeBackend, address, snapshot):
        """Should fail with the backend's own message."""
        backend.on("POST", "/orders", {"success": False, "message": "Pincode not serviceable"}, status=422)
        orchestrator = build(client, ScriptedGateway())
        totals = compute_totals(snapshot, None, PaymentMethod.CASH_ON_DELIVERY)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.CASH_ON_DELIVERY)

        assert outcome.state is PaymentState.FAILED
        assert outcome.message == "Pincode not serviceable"
        assert orchestrator.session.failure_reason == "Pincode not serviceable"

    async def test_missing_order_number_is_malformed(self, client, backend: FakeBackend, address, snapshot):
        """Should fail the session and raise on a success without an order number."""
        backend.on("POST", "/orders", {"success": True, "data": {}})
        orchestrator = build(client, ScriptedGateway())
        totals = compute_totals(snapshot, None, PaymentMethod.CASH_ON_DELIVERY)

        with pytest.raises(MalformedResponseError):
            await orchestrator.submit(address, snapshot, totals, PaymentMethod.CASH_ON_DELIVERY)

        assert orchestrator.state is PaymentState.FAILED


@pytest.mark.asyncio
class TestPrepaid:
    """The create → gateway → verify handshake."""

    async def test_successful_payment(self, client, backend: FakeBackend, address, snapshot):
        """Should verify the gateway result and complete with the order number."""
        backend.on("POST", "/payments/create-order", CREATE_ORDER_BODY)
        backend.on(
            "POST",
            "/payments/callback",
            {"success": True, "message": "Payment verified", "data": {"order": {"order_number": "PR-2002"}}},
        )
        gateway = ScriptedGateway(succeed)
        orchestrator = build(client, gateway)
        totals = compute_totals(snapshot, None, PaymentMethod.PREPAID)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)

        assert outcome.success is True
        assert outcome.order_number == "PR-2002"
        request = gateway.opened[0]
        assert request.remote_order_id == "order_RZP123"
        assert request.amount == totals.total_minor_units == 181000
        assert request.prefill.name == "Rajesh Kumar"
        verify = FakeBackend.body(backend.calls("POST", "/payments/callback")[0])
        assert verify["payment_reference"] == "pay_ABC"
        assert verify["gateway_order_id"] == "order_RZP123"
        assert verify["gateway_signature"] == "sig_XYZ"
        assert verify["internal_order_id"] == 501
        assert orchestrator.session.gateway_reference == "pay_ABC"

    async def test_dismissal_cancels_and_allows_retry(self, client, backend: FakeBackend, address, snapshot):
        """Should end CANCELLED on dismissal without verifying, then accept a new submission."""
        backend.on("POST", "/payments/create-order", CREATE_ORDER_BODY)
        gateway = ScriptedGateway(lambda session: session.dismiss())
        orchestrator = build(client, gateway)
        totals = compute_totals(snapshot, None, PaymentMethod.PREPAID)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)

        assert outcome.state is PaymentState.CANCELLED
        assert outcome.error is ErrorKind.CANCELLED
        assert backend.calls("POST", "/payments/callback") == []

        backend.on(
            "POST",
            "/payments/callback",
            {"success": True, "data": {"order": {"order_number": "PR-3003"}}},
        )
        gateway.script = succeed

        retry = await orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)

        assert retry.state is PaymentState.COMPLETED
        assert len(backend.calls("POST", "/payments/create-order")) == 2

    async def test_gateway_failure_reason_surfaced(self, client, backend: FakeBackend, address, snapshot):
        """Should fail with the gateway's reason."""
        backend.on("POST", "/payments/create-order", CREATE_ORDER_BODY)
        gateway = ScriptedGateway(lambda session: session.fail("Card declined by issuer"))
        orchestrator = build(client, gateway)
        totals = compute_totals(snapshot, None, PaymentMethod.PREPAID)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)

        assert outcome.state is PaymentState.FAILED
        assert outcome.error is ErrorKind.GATEWAY_FAILURE
        assert outcome.message == "Card declined by issuer"

    async def test_verification_rejected(self, client, backend: FakeBackend, address, snapshot):
        """Should fail with the verification message when the signature is rejected."""
        backend.on("POST", "/payments/create-order", CREATE_ORDER_BODY)
        backend.on("POST", "/payments/callback", {"success": False, "message": "Invalid signature"}, status=400)
        orchestrator = build(client, ScriptedGateway(succeed))
        totals = compute_totals(snapshot, None, PaymentMethod.PREPAID)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)

        assert outcome.state is PaymentState.FAILED
        assert outcome.error is ErrorKind.VERIFICATION_FAILED
        assert outcome.message == "Invalid signature"

    async def test_backend_amount_mismatch_fails_before_gateway(self, client, backend: FakeBackend, address, snapshot):
        """Should fail without opening the gateway when the backend charged a different amount."""
        body = {**CREATE_ORDER_BODY, "data": {**CREATE_ORDER_BODY["data"], "amount": 190000}}
        backend.on("POST", "/payments/create-order", body)
        gateway = ScriptedGateway(succeed)
        orchestrator = build(client, gateway)
        totals = compute_totals(snapshot, None, PaymentMethod.PREPAID)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)

        assert outcome.state is PaymentState.FAILED
        assert outcome.error is ErrorKind.TOTAL_MISMATCH
        assert gateway.opened == []
        assert backend.calls("POST", "/payments/callback") == []

    async def test_gateway_timeout_cancels(self, client, backend: FakeBackend, address, snapshot):
        """Should treat an expired payment window as a dismissal."""
        backend.on("POST", "/payments/create-order", CREATE_ORDER_BODY)

        def never_answers(options, session):
            pass

        orchestrator = build(client, HostedCheckoutGateway(never_answers), gateway_timeout_seconds=1)
        totals = compute_totals(snapshot, None, PaymentMethod.PREPAID)

        outcome = await asyncio.wait_for(
            orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID), timeout=5
        )

        assert outcome.state is PaymentState.CANCELLED
        assert orchestrator.gateway_session.result.timed_out is True

    async def test_second_submission_rejected_while_in_flight(self, client, backend: FakeBackend, address, snapshot):
        """Should refuse a second submission while awaiting the gateway."""
        backend.on("POST", "/payments/create-order", CREATE_ORDER_BODY)
        orchestrator = build(client, ScriptedGateway())
        totals = compute_totals(snapshot, None, PaymentMethod.PREPAID)

        first = asyncio.ensure_future(
            orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)
        )
        while orchestrator.gateway_session is None:
            await asyncio.sleep(0)

        second = await orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)
        assert second.error is ErrorKind.SUBMISSION_IN_PROGRESS
        assert orchestrator.state is PaymentState.AWAITING_GATEWAY_RESULT

        orchestrator.gateway_session.dismiss()
        assert (await first).state is PaymentState.CANCELLED


@pytest.mark.asyncio
class TestLocalValidation:
    """Submissions rejected before any request."""

    async def test_missing_address(self, client, backend: FakeBackend, snapshot):
        """Should stay IDLE without an address."""
        orchestrator = build(client, ScriptedGateway())
        totals = compute_totals(snapshot, None, PaymentMethod.PREPAID)

        outcome = await orchestrator.submit(None, snapshot, totals, PaymentMethod.PREPAID)

        assert outcome.error is ErrorKind.MISSING_ADDRESS
        assert orchestrator.state is PaymentState.IDLE
        assert backend.requests == []

    async def test_empty_cart(self, client, backend: FakeBackend, address):
        """Should stay IDLE with an empty cart."""
        empty = snapshot_of()
        orchestrator = build(client, ScriptedGateway())
        totals = compute_totals(empty, None, PaymentMethod.CASH_ON_DELIVERY)

        outcome = await orchestrator.submit(address, empty, totals, PaymentMethod.CASH_ON_DELIVERY)

        assert outcome.error is ErrorKind.EMPTY_CART
        assert backend.requests == []

    async def test_coupon_no_longer_valid(self, client, backend: FakeBackend, address, snapshot):
        """Should refuse to submit when the active coupon no longer applies."""
        coupons = CouponManager(client)
        coupons.restore(
            Coupon(code="BIG", kind=CouponKind.FIXED, value=Decimal("300"), min_order_amount=Decimal("5000"))
        )
        orchestrator = build(client, ScriptedGateway(), coupons=coupons)
        totals = compute_totals(snapshot, coupons.active, PaymentMethod.PREPAID)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.PREPAID)

        assert outcome.error is ErrorKind.COUPON_NO_LONGER_VALID
        assert orchestrator.state is PaymentState.IDLE
        assert backend.requests == []


@pytest.mark.asyncio
class TestCompletion:
    """Side effects of a completed order."""

    async def test_completion_clears_cart_coupon_and_snapshot(self, client, backend: FakeBackend, address, store):
        """Should reset the cart, drop the coupon and forget the order-in-progress snapshot."""
        backend.on("POST", "/orders", {"success": True, "data": {"order_number": "PR-4004"}})
        cart = CartStore(client, store)
        coupons = CouponManager(client)
        coupons.restore(Coupon(code="FLAT100", kind=CouponKind.FIXED, value=Decimal("100")))
        snapshot = snapshot_of(make_item())
        saved = []

        original_save = store.save_current_order

        def spy(order):
            saved.append(order)
            original_save(order)

        store.save_current_order = spy
        orchestrator = build(client, ScriptedGateway(), coupons=coupons, cart=cart, store=store)
        totals = compute_totals(snapshot, coupons.active, PaymentMethod.CASH_ON_DELIVERY)

        outcome = await orchestrator.submit(address, snapshot, totals, PaymentMethod.CASH_ON_DELIVERY)

        assert outcome.order_number == "PR-4004"
        assert saved[0]["coupon_code"] == "FLAT100"
        assert saved[0]["payment_method"] == "cod"
        assert store.load_current_order() is None
        assert cart.snapshot.is_empty
        assert coupons.active is None
        assert FakeBackend.body(backend.calls("POST", "/orders")[0])["coupon_code"] == "FLAT100"

    async def test_redirect_after_delay(self, client, backend: FakeBackend, address, snapshot):
        """Should navigate home once the countdown runs out."""
        backend.on("POST", "/orders", {"success": True, "data": {"order_number": "PR-5005"}})
        navigate = Mock()
        orchestrator = build(client, ScriptedGateway(), navigate=navigate, redirect_delay_seconds=0.01)
        totals = compute_totals(snapshot, None, PaymentMethod.CASH_ON_DELIVERY)

        await orchestrator.submit(address, snapshot, totals, PaymentMethod.CASH_ON_DELIVERY)
        navigate.assert_not_called()
        await asyncio.sleep(0.05)

        navigate.assert_called_once_with("/")

    async def test_redirect_window_runs_without_navigation_callback(self, client, backend: FakeBackend, address, snapshot):
        """Should start the post-order window even when nobody navigates."""
        backend.on("POST", "/orders", {"success": True, "data": {"order_number": "PR-6006"}})
        orchestrator = build(client, ScriptedGateway(), redirect_delay_seconds=0.01)
        totals = compute_totals(snapshot, None, PaymentMethod.CASH_ON_DELIVERY)

        await orchestrator.submit(address, snapshot, totals, PaymentMethod.CASH_ON_DELIVERY)
        assert orchestrator.countdown is not None
        assert orchestrator.countdown.active is True
        await asyncio.sleep(0.05)

        assert orchestrator.countdown.fired is True


@pytest.mark.asyncio
class TestRedirectCountdown:
    """Post-order redirect timer."""

    async def test_navigate_now_short_circuits(self):
        """Should navigate immediately and not again when the timer would fire."""
        navigate = Mock()
        countdown = RedirectCountdown(0.01, navigate)
        countdown.start()

        countdown.navigate_now("/orders")
        await asyncio.sleep(0.03)

        navigate.assert_called_once_with("/orders")
        assert countdown.active is False

    async def test_cancel(self):
        """Should not navigate after cancel."""
        navigate = Mock()
        countdown = RedirectCountdown(0.01, navigate)
        countdown.start()
        countdown.cancel()
        await asyncio.sleep(0.03)

        navigate.assert_not_called()


class TestGatewaySession:
    """First signal wins."""

    @pytest.mark.asyncio
    async def test_late_signals_ignored(self):
        """Should keep the first outcome and ignore later ones."""
        session = GatewaySession(GatewayCheckoutRequest(remote_order_id="order_1", amount=100))

        assert session.dismiss() is True
        assert session.succeed("pay_1", "order_1", "sig") is False

        result = await session.wait()
        assert result.outcome.value == "dismissed"

    def test_checkout_options(self):
        """Should describe the payment to the hosted widget."""
        request = GatewayCheckoutRequest(
            remote_order_id="order_1",
            amount=181000,
            key_id="rzp_test_key",
            merchant_name="Pashupatinath Rudraksh",
        )

        options = HostedCheckoutGateway.checkout_options(request)

        assert options["order_id"] == "order_1"
        assert options["amount"] == 181000
        assert options["key"] == "rzp_test_key"
        assert options["currency"] == "INR"

    def test_invalid_transition_raises(self, client):
        """Should refuse to move along an edge the state machine does not have."""
        orchestrator = build(client, ScriptedGateway())
        with pytest.raises(InvalidTransitionError):
            orchestrator._transition(PaymentState.COMPLETED)
