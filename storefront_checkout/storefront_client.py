"""Storefront REST API client."""

import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from .auth import AuthManager
from .config import CheckoutConfig
from .errors import (
    AUTH_REQUIRED_MESSAGE,
    NETWORK_ERROR_MESSAGE,
    SERVER_ERROR_MESSAGE,
    MalformedResponseError,
)
from .models import ApiResponse, PaymentMethod, normalize_code

logger = logging.getLogger(__name__)


class StorefrontClient:
    """Client for the storefront cart, coupon, order and payment endpoints."""

    def __init__(
        self,
        auth_manager: AuthManager,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the storefront client.

        Args:
            auth_manager: Authentication manager instance
            base_url: API root, e.g. https://example.com/api
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.auth_manager = auth_manager
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )

    @classmethod
    def from_config(
        cls,
        config: CheckoutConfig,
        auth_manager: AuthManager,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "StorefrontClient":
        return cls(
            auth_manager,
            base_url=config.api_base_url,
            timeout=config.request_timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        require_session: bool = True,
    ) -> ApiResponse:
        """
        Send one request and decode the ``{success, message, data}`` envelope.

        Transport failures and 5xx answers come back as ``success=False``
        responses. A body that is not a JSON envelope raises
        ``MalformedResponseError``.
        """
        token = self.auth_manager.session_token()
        if require_session and not token:
            return ApiResponse(success=False, message=AUTH_REQUIRED_MESSAGE, status_code=401)

        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        body = None
        if method in ("POST", "PUT", "DELETE"):
            body = dict(payload or {})
            if token and "session_token" not in body:
                body["session_token"] = token
        elif token:
            params = {**(params or {}), "session_token": token}

        try:
            response = await self.client.request(
                method, endpoint, json=body, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.error(f"{method} {endpoint} timed out: {e}")
            return ApiResponse(success=False, message="Request timeout. Please try again.")
        except httpx.HTTPError as e:
            logger.error(f"{method} {endpoint} failed: {e}", exc_info=True)
            return ApiResponse(success=False, message=NETWORK_ERROR_MESSAGE)

        logger.debug(f"{method} {endpoint} -> status={response.status_code}")

        if response.status_code >= 500:
            logger.error(f"{method} {endpoint} server error: status={response.status_code}")
            return ApiResponse(
                success=False, message=SERVER_ERROR_MESSAGE, status_code=response.status_code
            )

        try:
            result = response.json()
        except ValueError as e:
            raise MalformedResponseError(endpoint, f"body is not JSON ({e})") from e

        if not isinstance(result, dict):
            raise MalformedResponseError(endpoint, "envelope is not an object")

        if "success" not in result:
            # Some endpoints answer with ``status: true`` instead
            if isinstance(result.get("status"), bool):
                result["success"] = result["status"]
            else:
                raise MalformedResponseError(endpoint, "envelope has no success flag")

        if result.get("errors") and isinstance(result["errors"], dict):
            messages = []
            for value in result["errors"].values():
                messages.extend(value if isinstance(value, list) else [value])
            result["message"] = ", ".join(str(m) for m in messages) or result.get("message", "")

        if response.status_code == 401:
            logger.warning(f"{method} {endpoint} unauthorized, clearing session")
            self.auth_manager.clear_session()
            return ApiResponse(
                success=False,
                message=result.get("message") or AUTH_REQUIRED_MESSAGE,
                status_code=401,
            )

        envelope = ApiResponse(
            success=bool(result["success"]) and response.is_success,
            message=str(result.get("message") or ""),
            data=result.get("data"),
            session_token=result.get("session_token"),
            status_code=response.status_code,
        )

        if envelope.session_token:
            self.auth_manager.set_guest_token(envelope.session_token)

        return envelope

    # Cart

    async def get_cart(self) -> ApiResponse:
        """Get current cart contents, subtotal and applied coupon."""
        logger.info("=== GET CART ===")
        return await self._request("GET", "/cart", require_session=False)

    async def add_to_cart(
        self,
        slug: str,
        quantity: int = 1,
        cap_id: Optional[int] = None,
        thread_id: Optional[int] = None,
    ) -> ApiResponse:
        """Add a product to the cart by slug."""
        logger.info(f"=== ADD TO CART: slug={slug}, quantity={quantity} ===")
        payload: dict[str, Any] = {"slug": slug, "quantity": quantity}
        if cap_id:
            payload["selected_cap"] = cap_id
        if thread_id:
            payload["selected_thread"] = thread_id
        return await self._request("POST", "/cart/add", payload, require_session=False)

    async def update_cart_quantity(self, item_id: int, quantity: int) -> ApiResponse:
        logger.info(f"=== UPDATE CART: item_id={item_id}, new_quantity={quantity} ===")
        return await self._request("POST", f"/cart/item/{item_id}/quantity", {"quantity": quantity})

    async def remove_cart_item(self, item_id: int) -> ApiResponse:
        logger.info(f"=== REMOVE FROM CART: item_id={item_id} ===")
        return await self._request("DELETE", f"/cart/item/{item_id}")

    async def clear_cart(self) -> ApiResponse:
        logger.info("=== CLEAR CART ===")
        return await self._request("DELETE", "/cart")

    async def migrate_guest_cart(self, guest_token: str, user_id: int) -> ApiResponse:
        """Ask the backend to move a guest cart into a user's cart."""
        logger.info(f"=== MIGRATE GUEST CART: user_id={user_id} ===")
        return await self._request(
            "POST", "/cart/migrate", {"guest_token": guest_token, "user_id": user_id}
        )

    # Coupons

    async def get_available_coupons(self) -> ApiResponse:
        logger.info("=== GET AVAILABLE COUPONS ===")
        return await self._request("GET", "/coupons/available", require_session=False)

    async def apply_coupon(self, code: str) -> ApiResponse:
        code = normalize_code(code)
        logger.info(f"=== APPLY COUPON: code={code} ===")
        return await self._request("POST", "/coupons/apply", {"code": code})

    async def remove_coupon(self) -> ApiResponse:
        logger.info("=== REMOVE COUPON ===")
        return await self._request("POST", "/coupons/remove")

    async def validate_coupon(self, code: str, subtotal: Decimal) -> ApiResponse:
        code = normalize_code(code)
        logger.info(f"=== VALIDATE COUPON: code={code}, subtotal={subtotal} ===")
        return await self._request(
            "POST",
            "/coupons/validate",
            {"code": code, "subtotal": str(subtotal)},
            require_session=False,
        )

    # Orders and payments

    async def create_payment_order(
        self, address_id: int, coupon_code: Optional[str] = None
    ) -> ApiResponse:
        """Create the remote order that the gateway will collect payment for."""
        logger.info(f"=== CREATE PAYMENT ORDER: address_id={address_id}, coupon={coupon_code} ===")
        payload: dict[str, Any] = {"address_id": address_id}
        if coupon_code:
            payload["coupon_code"] = coupon_code
        return await self._request("POST", "/payments/create-order", payload)

    async def verify_payment(
        self,
        payment_reference: str,
        gateway_order_id: str,
        gateway_signature: str,
        internal_order_id: int,
    ) -> ApiResponse:
        """Submit a gateway result for signature verification and order finalization."""
        logger.info(
            f"=== VERIFY PAYMENT: reference={payment_reference}, order_id={internal_order_id} ==="
        )
        return await self._request(
            "POST",
            "/payments/callback",
            {
                "payment_reference": payment_reference,
                "gateway_order_id": gateway_order_id,
                "gateway_signature": gateway_signature,
                "internal_order_id": internal_order_id,
            },
        )

    async def create_order(
        self,
        address_id: int,
        payment_method: PaymentMethod,
        coupon_code: Optional[str] = None,
    ) -> ApiResponse:
        """Place an order that needs no gateway handshake."""
        logger.info(
            f"=== CREATE ORDER: address_id={address_id}, payment_method={payment_method.value} ==="
        )
        payload: dict[str, Any] = {
            "address_id": address_id,
            "payment_method": payment_method.value,
        }
        if coupon_code:
            payload["coupon_code"] = coupon_code
        return await self._request("POST", "/orders", payload)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
