"""Local cart state kept in sync with the remote cart."""

import logging
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from .errors import ErrorKind, MalformedResponseError, message_for
from .models import ApiResponse, CartLineItem, CartSnapshot, Coupon
from .storage import AUTH_INVALID_KEY, CART_MIRROR_KEY, LocalStore
from .storefront_client import StorefrontClient

logger = logging.getLogger(__name__)

CartListener = Callable[[CartSnapshot], None]

REFRESH_KEYS = (CART_MIRROR_KEY, AUTH_INVALID_KEY)


class MutationStatus(str, Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"


class MutationResult(BaseModel):
    """
    Outcome of a cart mutation.

    COMMITTED carries the new snapshot. ROLLED_BACK means the remote call
    failed and the snapshot is the one from before the mutation. REJECTED
    means local validation failed and no request was sent.
    """

    status: MutationStatus
    snapshot: CartSnapshot
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status is MutationStatus.COMMITTED


class CartLoadResult(BaseModel):
    success: bool
    message: str = ""
    snapshot: CartSnapshot
    coupon: Optional[Coupon] = None


def _parse_line(record: dict[str, Any], default_stock: int) -> CartLineItem:
    record = dict(record)
    quantity = int(record.get("quantity", 1))
    record["quantity"] = quantity

    if quantity > 0 and record.get("price") is None and record.get("unit_price") is None and record.get("amount"):
        try:
            record["price"] = Decimal(str(record["amount"])) / quantity
        except InvalidOperation as e:
            raise ValueError(f"invalid amount {record['amount']!r}") from e

    stock_keys = ("available_stock", "availableStock", "stock", "max_quantity", "maxQuantity")
    if not any(record.get(k) is not None for k in stock_keys):
        record["available_stock"] = max(default_stock, quantity)

    return CartLineItem.model_validate(record)


def parse_cart_payload(
    endpoint: str, data: Any, default_stock: int
) -> tuple[Optional[CartSnapshot], Optional[Coupon]]:
    """
    Decode a cart payload into a snapshot and the applied coupon, if any.

    Returns ``(None, None)`` when the payload carries no line items.
    """
    if isinstance(data, list):
        records, subtotal, coupon_data = data, None, None
    elif isinstance(data, dict) and isinstance(data.get("cart_items"), list):
        records = data["cart_items"]
        subtotal = data.get("subtotal")
        coupon_data = data.get("applied_coupon") or data.get("coupon")
    else:
        return None, None

    try:
        items = tuple(_parse_line(record, default_stock) for record in records)
        coupon = Coupon.model_validate(coupon_data) if coupon_data else None
    except (ValidationError, ValueError, TypeError) as e:
        raise MalformedResponseError(endpoint, f"invalid cart payload: {e}") from e

    server_subtotal = Decimal(str(subtotal)) if subtotal is not None else None
    return CartSnapshot(items=items, server_subtotal=server_subtotal), coupon


class CartStore:
    """
    The single owner of the local cart snapshot.

    Mutations are optimistic: the local snapshot changes first, the remote
    call follows, and a failed call restores the snapshot taken before the
    mutation. Independent mutations are not serialized; callers that need
    ordering on one line must await each call before issuing the next.
    """

    default_stock = 10

    def __init__(self, client: StorefrontClient, store: Optional[LocalStore] = None) -> None:
        self.client = client
        self.store = store
        self._snapshot = store.load_cart_mirror() if store else CartSnapshot()
        self._coupon: Optional[Coupon] = None
        self._listeners: list[CartListener] = []

    @property
    def snapshot(self) -> CartSnapshot:
        return self._snapshot

    @property
    def applied_coupon(self) -> Optional[Coupon]:
        """Coupon the backend reported on the last full load."""
        return self._coupon

    def subscribe(self, listener: CartListener) -> Callable[[], None]:
        """Register a listener for committed cart changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self._snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Cart listener {listener!r} failed: {e}", exc_info=True)

    def _persist(self) -> None:
        if self.store is None:
            return
        if self._snapshot.is_empty:
            self.store.clear_cart_mirror()
        else:
            self.store.save_cart_mirror(self._snapshot)

    async def fetch_cart(self) -> CartLoadResult:
        """Replace local state wholesale with the remote cart."""
        response = await self.client.get_cart()
        if not response.success:
            logger.warning(f"Cart load failed: {response.message}")
            return CartLoadResult(
                success=False, message=response.message, snapshot=self._snapshot
            )

        snapshot, coupon = parse_cart_payload("/cart", response.data, self.default_stock)
        self._snapshot = snapshot or CartSnapshot()
        self._coupon = coupon
        logger.info(
            f"Cart loaded: lines={len(self._snapshot.items)}, subtotal={self._snapshot.subtotal}"
        )
        self._persist()
        self._notify()
        return CartLoadResult(
            success=True, message=response.message, snapshot=self._snapshot, coupon=coupon
        )

    def _reject(self, kind: ErrorKind, **params: object) -> MutationResult:
        return MutationResult(
            status=MutationStatus.REJECTED,
            snapshot=self._snapshot,
            error=kind,
            message=message_for(kind, **params),
        )

    async def update_quantity(self, item_id: int, quantity: int) -> MutationResult:
        item = self._snapshot.find(item_id)
        if item is None:
            return self._reject(ErrorKind.ITEM_NOT_FOUND)
        if quantity < 1:
            return self._reject(ErrorKind.INVALID_QUANTITY)
        if quantity > item.available_stock:
            return self._reject(ErrorKind.STOCK_EXCEEDED, stock=item.available_stock)

        return await self._mutate(
            self._snapshot.with_quantity(item_id, quantity),
            lambda: self.client.update_cart_quantity(item_id, quantity),
        )

    async def increment_quantity(self, item_id: int) -> MutationResult:
        item = self._snapshot.find(item_id)
        if item is None:
            return self._reject(ErrorKind.ITEM_NOT_FOUND)
        return await self.update_quantity(item_id, item.quantity + 1)

    async def decrement_quantity(self, item_id: int) -> MutationResult:
        item = self._snapshot.find(item_id)
        if item is None:
            return self._reject(ErrorKind.ITEM_NOT_FOUND)
        return await self.update_quantity(item_id, item.quantity - 1)

    async def remove_item(self, item_id: int) -> MutationResult:
        if self._snapshot.find(item_id) is None:
            return self._reject(ErrorKind.ITEM_NOT_FOUND)
        return await self._mutate(
            self._snapshot.without(item_id),
            lambda: self.client.remove_cart_item(item_id),
        )

    async def clear_cart(self) -> MutationResult:
        return await self._mutate(CartSnapshot(), self.client.clear_cart)

    async def _mutate(
        self,
        optimistic: CartSnapshot,
        remote_call: Callable[[], Awaitable[ApiResponse]],
    ) -> MutationResult:
        before = self._snapshot
        self._snapshot = optimistic

        try:
            response = await remote_call()
        except MalformedResponseError:
            self._snapshot = before
            logger.warning("Cart mutation rolled back: malformed response")
            raise

        if not response.success:
            self._snapshot = before
            logger.warning(f"Cart mutation rolled back: {response.message}")
            return MutationResult(
                status=MutationStatus.ROLLED_BACK,
                snapshot=before,
                error=ErrorKind.AUTH_REQUIRED if response.status_code == 401 else ErrorKind.REMOTE_REJECTED,
                message=response.message or "Failed to update cart",
            )

        self._snapshot = self._reconcile(optimistic, response)
        self._persist()
        self._notify()
        return MutationResult(
            status=MutationStatus.COMMITTED,
            snapshot=self._snapshot,
            message=response.message,
        )

    def _reconcile(self, optimistic: CartSnapshot, response: ApiResponse) -> CartSnapshot:
        """Fold authoritative values from a mutation response into the optimistic snapshot."""
        try:
            snapshot, _ = parse_cart_payload("cart mutation", response.data, self.default_stock)
        except MalformedResponseError as e:
            logger.warning(f"Keeping optimistic cart, could not reconcile: {e}")
            return optimistic

        if snapshot is not None:
            return snapshot
        if isinstance(response.data, dict) and response.data.get("subtotal") is not None:
            try:
                subtotal = Decimal(str(response.data["subtotal"]))
            except InvalidOperation:
                return optimistic
            return optimistic.model_copy(update={"server_subtotal": subtotal})
        return optimistic

    def reset(self) -> None:
        """Forget local cart contents after the backend has turned them into an order."""
        self._snapshot = CartSnapshot()
        self._coupon = None
        self._persist()
        self._notify()

    async def handle_storage_change(self, key: str) -> bool:
        """React to a change of shared storage made elsewhere; returns True if the cart was refetched."""
        if key not in REFRESH_KEYS:
            return False
        logger.info(f"Storage key {key} changed elsewhere, refreshing cart")
        await self.fetch_cart()
        return True

    async def sync_external_changes(self) -> bool:
        """Poll the local store for changes made by other processes."""
        if self.store is None:
            return False
        refreshed = False
        for key in self.store.changed_keys():
            if key in REFRESH_KEYS and not refreshed:
                refreshed = await self.handle_storage_change(key)
        return refreshed
