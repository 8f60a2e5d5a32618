"""Anonymous pre-login cart and its hand-over to the signed-in user's cart."""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from .auth import AuthManager
from .cart import CartStore
from .errors import ErrorKind, message_for
from .models import CartLineItem
from .storage import LocalStore
from .storefront_client import StorefrontClient

logger = logging.getLogger(__name__)


class GuestCartResult(BaseModel):
    success: bool
    items: list[CartLineItem] = Field(default_factory=list)
    error: Optional[ErrorKind] = None
    message: str = ""


class MergeResult(BaseModel):
    success: bool
    merged: int = 0
    failed: list[str] = Field(default_factory=list, description="Product refs left in the guest cart")
    message: str = ""


def _same_product(a: CartLineItem, b: CartLineItem) -> bool:
    return (a.product_ref, a.cap_id, a.thread_id) == (b.product_ref, b.cap_id, b.thread_id)


class GuestCartBridge:
    """
    Keeps the guest cart in local storage and merges it into the user's
    remote cart once the user has signed in.
    """

    def __init__(
        self,
        client: StorefrontClient,
        auth_manager: AuthManager,
        store: LocalStore,
        cart: Optional[CartStore] = None,
    ) -> None:
        self.client = client
        self.auth_manager = auth_manager
        self.store = store
        self.cart = cart

    def items(self) -> list[CartLineItem]:
        return self.store.load_guest_cart()

    def _reject(self, kind: ErrorKind, items: list[CartLineItem], **params: object) -> GuestCartResult:
        return GuestCartResult(
            success=False, items=items, error=kind, message=message_for(kind, **params)
        )

    def add_item(self, item: CartLineItem) -> GuestCartResult:
        """Add a line; adding the same product again raises its quantity."""
        items = self.items()
        for index, existing in enumerate(items):
            if _same_product(existing, item):
                quantity = existing.quantity + item.quantity
                if quantity > existing.available_stock:
                    return self._reject(
                        ErrorKind.STOCK_EXCEEDED, items, stock=existing.available_stock
                    )
                items[index] = existing.model_copy(update={"quantity": quantity})
                break
        else:
            next_id = max((i.id for i in items), default=0) + 1
            items.append(item.model_copy(update={"id": next_id}))

        self.store.save_guest_cart(items)
        return GuestCartResult(success=True, items=items)

    def update_quantity(self, item_id: int, quantity: int) -> GuestCartResult:
        items = self.items()
        for index, existing in enumerate(items):
            if existing.id == item_id:
                if quantity < 1:
                    return self._reject(ErrorKind.INVALID_QUANTITY, items)
                if quantity > existing.available_stock:
                    return self._reject(
                        ErrorKind.STOCK_EXCEEDED, items, stock=existing.available_stock
                    )
                items[index] = existing.model_copy(update={"quantity": quantity})
                self.store.save_guest_cart(items)
                return GuestCartResult(success=True, items=items)
        return self._reject(ErrorKind.ITEM_NOT_FOUND, items)

    def remove_item(self, item_id: int) -> GuestCartResult:
        items = self.items()
        remaining = [i for i in items if i.id != item_id]
        if len(remaining) == len(items):
            return self._reject(ErrorKind.ITEM_NOT_FOUND, items)
        self.store.save_guest_cart(remaining)
        return GuestCartResult(success=True, items=remaining)

    async def merge_into_account(self) -> MergeResult:
        """
        Move the guest cart into the signed-in user's cart.

        The backend migration endpoint is tried first. If it is unavailable
        every line is re-added one by one; lines that fail stay in the guest
        cart so a later merge can pick them up.
        """
        if not self.auth_manager.is_authenticated():
            return MergeResult(success=False, message=message_for(ErrorKind.AUTH_REQUIRED))

        items = self.items()
        if not items:
            return MergeResult(success=True, message="Guest cart is empty")

        session = self.auth_manager.get_session()
        logger.info(f"Merging {len(items)} guest cart line(s) for user {session.user_id}")

        if session.guest_token and session.user_id is not None:
            response = await self.client.migrate_guest_cart(session.guest_token, session.user_id)
            if response.success:
                self.store.clear_guest_cart()
                self.auth_manager.clear_guest_token()
                await self._refresh()
                return MergeResult(success=True, merged=len(items), message=response.message)
            logger.warning(f"Guest cart migration failed, re-adding items: {response.message}")

        failed: list[CartLineItem] = []
        for item in items:
            response = await self.client.add_to_cart(
                item.product_ref, item.quantity, item.cap_id, item.thread_id
            )
            if not response.success:
                logger.warning(f"Could not move {item.product_ref} to user cart: {response.message}")
                failed.append(item)

        if failed:
            self.store.save_guest_cart(failed)
        else:
            self.store.clear_guest_cart()
            self.auth_manager.clear_guest_token()

        await self._refresh()
        merged = len(items) - len(failed)
        return MergeResult(
            success=not failed,
            merged=merged,
            failed=[item.product_ref for item in failed],
            message=(
                f"Moved {merged} item(s) to your cart"
                if not failed
                else f"{len(failed)} item(s) could not be moved to your cart"
            ),
        )

    async def _refresh(self) -> None:
        if self.cart is not None:
            await self.cart.fetch_cart()
