"""Coupon lifecycle: validate, apply, remove and re-check a single active coupon."""

import logging
from typing import Optional

from pydantic import BaseModel, ValidationError

from .errors import ErrorKind, MalformedResponseError, message_for
from .models import ApiResponse, AvailableCoupon, CartSnapshot, Coupon, normalize_code
from .storefront_client import StorefrontClient

logger = logging.getLogger(__name__)

MIN_CODE_LENGTH = 3


class CouponResult(BaseModel):
    """Outcome of a coupon operation."""

    success: bool
    message: str = ""
    error: Optional[ErrorKind] = None
    coupon: Optional[Coupon] = None


def _failure(kind: ErrorKind, message: Optional[str] = None, **params: object) -> CouponResult:
    return CouponResult(success=False, error=kind, message=message or message_for(kind, **params))


def classify_rejection(response: ApiResponse) -> ErrorKind:
    """Map a rejected coupon call onto an applicability error."""
    if response.status_code == 401:
        return ErrorKind.AUTH_REQUIRED
    if response.status_code is None or response.status_code >= 500:
        return ErrorKind.NETWORK

    reason = ""
    if isinstance(response.data, dict):
        reason = str(response.data.get("reason") or "")
    text = f"{reason} {response.message}".lower()

    if "expire" in text:
        return ErrorKind.EXPIRED
    if "minimum" in text or "min_order" in text or "not applicable" in text:
        return ErrorKind.NOT_APPLICABLE
    if "already" in text:
        return ErrorKind.ALREADY_APPLIED
    return ErrorKind.NOT_FOUND


def _parse_coupon(endpoint: str, data: object) -> Coupon:
    if isinstance(data, dict) and isinstance(data.get("coupon"), dict):
        data = data["coupon"]
    try:
        return Coupon.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(endpoint, f"invalid coupon payload: {e}") from e


class CouponManager:
    """
    Holds at most one applied coupon for a checkout session.

    States are ``NoCoupon`` (``active is None``) and ``Applied(coupon)``.
    Applying a different code replaces the active coupon; coupons never stack.
    """

    def __init__(self, client: StorefrontClient) -> None:
        self.client = client
        self._active: Optional[Coupon] = None

    @property
    def active(self) -> Optional[Coupon]:
        return self._active

    def restore(self, coupon: Optional[Coupon]) -> None:
        """Adopt the coupon the backend reports as attached to the cart."""
        self._active = coupon

    def validate_code(self, code: str) -> CouponResult:
        """Local format check; no network."""
        normalized = normalize_code(code or "")
        if len(normalized) < MIN_CODE_LENGTH:
            return _failure(ErrorKind.INVALID_FORMAT)
        return CouponResult(success=True)

    async def apply(self, code: str, snapshot: CartSnapshot) -> CouponResult:
        """
        Fetch a coupon from the catalog and make it the active coupon.

        Fails with INVALID_FORMAT, ALREADY_APPLIED, NOT_FOUND, EXPIRED or
        NOT_APPLICABLE. The active coupon is unchanged on failure.
        """
        check = self.validate_code(code)
        if not check.success:
            return check

        normalized = normalize_code(code)
        if self._active is not None and self._active.code == normalized:
            return _failure(ErrorKind.ALREADY_APPLIED, code=normalized)

        lookup = await self.client.validate_coupon(normalized, snapshot.subtotal)
        if not lookup.success:
            kind = classify_rejection(lookup)
            logger.info(f"Coupon {normalized} rejected by catalog: {kind.value}")
            return _failure(kind, message=lookup.message or None)

        coupon = _parse_coupon("/coupons/validate", lookup.data)

        if coupon.is_expired():
            return _failure(ErrorKind.EXPIRED)
        if not coupon.is_applicable(snapshot.subtotal):
            return _failure(ErrorKind.NOT_APPLICABLE, minimum=coupon.min_order_amount)

        attached = await self.client.apply_coupon(normalized)
        if not attached.success:
            kind = classify_rejection(attached)
            logger.info(f"Coupon {normalized} could not be attached: {kind.value}")
            return _failure(kind, message=attached.message or None)

        replaced = self._active
        self._active = coupon
        if replaced is not None:
            logger.info(f"Coupon {replaced.code} replaced by {coupon.code}")
        else:
            logger.info(f"Coupon {coupon.code} applied")

        return CouponResult(
            success=True,
            coupon=coupon,
            message=attached.message or f"Coupon {coupon.code} applied successfully",
        )

    async def remove(self) -> CouponResult:
        """Drop the active coupon. Idempotent."""
        if self._active is None:
            return CouponResult(success=True, message="No coupon applied")

        removed = self._active
        self._active = None

        response = await self.client.remove_coupon()
        if not response.success:
            logger.warning(f"Backend did not detach coupon {removed.code}: {response.message}")

        return CouponResult(success=True, coupon=removed, message=f"Coupon {removed.code} removed")

    async def list_available(self, snapshot: CartSnapshot) -> list[AvailableCoupon]:
        """Catalog coupons annotated with whether they apply to the cart."""
        response = await self.client.get_available_coupons()
        if not response.success:
            logger.warning(f"Could not load available coupons: {response.message}")
            return []

        records = response.data
        if isinstance(records, dict):
            records = records.get("coupons", [])
        if not isinstance(records, list):
            raise MalformedResponseError("/coupons/available", "coupon list missing")

        available = []
        for record in records:
            try:
                coupon = Coupon.model_validate(record)
            except ValidationError as e:
                logger.warning(f"Skipping invalid coupon record: {e}")
                continue
            available.append(
                AvailableCoupon(
                    coupon=coupon,
                    is_applicable=coupon.is_applicable(snapshot.subtotal) and not coupon.is_expired(),
                )
            )
        return available

    def revalidate(self, snapshot: CartSnapshot) -> CouponResult:
        """Re-check the active coupon against the latest cart before submission."""
        coupon = self._active
        if coupon is None:
            return CouponResult(success=True)
        if coupon.is_expired() or not coupon.is_applicable(snapshot.subtotal):
            return _failure(ErrorKind.COUPON_NO_LONGER_VALID, code=coupon.code)
        return CouponResult(success=True, coupon=coupon)
