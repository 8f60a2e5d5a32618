"""Payment gateway interface."""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class GatewayOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISMISSED = "dismissed"


class GatewayResult(BaseModel):
    """The single signal a gateway handoff ends with."""

    outcome: GatewayOutcome
    payment_reference: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    reason: Optional[str] = None
    timed_out: bool = False


class Prefill(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None


class GatewayCheckoutRequest(BaseModel):
    """Everything the gateway UI needs to collect one payment."""

    remote_order_id: str
    amount: int = Field(gt=0, description="Exact total in minor currency units")
    currency: str = "INR"
    key_id: Optional[str] = None
    merchant_name: str = ""
    description: str = ""
    prefill: Prefill = Field(default_factory=Prefill)
    notes: dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: int = Field(default=900, gt=0)


class GatewaySession:
    """
    Result channel for one gateway handoff.

    The gateway calls exactly one of ``succeed``, ``fail`` or ``dismiss``;
    the first call wins and later ones are ignored.
    """

    def __init__(self, request: GatewayCheckoutRequest) -> None:
        self.request = request
        self._result: Optional[GatewayResult] = None
        self._event = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def done(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> Optional[GatewayResult]:
        return self._result

    def _resolve(self, result: GatewayResult) -> bool:
        if self._result is not None:
            logger.warning(
                f"Ignoring {result.outcome.value} signal for {self.request.remote_order_id}, "
                f"already {self._result.outcome.value}"
            )
            return False
        self._result = result
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._event.set()
        return True

    def succeed(self, payment_reference: str, gateway_order_id: str, gateway_signature: str) -> bool:
        return self._resolve(
            GatewayResult(
                outcome=GatewayOutcome.SUCCEEDED,
                payment_reference=payment_reference,
                gateway_order_id=gateway_order_id,
                gateway_signature=gateway_signature,
            )
        )

    def fail(self, reason: str) -> bool:
        return self._resolve(GatewayResult(outcome=GatewayOutcome.FAILED, reason=reason))

    def dismiss(self, reason: Optional[str] = None) -> bool:
        return self._resolve(GatewayResult(outcome=GatewayOutcome.DISMISSED, reason=reason))

    def expire(self) -> bool:
        """Deterministic dismissal fired when the gateway's time limit runs out."""
        self._timer = None
        return self._resolve(
            GatewayResult(
                outcome=GatewayOutcome.DISMISSED,
                reason="Payment window timed out",
                timed_out=True,
            )
        )

    def arm_timeout(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        if self._timer is None and not self.done:
            self._timer = loop.call_later(self.request.timeout_seconds, self.expire)

    async def wait(self) -> GatewayResult:
        await self._event.wait()
        assert self._result is not None
        return self._result


class PaymentGateway(ABC):
    """Abstract interface for payment gateways."""

    @abstractmethod
    def create_session(self, request: GatewayCheckoutRequest) -> GatewaySession:
        """Prepare a handoff for one remote order."""
        pass

    @abstractmethod
    def open(self, session: GatewaySession) -> None:
        """
        Show the gateway UI. Fire-and-forget: the outcome arrives later
        through the session's result channel.
        """
        pass


Launcher = Callable[[dict[str, Any], GatewaySession], None]


class HostedCheckoutGateway(PaymentGateway):
    """
    Gateway whose UI is a hosted checkout widget.

    ``launcher`` receives the widget options and the session; the widget's
    success, failure and dismissal callbacks must be wired to the session's
    ``succeed``, ``fail`` and ``dismiss``. The gateway enforces the time limit
    by dismissing the session when it expires.
    """

    def __init__(self, launcher: Launcher) -> None:
        self.launcher = launcher

    @staticmethod
    def checkout_options(request: GatewayCheckoutRequest) -> dict[str, Any]:
        options: dict[str, Any] = {
            "amount": request.amount,
            "currency": request.currency,
            "name": request.merchant_name,
            "description": request.description,
            "order_id": request.remote_order_id,
            "prefill": request.prefill.model_dump(exclude_none=True),
            "notes": request.notes,
            "timeout": request.timeout_seconds,
        }
        if request.key_id:
            options["key"] = request.key_id
        return options

    def create_session(self, request: GatewayCheckoutRequest) -> GatewaySession:
        return GatewaySession(request)

    def open(self, session: GatewaySession) -> None:
        logger.info(f"Opening gateway checkout for order {session.request.remote_order_id}")
        session.arm_timeout()
        try:
            self.launcher(self.checkout_options(session.request), session)
        except Exception as e:
            logger.error(f"Gateway UI failed to open: {e}", exc_info=True)
            session.fail(f"Payment window failed to open: {e}")
