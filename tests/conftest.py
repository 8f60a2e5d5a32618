"""Shared fixtures: a fake storefront backend behind httpx.MockTransport."""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from typing import Any, Callable, Optional, Union

import httpx
import pytest

from storefront_checkout.auth import AuthManager
from storefront_checkout.gateway import GatewayCheckoutRequest, GatewaySession, PaymentGateway
from storefront_checkout.models import Address, CartLineItem, CartSnapshot
from storefront_checkout.storage import LocalStore
from storefront_checkout.storefront_client import StorefrontClient

BASE_URL = "https://shop.test/api"

Handler = Callable[[httpx.Request], httpx.Response]


class FakeBackend:
    """Routes requests by (method, path) and records every request it sees."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Union[Handler, tuple[int, Any]]] = {}
        self.requests: list[httpx.Request] = []

    def on(
        self,
        method: str,
        path: str,
        body: Any = None,
        status: int = 200,
        handler: Optional[Handler] = None,
    ) -> None:
        self.routes[(method, f"/api{path}")] = handler or (status, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"success": False, "message": "Not found"})
        if callable(route):
            return route(request)
        status, body = route
        return httpx.Response(status, json=body)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path == f"/api{path}"
        ]

    @staticmethod
    def body(request: httpx.Request) -> dict[str, Any]:
        return json.loads(request.content) if request.content else {}


class ScriptedGateway(PaymentGateway):
    """Gateway whose UI 'answers' with a scripted signal right after opening."""

    def __init__(self, script: Optional[Callable[[GatewaySession], None]] = None) -> None:
        self.script = script
        self.opened: list[GatewayCheckoutRequest] = []

    def create_session(self, request: GatewayCheckoutRequest) -> GatewaySession:
        return GatewaySession(request)

    def open(self, session: GatewaySession) -> None:
        self.opened.append(session.request)
        if self.script is not None:
            asyncio.get_running_loop().call_soon(self.script, session)


def make_item(**overrides: Any) -> CartLineItem:
    data: dict[str, Any] = {
        "id": 1,
        "product_ref": "five-mukhi-rudraksha",
        "name": "5 Mukhi Rudraksha",
        "unit_price": Decimal("900"),
        "original_unit_price": Decimal("900"),
        "quantity": 2,
        "available_stock": 5,
    }
    data.update(overrides)
    return CartLineItem(**data)


def cart_record(**overrides: Any) -> dict[str, Any]:
    """A cart line as the backend sends it."""
    record: dict[str, Any] = {
        "id": 1,
        "slug": "five-mukhi-rudraksha",
        "product_id": 11,
        "product_name": "5 Mukhi Rudraksha",
        "price": 900,
        "original_price": 900,
        "quantity": 2,
        "stock": 5,
    }
    record.update(overrides)
    return record


def snapshot_of(*items: CartLineItem) -> CartSnapshot:
    return CartSnapshot(items=tuple(items))


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def auth_manager(tmp_path, monkeypatch) -> AuthManager:
    monkeypatch.delenv("STOREFRONT_AUTH_TOKEN", raising=False)
    manager = AuthManager(session_file=str(tmp_path / "session.json"))
    manager.save_session(auth_token="token-123", user_id=7, user_email="devotee@example.com")
    return manager


@pytest.fixture
def client(backend: FakeBackend, auth_manager: AuthManager) -> StorefrontClient:
    return StorefrontClient(auth_manager, BASE_URL, transport=httpx.MockTransport(backend))


@pytest.fixture
def store(tmp_path) -> LocalStore:
    return LocalStore(tmp_path / "store")


@pytest.fixture
def address() -> Address:
    return Address(
        id=3,
        first_name="Rajesh",
        last_name="Kumar",
        email="rajesh@example.com",
        phone="9876543210",
        address_line_1="123, MG Road",
        city="Bangalore",
        state="Karnataka",
        postal_code="560001",
    )
