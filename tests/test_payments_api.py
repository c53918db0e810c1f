from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio

import app.main as main_module
from app.core.enums import OrderStatusEnum, RoleEnum
from app.core.security import create_access_token
from app.modules.identity.service import IdentityService, get_current_user, get_identity_service
from app.modules.payments.schemas import PaymentVerificationRead, PurchaseSessionRead
from app.modules.payments.service import get_payments_service
from app.shared.exceptions import AlreadyEntitledException, GatewayUnavailableException, UnauthorizedException

LEARNER = SimpleNamespace(id=uuid4(), role=RoleEnum.LEARNER, email="asha@example.com", name="Asha", mobile=None)


class StubPaymentsService:
    def __init__(self) -> None:
        self.callback_status = 200
        self.callback_calls: list[tuple] = []
        self.create_error: Exception | None = None
        self.orders: list = []
        self.orders_total = 0
        self.list_calls: list[tuple] = []

    async def create_purchase_order(self, program_id, actor) -> PurchaseSessionRead:
        if self.create_error is not None:
            raise self.create_error
        return PurchaseSessionRead(
            session_id="session_abc",
            order_id="order_1",
            order_amount=Decimal("999.00"),
            order_currency="INR",
            gateway_env="sandbox",
        )

    async def verify_payment(self, gateway_order_id, actor) -> PaymentVerificationRead:
        return PaymentVerificationRead(status=OrderStatusEnum.PENDING, message="Payment is still being processed")

    async def handle_callback(self, timestamp, raw_body, signature) -> int:
        self.callback_calls.append((timestamp, raw_body, signature))
        return self.callback_status

    async def list_learner_orders(self, actor, limit: int, offset: int):
        self.list_calls.append((actor.id, limit, offset))
        return self.orders, self.orders_total


@pytest.fixture()
def stub_service() -> StubPaymentsService:
    return StubPaymentsService()


@pytest_asyncio.fixture()
async def api_client(stub_service: StubPaymentsService) -> AsyncIterator[httpx.AsyncClient]:
    app = main_module.app
    app.dependency_overrides[get_payments_service] = lambda: stub_service
    app.dependency_overrides[get_current_user] = lambda: LEARNER
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver/api/v1") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_create_order_returns_checkout_session(api_client: httpx.AsyncClient) -> None:
    response = await api_client.post("/payments/create-order", json={"program_id": str(uuid4())})

    assert response.status_code == 200
    assert response.json() == {
        "session_id": "session_abc",
        "order_id": "order_1",
        "order_amount": "999.00",
        "order_currency": "INR",
        "gateway_env": "sandbox",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "status_code", "code"),
    [
        (AlreadyEntitledException("You already have full access to this program"), 409, "already_entitled"),
        (GatewayUnavailableException("Payment gateway is unavailable"), 502, "gateway_unavailable"),
    ],
)
async def test_create_order_maps_domain_errors(
    api_client: httpx.AsyncClient,
    stub_service: StubPaymentsService,
    error: Exception,
    status_code: int,
    code: str,
) -> None:
    stub_service.create_error = error

    response = await api_client.post("/payments/create-order", json={"program_id": str(uuid4())})

    assert response.status_code == status_code
    assert response.json()["error"]["code"] == code


@pytest.mark.asyncio
async def test_malformed_request_body_is_reported_as_400(api_client: httpx.AsyncClient) -> None:
    response = await api_client.post("/payments/verify", json={})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"
    assert "order_id" in response.json()["error"]["message"]


@pytest.mark.asyncio
async def test_verify_returns_current_status(api_client: httpx.AsyncClient) -> None:
    response = await api_client.post("/payments/verify", json={"order_id": "order_1"})

    assert response.status_code == 200
    assert response.json() == {"status": "pending", "message": "Payment is still being processed"}


@pytest.mark.asyncio
async def test_learner_routes_reject_other_roles(api_client: httpx.AsyncClient) -> None:
    main_module.app.dependency_overrides[get_current_user] = lambda: SimpleNamespace(id=uuid4(), role=RoleEnum.ADMIN)

    response = await api_client.post("/payments/verify", json={"order_id": "order_1"})

    assert response.status_code == 403
    assert response.json()["error"]["code"] == UnauthorizedException.code


@pytest.mark.asyncio
async def test_webhook_passes_raw_body_and_signature_headers(
    api_client: httpx.AsyncClient,
    stub_service: StubPaymentsService,
) -> None:
    body = b'{"data": {"order": {"order_id": "order_1"}}}'

    response = await api_client.post(
        "/payments/webhook",
        content=body,
        headers={
            "content-type": "application/json",
            "x-webhook-timestamp": "1767225600",
            "x-webhook-signature": "c2lnbmF0dXJl",
        },
    )

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert stub_service.callback_calls == [("1767225600", body, "c2lnbmF0dXJl")]


@pytest.mark.asyncio
@pytest.mark.parametrize(("status_code", "code"), [(400, "validation_error"), (401, "signature_invalid")])
async def test_webhook_rejections_use_error_shape(
    api_client: httpx.AsyncClient,
    stub_service: StubPaymentsService,
    status_code: int,
    code: str,
) -> None:
    stub_service.callback_status = status_code

    response = await api_client.post("/payments/webhook", content=b"{}")

    assert response.status_code == status_code
    assert response.json()["error"]["code"] == code


@pytest.mark.asyncio
async def test_bearer_token_resolves_active_learner() -> None:
    learner = SimpleNamespace(id=uuid4(), role=RoleEnum.LEARNER, is_active=True)

    class StubIdentityRepository:
        async def get_user_by_id(self, user_id):
            return learner if user_id == learner.id else None

    app = main_module.app
    app.dependency_overrides[get_identity_service] = lambda: IdentityService(StubIdentityRepository())
    app.dependency_overrides[get_payments_service] = lambda: StubPaymentsService()
    try:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://testserver/api/v1",
        ) as client:
            authorized = await client.post(
                "/payments/verify",
                json={"order_id": "order_1"},
                headers={"Authorization": f"Bearer {create_access_token(str(learner.id))}"},
            )
            stranger = await client.post(
                "/payments/verify",
                json={"order_id": "order_1"},
                headers={"Authorization": f"Bearer {create_access_token(str(uuid4()))}"},
            )
            garbage = await client.post(
                "/payments/verify",
                json={"order_id": "order_1"},
                headers={"Authorization": "Bearer not-a-jwt"},
            )
    finally:
        app.dependency_overrides.clear()

    assert authorized.status_code == 200
    assert stranger.status_code == 403
    assert garbage.status_code == 401


@pytest.mark.asyncio
async def test_order_history_is_paginated(
    api_client: httpx.AsyncClient,
    stub_service: StubPaymentsService,
) -> None:
    now = datetime(2026, 3, 1, tzinfo=UTC)
    order = SimpleNamespace(
        id=uuid4(),
        program_id=uuid4(),
        enrollment_id=uuid4(),
        gateway_order_id="order_1",
        amount=Decimal("999.00"),
        currency="INR",
        status=OrderStatusEnum.SUCCESS,
        payment_method="upi",
        failure_reason=None,
        created_at=now,
        updated_at=now,
    )
    stub_service.orders = [order]
    stub_service.orders_total = 3

    response = await api_client.get("/payments/orders", params={"limit": 1, "offset": 0})

    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 3
    assert payload["has_more"] is True
    assert payload["items"][0]["gateway_order_id"] == "order_1"
    assert payload["items"][0]["status"] == "success"
    assert stub_service.list_calls == [(LEARNER.id, 1, 0)]


@pytest.mark.asyncio
async def test_order_history_rejects_oversized_page(api_client: httpx.AsyncClient) -> None:
    response = await api_client.get("/payments/orders", params={"limit": 500})

    assert response.status_code == 400
