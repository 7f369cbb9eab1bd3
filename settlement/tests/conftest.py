"""
Shared fixtures: an in-process gateway and a service wired to fresh storage.
"""

from typing import Callable, Optional

import pytest

from settlement.config import Settings
from settlement.errors import GatewayUnavailable
from settlement.gateway import ChargeState, ChargeStatus, PaymentGateway
from settlement.models import CartItem, InitializePaymentRequest
from settlement.service import SettlementService
from settlement.storage import InMemoryStorage


WEBHOOK_SIGNATURE = "valid-signature"


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.charges: dict[str, ChargeStatus] = {}
        self.init_calls: list[dict] = []
        self.status_calls = 0
        self.fail_init = False
        self.status_error: Optional[Exception] = None
        self.before_status: Optional[Callable[[], None]] = None

    def init_charge(self, amount, reference, callback_url, email=None):
        self.init_calls.append({
            "amount": amount, "reference": reference,
            "callback_url": callback_url, "email": email,
        })
        if self.fail_init:
            raise GatewayUnavailable("gateway down")
        self.charges[reference] = ChargeStatus(reference=reference, state=ChargeState.PENDING)
        return f"https://checkout.paystack.test/{reference}"

    def get_charge_status(self, reference):
        self.status_calls += 1
        if self.before_status:
            self.before_status()
        if self.status_error:
            raise self.status_error
        return self.charges[reference]

    def verify_webhook_signature(self, raw_body, signature):
        return signature == WEBHOOK_SIGNATURE

    def pay(self, reference: str, amount: int) -> None:
        self.charges[reference] = ChargeStatus(
            reference=reference, state=ChargeState.PAID,
            amount_paid=amount, gateway_status="success",
        )

    def decline(self, reference: str, gateway_status: str = "failed") -> None:
        self.charges[reference] = ChargeStatus(
            reference=reference, state=ChargeState.FAILED, gateway_status=gateway_status,
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, paystack_secret_key="sk_test_fake_key_for_testing")


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def service(storage, gateway, settings) -> SettlementService:
    return SettlementService(storage=storage, gateway=gateway, settings=settings)


@pytest.fixture
def checkout(service):
    """Start a payment for ``buyer_id`` and return its reference."""
    def _checkout(buyer_id: str = "student-1", *items: CartItem) -> str:
        if not items:
            items = (CartItem(subject="Mathematics", grade="JSS1", term="First", price=5000),)
        response = service.initialize_payment(
            InitializePaymentRequest(buyer_id=buyer_id, items=list(items))
        )
        return response.reference

    return _checkout
