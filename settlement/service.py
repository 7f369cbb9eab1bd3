import json
import time
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog

from .commissions import CommissionEngine
from .config import Settings, get_settings
from .enrollments import EnrollmentGranter
from .errors import (
    AmountMismatch,
    GatewayTimeout,
    GatewayUnavailable,
    InvalidCart,
    InvalidSignature,
    UnknownReference,
)
from .gateway import ChargeState, PaymentGateway, PaystackGateway
from .models import (
    CartItem,
    PaymentStatus,
    PaymentAttempt,
    Enrollment,
    InitializePaymentRequest,
    InitializePaymentResponse,
    VerificationResult,
    ReferrerAccount,
    UpdateSettingsRequest,
    TransactionHistoryResponse,
    PayoutResponse,
    WebhookAck,
)
from .payouts import PayoutBatcher
from .storage import InMemoryStorage, enrollment_key

logger = structlog.get_logger(__name__)


def generate_reference(buyer_id: str) -> str:
    return f"PSK_{int(time.time() * 1000)}_{buyer_id}_{uuid4().hex[:6]}"


class SettlementService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        gateway: Optional[PaymentGateway] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.gateway = gateway or PaystackGateway()
        self.enrollments = EnrollmentGranter(self.storage)
        self.commissions = CommissionEngine(self.storage, self.settings.default_commission_rate)
        self.payouts = PayoutBatcher(self.storage)

    def initialize_payment(self, request: InitializePaymentRequest) -> InitializePaymentResponse:
        amount = self._validate_cart(request.items)
        reference = generate_reference(request.buyer_id)
        callback_url = request.callback_url or self.settings.default_callback_url

        # The attempt is persisted before the gateway sees the reference.
        with self.storage.transaction():
            referrer_id = self.commissions.resolve_referrer(request.buyer_id, request.email)
            self.storage.payments[reference] = {
                "reference": reference,
                "buyer_id": request.buyer_id,
                "referrer_id": referrer_id,
                "amount": amount,
                "currency": self.settings.currency,
                "items": [item.model_dump() for item in request.items],
                "status": PaymentStatus.PENDING,
                "authorization_url": None,
                "failure_reason": None,
                "created_at": datetime.now(timezone.utc),
                "verified_at": None,
            }

        log = logger.bind(reference=reference, buyer_id=request.buyer_id)
        try:
            authorization_url = self.gateway.init_charge(amount, reference, callback_url, email=request.email)
        except GatewayUnavailable as e:
            log.warning("payment_initialize_failed", error=str(e))
            raise

        with self.storage.transaction():
            self.storage.payments[reference]["authorization_url"] = authorization_url

        log.info("payment_initialized", amount=amount, referrer_id=referrer_id, items=len(request.items))
        return InitializePaymentResponse(reference=reference, authorization_url=authorization_url)

    def verify(self, reference: str) -> VerificationResult:
        attempt = self.get_payment(reference)
        if attempt.status.is_terminal:
            return self._result(reference)

        log = logger.bind(reference=reference)
        try:
            charge = self.gateway.get_charge_status(reference)
        except GatewayTimeout:
            log.warning("payment_verify_timeout")
            return self._result(reference)

        if charge.state == ChargeState.PENDING:
            log.info("payment_still_pending", gateway_status=charge.gateway_status)
            return self._result(reference)

        if charge.state == ChargeState.FAILED:
            if self.storage.transition_payment(
                reference, PaymentStatus.PENDING, PaymentStatus.FAILED,
                failure_reason=charge.gateway_status or "failed",
            ):
                log.info("payment_failed", gateway_status=charge.gateway_status)
            return self._result(reference)

        if charge.amount_paid != attempt.amount:
            won = self.storage.transition_payment(
                reference, PaymentStatus.PENDING, PaymentStatus.FAILED,
                failure_reason="amount_mismatch",
            )
            if not won:
                return self._result(reference)
            log.error("amount_mismatch", expected=attempt.amount, actual=charge.amount_paid)
            raise AmountMismatch(reference, attempt.amount, charge.amount_paid)

        self._settle(attempt)
        return self._result(reference)

    def _settle(self, attempt: PaymentAttempt) -> None:
        verified_at = datetime.now(timezone.utc)
        with self.storage.transaction():
            won = self.storage.transition_payment(
                attempt.reference, PaymentStatus.PENDING, PaymentStatus.SUCCESS,
                verified_at=verified_at,
            )
            if not won:
                logger.info("payment_already_settled", reference=attempt.reference)
                return

            self.enrollments.grant(attempt.buyer_id, attempt.reference, attempt.items, verified_at)
            if attempt.referrer_id:
                self.commissions.accrue(
                    attempt.reference, attempt.referrer_id, attempt.amount, buyer_id=attempt.buyer_id,
                )

        logger.info(
            "payment_verified",
            reference=attempt.reference,
            buyer_id=attempt.buyer_id,
            amount=attempt.amount,
            enrollments=len(attempt.items),
            referrer_id=attempt.referrer_id,
        )

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookAck:
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            raise InvalidSignature("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("webhook_unparseable")
            return WebhookAck()
        if not isinstance(payload, dict):
            logger.warning("webhook_unexpected_shape", payload_type=type(payload).__name__)
            return WebhookAck()

        event = payload.get("event")
        if not isinstance(event, str):
            return WebhookAck()
        if event != "charge.success":
            return WebhookAck(event=event)

        data = payload.get("data")
        reference = data.get("reference") if isinstance(data, dict) else None
        if not isinstance(reference, str):
            logger.warning("webhook_missing_reference", event=event)
            return WebhookAck(event=event)
        with self.storage.read():
            known = reference in self.storage.payments
        if not known:
            logger.warning("webhook_unknown_reference", reference=reference)
            return WebhookAck(event=event)

        # The payload only tells us to look; the gateway query decides.
        result = self.verify(reference)
        return WebhookAck(event=event, status=result.status)

    def get_payment(self, reference: str) -> PaymentAttempt:
        with self.storage.read():
            row = self.storage.payments.get(reference)
            if not row:
                raise UnknownReference(f"Payment {reference} not found")
            return PaymentAttempt(**row)

    def list_payments(self, buyer_id: Optional[str] = None, limit: int = 200) -> list[PaymentAttempt]:
        with self.storage.read():
            rows = self.storage.payments.select(lambda p: buyer_id is None or p["buyer_id"] == buyer_id)
            rows.reverse()
            rows.sort(key=lambda p: p["created_at"], reverse=True)
            return [PaymentAttempt(**p) for p in rows[:limit]]

    def has_access(self, buyer_id: str, subject: str, grade: str, term: Optional[str] = None) -> bool:
        return self.enrollments.has_access(buyer_id, subject, grade, term)

    def get_settings(self, referrer_id: str) -> ReferrerAccount:
        return self.commissions.get_settings(referrer_id)

    def update_settings(self, referrer_id: str, request: UpdateSettingsRequest) -> ReferrerAccount:
        return self.commissions.update_settings(referrer_id, request)

    def list_transactions(self, referrer_id: str, limit: int = 200, offset: int = 0) -> TransactionHistoryResponse:
        return self.commissions.list_transactions(referrer_id, limit, offset)

    def request_payout(self, referrer_id: str) -> PayoutResponse:
        return self.payouts.request_payout(referrer_id)

    def _validate_cart(self, items: list[CartItem]) -> int:
        if not items:
            raise InvalidCart("Cart items are required")
        if any(item.price < 0 for item in items):
            raise InvalidCart("Item prices cannot be negative")
        keys = [(item.subject, item.grade, item.term) for item in items]
        if len(set(keys)) != len(keys):
            raise InvalidCart("Cart lists the same subject, grade and term more than once")
        amount = sum(item.price for item in items)
        if amount <= 0:
            raise InvalidCart("Payment amount must be positive")
        return amount

    def _result(self, reference: str) -> VerificationResult:
        with self.storage.read():
            attempt = self.get_payment(reference)
            enrollments = []
            if attempt.status == PaymentStatus.SUCCESS:
                for item in attempt.items:
                    row = self.storage.enrollments.get(
                        enrollment_key(attempt.buyer_id, item.subject, item.grade, item.term)
                    )
                    if row:
                        enrollments.append(Enrollment(**row))

        return VerificationResult(
            reference=attempt.reference,
            status=attempt.status,
            amount=attempt.amount,
            verified_at=attempt.verified_at,
            enrollments=enrollments,
        )
