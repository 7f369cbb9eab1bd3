from typing import Optional
from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .logging_config import setup_logging
from .models import (
    InitializePaymentRequest, InitializePaymentResponse, VerificationResult,
    PaymentAttempt, Enrollment, AccessResponse, SetEnrollmentActiveRequest,
    RecordReferralRequest, ReferralAttribution, ReferrerAccount,
    ReferrerDashboard, UpdateSettingsRequest, TransactionHistoryResponse, PayoutResponse,
    PayoutBatch, WebhookAck,
)
from .errors import (
    UnknownReference, GatewayUnavailable, AmountMismatch,
    InvalidCart, InvalidSignature, EnrollmentNotFound, InvalidReferral,
    NothingToPayout, MissingBankDetails, LedgerInconsistency,
)
from .service import SettlementService

setup_logging()
settings = get_settings()

app = FastAPI(
    title="Course Settlement API",
    description="Payment verification, course enrollment and referral commission payouts",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

settlement_service = SettlementService()


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.app_name}


@app.post("/payments/initialize", response_model=InitializePaymentResponse,
          status_code=status.HTTP_201_CREATED, tags=["Payments"])
def initialize_payment(request: InitializePaymentRequest) -> InitializePaymentResponse:
    try:
        return settlement_service.initialize_payment(request)
    except InvalidCart as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except GatewayUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get("/payments/verify/{reference}", response_model=VerificationResult, tags=["Payments"])
def verify_payment(reference: str) -> VerificationResult:
    try:
        return settlement_service.verify(reference)
    except UnknownReference:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payment {reference} not found")
    except AmountMismatch as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except GatewayUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.post("/payments/webhook", response_model=WebhookAck, tags=["Payments"])
async def payment_webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(default=None),
) -> WebhookAck:
    raw_body = await request.body()
    try:
        return await run_in_threadpool(settlement_service.handle_webhook, raw_body, x_paystack_signature)
    except InvalidSignature as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except AmountMismatch as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except GatewayUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@app.get("/payments", response_model=list[PaymentAttempt], tags=["Payments"])
def list_payments(buyer_id: Optional[str] = None, limit: int = 200) -> list[PaymentAttempt]:
    return settlement_service.list_payments(buyer_id, limit)


@app.get("/payments/{reference}", response_model=PaymentAttempt, tags=["Payments"])
def get_payment(reference: str) -> PaymentAttempt:
    try:
        return settlement_service.get_payment(reference)
    except UnknownReference:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payment {reference} not found")


@app.get("/students/{buyer_id}/enrollments", response_model=list[Enrollment], tags=["Enrollments"])
def list_enrollments(buyer_id: str, active_only: bool = False) -> list[Enrollment]:
    return settlement_service.enrollments.list_enrollments(buyer_id, active_only)


@app.get("/students/{buyer_id}/access", response_model=AccessResponse, tags=["Enrollments"])
def check_access(buyer_id: str, subject: str, grade: str, term: Optional[str] = None) -> AccessResponse:
    return AccessResponse(
        buyer_id=buyer_id, subject=subject, grade=grade, term=term,
        has_access=settlement_service.has_access(buyer_id, subject, grade, term),
    )


@app.patch("/students/{buyer_id}/enrollments", response_model=Enrollment, tags=["Enrollments"])
def set_enrollment_active(buyer_id: str, request: SetEnrollmentActiveRequest) -> Enrollment:
    try:
        return settlement_service.enrollments.set_active(
            buyer_id, request.subject, request.grade, request.term, request.is_active,
        )
    except EnrollmentNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.post("/referrals", response_model=ReferralAttribution,
          status_code=status.HTTP_201_CREATED, tags=["Referrals"])
def record_referral(request: RecordReferralRequest) -> ReferralAttribution:
    try:
        return settlement_service.commissions.record_referral(
            request.referrer_id, request.buyer_id, request.referred_email,
        )
    except InvalidReferral as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/referrers/{referrer_id}/dashboard", response_model=ReferrerDashboard, tags=["Referrers"])
def get_referrer_dashboard(referrer_id: str) -> ReferrerDashboard:
    return settlement_service.commissions.dashboard(referrer_id)


@app.get("/referrers/{referrer_id}/referrals", response_model=list[ReferralAttribution], tags=["Referrers"])
def list_referrer_referrals(referrer_id: str) -> list[ReferralAttribution]:
    return settlement_service.commissions.list_referrals(referrer_id)


@app.get("/referrers/{referrer_id}/settings", response_model=ReferrerAccount, tags=["Referrers"])
def get_referrer_settings(referrer_id: str) -> ReferrerAccount:
    return settlement_service.get_settings(referrer_id)


@app.put("/referrers/{referrer_id}/settings", response_model=ReferrerAccount, tags=["Referrers"])
def update_referrer_settings(referrer_id: str, request: UpdateSettingsRequest) -> ReferrerAccount:
    return settlement_service.update_settings(referrer_id, request)


@app.get("/referrers/{referrer_id}/transactions", response_model=TransactionHistoryResponse, tags=["Referrers"])
def list_referrer_transactions(referrer_id: str, limit: int = 200, offset: int = 0) -> TransactionHistoryResponse:
    return settlement_service.list_transactions(referrer_id, limit, offset)


@app.post("/referrers/{referrer_id}/payout", response_model=PayoutResponse, tags=["Referrers"])
def request_payout(referrer_id: str) -> PayoutResponse:
    try:
        return settlement_service.request_payout(referrer_id)
    except (NothingToPayout, MissingBankDetails) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerInconsistency as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.get("/referrers/{referrer_id}/payouts", response_model=list[PayoutBatch], tags=["Referrers"])
def list_payouts(referrer_id: str) -> list[PayoutBatch]:
    return settlement_service.payouts.list_payouts(referrer_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
