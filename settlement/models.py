from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class CartItem(BaseModel):
    subject: str = Field(..., min_length=1)
    grade: str = Field(..., min_length=1)
    term: Optional[str] = None
    price: int = Field(..., description="Price in minor currency units, frozen at checkout")

    model_config = ConfigDict(frozen=True)


class InitializePaymentRequest(BaseModel):
    buyer_id: str = Field(..., min_length=1)
    items: list[CartItem]
    callback_url: Optional[str] = None
    email: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "buyer_id": "student-42",
            "items": [{"subject": "Mathematics", "grade": "JSS1", "term": "First", "price": 5000}],
            "callback_url": "http://localhost:5173/payment/callback",
            "email": "student42@example.com",
        }
    })


class InitializePaymentResponse(BaseModel):
    reference: str
    authorization_url: str


class PaymentAttempt(BaseModel):
    reference: str
    buyer_id: str
    referrer_id: Optional[str] = None
    amount: int
    currency: str = "NGN"
    items: list[CartItem]
    status: PaymentStatus
    authorization_url: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    verified_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Enrollment(BaseModel):
    buyer_id: str
    subject: str
    grade: str
    term: Optional[str] = None
    source_payment_reference: str
    purchase_price: int
    is_active: bool
    purchased_at: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VerificationResult(BaseModel):
    reference: str
    status: PaymentStatus
    amount: int
    verified_at: Optional[datetime] = None
    enrollments: list[Enrollment] = Field(default_factory=list)


class SetEnrollmentActiveRequest(BaseModel):
    subject: str
    grade: str
    term: Optional[str] = None
    is_active: bool


class AccessResponse(BaseModel):
    buyer_id: str
    subject: str
    grade: str
    term: Optional[str] = None
    has_access: bool


class ReferralAttribution(BaseModel):
    id: UUID
    buyer_id: Optional[str] = None
    referrer_id: str
    referred_email: Optional[str] = None
    status: ReferralStatus
    reward_amount: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RecordReferralRequest(BaseModel):
    """A referral names the buyer, the email they will sign up with, or both."""
    referrer_id: str = Field(..., min_length=1)
    buyer_id: Optional[str] = Field(default=None, min_length=1)
    referred_email: Optional[str] = None


class ReferralCommissionEntry(BaseModel):
    id: UUID
    payment_reference: str
    referrer_id: str
    buyer_id: Optional[str] = None
    amount_paid: int
    commission_rate: Decimal
    commission_amount: int
    status: CommissionStatus
    created_at: datetime
    paid_at: Optional[datetime] = None
    payout_batch_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class BankDetails(BaseModel):
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.bank_name and self.account_number)


class ReferrerAccount(BaseModel):
    referrer_id: str
    commission_rate: Decimal = Field(..., ge=0, le=1)
    bank_details: BankDetails = Field(default_factory=BankDetails)
    pending_earnings: int = 0
    paid_out_earnings: int = 0
    total_earnings: int = 0
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UpdateSettingsRequest(BaseModel):
    bank_details: Optional[BankDetails] = None
    commission_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)


class TransactionHistoryResponse(BaseModel):
    referrer_id: str
    entries: list[ReferralCommissionEntry]
    total_count: int
    pending_earnings: int
    paid_out_earnings: int


class ReferrerDashboard(BaseModel):
    referrer_id: str
    total_referrals: int
    pending_referrals: int
    completed_referrals: int
    conversion_rate: float = Field(..., description="Completed referrals as a percentage, one decimal place")
    total_earnings: int
    pending_earnings: int
    paid_out_earnings: int
    commission_rate: Decimal
    has_bank_details: bool
    recent_referrals: list[ReferralAttribution]
    recent_transactions: list[ReferralCommissionEntry]


class PayoutBatch(BaseModel):
    id: UUID
    referrer_id: str
    amount: int
    entry_ids: list[UUID]
    bank_details: BankDetails
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class PayoutResponse(BaseModel):
    batch_id: UUID
    amount: int
    entry_count: int


class WebhookAck(BaseModel):
    received: bool = True
    event: Optional[str] = None
    status: Optional[PaymentStatus] = None
