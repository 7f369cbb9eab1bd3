"""
Course Payment Settlement

This package provides:
- Payment attempts initialized against a hosted gateway (persist, then charge)
- Idempotent verification: pending → success / failed, exactly once
- Enrollment grants per purchased subject, grade and term
- Referral commissions accrued at a snapshotted rate
- Payout batches that drain a referrer's pending commissions atomically
"""

from .models import (
    CartItem,
    PaymentStatus,
    CommissionStatus,
    PaymentAttempt,
    Enrollment,
    ReferralCommissionEntry,
    ReferrerAccount,
    PayoutBatch,
)
from .service import SettlementService

__all__ = [
    "CartItem",
    "PaymentStatus",
    "CommissionStatus",
    "PaymentAttempt",
    "Enrollment",
    "ReferralCommissionEntry",
    "ReferrerAccount",
    "PayoutBatch",
    "SettlementService",
]
