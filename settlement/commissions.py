from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from uuid import uuid4

import structlog

from .config import get_settings
from .errors import InvalidReferral, LedgerInconsistency
from .models import (
    CommissionStatus,
    ReferralStatus,
    ReferralAttribution,
    ReferralCommissionEntry,
    ReferrerAccount,
    ReferrerDashboard,
    UpdateSettingsRequest,
    TransactionHistoryResponse,
)
from .storage import InMemoryStorage

logger = structlog.get_logger(__name__)


def compute_commission(amount_paid: int, rate: Decimal) -> int:
    """Commission in minor units, rounded half-up (2.5 kobo -> 3 kobo)."""
    return int((Decimal(amount_paid) * Decimal(rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email and email.strip() else None


class CommissionEngine:
    def __init__(self, storage: InMemoryStorage, default_rate: Optional[Decimal] = None):
        self.storage = storage
        self.default_rate = default_rate if default_rate is not None else get_settings().default_commission_rate

    def record_referral(
        self,
        referrer_id: str,
        buyer_id: Optional[str] = None,
        referred_email: Optional[str] = None,
    ) -> ReferralAttribution:
        email = normalize_email(referred_email)
        if not buyer_id and not email:
            raise InvalidReferral("A referral needs a buyer or an email")
        if referrer_id == buyer_id:
            raise InvalidReferral("A user cannot refer themselves")

        with self.storage.transaction():
            existing = self._find_referral(buyer_id, email)
            if existing:
                if existing["referrer_id"] != referrer_id:
                    raise InvalidReferral(
                        f"{buyer_id or email} is already attributed to another referrer"
                    )
                if buyer_id and existing["buyer_id"] is None:
                    existing["buyer_id"] = buyer_id
                if email and not existing["referred_email"]:
                    existing["referred_email"] = email
                return ReferralAttribution(**existing)

            row = {
                "id": uuid4(),
                "buyer_id": buyer_id,
                "referrer_id": referrer_id,
                "referred_email": email,
                "status": ReferralStatus.PENDING,
                "reward_amount": 0,
                "created_at": datetime.now(timezone.utc),
            }
            self.storage.referrals[row["id"]] = row
            recorded = ReferralAttribution(**row)

        logger.info("referral_recorded", referrer_id=referrer_id, buyer_id=buyer_id, by_email=buyer_id is None)
        return recorded

    def resolve_referrer(self, buyer_id: str, email: Optional[str] = None) -> Optional[str]:
        """Referrer for ``buyer_id``, falling back to a referral recorded against ``email``.

        An email match that has no buyer yet is linked to ``buyer_id`` so later
        purchases resolve by id.
        """
        email = normalize_email(email)
        with self.storage.transaction():
            row = self._find_referral(buyer_id, email)
            if row is None or row["referrer_id"] == buyer_id:
                return None
            if row["buyer_id"] is None:
                row["buyer_id"] = buyer_id
                logger.info("referral_linked", referrer_id=row["referrer_id"], buyer_id=buyer_id)
            return row["referrer_id"]

    def list_referrals(self, referrer_id: str) -> list[ReferralAttribution]:
        with self.storage.read():
            return self._referrals_of(referrer_id)

    def accrue(
        self,
        payment_reference: str,
        referrer_id: str,
        amount_paid: int,
        buyer_id: Optional[str] = None,
    ) -> ReferralCommissionEntry:
        key = (payment_reference, referrer_id)
        with self.storage.transaction():
            existing = self.storage.commission_entries.get(key)
            if existing:
                logger.info("commission_already_accrued", reference=payment_reference, referrer_id=referrer_id)
                return ReferralCommissionEntry(**existing)

            account = self._get_or_create_account(referrer_id)
            rate = account["commission_rate"]
            commission = compute_commission(amount_paid, rate)
            now = datetime.now(timezone.utc)

            entry = {
                "id": uuid4(),
                "payment_reference": payment_reference,
                "referrer_id": referrer_id,
                "buyer_id": buyer_id,
                "amount_paid": amount_paid,
                "commission_rate": rate,
                "commission_amount": commission,
                "status": CommissionStatus.PENDING,
                "created_at": now,
                "paid_at": None,
                "payout_batch_id": None,
            }
            self.storage.commission_entries[key] = entry
            account["pending_earnings"] += commission
            account["total_earnings"] += commission
            account["updated_at"] = now

            referral = self._find_referral(buyer_id, None) if buyer_id else None
            if referral and referral["referrer_id"] == referrer_id:
                referral["status"] = ReferralStatus.COMPLETED
                referral["reward_amount"] += commission
            accrued = ReferralCommissionEntry(**entry)

        logger.info(
            "commission_accrued",
            reference=payment_reference,
            referrer_id=referrer_id,
            amount_paid=amount_paid,
            rate=str(rate),
            commission=commission,
        )
        return accrued

    def get_settings(self, referrer_id: str) -> ReferrerAccount:
        with self.storage.transaction():
            return ReferrerAccount(**self._get_or_create_account(referrer_id))

    def update_settings(self, referrer_id: str, request: UpdateSettingsRequest) -> ReferrerAccount:
        with self.storage.transaction():
            account = self._get_or_create_account(referrer_id)
            if request.bank_details is not None:
                account["bank_details"].update(request.bank_details.model_dump(exclude_none=True))
            if request.commission_rate is not None:
                account["commission_rate"] = request.commission_rate
            account["updated_at"] = datetime.now(timezone.utc)
            updated = ReferrerAccount(**account)

        logger.info(
            "referrer_settings_updated",
            referrer_id=referrer_id,
            commission_rate=str(updated.commission_rate),
        )
        return updated

    def list_transactions(self, referrer_id: str, limit: int = 200, offset: int = 0) -> TransactionHistoryResponse:
        with self.storage.read():
            all_entries = self._entries_of(referrer_id)
            account = dict(self.storage.referrers.get(referrer_id) or {})

        return TransactionHistoryResponse(
            referrer_id=referrer_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            pending_earnings=account.get("pending_earnings", 0),
            paid_out_earnings=account.get("paid_out_earnings", 0),
        )

    def dashboard(self, referrer_id: str, recent: int = 10) -> ReferrerDashboard:
        with self.storage.read():
            account = self.get_settings(referrer_id)
            referrals = self._referrals_of(referrer_id)
            entries = self._entries_of(referrer_id)

        total = len(referrals)
        completed = sum(1 for r in referrals if r.status == ReferralStatus.COMPLETED)
        return ReferrerDashboard(
            referrer_id=referrer_id,
            total_referrals=total,
            pending_referrals=total - completed,
            completed_referrals=completed,
            conversion_rate=round(completed / total * 100, 1) if total else 0.0,
            total_earnings=account.total_earnings,
            pending_earnings=account.pending_earnings,
            paid_out_earnings=account.paid_out_earnings,
            commission_rate=account.commission_rate,
            has_bank_details=account.bank_details.is_complete(),
            recent_referrals=referrals[:recent],
            recent_transactions=entries[:recent],
        )

    def check_consistency(self, referrer_id: str) -> int:
        """Compare the cached aggregate with the entries; report drift, never repair it."""
        with self.storage.read():
            account = self.storage.referrers.get(referrer_id)
            cached = account["pending_earnings"] if account else 0
            actual = sum(
                e["commission_amount"] for e in self.storage.commission_entries.values()
                if e["referrer_id"] == referrer_id and e["status"] == CommissionStatus.PENDING
            )
        if cached != actual:
            logger.error("ledger_inconsistency", referrer_id=referrer_id, cached=cached, actual=actual)
            raise LedgerInconsistency(
                f"Referrer {referrer_id}: pending_earnings={cached} but pending entries sum to {actual}"
            )
        return actual

    def _find_referral(self, buyer_id: Optional[str], email: Optional[str]) -> Optional[dict]:
        referrals = self.storage.referrals
        row = referrals.find(lambda r: r["buyer_id"] == buyer_id) if buyer_id else None
        if row is None and email:
            # A buyer may only claim an email referral nobody has claimed yet.
            row = referrals.find(
                lambda r: r["referred_email"] == email and (buyer_id is None or r["buyer_id"] is None)
            )
        return row

    def _referrals_of(self, referrer_id: str) -> list[ReferralAttribution]:
        rows = self.storage.referrals.select(lambda r: r["referrer_id"] == referrer_id)
        rows.reverse()
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [ReferralAttribution(**r) for r in rows]

    def _entries_of(self, referrer_id: str) -> list[ReferralCommissionEntry]:
        rows = self.storage.commission_entries.select(lambda e: e["referrer_id"] == referrer_id)
        rows.reverse()
        rows.sort(key=lambda e: e["created_at"], reverse=True)
        return [ReferralCommissionEntry(**e) for e in rows]

    def _get_or_create_account(self, referrer_id: str) -> dict:
        account = self.storage.referrers.get(referrer_id)
        if account is None:
            account = {
                "referrer_id": referrer_id,
                "commission_rate": self.default_rate,
                "bank_details": {},
                "pending_earnings": 0,
                "paid_out_earnings": 0,
                "total_earnings": 0,
                "updated_at": datetime.now(timezone.utc),
            }
            self.storage.referrers[referrer_id] = account
        return account
