from datetime import datetime, timezone
from uuid import uuid4

import structlog

from .errors import LedgerInconsistency, MissingBankDetails, NothingToPayout
from .models import BankDetails, CommissionStatus, PayoutBatch, PayoutResponse
from .storage import InMemoryStorage

logger = structlog.get_logger(__name__)


class PayoutBatcher:
    """Turns a referrer's pending commissions into one payout instruction.

    The batch only records what finance should transfer; moving the money to
    the referrer's bank happens outside this service.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def request_payout(self, referrer_id: str) -> PayoutResponse:
        with self.storage.transaction():
            account = self.storage.referrers.get(referrer_id)
            pending_earnings = account["pending_earnings"] if account else 0
            if pending_earnings <= 0:
                raise NothingToPayout(f"Referrer {referrer_id} has no pending earnings")

            bank_details = BankDetails(**account["bank_details"])
            if not bank_details.is_complete():
                raise MissingBankDetails("Bank details required before payout")

            entries = self._select_pending_entries(referrer_id)
            if not entries:
                logger.error("ledger_inconsistency", referrer_id=referrer_id,
                             pending_earnings=pending_earnings, pending_entries=0)
                raise LedgerInconsistency(
                    f"Referrer {referrer_id} shows pending_earnings={pending_earnings} with no pending entries"
                )

            amount = sum(e["commission_amount"] for e in entries)
            if amount > pending_earnings:
                logger.error("ledger_inconsistency", referrer_id=referrer_id,
                             pending_earnings=pending_earnings, batch_amount=amount)
                raise LedgerInconsistency(
                    f"Referrer {referrer_id}: pending entries sum to {amount}, more than pending_earnings={pending_earnings}"
                )

            now = datetime.now(timezone.utc)
            batch = {
                "id": uuid4(),
                "referrer_id": referrer_id,
                "amount": amount,
                "entry_ids": [e["id"] for e in entries],
                "bank_details": bank_details.model_dump(),
                "created_at": now,
            }
            self.storage.payout_batches[batch["id"]] = batch

            for entry in entries:
                entry["status"] = CommissionStatus.PAID
                entry["paid_at"] = now
                entry["payout_batch_id"] = batch["id"]

            account["pending_earnings"] -= amount
            account["paid_out_earnings"] += amount
            account["updated_at"] = now

        logger.info(
            "payout_requested",
            referrer_id=referrer_id,
            batch_id=str(batch["id"]),
            amount=amount,
            entry_count=len(entries),
        )
        return PayoutResponse(batch_id=batch["id"], amount=amount, entry_count=len(entries))

    def list_payouts(self, referrer_id: str) -> list[PayoutBatch]:
        with self.storage.read():
            batches = [
                PayoutBatch(**b)
                for b in self.storage.payout_batches.select(lambda b: b["referrer_id"] == referrer_id)
            ]
        batches.sort(key=lambda b: b.created_at, reverse=True)
        return batches

    def _select_pending_entries(self, referrer_id: str) -> list[dict]:
        return self.storage.commission_entries.select(
            lambda e: e["referrer_id"] == referrer_id and e["status"] == CommissionStatus.PENDING
        )
