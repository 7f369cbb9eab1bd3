"""
Unit Tests for the Payout Batcher

Tests cover:
1. Batch amount equals the pending entries it drains
2. Commissions accrued while a batch is open stay pending
3. Refusals: nothing to pay, no bank details, ledger drift
"""

import threading
from decimal import Decimal

import pytest

from settlement.commissions import CommissionEngine
from settlement.errors import LedgerInconsistency, MissingBankDetails, NothingToPayout
from settlement.models import BankDetails, CommissionStatus, UpdateSettingsRequest
from settlement.payouts import PayoutBatcher


REFERRER_ID = "referrer-5"
BANK = BankDetails(bank_name="Access Bank", bank_code="044", account_number="0690000031", account_name="Tola Ade")


@pytest.fixture
def engine(storage) -> CommissionEngine:
    engine = CommissionEngine(storage, default_rate=Decimal("0.10"))
    # A rate of 1 makes each entry's commission equal to the amount paid.
    engine.update_settings(REFERRER_ID, UpdateSettingsRequest(commission_rate=Decimal("1"), bank_details=BANK))
    return engine


@pytest.fixture
def batcher(storage) -> PayoutBatcher:
    return PayoutBatcher(storage)


def entry_for(storage, reference):
    return storage.commission_entries[(reference, REFERRER_ID)]


class TestRequestPayout:
    """Tests for draining pending commissions into a batch."""

    def test_payout_sums_pending_entries(self, engine, batcher, storage):
        """Test that 100 + 250 + 75 becomes one batch of 425."""
        for reference, amount in [("PSK_a", 100), ("PSK_b", 250), ("PSK_c", 75)]:
            engine.accrue(reference, REFERRER_ID, amount)

        result = batcher.request_payout(REFERRER_ID)

        assert result.amount == 425
        assert result.entry_count == 3
        for reference in ("PSK_a", "PSK_b", "PSK_c"):
            entry = entry_for(storage, reference)
            assert entry["status"] == CommissionStatus.PAID
            assert entry["payout_batch_id"] == result.batch_id
            assert entry["paid_at"] is not None

        account = engine.get_settings(REFERRER_ID)
        assert account.pending_earnings == 0
        assert account.paid_out_earnings == 425
        assert account.total_earnings == 425

    def test_commission_accrued_mid_batch_stays_pending(self, engine, batcher, storage, monkeypatch):
        """Test that an accrual racing the batch is left out of it and kept pending."""
        for reference, amount in [("PSK_a", 100), ("PSK_b", 250), ("PSK_c", 75)]:
            engine.accrue(reference, REFERRER_ID, amount)

        racers = []
        original_select = batcher._select_pending_entries

        def select_then_accrue(referrer_id):
            entries = original_select(referrer_id)
            started = threading.Event()

            def accrue_late():
                started.set()
                engine.accrue("PSK_d", REFERRER_ID, 50)

            racer = threading.Thread(target=accrue_late)
            racer.start()
            started.wait(timeout=5)
            racers.append(racer)
            return entries

        monkeypatch.setattr(batcher, "_select_pending_entries", select_then_accrue)

        result = batcher.request_payout(REFERRER_ID)
        for racer in racers:
            racer.join(timeout=5)

        assert result.amount == 425
        assert result.entry_count == 3

        late = entry_for(storage, "PSK_d")
        assert late["status"] == CommissionStatus.PENDING
        assert late["payout_batch_id"] is None

        account = engine.get_settings(REFERRER_ID)
        assert account.pending_earnings == 50
        assert account.paid_out_earnings == 425
        assert engine.check_consistency(REFERRER_ID) == 50

    def test_second_payout_only_takes_new_entries(self, engine, batcher):
        """Test that paid entries are never batched again."""
        engine.accrue("PSK_a", REFERRER_ID, 100)
        first = batcher.request_payout(REFERRER_ID)
        engine.accrue("PSK_b", REFERRER_ID, 40)

        second = batcher.request_payout(REFERRER_ID)

        assert second.amount == 40
        assert second.entry_count == 1
        assert second.batch_id != first.batch_id
        assert engine.get_settings(REFERRER_ID).paid_out_earnings == 140

    def test_batch_records_bank_details(self, engine, batcher):
        """Test that the batch keeps the bank details it was requested against."""
        engine.accrue("PSK_a", REFERRER_ID, 100)
        result = batcher.request_payout(REFERRER_ID)
        engine.update_settings(REFERRER_ID, UpdateSettingsRequest(
            bank_details=BankDetails(account_number="9999999999"),
        ))

        batches = batcher.list_payouts(REFERRER_ID)

        assert len(batches) == 1
        assert batches[0].id == result.batch_id
        assert batches[0].amount == 100
        assert batches[0].bank_details.account_number == "0690000031"
        assert len(batches[0].entry_ids) == 1


class TestPayoutRefusals:
    """Tests for payouts that must not happen."""

    def test_nothing_to_payout(self, engine, batcher):
        """Test that a referrer with no pending earnings is refused."""
        with pytest.raises(NothingToPayout):
            batcher.request_payout(REFERRER_ID)

    def test_unknown_referrer_has_nothing_to_payout(self, batcher):
        """Test that a referrer without an account is refused."""
        with pytest.raises(NothingToPayout):
            batcher.request_payout("referrer-unknown")

    def test_missing_bank_details(self, storage, batcher):
        """Test that earnings cannot be paid out without bank details."""
        engine = CommissionEngine(storage, default_rate=Decimal("0.10"))
        engine.accrue("PSK_a", "referrer-nobank", 5000)

        with pytest.raises(MissingBankDetails):
            batcher.request_payout("referrer-nobank")

        assert engine.get_settings("referrer-nobank").pending_earnings == 500

    def test_aggregate_without_entries_fails_closed(self, engine, batcher, storage):
        """Test that pending earnings with no pending entries is reported, not paid."""
        storage.referrers[REFERRER_ID]["pending_earnings"] = 300

        with pytest.raises(LedgerInconsistency):
            batcher.request_payout(REFERRER_ID)

        assert storage.payout_batches == {}
        assert storage.referrers[REFERRER_ID]["pending_earnings"] == 300

    def test_entries_exceeding_aggregate_fail_closed(self, engine, batcher, storage):
        """Test that a batch larger than the recorded pending earnings rolls back."""
        engine.accrue("PSK_a", REFERRER_ID, 100)
        engine.accrue("PSK_b", REFERRER_ID, 200)
        storage.referrers[REFERRER_ID]["pending_earnings"] = 150

        with pytest.raises(LedgerInconsistency):
            batcher.request_payout(REFERRER_ID)

        assert entry_for(storage, "PSK_a")["status"] == CommissionStatus.PENDING
        assert entry_for(storage, "PSK_b")["status"] == CommissionStatus.PENDING
        assert storage.payout_batches == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
