"""
Unit Tests for the Enrollment Granter

Tests cover:
1. First purchase creates an active enrollment
2. Re-purchase reactivates instead of duplicating
3. Same-payment grants are no-ops
4. Access checks and administrative toggles
"""

from datetime import datetime, timedelta, timezone

import pytest

from settlement.enrollments import EnrollmentGranter
from settlement.errors import EnrollmentNotFound
from settlement.models import CartItem


BUYER_ID = "student-7"
FIRST_PURCHASE = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)
SECOND_PURCHASE = FIRST_PURCHASE + timedelta(days=30)
BIOLOGY = CartItem(subject="Biology", grade="SS2", term="Second", price=4000)


@pytest.fixture
def granter(storage) -> EnrollmentGranter:
    return EnrollmentGranter(storage)


class TestGrant:
    """Tests for granting enrollments from a verified payment."""

    def test_grant_creates_active_enrollment(self, granter, storage):
        """Test that a new key creates one active row with the frozen price."""
        enrollments = granter.grant(BUYER_ID, "PSK_1", [BIOLOGY], FIRST_PURCHASE)

        assert len(enrollments) == 1
        enrollment = enrollments[0]
        assert enrollment.is_active is True
        assert enrollment.purchase_price == 4000
        assert enrollment.source_payment_reference == "PSK_1"
        assert enrollment.purchased_at == FIRST_PURCHASE
        assert len(storage.enrollments) == 1

    def test_repurchase_after_deactivation_reactivates(self, granter, storage):
        """Test that buying an inactive course again reuses the row with new values."""
        granter.grant(BUYER_ID, "PSK_1", [BIOLOGY], FIRST_PURCHASE)
        granter.set_active(BUYER_ID, "Biology", "SS2", "Second", False)
        repriced = BIOLOGY.model_copy(update={"price": 4500})

        enrollments = granter.grant(BUYER_ID, "PSK_2", [repriced], SECOND_PURCHASE)

        assert len(storage.enrollments) == 1
        enrollment = enrollments[0]
        assert enrollment.is_active is True
        assert enrollment.purchase_price == 4500
        assert enrollment.purchased_at == SECOND_PURCHASE
        assert enrollment.source_payment_reference == "PSK_2"

    def test_repurchase_while_active_refreshes_row(self, granter, storage):
        """Test that buying an owned course again updates price and timestamp only."""
        first = granter.grant(BUYER_ID, "PSK_1", [BIOLOGY], FIRST_PURCHASE)[0]
        repriced = BIOLOGY.model_copy(update={"price": 3500})

        second = granter.grant(BUYER_ID, "PSK_2", [repriced], SECOND_PURCHASE)[0]

        assert len(storage.enrollments) == 1
        assert second.is_active is True
        assert second.purchase_price == 3500
        assert second.purchased_at == SECOND_PURCHASE
        assert second.created_at == first.created_at

    def test_same_payment_grant_is_noop(self, granter):
        """Test that granting twice for one payment leaves the row untouched."""
        first = granter.grant(BUYER_ID, "PSK_1", [BIOLOGY], FIRST_PURCHASE)[0]

        again = granter.grant(BUYER_ID, "PSK_1", [BIOLOGY], SECOND_PURCHASE)[0]

        assert again == first

    def test_term_is_part_of_the_key(self, granter, storage):
        """Test that the same subject in another term is a separate enrollment."""
        other_term = BIOLOGY.model_copy(update={"term": "Third"})

        granter.grant(BUYER_ID, "PSK_1", [BIOLOGY, other_term], FIRST_PURCHASE)

        assert len(storage.enrollments) == 2


class TestAccess:
    """Tests for read-side access checks."""

    def test_has_access_requires_active_row(self, granter):
        """Test that access follows the active flag."""
        granter.grant(BUYER_ID, "PSK_1", [BIOLOGY], FIRST_PURCHASE)
        assert granter.has_access(BUYER_ID, "Biology", "SS2", "Second")

        granter.set_active(BUYER_ID, "Biology", "SS2", "Second", False)

        assert not granter.has_access(BUYER_ID, "Biology", "SS2", "Second")

    def test_has_access_matches_full_key(self, granter):
        """Test that another buyer, grade or term has no access."""
        granter.grant(BUYER_ID, "PSK_1", [BIOLOGY], FIRST_PURCHASE)

        assert not granter.has_access("student-8", "Biology", "SS2", "Second")
        assert not granter.has_access(BUYER_ID, "Biology", "SS3", "Second")
        assert not granter.has_access(BUYER_ID, "Biology", "SS2")

    def test_termless_item(self, granter):
        """Test that items without a term are matched by a termless check."""
        full_year = CartItem(subject="Chemistry", grade="SS1", price=9000)
        granter.grant(BUYER_ID, "PSK_1", [full_year], FIRST_PURCHASE)

        assert granter.has_access(BUYER_ID, "Chemistry", "SS1")
        assert not granter.has_access(BUYER_ID, "Chemistry", "SS1", "First")

    def test_set_active_unknown_enrollment(self, granter):
        """Test that toggling a course the buyer never bought fails."""
        with pytest.raises(EnrollmentNotFound):
            granter.set_active(BUYER_ID, "Biology", "SS2", "Second", True)

    def test_list_enrollments_active_only(self, granter):
        """Test that inactive rows can be filtered out of the listing."""
        chemistry = CartItem(subject="Chemistry", grade="SS1", price=9000)
        granter.grant(BUYER_ID, "PSK_1", [BIOLOGY], FIRST_PURCHASE)
        granter.grant(BUYER_ID, "PSK_2", [chemistry], SECOND_PURCHASE)
        granter.set_active(BUYER_ID, "Biology", "SS2", "Second", False)

        assert [e.subject for e in granter.list_enrollments(BUYER_ID)] == ["Chemistry", "Biology"]
        assert [e.subject for e in granter.list_enrollments(BUYER_ID, active_only=True)] == ["Chemistry"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
