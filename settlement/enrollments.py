from datetime import datetime, timezone
from typing import Optional

import structlog

from .errors import EnrollmentNotFound
from .models import CartItem, Enrollment
from .storage import InMemoryStorage, enrollment_key

logger = structlog.get_logger(__name__)


class EnrollmentGranter:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def grant(
        self,
        buyer_id: str,
        payment_reference: str,
        items: list[CartItem],
        purchased_at: datetime,
    ) -> list[Enrollment]:
        granted = []
        with self.storage.transaction():
            for item in items:
                granted.append(self._upsert(buyer_id, payment_reference, item, purchased_at))
        return granted

    def _upsert(
        self,
        buyer_id: str,
        payment_reference: str,
        item: CartItem,
        purchased_at: datetime,
    ) -> Enrollment:
        key = enrollment_key(buyer_id, item.subject, item.grade, item.term)
        row = self.storage.enrollments.get(key)

        if row is None:
            row = {
                "buyer_id": buyer_id,
                "subject": item.subject,
                "grade": item.grade,
                "term": item.term,
                "source_payment_reference": payment_reference,
                "purchase_price": item.price,
                "is_active": True,
                "purchased_at": purchased_at,
                "created_at": datetime.now(timezone.utc),
            }
            self.storage.enrollments[key] = row
            logger.info("enrollment_created", buyer_id=buyer_id, subject=item.subject,
                        grade=item.grade, term=item.term, reference=payment_reference)
            return Enrollment(**row)

        # Re-verifying the same payment must not touch the row.
        if row["is_active"] and row["source_payment_reference"] == payment_reference:
            return Enrollment(**row)

        was_active = row["is_active"]
        row["source_payment_reference"] = payment_reference
        row["purchase_price"] = item.price
        row["purchased_at"] = purchased_at
        row["is_active"] = True
        logger.info(
            "enrollment_refreshed" if was_active else "enrollment_reactivated",
            buyer_id=buyer_id, subject=item.subject, grade=item.grade,
            term=item.term, reference=payment_reference,
        )
        return Enrollment(**row)

    def has_access(self, buyer_id: str, subject: str, grade: str, term: Optional[str] = None) -> bool:
        with self.storage.read():
            row = self.storage.enrollments.get(enrollment_key(buyer_id, subject, grade, term))
            return bool(row and row["is_active"])

    def list_enrollments(self, buyer_id: str, active_only: bool = False) -> list[Enrollment]:
        with self.storage.read():
            rows = self.storage.enrollments.select(
                lambda r: r["buyer_id"] == buyer_id and (r["is_active"] or not active_only)
            )
            rows.sort(key=lambda r: r["purchased_at"], reverse=True)
            return [Enrollment(**r) for r in rows]

    def set_active(
        self,
        buyer_id: str,
        subject: str,
        grade: str,
        term: Optional[str],
        is_active: bool,
    ) -> Enrollment:
        with self.storage.transaction():
            row = self.storage.enrollments.get(enrollment_key(buyer_id, subject, grade, term))
            if not row:
                raise EnrollmentNotFound(f"No enrollment for {buyer_id} in {subject}/{grade}/{term}")
            row["is_active"] = is_active
            toggled = Enrollment(**row)
        logger.info("enrollment_toggled", buyer_id=buyer_id, subject=subject,
                    grade=grade, term=term, is_active=is_active)
        return toggled
