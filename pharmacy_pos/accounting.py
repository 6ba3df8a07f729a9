from __future__ import annotations

import enum
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from pharmacy_pos.errors import ValidationError
from pharmacy_pos.models import AccountingEntry
from pharmacy_pos.timeutil import now

logger = logging.getLogger(__name__)


class EntryKind(str, enum.Enum):
    SALE = "sale"
    REFUND = "refund"


ENTRY_CATEGORIES = {
    EntryKind.SALE: "sales",
    EntryKind.REFUND: "refunds",
}


class AccountingWriter:
    """Appends one immutable ledger row per completed sale or refund.

    Callers pass the magnitude; the sign comes from the entry kind. The
    writer only ever inserts, it has no update or delete path.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        kind: EntryKind,
        amount: Decimal,
        payment_method: Optional[str],
        reference: Optional[str],
        description: str,
        order_id: Optional[int] = None,
    ) -> AccountingEntry:
        if amount < 0:
            raise ValidationError("accounting amount must be given as a magnitude", field="amount")
        signed = amount if kind is EntryKind.SALE else -amount
        timestamp = now()
        entry = AccountingEntry(
            date=timestamp,
            description=description,
            amount=signed,
            category=ENTRY_CATEGORIES[kind],
            payment_method=payment_method,
            reference=reference,
            order_id=order_id,
            created_at=timestamp,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info("Accounting %s entry %s for %s (%s)", kind.value, entry.id, signed, reference)
        return entry
