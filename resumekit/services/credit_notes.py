"""
Courtesy credit notes.

Unused paid time is never refunded in cash. When a subscriber drops from a
paid plan straight to a freemium plan, the unused value becomes a credit note
that is deducted from their next paid checkout in the same currency.

Functions here add to the caller's session and never commit; the credit moves
together with the subscription change it belongs to.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from resumekit.core.plan_tables import round_money
from resumekit.db.models.checkout import CreditNote

logger = logging.getLogger(__name__)


def issue_credit_note(
    db: Session,
    user_id: int,
    amount: Decimal,
    currency: str,
    reason: str,
    source_subscription_id: Optional[int] = None,
) -> Optional[CreditNote]:
    amount = round_money(amount, currency)
    if amount <= 0:
        return None
    note = CreditNote(
        user_id=user_id,
        source_subscription_id=source_subscription_id,
        amount=amount,
        currency=currency,
        reason=reason,
        applied=False,
    )
    db.add(note)
    logger.info(f"Credit note issued: user_id={user_id}, amount={amount} {currency}, reason={reason}")
    return note


def open_credit(db: Session, user_id: int, currency: str) -> Tuple[Decimal, List[CreditNote]]:
    """Unapplied credit a user holds in ``currency``."""
    notes = (
        db.query(CreditNote)
        .filter(
            CreditNote.user_id == user_id,
            CreditNote.currency == currency,
            CreditNote.applied.is_(False),
        )
        .order_by(CreditNote.id)
        .all()
    )
    total = sum((Decimal(note.amount) for note in notes), Decimal(0))
    return round_money(total, currency), notes


def consume_credit(db: Session, user_id: int, currency: str, amount_used: Decimal, session_id: str) -> None:
    """
    Mark open credit as spent on ``session_id``.

    Whatever is left over after ``amount_used`` is carried into a fresh note.
    """
    amount_used = Decimal(amount_used)
    if amount_used <= 0:
        return
    total, notes = open_credit(db, user_id, currency)
    if total < amount_used:
        logger.warning(
            f"Open credit below the amount promised: user_id={user_id}, open={total} {currency}, "
            f"used={amount_used}, session_id={session_id}"
        )
    for note in notes:
        note.applied = True
        note.applied_session_id = session_id
    leftover = total - amount_used
    if leftover > 0:
        issue_credit_note(db, user_id, leftover, currency, "carry_over", notes[-1].source_subscription_id)
    logger.info(f"Credit consumed: user_id={user_id}, used={amount_used} {currency}, session_id={session_id}")
