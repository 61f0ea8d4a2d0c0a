"""
Periodic subscription sweep.

Applies pending plan changes, renews, moves failed renewals into their grace
period and expires what is over. Every subscription is handled in its own
session and transaction: one bad row is logged and skipped, never the sweep.

Writes go through the same version-conditional UPDATE as request handlers,
so the sweep and user requests interleave without locks. Before charging a
card the sweep claims the row (``billing_claim``), which request handlers
respect, so a charge is always recorded against the version it claimed.
"""
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from resumekit.core.config import GRACE_PERIOD_DAYS
from resumekit.core.errors import ConflictError, PaymentError, StaleCatalogError
from resumekit.core.plan_tables import SubscriptionStatus, cycle_end
from resumekit.db.models.billing_details import UserBillingDetails
from resumekit.db.models.checkout import CheckoutSession
from resumekit.db.models.subscription import UserSubscription
from resumekit.services.credit_notes import consume_credit, open_credit
from resumekit.services.payment_gateway import PaymentGatewayAdapter
from resumekit.services.plan_catalog import PlanCatalog, ResolvedPrice
from resumekit.services.subscription_service import PENDING_CLEARED, SESSION_EXPIRED, SESSION_PENDING, write_conditionally

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    changes_applied: int = 0
    renewed: int = 0
    moved_to_grace: int = 0
    expired: int = 0
    skipped: int = 0
    sessions_expired: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


class ChangeScheduler:
    """Runs the sweep; ``session_factory`` is usually ``SessionLocal``."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: PaymentGatewayAdapter,
        grace_period_days: int = GRACE_PERIOD_DAYS,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.grace_period = timedelta(days=grace_period_days)

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.utcnow()
        report = SweepReport()
        logger.info(f"Subscription sweep started at {now.isoformat()}")

        for subscription_id in self._due_ids(now):
            self._process_one(subscription_id, now, report)
        report.sessions_expired = self._expire_checkout_sessions(now)

        logger.info(f"Subscription sweep finished: {report.as_dict()}")
        return report

    def _due_ids(self, now: datetime) -> List[int]:
        db = self.session_factory()
        try:
            ended = (
                db.query(UserSubscription.id)
                .filter(
                    UserSubscription.status == SubscriptionStatus.ACTIVE.value,
                    UserSubscription.end_date <= now,
                )
                .all()
            )
            grace_over = (
                db.query(UserSubscription.id)
                .filter(
                    UserSubscription.status == SubscriptionStatus.GRACE_PERIOD.value,
                    UserSubscription.grace_period_end <= now,
                )
                .all()
            )
            return sorted(row.id for row in ended + grace_over)
        finally:
            db.close()

    def _process_one(self, subscription_id: int, now: datetime, report: SweepReport) -> None:
        db = self.session_factory()
        try:
            outcome = self._advance(db, subscription_id, now)
            if outcome:
                setattr(report, outcome, getattr(report, outcome) + 1)
        except StaleCatalogError as e:
            db.rollback()
            report.skipped += 1
            logger.error(f"Skipping subscription {subscription_id}: {e.message}")
        except ConflictError:
            db.rollback()
            report.skipped += 1
            logger.info(f"Subscription {subscription_id} changed during the sweep; next sweep picks it up")
        except Exception:
            db.rollback()
            report.skipped += 1
            logger.exception(f"Unexpected error processing subscription {subscription_id}")
        finally:
            db.close()

    def _advance(self, db: Session, subscription_id: int, now: datetime) -> Optional[str]:
        """Move one subscription across its boundary. Returns the report field to count."""
        subscription = db.get(UserSubscription, subscription_id)
        if subscription is None:
            return None

        if subscription.status == SubscriptionStatus.GRACE_PERIOD.value:
            if subscription.grace_period_end is None or subscription.grace_period_end > now:
                return None
            write_conditionally(db, subscription, {"status": SubscriptionStatus.EXPIRED.value})
            db.commit()
            logger.info(f"Grace period elapsed, expired: subscription_id={subscription_id}")
            return "expired"

        if subscription.status != SubscriptionStatus.ACTIVE.value or subscription.end_date > now:
            return None

        if self._awaiting_payment(db, subscription.id, now):
            logger.info(f"Checkout awaiting confirmation, deferring to next sweep: subscription_id={subscription_id}")
            return "skipped"

        catalog = PlanCatalog(db)
        if subscription.has_pending_change:
            return self._apply_pending_change(db, catalog, subscription, now)
        if subscription.auto_renew:
            return self._renew(db, catalog, subscription, now)

        write_conditionally(db, subscription, {"status": SubscriptionStatus.EXPIRED.value})
        db.commit()
        logger.info(f"Subscription expired at period end: subscription_id={subscription_id}")
        return "expired"

    def _apply_pending_change(self, db: Session, catalog: PlanCatalog, subscription: UserSubscription,
                              now: datetime) -> str:
        """Switch to the scheduled plan. ``auto_renew`` is carried over unchanged."""
        target = catalog.get_subscribed_plan(subscription.pending_plan_change_to)
        price = catalog.price_for(target, subscription.region)
        values = {
            "plan_id": target.id,
            "previous_plan_id": subscription.plan_id,
            "status": SubscriptionStatus.ACTIVE.value,
            "start_date": now,
            "end_date": cycle_end(now, target.billing_cycle),
            "currency": price.currency,
            **PENDING_CLEARED,
        }

        if target.is_freemium:
            write_conditionally(db, subscription, values, billing_cycle=target.billing_cycle)
            db.commit()
        else:
            idempotency_key = f"change-{subscription.id}-plan-{target.id}-{subscription.end_date:%Y%m%d%H%M%S}"
            declined = {
                "plan_id": target.id,
                "previous_plan_id": subscription.plan_id,
                **PENDING_CLEARED,
            }
            paid = self._settle_charge(db, subscription, price, idempotency_key, f"{target.name} subscription",
                                       values, declined, target.billing_cycle, now)
            if not paid:
                return "moved_to_grace"

        logger.info(f"Pending plan change applied: subscription_id={subscription.id}, plan_id={target.id}")
        return "changes_applied"

    def _renew(self, db: Session, catalog: PlanCatalog, subscription: UserSubscription, now: datetime) -> str:
        plan = catalog.get_subscribed_plan(subscription.plan_id)
        price = catalog.price_for(plan, subscription.region)
        values = {
            "start_date": now,
            "end_date": cycle_end(now, plan.billing_cycle),
            "currency": price.currency,
        }

        if plan.is_freemium:
            write_conditionally(db, subscription, values, billing_cycle=plan.billing_cycle)
            db.commit()
        else:
            idempotency_key = f"renewal-{subscription.id}-{subscription.end_date:%Y%m%d%H%M%S}"
            paid = self._settle_charge(db, subscription, price, idempotency_key, f"{plan.name} renewal",
                                       values, {}, plan.billing_cycle, now)
            if not paid:
                return "moved_to_grace"

        logger.info(f"Subscription renewed: subscription_id={subscription.id}, plan_id={plan.id}")
        return "renewed"

    def _settle_charge(self, db: Session, subscription: UserSubscription, price: ResolvedPrice,
                       idempotency_key: str, description: str, paid_values: dict, declined_values: dict,
                       billing_cycle: str, now: datetime) -> bool:
        """
        Claim the row, charge it, then record the outcome on the claimed version.

        The claim commits before the gateway is called; request handlers refuse
        a claimed row, so nothing can move the version between the charge and
        its record. A claim left behind by an interrupted sweep is picked up
        again with the same idempotency key. Returns False when the charge was
        declined and the row went into its grace period.
        """
        if subscription.billing_claim:
            idempotency_key = subscription.billing_claim
            logger.info(f"Resuming claimed charge: subscription_id={subscription.id}, key={idempotency_key}")
        else:
            write_conditionally(db, subscription, {"billing_claim": idempotency_key})
            db.commit()
            db.refresh(subscription)

        try:
            reference, credit = self._charge(db, subscription, price.amount, price.currency,
                                             idempotency_key, description)
        except PaymentError as e:
            write_conditionally(db, subscription, {
                **declined_values,
                "status": SubscriptionStatus.GRACE_PERIOD.value,
                "grace_period_end": now + self.grace_period,
                "billing_claim": None,
            })
            db.commit()
            logger.warning(f"Charge declined, grace period until {now + self.grace_period}: "
                           f"subscription_id={subscription.id}, error={e.message}")
            return False

        write_conditionally(db, subscription, {**paid_values, "payment_reference": reference, "billing_claim": None},
                            billing_cycle=billing_cycle)
        consume_credit(db, subscription.user_id, price.currency, credit, reference)
        db.commit()
        return True

    def _awaiting_payment(self, db: Session, subscription_id: int, now: datetime) -> bool:
        """A live checkout whose confirmation would rewrite this row."""
        return (
            db.query(CheckoutSession.id)
            .filter(
                CheckoutSession.subscription_id == subscription_id,
                CheckoutSession.status == SESSION_PENDING,
                CheckoutSession.expires_at > now,
            )
            .first()
            is not None
        )

    def _charge(self, db: Session, subscription: UserSubscription, amount: Decimal, currency: str,
                idempotency_key: str, description: str):
        """Charge the saved card, less open credit. Returns (payment reference, credit used)."""
        available, _ = open_credit(db, subscription.user_id, currency)
        credit = min(available, amount)
        due = amount - credit
        if due <= 0:
            return f"credit-{idempotency_key}", credit

        details = db.query(UserBillingDetails).filter(UserBillingDetails.user_id == subscription.user_id).first()
        customer_ref = details.gateway_customer_id if details else None
        reference = self.gateway.charge_renewal(due, currency, idempotency_key, customer_ref, description)
        return reference, credit

    def _expire_checkout_sessions(self, now: datetime) -> int:
        db = self.session_factory()
        try:
            expired = (
                db.query(CheckoutSession)
                .filter(CheckoutSession.status == SESSION_PENDING, CheckoutSession.expires_at <= now)
                .update({"status": SESSION_EXPIRED, "processed_at": now}, synchronize_session=False)
            )
            db.commit()
            if expired:
                logger.info(f"Expired {expired} abandoned checkout session(s)")
            return expired
        except Exception:
            db.rollback()
            logger.exception("Failed to expire abandoned checkout sessions")
            return 0
        finally:
            db.close()
