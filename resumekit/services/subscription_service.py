"""
Subscription lifecycle state machine.

Owns ``UserSubscription`` rows and every transition a request can cause:
upgrade, downgrade, cancel, cancel of a pending change, free-plan activation,
first checkout, grace-period renewal, and confirmation of a paid checkout.

Coordination is optimistic. Every write is an UPDATE conditional on the
version that was read; a mismatch raises ConflictError and the operation is
retried once from a fresh read (or not at all when the caller pinned an
``expected_version``). No lock is held while waiting on the payment gateway.
A row the sweep has claimed for a charge (``billing_claim``) refuses
mutations until the sweep records the outcome.

Paid transitions never commit optimistically. The request only records a
checkout session; the subscription moves when the gateway confirms payment,
so an abandoned checkout leaves nothing to undo.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resumekit.core.config import CHECKOUT_SESSION_TTL_MINUTES
from resumekit.core.errors import ConflictError, NotFoundError, PaymentError, ValidationError, WrongDirectionError
from resumekit.core.plan_tables import PlanChangeType, SubscriptionStatus, assert_cycle_length, cycle_end, round_money
from resumekit.db.models.billing_details import UserBillingDetails
from resumekit.db.models.checkout import CheckoutSession
from resumekit.db.models.plan import SubscriptionPlan
from resumekit.db.models.subscription import UserSubscription
from resumekit.db.models.user import User
from resumekit.services.credit_notes import consume_credit, issue_credit_note, open_credit
from resumekit.services.payment_gateway import PaymentGatewayAdapter
from resumekit.services.plan_catalog import PlanCatalog, ResolvedPrice
from resumekit.services.proration import ProrationResult, classify_plan_change, compute_proration, unused_value

logger = logging.getLogger(__name__)

OUTCOME_COMMITTED = "committed"
OUTCOME_SCHEDULED = "scheduled"
OUTCOME_PAYMENT_REQUIRED = "payment_required"

KIND_NEW = "NEW"
KIND_UPGRADE = "UPGRADE"
KIND_RENEWAL = "RENEWAL"

SESSION_PENDING = "PENDING"
SESSION_COMPLETED = "COMPLETED"
SESSION_EXPIRED = "EXPIRED"
SESSION_FAILED = "FAILED"

PENDING_CLEARED = {
    "pending_plan_change_to": None,
    "pending_plan_change_date": None,
    "pending_plan_change_type": None,
}


@dataclass
class PlanChangeOutcome:
    """Result of a mutating request: committed, scheduled, or a redirect to pay."""
    outcome: str
    subscription: Optional[UserSubscription]
    change_type: Optional[str] = None
    redirect_url: Optional[str] = None
    session_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    proration: Optional[ProrationResult] = None
    credit_applied: Decimal = Decimal(0)
    credit_issued: Optional[Decimal] = None

    @property
    def requires_payment(self) -> bool:
        return self.outcome == OUTCOME_PAYMENT_REQUIRED


@dataclass
class PlanChangePreview:
    change_type: str
    current_price: ResolvedPrice
    new_price: ResolvedPrice
    effective_date: datetime
    proration: Optional[ProrationResult] = None
    credit_note_amount: Optional[Decimal] = None
    immediate: bool = False


@dataclass
class ConfirmationResult:
    applied: bool
    subscription: Optional[UserSubscription]
    kind: Optional[str] = None


def write_conditionally(
    db: Session,
    subscription: UserSubscription,
    values: Dict,
    billing_cycle: Optional[str] = None,
) -> None:
    """
    UPDATE ``subscription`` only if its version is still the one we read.

    New cycle dates are checked against ``billing_cycle`` before anything is
    written. Does not commit.

    Raises:
        ConflictError: the row changed since it was read
        CycleInvariantError: the new dates do not span one billing period
    """
    expected = subscription.version
    if billing_cycle is not None and "start_date" in values:
        assert_cycle_length(values["start_date"], values["end_date"], billing_cycle)

    values = dict(values)
    values["version"] = expected + 1
    updated = (
        db.query(UserSubscription)
        .filter(UserSubscription.id == subscription.id, UserSubscription.version == expected)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise ConflictError(
            f"Subscription {subscription.id} was modified concurrently; reload and retry",
            {"subscription_id": subscription.id, "expected_version": expected},
        )


class SubscriptionService:
    """
    Request-side lifecycle operations bound to one database session.

    ``now_fn`` returns naive UTC; tests pass a fixed clock.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayAdapter,
        catalog: Optional[PlanCatalog] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.catalog = catalog or PlanCatalog(db)
        self.now_fn = now_fn or datetime.utcnow

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_current_subscription(self, user_id: int) -> Optional[UserSubscription]:
        """The user's ACTIVE subscription, else their latest GRACE_PERIOD one."""
        active = self._find_active(user_id)
        if active is not None:
            return active
        return (
            self.db.query(UserSubscription)
            .filter(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.GRACE_PERIOD.value,
            )
            .order_by(UserSubscription.id.desc())
            .first()
        )

    def get_active_subscription(self, user_id: int) -> Optional[UserSubscription]:
        return self._find_active(user_id)

    def get_pending_change(self, user_id: int) -> Optional[UserSubscription]:
        subscription = self._find_active(user_id)
        if subscription is None or not subscription.has_pending_change:
            return None
        return subscription

    def list_plans_with_pricing(self, region: str) -> List[Tuple[SubscriptionPlan, ResolvedPrice]]:
        return [(plan, self.catalog.price_for(plan, region)) for plan in self.catalog.get_active_plans()]

    def preview_plan_change(self, subscription_id: int, new_plan_id: int, region: str) -> PlanChangePreview:
        """Classify a change and price it without touching anything."""
        subscription = self._load_active(subscription_id)
        current_plan, target, current_price, new_price = self._price_change(subscription, new_plan_id, region)
        now = self.now_fn()
        change_type = classify_plan_change(current_price.amount, new_price.amount)

        if change_type == PlanChangeType.UPGRADE:
            proration = compute_proration(
                current_price.amount, subscription.start_date, subscription.end_date,
                new_price.amount, now, new_price.currency, current_plan.is_freemium,
            )
            return PlanChangePreview(change_type.value, current_price, new_price, now, proration=proration, immediate=True)

        if target.is_freemium and not current_plan.is_freemium:
            credit = unused_value(current_price.amount, subscription.start_date, subscription.end_date, now,
                                  current_price.currency)
            return PlanChangePreview(change_type.value, current_price, new_price, now,
                                     credit_note_amount=credit, immediate=True)

        return PlanChangePreview(change_type.value, current_price, new_price, subscription.end_date)

    # ------------------------------------------------------------------
    # Plan changes on an ACTIVE subscription
    # ------------------------------------------------------------------

    def upgrade(self, subscription_id: int, new_plan_id: int, region: str,
                expected_version: Optional[int] = None) -> PlanChangeOutcome:
        return self._mutate(subscription_id, expected_version,
                            lambda subscription: self._upgrade(subscription, new_plan_id, region))

    def downgrade(self, subscription_id: int, new_plan_id: int, region: str,
                  expected_version: Optional[int] = None) -> PlanChangeOutcome:
        return self._mutate(subscription_id, expected_version,
                            lambda subscription: self._downgrade(subscription, new_plan_id, region))

    def cancel(self, subscription_id: int, expected_version: Optional[int] = None) -> PlanChangeOutcome:
        return self._mutate(subscription_id, expected_version, self._cancel)

    def cancel_pending_change(self, subscription_id: int,
                              expected_version: Optional[int] = None) -> PlanChangeOutcome:
        return self._mutate(subscription_id, expected_version, self._cancel_pending_change)

    def _upgrade(self, subscription: UserSubscription, new_plan_id: int, region: str) -> PlanChangeOutcome:
        current_plan, target, current_price, new_price = self._price_change(subscription, new_plan_id, region)
        if classify_plan_change(current_price.amount, new_price.amount) != PlanChangeType.UPGRADE:
            raise WrongDirectionError(
                f"{target.name} does not cost more than {current_plan.name}; request a downgrade instead",
                expected="downgrade",
                context={"subscription_id": subscription.id, "plan_id": target.id},
            )

        now = self.now_fn()
        in_flight = self._live_checkout(user_id=subscription.user_id, now=now)
        if in_flight is not None:
            if (in_flight.kind == KIND_UPGRADE and in_flight.subscription_id == subscription.id
                    and in_flight.target_plan_id == target.id):
                logger.info(f"Upgrade repeated, reusing checkout: session_id={in_flight.session_id}")
                return self._redirect_outcome(subscription, in_flight, PlanChangeType.UPGRADE.value)
            raise ConflictError(
                "Another plan change is awaiting payment for this subscription",
                {"subscription_id": subscription.id, "session_id": in_flight.session_id},
            )

        currency = new_price.currency
        proration = compute_proration(
            current_price.amount, subscription.start_date, subscription.end_date,
            new_price.amount, now, currency, current_plan.is_freemium,
        )
        credit, amount_due = self._apply_open_credit(subscription.user_id, currency, proration.proration_amount)
        idempotency_key = f"sub-{subscription.id}-plan-{target.id}-v{subscription.version}"

        if amount_due == 0:
            start = now
            write_conditionally(self.db, subscription, {
                "plan_id": target.id,
                "start_date": start,
                "end_date": cycle_end(start, target.billing_cycle),
                "upgrade_date": now,
                "previous_plan_id": subscription.plan_id,
                "region": new_price.region,
                "currency": currency,
                **PENDING_CLEARED,
            }, billing_cycle=target.billing_cycle)
            consume_credit(self.db, subscription.user_id, currency, credit, f"credit-{idempotency_key}")
            self.db.commit()
            self.db.refresh(subscription)
            logger.info(f"Upgrade committed without payment: subscription_id={subscription.id}, plan_id={target.id}")
            return PlanChangeOutcome(OUTCOME_COMMITTED, subscription, PlanChangeType.UPGRADE.value,
                                     amount=amount_due, currency=currency, proration=proration,
                                     credit_applied=credit)

        info = self.gateway.create_checkout_session(
            amount=amount_due,
            currency=currency,
            idempotency_key=idempotency_key,
            description=f"Upgrade to {target.name}",
            expires_at=now + timedelta(minutes=CHECKOUT_SESSION_TTL_MINUTES),
            customer_email=self._user_email(subscription.user_id),
            customer_ref=self._customer_ref(subscription.user_id),
            metadata={"subscription_id": str(subscription.id), "plan_id": str(target.id), "kind": KIND_UPGRADE},
        )

        # Bumping the version marks the upgrade as in flight for concurrent writers
        write_conditionally(self.db, subscription, {})
        checkout = self._record_checkout(
            info, idempotency_key, KIND_UPGRADE, subscription.user_id, target.id,
            amount_due, credit, new_price, now,
            subscription_id=subscription.id, base_version=subscription.version,
        )
        self.db.refresh(subscription)
        logger.info(
            f"Upgrade awaiting payment: subscription_id={subscription.id}, plan_id={target.id}, "
            f"amount={amount_due} {currency}, session_id={checkout.session_id}"
        )
        outcome = self._redirect_outcome(subscription, checkout, PlanChangeType.UPGRADE.value)
        outcome.proration = proration
        return outcome

    def _downgrade(self, subscription: UserSubscription, new_plan_id: int, region: str) -> PlanChangeOutcome:
        current_plan, target, current_price, new_price = self._price_change(subscription, new_plan_id, region)
        if classify_plan_change(current_price.amount, new_price.amount) != PlanChangeType.DOWNGRADE:
            raise WrongDirectionError(
                f"{target.name} costs more than {current_plan.name}; request an upgrade instead",
                expected="upgrade",
                context={"subscription_id": subscription.id, "plan_id": target.id},
            )

        now = self.now_fn()
        in_flight = self._live_checkout(subscription_id=subscription.id, now=now)
        if in_flight is not None:
            raise ConflictError(
                "A plan change is awaiting payment for this subscription",
                {"subscription_id": subscription.id, "session_id": in_flight.session_id},
            )

        if target.is_freemium and not current_plan.is_freemium:
            # Nothing to defer: switch now and keep the unused paid time as credit
            credit = unused_value(current_price.amount, subscription.start_date, subscription.end_date, now,
                                  current_price.currency)
            start = now
            write_conditionally(self.db, subscription, {
                "plan_id": target.id,
                "start_date": start,
                "end_date": cycle_end(start, target.billing_cycle),
                "previous_plan_id": subscription.plan_id,
                **PENDING_CLEARED,
            }, billing_cycle=target.billing_cycle)
            issue_credit_note(self.db, subscription.user_id, credit, current_price.currency,
                              "downgrade_to_free", subscription.id)
            self.db.commit()
            self.db.refresh(subscription)
            logger.info(
                f"Downgrade to free plan committed: subscription_id={subscription.id}, "
                f"credit={credit} {current_price.currency}"
            )
            return PlanChangeOutcome(OUTCOME_COMMITTED, subscription, PlanChangeType.DOWNGRADE.value,
                                     credit_issued=credit, currency=current_price.currency)

        write_conditionally(self.db, subscription, {
            "pending_plan_change_to": target.id,
            "pending_plan_change_date": subscription.end_date,
            "pending_plan_change_type": PlanChangeType.DOWNGRADE.value,
        })
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(
            f"Downgrade scheduled: subscription_id={subscription.id}, plan_id={target.id}, "
            f"effective={subscription.pending_plan_change_date}"
        )
        return PlanChangeOutcome(OUTCOME_SCHEDULED, subscription, PlanChangeType.DOWNGRADE.value)

    def _cancel(self, subscription: UserSubscription) -> PlanChangeOutcome:
        if not subscription.auto_renew:
            logger.debug(f"Cancel is a no-op, auto-renew already off: subscription_id={subscription.id}")
            return PlanChangeOutcome(OUTCOME_COMMITTED, subscription)

        write_conditionally(self.db, subscription, {"auto_renew": False, "cancel_date": self.now_fn()})
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(f"Auto-renew cancelled: subscription_id={subscription.id}, ends={subscription.end_date}")
        return PlanChangeOutcome(OUTCOME_COMMITTED, subscription)

    def _cancel_pending_change(self, subscription: UserSubscription) -> PlanChangeOutcome:
        if not subscription.has_pending_change:
            raise NotFoundError("No pending plan change to cancel", {"subscription_id": subscription.id})

        write_conditionally(self.db, subscription, dict(PENDING_CLEARED))
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(f"Pending plan change cancelled: subscription_id={subscription.id}")
        return PlanChangeOutcome(OUTCOME_COMMITTED, subscription)

    # ------------------------------------------------------------------
    # Starting and restoring subscriptions
    # ------------------------------------------------------------------

    def activate_free_plan(self, user_id: int, plan_id: int, region: str = "GLOBAL") -> UserSubscription:
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_freemium:
            raise ValidationError(f"{plan.name} is a paid plan; start a checkout instead", {"plan_id": plan_id})
        if self._find_active(user_id) is not None:
            raise ConflictError("User already has an active subscription", {"user_id": user_id})

        now = self.now_fn()
        price = self.catalog.price_for(plan, region)
        self._supersede_grace_rows(user_id)
        subscription = self._create_subscription(
            user_id, plan, now, price, payment_reference=f"free_{user_id}_{now:%Y%m%d%H%M%S}"
        )
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(f"Free plan activated: user_id={user_id}, plan_id={plan_id}, subscription_id={subscription.id}")
        return subscription

    def start_checkout(self, user_id: int, plan_id: int, region: str) -> PlanChangeOutcome:
        """First paid subscription: the row is created when payment is confirmed."""
        plan = self.catalog.get_plan(plan_id)
        if plan.is_freemium:
            raise ValidationError(f"{plan.name} is free; activate it directly", {"plan_id": plan_id})
        if self._find_active(user_id) is not None:
            raise ConflictError("User already has an active subscription; upgrade or downgrade it instead",
                                {"user_id": user_id})

        now = self.now_fn()
        # One live checkout per user, so open credit is only ever promised once
        in_flight = self._live_checkout(user_id=user_id, now=now)
        if in_flight is not None:
            if in_flight.kind == KIND_NEW and in_flight.target_plan_id == plan.id:
                return self._redirect_outcome(None, in_flight, None)
            raise ConflictError("Another checkout is awaiting payment", {"session_id": in_flight.session_id})

        price = self.catalog.price_for(plan, region)
        credit, amount_due = self._apply_open_credit(user_id, price.currency, price.amount)
        attempt = self._checkout_count(user_id=user_id, kind=KIND_NEW)
        idempotency_key = f"user-{user_id}-new-plan-{plan.id}-a{attempt}"

        if amount_due == 0:
            self._supersede_grace_rows(user_id)
            subscription = self._create_subscription(user_id, plan, now, price,
                                                     payment_reference=f"credit-{idempotency_key}")
            consume_credit(self.db, user_id, price.currency, credit, f"credit-{idempotency_key}")
            self.db.commit()
            self.db.refresh(subscription)
            return PlanChangeOutcome(OUTCOME_COMMITTED, subscription, amount=amount_due,
                                     currency=price.currency, credit_applied=credit)

        info = self.gateway.create_checkout_session(
            amount=amount_due,
            currency=price.currency,
            idempotency_key=idempotency_key,
            description=f"{plan.name} subscription",
            expires_at=now + timedelta(minutes=CHECKOUT_SESSION_TTL_MINUTES),
            customer_email=self._user_email(user_id),
            customer_ref=self._customer_ref(user_id),
            metadata={"user_id": str(user_id), "plan_id": str(plan.id), "kind": KIND_NEW},
        )
        checkout = self._record_checkout(info, idempotency_key, KIND_NEW, user_id, plan.id,
                                         amount_due, credit, price, now)
        logger.info(f"Checkout started: user_id={user_id}, plan_id={plan.id}, session_id={checkout.session_id}")
        return self._redirect_outcome(None, checkout, None)

    def retry_renewal(self, subscription_id: int, region: str) -> PlanChangeOutcome:
        """Pay a failed renewal from the grace period through a checkout."""
        subscription = self.db.get(UserSubscription, subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.GRACE_PERIOD.value:
            raise NotFoundError("No subscription in its grace period", {"subscription_id": subscription_id})

        now = self.now_fn()
        in_flight = self._live_checkout(user_id=subscription.user_id, now=now)
        if in_flight is not None:
            if in_flight.kind == KIND_RENEWAL and in_flight.subscription_id == subscription.id:
                return self._redirect_outcome(subscription, in_flight, None)
            raise ConflictError("Another payment is awaiting confirmation", {"session_id": in_flight.session_id})

        plan = self.catalog.get_subscribed_plan(subscription.plan_id)
        price = self.catalog.price_for(plan, region)
        credit, amount_due = self._apply_open_credit(subscription.user_id, price.currency, price.amount)
        attempt = self._checkout_count(subscription_id=subscription.id, kind=KIND_RENEWAL)
        idempotency_key = f"sub-{subscription.id}-renewal-a{attempt}"

        if amount_due == 0:
            write_conditionally(self.db, subscription, self._fresh_cycle_values(plan, now, price), plan.billing_cycle)
            consume_credit(self.db, subscription.user_id, price.currency, credit, f"credit-{idempotency_key}")
            self.db.commit()
            self.db.refresh(subscription)
            return PlanChangeOutcome(OUTCOME_COMMITTED, subscription, amount=amount_due,
                                     currency=price.currency, credit_applied=credit)

        info = self.gateway.create_checkout_session(
            amount=amount_due,
            currency=price.currency,
            idempotency_key=idempotency_key,
            description=f"{plan.name} renewal",
            expires_at=now + timedelta(minutes=CHECKOUT_SESSION_TTL_MINUTES),
            customer_email=self._user_email(subscription.user_id),
            customer_ref=self._customer_ref(subscription.user_id),
            metadata={"subscription_id": str(subscription.id), "plan_id": str(plan.id), "kind": KIND_RENEWAL},
        )
        checkout = self._record_checkout(info, idempotency_key, KIND_RENEWAL, subscription.user_id, plan.id,
                                         amount_due, credit, price, now,
                                         subscription_id=subscription.id, base_version=subscription.version)
        logger.info(f"Renewal checkout started: subscription_id={subscription.id}, session_id={checkout.session_id}")
        return self._redirect_outcome(subscription, checkout, None)

    # ------------------------------------------------------------------
    # Gateway callbacks
    # ------------------------------------------------------------------

    def confirm_payment(self, session_id: str, idempotency_key: Optional[str],
                        customer_ref: Optional[str] = None) -> ConfirmationResult:
        """
        Apply a confirmed payment exactly once.

        Replays of an already processed session are no-ops. A confirmed
        payment is never dropped: the target plan is applied even if the
        subscription moved since checkout.
        """
        try:
            return self._confirm_once(session_id, idempotency_key, customer_ref)
        except ConflictError:
            logger.warning(f"Conflict applying payment, retrying once: session_id={session_id}")
            return self._confirm_once(session_id, idempotency_key, customer_ref)

    def _confirm_once(self, session_id: str, idempotency_key: Optional[str],
                      customer_ref: Optional[str]) -> ConfirmationResult:
        checkout = self.db.query(CheckoutSession).filter(CheckoutSession.session_id == session_id).first()
        if checkout is None:
            raise NotFoundError(f"Unknown checkout session {session_id}", {"session_id": session_id})
        if idempotency_key and checkout.idempotency_key != idempotency_key:
            raise PaymentError("Idempotency key does not match the checkout session", {"session_id": session_id})

        if checkout.status == SESSION_COMPLETED:
            logger.info(f"Payment confirmation replayed, ignoring: session_id={session_id}")
            return ConfirmationResult(False, self._session_subscription(checkout), checkout.kind)

        now = self.now_fn()
        claimed = (
            self.db.query(CheckoutSession)
            .filter(CheckoutSession.id == checkout.id, CheckoutSession.status != SESSION_COMPLETED)
            .update({"status": SESSION_COMPLETED, "processed_at": now}, synchronize_session=False)
        )
        if claimed != 1:
            self.db.rollback()
            logger.info(f"Payment confirmation already being applied: session_id={session_id}")
            return ConfirmationResult(False, self._session_subscription(checkout), checkout.kind)

        subscription = self._apply_paid_plan(checkout, now)
        consume_credit(self.db, checkout.user_id, checkout.currency, Decimal(checkout.credit_applied or 0),
                       checkout.session_id)
        if customer_ref:
            self._remember_customer(checkout.user_id, customer_ref)
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(
            f"Payment applied: session_id={session_id}, kind={checkout.kind}, "
            f"subscription_id={subscription.id}, plan_id={subscription.plan_id}"
        )
        return ConfirmationResult(True, subscription, checkout.kind)

    def mark_session_expired(self, session_id: str) -> bool:
        return self._close_session(session_id, SESSION_EXPIRED)

    def mark_session_failed(self, session_id: str) -> bool:
        return self._close_session(session_id, SESSION_FAILED)

    def _close_session(self, session_id: str, status: str) -> bool:
        updated = (
            self.db.query(CheckoutSession)
            .filter(CheckoutSession.session_id == session_id, CheckoutSession.status == SESSION_PENDING)
            .update({"status": status, "processed_at": self.now_fn()}, synchronize_session=False)
        )
        self.db.commit()
        if updated:
            logger.info(f"Checkout session closed: session_id={session_id}, status={status}")
        return bool(updated)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mutate(self, subscription_id: int, expected_version: Optional[int], operation):
        attempts = 1 if expected_version is not None else 2
        for attempt in range(1, attempts + 1):
            subscription = self._load_active(subscription_id)
            if expected_version is not None and subscription.version != expected_version:
                raise ConflictError(
                    f"Subscription {subscription_id} changed (version {subscription.version}, "
                    f"expected {expected_version}); reload and retry",
                    {"subscription_id": subscription_id, "version": subscription.version},
                )
            if subscription.billing_claim:
                raise ConflictError(
                    f"Subscription {subscription_id} is being renewed; retry shortly",
                    {"subscription_id": subscription_id},
                )
            try:
                return operation(subscription)
            except ConflictError:
                if attempt == attempts:
                    raise
                logger.info(f"Version conflict, retrying once: subscription_id={subscription_id}")
                self.db.expire_all()

    def _load_active(self, subscription_id: int) -> UserSubscription:
        subscription = self.db.get(UserSubscription, subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
            raise NotFoundError(f"No active subscription {subscription_id}", {"subscription_id": subscription_id})
        return subscription

    def _find_active(self, user_id: int) -> Optional[UserSubscription]:
        return (
            self.db.query(UserSubscription)
            .filter(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .first()
        )

    def _price_change(self, subscription: UserSubscription, new_plan_id: int, region: str):
        target = self.catalog.get_plan(new_plan_id)
        if target.id == subscription.plan_id:
            raise ValidationError(f"Already subscribed to {target.name}", {"plan_id": target.id})
        current_plan = self.catalog.get_subscribed_plan(subscription.plan_id)
        current_price = self.catalog.price_for(current_plan, region)
        new_price = self.catalog.price_for(target, region)
        if current_price.currency != new_price.currency:
            raise ValidationError(
                f"Plans are priced in different currencies ({current_price.currency} vs {new_price.currency})",
                {"region": region, "plan_id": target.id},
            )
        return current_plan, target, current_price, new_price

    def _apply_open_credit(self, user_id: int, currency: str, amount: Decimal) -> Tuple[Decimal, Decimal]:
        available, _ = open_credit(self.db, user_id, currency)
        credit = min(available, amount)
        return credit, round_money(amount - credit, currency)

    def _live_checkout(self, now: datetime, subscription_id: Optional[int] = None,
                       user_id: Optional[int] = None, kind: Optional[str] = None) -> Optional[CheckoutSession]:
        """A PENDING, unexpired checkout. Lapsed ones are marked EXPIRED with the caller's next commit."""
        query = self.db.query(CheckoutSession).filter(CheckoutSession.status == SESSION_PENDING)
        if subscription_id is not None:
            query = query.filter(CheckoutSession.subscription_id == subscription_id)
        if user_id is not None:
            query = query.filter(CheckoutSession.user_id == user_id)
        if kind is not None:
            query = query.filter(CheckoutSession.kind == kind)

        live = None
        for checkout in query.order_by(CheckoutSession.id).all():
            if checkout.expires_at <= now:
                checkout.status = SESSION_EXPIRED
                checkout.processed_at = now
            else:
                live = checkout
        return live

    def _checkout_count(self, subscription_id: Optional[int] = None, user_id: Optional[int] = None,
                        kind: Optional[str] = None) -> int:
        query = self.db.query(CheckoutSession)
        if subscription_id is not None:
            query = query.filter(CheckoutSession.subscription_id == subscription_id)
        if user_id is not None:
            query = query.filter(CheckoutSession.user_id == user_id)
        if kind is not None:
            query = query.filter(CheckoutSession.kind == kind)
        return query.count()

    def _record_checkout(self, info, idempotency_key: str, kind: str, user_id: int, plan_id: int,
                         amount: Decimal, credit: Decimal, price: ResolvedPrice, now: datetime,
                         subscription_id: Optional[int] = None,
                         base_version: Optional[int] = None) -> CheckoutSession:
        checkout = CheckoutSession(
            session_id=info.session_id,
            idempotency_key=idempotency_key,
            kind=kind,
            user_id=user_id,
            subscription_id=subscription_id,
            target_plan_id=plan_id,
            base_version=base_version,
            amount=amount,
            credit_applied=credit,
            currency=price.currency,
            region=price.region,
            redirect_url=info.redirect_url,
            status=SESSION_PENDING,
            expires_at=now + timedelta(minutes=CHECKOUT_SESSION_TTL_MINUTES),
        )
        self.db.add(checkout)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("A checkout for this request is already being created",
                                {"idempotency_key": idempotency_key})
        self.db.refresh(checkout)
        return checkout

    def _redirect_outcome(self, subscription: Optional[UserSubscription], checkout: CheckoutSession,
                          change_type: Optional[str]) -> PlanChangeOutcome:
        return PlanChangeOutcome(
            OUTCOME_PAYMENT_REQUIRED,
            subscription,
            change_type,
            redirect_url=checkout.redirect_url,
            session_id=checkout.session_id,
            amount=Decimal(checkout.amount),
            currency=checkout.currency,
            credit_applied=Decimal(checkout.credit_applied or 0),
        )

    def _fresh_cycle_values(self, plan: SubscriptionPlan, now: datetime, price: ResolvedPrice) -> Dict:
        return {
            "plan_id": plan.id,
            "status": SubscriptionStatus.ACTIVE.value,
            "start_date": now,
            "end_date": cycle_end(now, plan.billing_cycle),
            "grace_period_end": None,
            "region": price.region,
            "currency": price.currency,
            **PENDING_CLEARED,
        }

    def _create_subscription(self, user_id: int, plan: SubscriptionPlan, now: datetime, price: ResolvedPrice,
                             payment_reference: str) -> UserSubscription:
        end = cycle_end(now, plan.billing_cycle)
        assert_cycle_length(now, end, plan.billing_cycle)
        subscription = UserSubscription(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE.value,
            start_date=now,
            end_date=end,
            auto_renew=True,
            region=price.region,
            currency=price.currency,
            payment_reference=payment_reference,
            version=1,
        )
        self.db.add(subscription)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("User already has an active subscription", {"user_id": user_id})
        return subscription

    def _supersede_grace_rows(self, user_id: int, keep_id: Optional[int] = None) -> None:
        rows = (
            self.db.query(UserSubscription)
            .filter(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.GRACE_PERIOD.value,
            )
            .all()
        )
        for row in rows:
            if row.id == keep_id:
                continue
            write_conditionally(self.db, row, {"status": SubscriptionStatus.CANCELLED.value, **PENDING_CLEARED})
            logger.info(f"Grace-period subscription superseded: subscription_id={row.id}")

    def _apply_paid_plan(self, checkout: CheckoutSession, now: datetime) -> UserSubscription:
        plan = self.catalog.get_subscribed_plan(checkout.target_plan_id)
        price = ResolvedPrice(plan.id, Decimal(checkout.amount), checkout.currency, checkout.region)

        active = self._find_active(checkout.user_id)
        row = self.db.get(UserSubscription, checkout.subscription_id) if checkout.subscription_id else None
        if active is not None:
            row = active
        elif row is not None and row.status != SubscriptionStatus.GRACE_PERIOD.value:
            row = None

        if row is None:
            self._supersede_grace_rows(checkout.user_id)
            return self._create_subscription(checkout.user_id, plan, now, price, checkout.session_id)

        self._supersede_grace_rows(checkout.user_id, keep_id=row.id)
        values = self._fresh_cycle_values(plan, now, price)
        values["payment_reference"] = checkout.session_id
        if row.plan_id != plan.id:
            values["previous_plan_id"] = row.plan_id
        if checkout.kind == KIND_UPGRADE:
            values["upgrade_date"] = now
        else:
            values["auto_renew"] = True
            values["cancel_date"] = None
        write_conditionally(self.db, row, values, billing_cycle=plan.billing_cycle)
        return row

    def _session_subscription(self, checkout: CheckoutSession) -> Optional[UserSubscription]:
        if checkout.subscription_id:
            return self.db.get(UserSubscription, checkout.subscription_id)
        return self._find_active(checkout.user_id)

    def _user_email(self, user_id: int) -> Optional[str]:
        user = self.db.get(User, user_id)
        return user.email if user else None

    def _customer_ref(self, user_id: int) -> Optional[str]:
        details = self.db.query(UserBillingDetails).filter(UserBillingDetails.user_id == user_id).first()
        return details.gateway_customer_id if details else None

    def _remember_customer(self, user_id: int, customer_ref: str) -> None:
        details = self.db.query(UserBillingDetails).filter(UserBillingDetails.user_id == user_id).first()
        if details is None:
            details = UserBillingDetails(user_id=user_id)
            self.db.add(details)
        details.gateway_customer_id = customer_ref
