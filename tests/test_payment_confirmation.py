"""
Tests for starting subscriptions and applying confirmed payments.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from resumekit.core.errors import ConflictError, NotFoundError, PaymentError, ValidationError
from resumekit.db.models.billing_details import UserBillingDetails
from resumekit.db.models.checkout import CheckoutSession, CreditNote
from resumekit.db.models.subscription import UserSubscription
from resumekit.services.subscription_service import OUTCOME_PAYMENT_REQUIRED, KIND_NEW, KIND_UPGRADE
from conftest import CYCLE_END, MID_CYCLE, TestSessionLocal, make_subscription

PAID_AT = MID_CYCLE + timedelta(minutes=5)


def subscriptions_for(user_id):
    db = TestSessionLocal()
    try:
        return db.query(UserSubscription).filter(UserSubscription.user_id == user_id).order_by(UserSubscription.id).all()
    finally:
        db.close()


def test_first_checkout_creates_subscription_on_confirmation(make_service, gateway, test_user, plans):
    """Test a new paid subscription only exists once payment is confirmed."""
    outcome = make_service().start_checkout(test_user.id, plans["basic"].id, "GLOBAL")

    assert outcome.outcome == OUTCOME_PAYMENT_REQUIRED
    assert outcome.amount == Decimal("10.00")
    assert gateway.sessions[0]["idempotency_key"] == f"user-{test_user.id}-new-plan-{plans['basic'].id}-a0"
    assert subscriptions_for(test_user.id) == []

    result = make_service(now=PAID_AT).confirm_payment(
        outcome.session_id, gateway.sessions[0]["idempotency_key"], customer_ref="cus_123"
    )

    assert result.applied is True
    assert result.kind == KIND_NEW
    rows = subscriptions_for(test_user.id)
    assert len(rows) == 1
    assert rows[0].status == "ACTIVE"
    assert rows[0].plan_id == plans["basic"].id
    assert rows[0].start_date == PAID_AT
    assert rows[0].end_date == PAID_AT + relativedelta(months=1)
    assert rows[0].payment_reference == outcome.session_id

    db = TestSessionLocal()
    details = db.query(UserBillingDetails).filter(UserBillingDetails.user_id == test_user.id).one()
    db.close()
    assert details.gateway_customer_id == "cus_123"


def test_confirmation_replay_is_a_noop(make_service, gateway, test_user, plans):
    """Test redelivered confirmations are applied once."""
    outcome = make_service().start_checkout(test_user.id, plans["basic"].id, "GLOBAL")
    key = gateway.sessions[0]["idempotency_key"]

    first = make_service(now=PAID_AT).confirm_payment(outcome.session_id, key)
    second = make_service(now=PAID_AT + timedelta(hours=1)).confirm_payment(outcome.session_id, key)

    assert first.applied is True
    assert second.applied is False
    rows = subscriptions_for(test_user.id)
    assert len(rows) == 1
    assert rows[0].start_date == PAID_AT
    assert rows[0].version == 1


def test_confirmation_with_wrong_key_is_rejected(make_service, test_user, plans):
    """Test a confirmation must carry the key the checkout was created with."""
    outcome = make_service().start_checkout(test_user.id, plans["basic"].id, "GLOBAL")

    with pytest.raises(PaymentError):
        make_service().confirm_payment(outcome.session_id, "someone-elses-key")
    assert subscriptions_for(test_user.id) == []


def test_confirmation_of_unknown_session(make_service):
    """Test an unknown session id is not found."""
    with pytest.raises(NotFoundError):
        make_service().confirm_payment("cs_missing", None)


def test_upgrade_applied_on_confirmation(make_service, gateway, db_session, test_user, plans):
    """Test a paid upgrade starts a fresh cycle on the new plan when payment lands."""
    subscription = make_subscription(db_session, test_user, plans["basic"])
    outcome = make_service().upgrade(subscription.id, plans["pro"].id, "GLOBAL")

    result = make_service(now=PAID_AT).confirm_payment(outcome.session_id, gateway.sessions[0]["idempotency_key"])

    assert result.applied is True
    assert result.kind == KIND_UPGRADE
    (row,) = subscriptions_for(test_user.id)
    assert row.id == subscription.id
    assert row.plan_id == plans["pro"].id
    assert row.previous_plan_id == plans["basic"].id
    assert row.upgrade_date == PAID_AT
    assert row.start_date == PAID_AT
    assert row.end_date == PAID_AT + relativedelta(months=1)
    assert row.version == 3

    db = TestSessionLocal()
    checkout = db.query(CheckoutSession).one()
    db.close()
    assert checkout.status == "COMPLETED"
    assert checkout.processed_at == PAID_AT


def test_upgrade_to_yearly_keeps_yearly_cycle(make_service, gateway, db_session, test_user, plans):
    """Test the new cycle length follows the target plan."""
    subscription = make_subscription(db_session, test_user, plans["pro"])
    outcome = make_service().upgrade(subscription.id, plans["pro_yearly"].id, "GLOBAL")
    make_service(now=PAID_AT).confirm_payment(outcome.session_id, None)

    (row,) = subscriptions_for(test_user.id)
    assert row.end_date == PAID_AT + relativedelta(years=1)


def test_payment_is_not_dropped_after_concurrent_cancel(make_service, gateway, db_session, test_user, plans):
    """Test a confirmed upgrade lands even if the subscription moved after checkout."""
    subscription = make_subscription(db_session, test_user, plans["basic"])
    outcome = make_service().upgrade(subscription.id, plans["pro"].id, "GLOBAL")
    make_service().cancel(subscription.id)

    result = make_service(now=PAID_AT).confirm_payment(outcome.session_id, None)

    assert result.applied is True
    (row,) = subscriptions_for(test_user.id)
    assert row.plan_id == plans["pro"].id
    assert row.auto_renew is False


def test_upgrade_confirmation_clears_pending_downgrade(make_service, gateway, db_session, test_user, plans):
    """Test a paid plan change replaces any scheduled downgrade."""
    subscription = make_subscription(db_session, test_user, plans["pro"])
    service = make_service()
    service.downgrade(subscription.id, plans["basic"].id, "GLOBAL")
    outcome = service.upgrade(subscription.id, plans["pro_yearly"].id, "GLOBAL")
    make_service(now=PAID_AT).confirm_payment(outcome.session_id, None)

    (row,) = subscriptions_for(test_user.id)
    assert row.plan_id == plans["pro_yearly"].id
    assert row.pending_plan_change_to is None
    assert row.pending_plan_change_type is None


def test_checkout_refused_with_active_subscription(make_service, db_session, test_user, plans):
    """Test existing subscribers must upgrade or downgrade instead."""
    make_subscription(db_session, test_user, plans["basic"])
    with pytest.raises(ConflictError):
        make_service().start_checkout(test_user.id, plans["pro"].id, "GLOBAL")


def test_checkout_for_free_plan_is_invalid(make_service, test_user, plans):
    """Test free plans are activated, not paid for."""
    with pytest.raises(ValidationError):
        make_service().start_checkout(test_user.id, plans["free"].id, "GLOBAL")


def test_checkout_repeated_reuses_session(make_service, gateway, test_user, plans):
    """Test double-clicking checkout returns the same payment page."""
    service = make_service()
    first = service.start_checkout(test_user.id, plans["basic"].id, "GLOBAL")
    second = service.start_checkout(test_user.id, plans["basic"].id, "GLOBAL")

    assert first.session_id == second.session_id
    assert len(gateway.sessions) == 1
    with pytest.raises(ConflictError):
        service.start_checkout(test_user.id, plans["pro"].id, "GLOBAL")


def test_checkout_in_india_charges_rupees(make_service, gateway, test_user, plans):
    """Test first checkouts use regional pricing."""
    outcome = make_service().start_checkout(test_user.id, plans["pro"].id, "INDIA")
    assert outcome.amount == Decimal("1999")
    assert outcome.currency == "INR"

    make_service(now=PAID_AT).confirm_payment(outcome.session_id, None)
    (row,) = subscriptions_for(test_user.id)
    assert (row.region, row.currency) == ("INDIA", "INR")


def test_activate_free_plan(make_service, test_user, plans):
    """Test a free plan activates immediately with a free_ payment reference."""
    subscription = make_service().activate_free_plan(test_user.id, plans["free"].id)

    assert subscription.status == "ACTIVE"
    assert subscription.start_date == MID_CYCLE
    assert subscription.end_date == MID_CYCLE + relativedelta(months=1)
    assert subscription.payment_reference == f"free_{test_user.id}_20260416000000"


def test_activate_free_plan_rules(make_service, db_session, test_user, plans):
    """Test paid plans are refused and a second active subscription conflicts."""
    service = make_service()
    with pytest.raises(ValidationError):
        service.activate_free_plan(test_user.id, plans["basic"].id)

    make_subscription(db_session, test_user, plans["basic"])
    with pytest.raises(ConflictError):
        service.activate_free_plan(test_user.id, plans["free"].id)


def test_new_subscription_supersedes_grace_row(make_service, db_session, test_user, plans):
    """Test starting over from the grace period leaves a single live row."""
    lapsed = make_subscription(db_session, test_user, plans["basic"], status="GRACE_PERIOD",
                               grace_period_end=CYCLE_END + timedelta(days=7))

    make_service().activate_free_plan(test_user.id, plans["free"].id)

    rows = subscriptions_for(test_user.id)
    assert [(row.id, row.status) for row in rows][0] == (lapsed.id, "CANCELLED")
    assert rows[1].status == "ACTIVE"
    assert rows[1].plan_id == plans["free"].id


def test_retry_renewal_restores_grace_subscription(make_service, gateway, db_session, test_user, plans):
    """Test paying from the grace period reactivates the same row."""
    lapsed = make_subscription(db_session, test_user, plans["basic"], status="GRACE_PERIOD", auto_renew=True,
                               grace_period_end=CYCLE_END + timedelta(days=7))
    now = CYCLE_END + timedelta(days=2)

    outcome = make_service(now=now).retry_renewal(lapsed.id, "GLOBAL")
    assert outcome.amount == Decimal("10.00")
    assert gateway.sessions[0]["idempotency_key"] == f"sub-{lapsed.id}-renewal-a0"

    make_service(now=now).confirm_payment(outcome.session_id, None)

    (row,) = subscriptions_for(test_user.id)
    assert row.status == "ACTIVE"
    assert row.grace_period_end is None
    assert row.start_date == now
    assert row.end_date == now + relativedelta(months=1)


def test_credit_is_promised_to_one_checkout_at_a_time(make_service, gateway, db_session, test_user, plans):
    """Test a second paid checkout is refused while one holding the user's credit is live."""
    lapsed = make_subscription(db_session, test_user, plans["basic"], status="GRACE_PERIOD",
                               grace_period_end=CYCLE_END + timedelta(days=7))
    db_session.add(CreditNote(user_id=test_user.id, amount=Decimal("4.00"), currency="USD",
                              reason="downgrade_to_free", applied=False))
    db_session.commit()
    service = make_service()

    renewal = service.retry_renewal(lapsed.id, "GLOBAL")
    assert renewal.credit_applied == Decimal("4.00")
    assert renewal.amount == Decimal("6.00")

    with pytest.raises(ConflictError):
        service.start_checkout(test_user.id, plans["pro"].id, "GLOBAL")
    assert len(gateway.sessions) == 1

    service.confirm_payment(renewal.session_id, None)
    db = TestSessionLocal()
    notes = db.query(CreditNote).all()
    db.close()
    assert [(note.applied, note.applied_session_id) for note in notes] == [(True, renewal.session_id)]


def test_retry_renewal_requires_grace_period(make_service, db_session, test_user, plans):
    """Test only grace-period subscriptions can retry a renewal."""
    subscription = make_subscription(db_session, test_user, plans["basic"])
    with pytest.raises(NotFoundError):
        make_service().retry_renewal(subscription.id, "GLOBAL")


def test_session_expiry_and_failure_marks(make_service, test_user, plans):
    """Test gateway expiry and failure close only pending sessions."""
    service = make_service()
    outcome = service.start_checkout(test_user.id, plans["basic"].id, "GLOBAL")

    assert service.mark_session_failed(outcome.session_id) is True
    assert service.mark_session_expired(outcome.session_id) is False

    db = TestSessionLocal()
    assert db.query(CheckoutSession).one().status == "FAILED"
    db.close()
