"""
Tests for the periodic subscription sweep.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from resumekit.core.errors import ConflictError
from resumekit.db.models.checkout import CheckoutSession, CreditNote
from resumekit.db.models.subscription import UserSubscription
from resumekit.db.models.user import User
from resumekit.services.change_scheduler import ChangeScheduler
from conftest import CYCLE_END, MID_CYCLE, TestSessionLocal, add_billing_country, hash_password, make_subscription


def stored(subscription_id):
    db = TestSessionLocal()
    try:
        return db.get(UserSubscription, subscription_id)
    finally:
        db.close()


def sweep(gateway, now):
    return ChangeScheduler(TestSessionLocal, gateway).run_sweep(now=now)


def test_nothing_due_mid_cycle(gateway, db_session, test_user, plans):
    """Test subscriptions inside their period are left alone."""
    subscription = make_subscription(db_session, test_user, plans["basic"])

    report = sweep(gateway, MID_CYCLE)

    assert report.as_dict() == {"changes_applied": 0, "renewed": 0, "moved_to_grace": 0,
                                "expired": 0, "skipped": 0, "sessions_expired": 0}
    assert stored(subscription.id).version == 1


def test_scheduled_downgrade_applies_at_cycle_end(make_service, gateway, db_session, test_user, plans):
    """Test a pending downgrade switches plan and starts a new period at D."""
    add_billing_country(db_session, test_user, "US", customer_ref="cus_42")
    subscription = make_subscription(db_session, test_user, plans["pro"])
    make_service().downgrade(subscription.id, plans["basic"].id, "GLOBAL")

    report = sweep(gateway, CYCLE_END)

    assert report.changes_applied == 1
    assert gateway.charges == [{
        "amount": Decimal("10.00"),
        "currency": "USD",
        "idempotency_key": f"change-{subscription.id}-plan-{plans['basic'].id}-20260501000000",
    }]
    row = stored(subscription.id)
    assert row.plan_id == plans["basic"].id
    assert row.previous_plan_id == plans["pro"].id
    assert row.status == "ACTIVE"
    assert row.start_date == CYCLE_END
    assert row.end_date == CYCLE_END + relativedelta(months=1)
    assert row.pending_plan_change_to is None
    assert row.payment_reference == "pi_test_1"


def test_cancelled_pending_change_keeps_plan(make_service, gateway, db_session, test_user, plans):
    """Test cancelling a scheduled downgrade means the sweep renews the current plan."""
    subscription = make_subscription(db_session, test_user, plans["pro"])
    service = make_service()
    service.downgrade(subscription.id, plans["basic"].id, "GLOBAL")
    service.cancel_pending_change(subscription.id)

    report = sweep(gateway, CYCLE_END)

    assert report.renewed == 1
    assert stored(subscription.id).plan_id == plans["pro"].id
    assert gateway.charges[0]["amount"] == Decimal("25.00")


def test_scheduled_downgrade_to_free_needs_no_charge(gateway, db_session, test_user, plans):
    """Test switching to a freemium plan at D charges nothing."""
    subscription = make_subscription(
        db_session, test_user, plans["basic"],
        pending_plan_change_to=plans["free"].id,
        pending_plan_change_date=CYCLE_END,
        pending_plan_change_type="DOWNGRADE",
    )

    report = sweep(gateway, CYCLE_END)

    assert report.changes_applied == 1
    assert gateway.charges == []
    assert stored(subscription.id).plan_id == plans["free"].id


def test_scheduled_change_applies_with_auto_renew_off(make_service, gateway, db_session, test_user, plans):
    """Test a scheduled plan still starts at D, then expires at its own end without renewing."""
    subscription = make_subscription(db_session, test_user, plans["pro"])
    service = make_service()
    service.downgrade(subscription.id, plans["basic"].id, "GLOBAL")
    service.cancel(subscription.id)

    report = sweep(gateway, CYCLE_END)

    assert report.changes_applied == 1
    assert [charge["amount"] for charge in gateway.charges] == [Decimal("10.00")]
    row = stored(subscription.id)
    assert row.status == "ACTIVE"
    assert row.plan_id == plans["basic"].id
    assert row.auto_renew is False
    assert row.pending_plan_change_to is None

    later = sweep(gateway, row.end_date)

    assert later.expired == 1
    assert len(gateway.charges) == 1
    assert stored(subscription.id).status == "EXPIRED"


def test_renewal_starts_next_monthly_period(gateway, db_session, test_user, plans):
    """Test auto-renew charges and keeps a monthly cycle monthly."""
    subscription = make_subscription(db_session, test_user, plans["basic"])

    report = sweep(gateway, CYCLE_END)

    assert report.renewed == 1
    assert gateway.charges[0]["idempotency_key"] == f"renewal-{subscription.id}-20260501000000"
    row = stored(subscription.id)
    assert row.start_date == CYCLE_END
    assert row.end_date == CYCLE_END + relativedelta(months=1)
    assert row.version == 3
    assert row.billing_claim is None


def test_renewal_in_india_charges_rupees(gateway, db_session, test_user, plans):
    """Test renewals use the region the subscription was bought in."""
    make_subscription(db_session, test_user, plans["pro"], region="INDIA", currency="INR")
    sweep(gateway, CYCLE_END)
    assert (gateway.charges[0]["amount"], gateway.charges[0]["currency"]) == (Decimal("1999"), "INR")


def test_renewal_deducts_open_credit(gateway, db_session, test_user, plans):
    """Test courtesy credit is spent on the next renewal."""
    make_subscription(db_session, test_user, plans["basic"])
    db_session.add(CreditNote(user_id=test_user.id, amount=Decimal("4.00"), currency="USD",
                              reason="downgrade_to_free", applied=False))
    db_session.commit()

    sweep(gateway, CYCLE_END)

    assert gateway.charges[0]["amount"] == Decimal("6.00")
    db = TestSessionLocal()
    note = db.query(CreditNote).one()
    db.close()
    assert note.applied is True
    assert note.applied_session_id == "pi_test_1"


def test_free_plan_renews_without_charge(gateway, db_session, test_user, plans):
    """Test freemium subscriptions roll over for free."""
    subscription = make_subscription(db_session, test_user, plans["free"])

    report = sweep(gateway, CYCLE_END)

    assert report.renewed == 1
    assert gateway.charges == []
    assert stored(subscription.id).end_date == CYCLE_END + relativedelta(months=1)


def test_failed_renewal_enters_grace_then_expires(gateway, db_session, test_user, plans):
    """Test a declined renewal grants the grace period, then expires."""
    subscription = make_subscription(db_session, test_user, plans["basic"])
    gateway.fail_charges = True

    report = sweep(gateway, CYCLE_END)
    assert report.moved_to_grace == 1
    row = stored(subscription.id)
    assert row.status == "GRACE_PERIOD"
    assert row.grace_period_end == CYCLE_END + timedelta(days=7)
    assert row.plan_id == plans["basic"].id

    assert sweep(gateway, CYCLE_END + timedelta(days=3)).expired == 0
    assert stored(subscription.id).status == "GRACE_PERIOD"

    assert sweep(gateway, CYCLE_END + timedelta(days=7)).expired == 1
    assert stored(subscription.id).status == "EXPIRED"


def test_failed_scheduled_change_enters_grace_on_new_plan(make_service, gateway, db_session, test_user, plans):
    """Test a declined charge for the scheduled plan still moves to that plan, in grace."""
    subscription = make_subscription(db_session, test_user, plans["pro"])
    make_service().downgrade(subscription.id, plans["basic"].id, "GLOBAL")
    gateway.fail_charges = True

    report = sweep(gateway, CYCLE_END)

    assert report.moved_to_grace == 1
    row = stored(subscription.id)
    assert row.status == "GRACE_PERIOD"
    assert row.plan_id == plans["basic"].id
    assert row.pending_plan_change_to is None


def test_auto_renew_off_expires_at_end(make_service, gateway, db_session, test_user, plans):
    """Test a cancelled subscription expires at its end date without a charge."""
    subscription = make_subscription(db_session, test_user, plans["basic"])
    make_service().cancel(subscription.id)

    report = sweep(gateway, CYCLE_END)

    assert report.expired == 1
    assert gateway.charges == []
    assert stored(subscription.id).status == "EXPIRED"


def test_stale_plan_is_skipped_and_others_processed(gateway, db_session, test_user, plans):
    """Test one broken subscription does not stop the sweep."""
    other = User(full_name="Other User", email="other@example.com", password_hash=hash_password("otherpass123"))
    db_session.add(other)
    db_session.commit()

    broken = make_subscription(db_session, test_user, plans["basic"])
    db_session.query(UserSubscription).filter(UserSubscription.id == broken.id).update({"plan_id": 9999})
    db_session.commit()
    healthy = make_subscription(db_session, other, plans["basic"])

    report = sweep(gateway, CYCLE_END)

    assert report.skipped == 1
    assert report.renewed == 1
    assert stored(broken.id).version == 1
    assert stored(healthy.id).start_date == CYCLE_END


def test_abandoned_checkouts_are_expired(make_service, gateway, test_user, plans):
    """Test lapsed checkout sessions are closed by the sweep."""
    make_service().start_checkout(test_user.id, plans["basic"].id, "GLOBAL")

    assert sweep(gateway, MID_CYCLE + timedelta(minutes=10)).sessions_expired == 0
    assert sweep(gateway, MID_CYCLE + timedelta(hours=1)).sessions_expired == 1

    db = TestSessionLocal()
    assert db.query(CheckoutSession).one().status == "EXPIRED"
    db.close()


def run_elsewhere(make_service, action):
    """Run ``action(service)`` on its own session, as a concurrent request would."""
    outcome = {}

    def _run():
        other = TestSessionLocal()
        try:
            action(make_service(now=CYCLE_END, db=other))
        except ConflictError as e:
            outcome["error"] = e
        finally:
            other.close()
    return _run, outcome


def test_downgrade_during_renewal_charge_waits(make_service, gateway, db_session, test_user, plans):
    """Test a downgrade requested while the renewal is charged cannot lose or repeat the charge."""
    subscription = make_subscription(db_session, test_user, plans["pro"])
    hook, outcome = run_elsewhere(
        make_service, lambda service: service.downgrade(subscription.id, plans["basic"].id, "GLOBAL")
    )
    gateway.on_charge = hook

    first = sweep(gateway, CYCLE_END)
    second = sweep(gateway, CYCLE_END)

    assert isinstance(outcome["error"], ConflictError)
    assert first.renewed == 1
    assert second.as_dict()["changes_applied"] == 0
    assert gateway.charges == [{
        "amount": Decimal("25.00"),
        "currency": "USD",
        "idempotency_key": f"renewal-{subscription.id}-20260501000000",
    }]
    row = stored(subscription.id)
    assert row.plan_id == plans["pro"].id
    assert row.payment_reference == "pi_test_1"
    assert row.pending_plan_change_to is None
    assert row.billing_claim is None


def test_cancel_during_scheduled_change_charge_waits(make_service, gateway, db_session, test_user, plans):
    """Test a cancel arriving mid-charge is refused and the paid plan change is recorded."""
    subscription = make_subscription(db_session, test_user, plans["pro"])
    make_service().downgrade(subscription.id, plans["basic"].id, "GLOBAL")
    hook, outcome = run_elsewhere(make_service, lambda service: service.cancel(subscription.id))
    gateway.on_charge = hook

    report = sweep(gateway, CYCLE_END)

    assert "error" in outcome
    assert report.changes_applied == 1
    assert len(gateway.charges) == 1
    row = stored(subscription.id)
    assert row.plan_id == plans["basic"].id
    assert row.auto_renew is True
    assert row.payment_reference == "pi_test_1"

    # Once recorded, the request goes through
    assert make_service(now=CYCLE_END).cancel(subscription.id).subscription.auto_renew is False


def test_interrupted_claim_is_resumed_with_its_key(gateway, db_session, test_user, plans):
    """Test a claim left by an interrupted sweep is charged with the same idempotency key."""
    subscription = make_subscription(db_session, test_user, plans["basic"],
                                     billing_claim="renewal-1-20260501000000")

    report = sweep(gateway, CYCLE_END)

    assert report.renewed == 1
    assert gateway.charges[0]["idempotency_key"] == "renewal-1-20260501000000"
    row = stored(subscription.id)
    assert row.billing_claim is None
    assert row.start_date == CYCLE_END


def test_claimed_subscription_refuses_requests(make_service, db_session, test_user, plans):
    """Test plan changes are refused while a sweep charge is in progress."""
    subscription = make_subscription(db_session, test_user, plans["pro"],
                                     billing_claim="renewal-1-20260501000000")

    with pytest.raises(ConflictError):
        make_service().downgrade(subscription.id, plans["basic"].id, "GLOBAL")
    with pytest.raises(ConflictError):
        make_service().cancel(subscription.id)
    assert stored(subscription.id).version == 1


def test_subscription_awaiting_upgrade_payment_is_deferred(make_service, gateway, db_session, test_user, plans):
    """Test the sweep leaves a row alone while its upgrade checkout can still be paid."""
    subscription = make_subscription(db_session, test_user, plans["basic"])
    make_service(now=CYCLE_END - timedelta(minutes=5)).upgrade(subscription.id, plans["pro"].id, "GLOBAL")

    report = sweep(gateway, CYCLE_END)

    assert report.skipped == 1
    assert report.renewed == 0
    assert gateway.charges == []
    assert stored(subscription.id).version == 2

    assert sweep(gateway, CYCLE_END + timedelta(hours=1)).renewed == 1
