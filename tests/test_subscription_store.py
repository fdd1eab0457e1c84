from datetime import date, timedelta
from decimal import Decimal

import pytest

from dineflow.core.exceptions import ConflictError, NotFoundError, StoreConsistencyError
from dineflow.models.subscription import PaymentKind, PaymentStatus, SubscriptionStatus

from tests.conftest import NOW


def _pending(store, subscription, period_start=date(2024, 3, 1)):
    return store.open_pending_payment(
        subscription_id=subscription.id,
        amount=Decimal("29.90"),
        currency="USD",
        payment_method="mock",
        period_start=period_start,
        kind=PaymentKind.RENEWAL,
    )


# ============================================
# LEASE
# ============================================

def test_lease_is_exclusive(store, make_subscription):
    sub = make_subscription()
    token = store.acquire_lease(sub.id, NOW, 300)

    with pytest.raises(ConflictError):
        store.acquire_lease(sub.id, NOW, 300)

    store.release_lease(sub.id, token)
    assert store.acquire_lease(sub.id, NOW, 300)


def test_expired_lease_can_be_taken(store, make_subscription):
    sub = make_subscription()
    store.acquire_lease(sub.id, NOW, 300)

    assert store.acquire_lease(sub.id, NOW + timedelta(minutes=10), 300)


def test_release_with_stale_token_keeps_lease(store, make_subscription):
    sub = make_subscription()
    token = store.acquire_lease(sub.id, NOW, 300)

    store.release_lease(sub.id, "otro-token")

    assert store.get_subscription(sub.id).lease_token == token


def test_lease_on_missing_subscription(store):
    with pytest.raises(NotFoundError):
        store.acquire_lease(999, NOW, 300)


# ============================================
# BÚSQUEDAS
# ============================================

def test_due_renewals(store, make_subscription):
    overdue = make_subscription(next_billing_date=NOW - timedelta(days=3))
    later_today = make_subscription(next_billing_date=NOW + timedelta(hours=10))
    inactive = make_subscription(status=SubscriptionStatus.INACTIVE)
    make_subscription(next_billing_date=NOW + timedelta(days=1))
    make_subscription(cancel_at_period_end=True)
    make_subscription(status=SubscriptionStatus.TRIAL, trial_ends_at=NOW)
    make_subscription(status=SubscriptionStatus.CANCELLED)

    assert store.find_due_renewals(NOW.date()) == [overdue.id, inactive.id, later_today.id]


def test_list_subscriptions_filters_by_status(store, make_subscription):
    first = make_subscription()
    inactive = make_subscription(status=SubscriptionStatus.INACTIVE)
    third = make_subscription()

    assert [s.id for s in store.list_subscriptions()] == [first.id, inactive.id, third.id]
    assert [s.id for s in store.list_subscriptions(status=SubscriptionStatus.INACTIVE)] == [inactive.id]
    assert [s.id for s in store.list_subscriptions(skip=1, limit=1)] == [inactive.id]
    assert store.list_subscriptions()[0].plan.name == "Pro"


def test_expired_trials_skip_cancelled(store, make_trial):
    due = make_trial()
    make_trial(cancel_at_period_end=True)
    make_trial(trial_ends_at=NOW + timedelta(days=2))

    assert store.find_expired_trials(NOW.date()) == [due.id]


def test_due_cancellations(store, make_subscription, make_trial):
    active = make_subscription(cancel_at_period_end=True, end_date=NOW - timedelta(days=1))
    trial = make_trial(cancel_at_period_end=True)
    make_subscription(cancel_at_period_end=True, end_date=NOW + timedelta(days=5))
    make_subscription(end_date=NOW - timedelta(days=1))

    assert store.find_due_cancellations(NOW.date()) == [active.id, trial.id]


# ============================================
# LIBRO DE PAGOS
# ============================================

def test_pending_payment_has_unique_key(store, make_subscription):
    sub = make_subscription()
    first = _pending(store, sub)
    second = _pending(store, sub)

    assert first.status == PaymentStatus.PENDING
    assert first.idempotency_key.startswith(f"sub{sub.id}-20240301-")
    assert first.idempotency_key != second.idempotency_key


def test_settle_success_writes_both_records(store, make_subscription):
    sub = make_subscription()
    payment = _pending(store, sub)
    token = store.acquire_lease(sub.id, NOW, 300)

    store.settle_success(payment.id, sub.id, "txn_1", NOW, NOW + timedelta(days=31), lease_token=token)

    payment = store.get_payment(payment.id)
    sub = store.get_subscription(sub.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.transaction_id == "txn_1"
    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.next_billing_date == NOW + timedelta(days=31)


def test_settle_without_lease_rolls_back_payment(store, make_subscription):
    sub = make_subscription(status=SubscriptionStatus.INACTIVE)
    payment = _pending(store, sub)
    store.acquire_lease(sub.id, NOW, 300)

    with pytest.raises(StoreConsistencyError):
        store.settle_success(payment.id, sub.id, "txn_1", NOW, NOW + timedelta(days=31), lease_token="perdido")

    assert store.get_payment(payment.id).status == PaymentStatus.PENDING
    assert store.get_subscription(sub.id).status == SubscriptionStatus.INACTIVE


def test_one_completed_payment_per_period(store, make_subscription):
    sub = make_subscription()
    first = _pending(store, sub)
    second = _pending(store, sub)
    store.settle_success(first.id, sub.id, "txn_1", NOW, NOW + timedelta(days=31))

    with pytest.raises(StoreConsistencyError):
        store.settle_success(second.id, sub.id, "txn_2", NOW, NOW + timedelta(days=62))

    assert store.get_payment(second.id).status == PaymentStatus.PENDING
    assert store.get_subscription(sub.id).next_billing_date == NOW + timedelta(days=31)


def test_settle_failure_keeps_billing_date(store, make_subscription):
    sub = make_subscription()
    payment = _pending(store, sub)

    store.settle_failure(payment.id, sub.id, SubscriptionStatus.INACTIVE, "Card declined")

    payment = store.get_payment(payment.id)
    updated = store.get_subscription(sub.id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Card declined"
    assert updated.status == SubscriptionStatus.INACTIVE
    assert updated.next_billing_date == sub.next_billing_date


def test_finalize_cancellation_is_conditional(store, make_subscription):
    sub = make_subscription(cancel_at_period_end=True, end_date=NOW - timedelta(days=1))

    assert store.finalize_cancellation(sub.id) is True
    assert store.finalize_cancellation(sub.id) is False
    assert store.get_subscription(sub.id).status == SubscriptionStatus.CANCELLED
