from datetime import timedelta
from decimal import Decimal

import pytest

from dineflow.core.exceptions import GatewayDeclinedError, NotFoundError, ValidationError
from dineflow.models.subscription import BillingCycle, SubscriptionStatus
from dineflow.services.payment_gateway import CardDetails

from tests.conftest import NOW

VISA = CardDetails(number="4242424242424242", exp_month=12, exp_year=2030, cvc="123")
DECLINED = CardDetails(number="4000000000000002", exp_month=12, exp_year=2030, cvc="123")


# ============================================
# PLANES
# ============================================

def test_list_plans_only_active_sorted_by_price(store, subscription_service, plan):
    store.add_plan(name="Básico", type="basic", price=Decimal("9.90"), billing_cycle=BillingCycle.MONTHLY)
    store.add_plan(
        name="Legacy", type="basic", price=Decimal("5.00"), billing_cycle=BillingCycle.MONTHLY, is_active=False
    )

    assert [p.name for p in subscription_service.list_plans()] == ["Básico", "Pro"]


def test_get_missing_plan(subscription_service):
    with pytest.raises(NotFoundError):
        subscription_service.get_plan(404)


# ============================================
# ELEGIR PLAN
# ============================================

def test_select_plan_starts_trial(subscription_service, restaurant, plan):
    sub = subscription_service.select_plan(restaurant.id, plan.id)

    assert sub.status == SubscriptionStatus.TRIAL
    assert sub.start_date == NOW
    assert sub.trial_ends_at == NOW + timedelta(days=14)
    assert sub.next_billing_date == sub.trial_ends_at
    assert sub.end_date == sub.trial_ends_at
    assert sub.plan.name == "Pro"


def test_select_inactive_plan(store, subscription_service, restaurant):
    legacy = store.add_plan(
        name="Legacy", type="basic", price=Decimal("5.00"), billing_cycle=BillingCycle.MONTHLY, is_active=False
    )

    with pytest.raises(ValidationError):
        subscription_service.select_plan(restaurant.id, legacy.id)

    with pytest.raises(ValidationError):
        subscription_service.select_plan(restaurant.id, 999)


def test_select_plan_for_unknown_restaurant(subscription_service, plan):
    with pytest.raises(NotFoundError):
        subscription_service.select_plan(999, plan.id)


def test_changing_plan_keeps_billing_dates(subscription_service, make_subscription, yearly_plan):
    sub = make_subscription()

    changed = subscription_service.select_plan(sub.restaurant_id, yearly_plan.id)

    assert changed.id == sub.id
    assert changed.plan_id == yearly_plan.id
    assert changed.status == SubscriptionStatus.ACTIVE
    assert changed.next_billing_date == sub.next_billing_date


def test_resubscribe_after_expiration(subscription_service, make_subscription, plan):
    sub = make_subscription(status=SubscriptionStatus.EXPIRED)

    renewed = subscription_service.select_plan(sub.restaurant_id, plan.id)

    assert renewed.id == sub.id
    assert renewed.status == SubscriptionStatus.TRIAL
    assert renewed.trial_ends_at == NOW + timedelta(days=14)
    assert renewed.payment_method_ref == "pm_test_visa"


# ============================================
# CANCELACIÓN
# ============================================

def test_cancel_active_keeps_paid_period(subscription_service, make_subscription):
    sub = make_subscription(next_billing_date=NOW + timedelta(days=12))

    cancelled = subscription_service.request_cancellation(sub.restaurant_id)

    assert cancelled.cancel_at_period_end is True
    assert cancelled.cancelled_at == NOW
    assert cancelled.end_date == sub.end_date
    assert cancelled.status == SubscriptionStatus.ACTIVE


def test_cancel_trial_ends_with_trial(subscription_service, make_trial):
    sub = make_trial(trial_ends_at=NOW + timedelta(days=5), end_date=NOW + timedelta(days=30))

    cancelled = subscription_service.request_cancellation(sub.restaurant_id)

    assert cancelled.end_date == sub.trial_ends_at


def test_cancel_is_idempotent(subscription_service, make_subscription, clock):
    sub = make_subscription()
    first = subscription_service.request_cancellation(sub.restaurant_id)
    clock.advance(hours=3)

    second = subscription_service.request_cancellation(sub.restaurant_id)

    assert second.cancelled_at == first.cancelled_at


def test_cannot_cancel_inactive(subscription_service, make_subscription):
    sub = make_subscription(status=SubscriptionStatus.INACTIVE)

    with pytest.raises(ValidationError):
        subscription_service.request_cancellation(sub.restaurant_id)


# ============================================
# MÉTODO DE PAGO
# ============================================

async def test_attach_payment_method(subscription_service, restaurant, plan):
    subscription_service.select_plan(restaurant.id, plan.id)

    sub = await subscription_service.attach_payment_method(restaurant.id, VISA)

    assert sub.gateway_customer_ref.startswith("cus_")
    assert sub.payment_method_ref.startswith("pm_")
    assert sub.payment_method_last4 == "4242"
    assert sub.payment_method_brand == "visa"


async def test_declined_card_is_not_stored(store, subscription_service, restaurant, plan):
    subscription_service.select_plan(restaurant.id, plan.id)

    with pytest.raises(GatewayDeclinedError):
        await subscription_service.attach_payment_method(restaurant.id, DECLINED)

    assert store.get_subscription_by_restaurant(restaurant.id).payment_method_ref is None


async def test_link_remote_subscription_needs_gateway_price(store, subscription_service, make_subscription):
    sub = make_subscription()

    with pytest.raises(ValidationError):
        await subscription_service.link_remote_subscription(sub.restaurant_id)

    priced = store.add_plan(
        name="Pro Stripe", type="pro", price=Decimal("29.90"),
        billing_cycle=BillingCycle.MONTHLY, gateway_price_ref="price_pro",
    )
    store.update_subscription(sub.id, plan_id=priced.id)

    linked = await subscription_service.link_remote_subscription(sub.restaurant_id)

    assert linked.remote_subscription_ref.startswith("sub_")
