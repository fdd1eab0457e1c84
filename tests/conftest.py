"""
Fixtures compartidas: sqlite en memoria, pasarela mock sin latencia y reloj fijo
"""
import itertools
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import dineflow.models  # noqa: F401
from dineflow.core.config import Settings
from dineflow.core.database import Base
from dineflow.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from dineflow.services.billing_processor import BillingProcessor, TrialExpirationHandler
from dineflow.services.billing_sweep import BillingSweepDriver
from dineflow.services.payment_gateway import MockPaymentGateway, ResilientGateway
from dineflow.services.subscription_service import SubscriptionService
from dineflow.services.subscription_store import SubscriptionStore
from dineflow.services.webhook_service import WebhookService

NOW = datetime(2024, 3, 1, 9, 0, 0)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def config():
    return Settings(
        _env_file=None,
        ADMIN_API_TOKEN="test-admin",
        BILLING_CURRENCY="USD",
        TRIAL_DAYS=14,
        GATEWAY_TIMEOUT_SECONDS=2.0,
        GATEWAY_MAX_ATTEMPTS=3,
        GATEWAY_BACKOFF_MIN=0,
        GATEWAY_BACKOFF_MAX=0,
        SWEEP_MAX_WORKERS=5,
        LEASE_TTL_SECONDS=300,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SubscriptionStore(factory)


@pytest.fixture
def mock_gateway():
    return MockPaymentGateway(latency=0, default_outcome="success")


@pytest.fixture
def gateway(mock_gateway, config):
    return ResilientGateway(
        mock_gateway,
        timeout=config.GATEWAY_TIMEOUT_SECONDS,
        max_attempts=config.GATEWAY_MAX_ATTEMPTS,
        backoff_min=0,
        backoff_max=0,
    )


@pytest.fixture
def processor(store, gateway, config, clock):
    return BillingProcessor(store, gateway, config, clock)


@pytest.fixture
def trial_handler(store, gateway, config, clock):
    return TrialExpirationHandler(store, gateway, config, clock)


@pytest.fixture
def driver(store, gateway, config, clock):
    return BillingSweepDriver(store, gateway, config, clock)


@pytest.fixture
def subscription_service(store, gateway, config, clock):
    return SubscriptionService(store, gateway, config, clock)


@pytest.fixture
def webhook_service(store, gateway, config, clock):
    return WebhookService(store, gateway, config, clock)


@pytest.fixture
def plan(store):
    return store.add_plan(
        name="Pro",
        type="pro",
        description="Plan para restaurantes medianos",
        price=Decimal("29.90"),
        billing_cycle=BillingCycle.MONTHLY,
        features=["menu_digital", "reportes"],
        max_tables=30,
    )


@pytest.fixture
def yearly_plan(store):
    return store.add_plan(
        name="Pro Anual",
        type="pro",
        price=Decimal("299.00"),
        billing_cycle=BillingCycle.YEARLY,
    )


@pytest.fixture
def restaurant(store):
    return store.add_restaurant("La Esquina", "dueno@laesquina.pe")


@pytest.fixture
def make_subscription(store, plan):
    """
    Crea un restaurante con su suscripción. Por defecto: ACTIVE, vencida hace
    una hora y con método de pago.
    """
    counter = itertools.count(1)

    def _make(
        status=SubscriptionStatus.ACTIVE,
        next_billing_date=NOW - timedelta(hours=1),
        trial_ends_at=None,
        end_date=None,
        cancel_at_period_end=False,
        payment_method_ref="pm_test_visa",
        remote_subscription_ref=None,
        plan_id=None,
    ):
        restaurant = store.add_restaurant(f"Restaurante {next(counter)}", "owner@example.com")
        subscription = Subscription(
            restaurant_id=restaurant.id,
            plan_id=plan_id or plan.id,
            status=status,
            start_date=NOW - timedelta(days=30),
            end_date=end_date or next_billing_date,
            next_billing_date=next_billing_date,
            trial_ends_at=trial_ends_at,
            cancel_at_period_end=cancel_at_period_end,
            gateway_customer_ref="cus_test" if payment_method_ref else None,
            payment_method_ref=payment_method_ref,
            remote_subscription_ref=remote_subscription_ref,
        )
        return store.save_subscription(subscription)

    return _make


@pytest.fixture
def make_trial(make_subscription):
    def _make(trial_ends_at=NOW - timedelta(hours=1), **kwargs):
        return make_subscription(
            status=SubscriptionStatus.TRIAL,
            next_billing_date=trial_ends_at,
            trial_ends_at=trial_ends_at,
            **kwargs
        )

    return _make
