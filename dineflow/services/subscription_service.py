"""
Operaciones del dueño sobre su suscripción: elegir plan (entra en TRIAL),
pedir cancelación al final del periodo y registrar método de pago.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from dineflow.core.config import Settings, settings as default_settings
from dineflow.core.dates import utcnow
from dineflow.core.exceptions import NotFoundError, ValidationError
from dineflow.models.subscription import (
    Subscription,
    SubscriptionPayment,
    SubscriptionPlan,
    SubscriptionStatus,
)
from dineflow.services.payment_gateway import CardDetails, PaymentGateway
from dineflow.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def cancellation_values(subscription: Subscription, now: datetime) -> dict:
    """Campos para cancelar al final del periodo; un trial termina con el trial"""
    values = {"cancel_at_period_end": True, "cancelled_at": now}
    if subscription.status == SubscriptionStatus.TRIAL and subscription.trial_ends_at:
        values["end_date"] = subscription.trial_ends_at
    return values


class SubscriptionService:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentGateway,
        config: Settings = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config or default_settings
        self.clock = clock

    # ============================================
    # CATÁLOGO
    # ============================================

    def list_plans(self) -> List[SubscriptionPlan]:
        return self.store.list_active_plans()

    def get_plan(self, plan_id: int) -> SubscriptionPlan:
        plan = self.store.get_plan(plan_id)
        if not plan:
            raise NotFoundError("Subscription plan not found")
        return plan

    # ============================================
    # SUSCRIPCIÓN DEL RESTAURANTE
    # ============================================

    def get_restaurant_subscription(
        self, restaurant_id: int
    ) -> Tuple[Subscription, List[SubscriptionPayment]]:
        subscription = self.store.get_subscription_by_restaurant(restaurant_id)
        if not subscription:
            raise NotFoundError("No subscription found")
        return subscription, self.store.list_payments(subscription.id, limit=10)

    def list_subscriptions(
        self, status: Optional[SubscriptionStatus] = None, skip: int = 0, limit: int = 100
    ) -> List[Subscription]:
        return self.store.list_subscriptions(status=status, skip=skip, limit=limit)

    def select_plan(self, restaurant_id: int, plan_id: int) -> Subscription:
        """
        Crea la suscripción en TRIAL. Si ya existe:
        - EXPIRED / CANCELLED: se reinicia como un trial nuevo (re-suscripción)
        - TRIAL / ACTIVE / INACTIVE: sólo cambia el plan; aplica en el próximo cobro
        """
        plan = self.store.get_plan(plan_id)
        if not plan or not plan.is_active:
            raise ValidationError("Invalid or inactive plan", details={"plan_id": plan_id})

        if not self.store.get_restaurant(restaurant_id):
            raise NotFoundError(f"Restaurante {restaurant_id} no encontrado")

        existing = self.store.get_subscription_by_restaurant(restaurant_id)
        if existing and not existing.is_terminal:
            logger.info(f"[Subscriptions] Restaurante {restaurant_id} cambia a plan {plan.name}")
            return self.store.update_subscription(existing.id, plan_id=plan.id)

        now = self.clock()
        trial_ends_at = now + timedelta(days=self.config.TRIAL_DAYS)
        subscription = Subscription(
            id=existing.id if existing else None,
            restaurant_id=restaurant_id,
            plan_id=plan.id,
            status=SubscriptionStatus.TRIAL,
            start_date=now,
            end_date=trial_ends_at,
            next_billing_date=trial_ends_at,
            trial_ends_at=trial_ends_at,
            cancel_at_period_end=False,
            cancelled_at=None,
        )
        saved = self.store.save_subscription(subscription)
        logger.info(
            f"[Subscriptions] ✅ Restaurante {restaurant_id} en TRIAL ({plan.name}) hasta {trial_ends_at:%Y-%m-%d}"
        )
        return saved

    def request_cancellation(self, restaurant_id: int) -> Subscription:
        subscription = self.store.get_subscription_by_restaurant(restaurant_id)
        if not subscription:
            raise NotFoundError("Subscription not found")
        if subscription.cancel_at_period_end:
            return subscription
        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
            raise ValidationError(
                f"No se puede cancelar una suscripción en estado {subscription.status.value}",
                details={"status": subscription.status.value}
            )

        updated = self.store.update_subscription(
            subscription.id, **cancellation_values(subscription, self.clock())
        )
        logger.info(f"[Subscriptions] Suscripción {subscription.id} se cancelará el {updated.end_date:%Y-%m-%d}")
        return updated

    # ============================================
    # MÉTODO DE PAGO
    # ============================================

    async def attach_payment_method(self, restaurant_id: int, card: CardDetails) -> Subscription:
        subscription = self.store.get_subscription_by_restaurant(restaurant_id)
        if not subscription:
            raise NotFoundError("Subscription not found")
        if subscription.is_terminal:
            raise ValidationError("La suscripción terminó; elija un plan nuevamente")

        customer_ref = subscription.gateway_customer_ref
        if not customer_ref:
            restaurant = subscription.restaurant
            if not restaurant or not restaurant.email:
                raise ValidationError("El restaurante necesita un email para registrar el pago")
            customer_ref = await self.gateway.create_customer(restaurant.email, restaurant.name)

        method = await self.gateway.create_payment_method(card, customer_ref)
        logger.info(
            f"[Subscriptions] Método de pago {method.brand} ****{method.last4} para suscripción {subscription.id}"
        )
        return self.store.update_subscription(
            subscription.id,
            gateway_customer_ref=customer_ref,
            payment_method_ref=method.method_ref,
            payment_method_last4=method.last4,
            payment_method_brand=method.brand,
        )

    async def link_remote_subscription(self, restaurant_id: int) -> Subscription:
        """Registra la suscripción en la pasarela para planes con gateway_price_ref"""
        subscription = self.store.get_subscription_by_restaurant(restaurant_id)
        if not subscription:
            raise NotFoundError("Subscription not found")
        if subscription.remote_subscription_ref:
            return subscription
        if not subscription.plan.gateway_price_ref:
            raise ValidationError("El plan no tiene precio en la pasarela")
        if not subscription.gateway_customer_ref or not subscription.payment_method_ref:
            raise ValidationError("Missing payment method")

        remote_ref = await self.gateway.create_remote_subscription(
            subscription.gateway_customer_ref,
            subscription.plan.gateway_price_ref,
            subscription.payment_method_ref,
        )
        return self.store.update_subscription(subscription.id, remote_subscription_ref=remote_ref)
