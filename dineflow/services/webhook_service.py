"""
Conciliación de webhooks de la pasarela contra el libro de pagos.

Los eventos se emparejan por payment_id (metadata) o transaction_id, nunca
por tiempos. La suscripción se toma con lease igual que en el sweep; si está
ocupada se lanza ConflictError y la pasarela reintenta el webhook.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from dineflow.core.config import Settings, settings as default_settings
from dineflow.core.dates import add_billing_cycle, utcnow
from dineflow.models.subscription import (
    PaymentKind,
    PaymentStatus,
    SubscriptionPayment,
    SubscriptionStatus,
)
from dineflow.services.payment_gateway import GatewayEvent, PaymentGateway
from dineflow.services.subscription_service import cancellation_values
from dineflow.services.subscription_state import can_transition
from dineflow.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class WebhookService:
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

    def process(self, body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Verifica la firma, normaliza el evento y lo concilia"""
        event_type, payload = self.gateway.verify_webhook(body, headers)
        logger.info(f"[Webhook] 🔔 Evento recibido: {event_type}")
        event = self.gateway.handle_webhook(event_type, payload)
        return self.reconcile(event)

    def reconcile(self, event: GatewayEvent) -> Dict[str, Any]:
        if event.kind == "payment_succeeded":
            return self._payment_succeeded(event)
        if event.kind == "payment_failed":
            return self._payment_failed(event)
        if event.kind == "subscription_deleted":
            return self._subscription_deleted(event)
        return {"status": "ignored", "event_type": event.event_type}

    def _find_payment(self, event: GatewayEvent) -> Optional[SubscriptionPayment]:
        payment = None
        if event.payment_id is not None:
            payment = self.store.get_payment(event.payment_id)
        if payment is None and event.transaction_id:
            payment = self.store.find_payment_by_transaction(event.transaction_id)
        return payment

    def _payment_succeeded(self, event: GatewayEvent) -> Dict[str, Any]:
        payment = self._find_payment(event)
        if payment is None:
            logger.warning(f"[Webhook] Pago desconocido: {event.transaction_id}")
            return {"status": "ignored", "reason": "unknown_payment"}
        if payment.status == PaymentStatus.COMPLETED:
            return {"status": "duplicate", "payment_id": payment.id}

        now = self.clock()
        token = self.store.acquire_lease(payment.subscription_id, now, self.config.LEASE_TTL_SECONDS)
        try:
            subscription = self.store.get_subscription(payment.subscription_id)

            other = self.store.find_period_payment(
                payment.subscription_id, payment.period_start, PaymentStatus.COMPLETED
            )
            if other is not None:
                # Cobro doble del mismo periodo: requiere devolución manual
                logger.error(
                    f"[Webhook] ❌ Pago #{payment.id} cobrado pero el periodo {payment.period_start} "
                    f"ya tiene el pago #{other.id}. Revisar devolución de {event.transaction_id}"
                )
                return {"status": "needs_refund", "payment_id": payment.id}

            if self._advances_period(subscription, payment):
                self.store.settle_success(
                    payment_id=payment.id,
                    subscription_id=subscription.id,
                    transaction_id=event.transaction_id or payment.transaction_id,
                    paid_at=now,
                    next_billing_date=add_billing_cycle(now, subscription.plan.billing_cycle),
                    lease_token=token,
                    allowed_payment_states=(PaymentStatus.PENDING, PaymentStatus.FAILED),
                )
                logger.info(f"[Webhook] ✅ Pago #{payment.id} confirmado, suscripción {subscription.id} ACTIVE")
                return {"status": "reconciled", "payment_id": payment.id, "subscription_status": "ACTIVE"}

            self.store.record_payment_outcome(
                payment.id,
                PaymentStatus.COMPLETED,
                transaction_id=event.transaction_id,
                paid_at=now,
                allowed=(PaymentStatus.PENDING, PaymentStatus.FAILED),
            )
            logger.warning(
                f"[Webhook] Pago #{payment.id} confirmado pero la suscripción {subscription.id} "
                f"está en {subscription.status.value}; no se avanza"
            )
            return {"status": "recorded", "payment_id": payment.id, "subscription_status": subscription.status.value}
        finally:
            self.store.release_lease(payment.subscription_id, token)

    @staticmethod
    def _advances_period(subscription, payment: SubscriptionPayment) -> bool:
        if not can_transition(subscription.status, SubscriptionStatus.ACTIVE):
            return False
        if payment.kind == PaymentKind.TRIAL_CONVERSION:
            return subscription.status == SubscriptionStatus.TRIAL
        return (
            subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.INACTIVE)
            and subscription.next_billing_date.date() == payment.period_start
        )

    def _payment_failed(self, event: GatewayEvent) -> Dict[str, Any]:
        payment = self._find_payment(event)
        if payment is None:
            return {"status": "ignored", "reason": "unknown_payment"}
        if payment.status != PaymentStatus.PENDING:
            return {"status": "duplicate", "payment_id": payment.id}

        token = self.store.acquire_lease(payment.subscription_id, self.clock(), self.config.LEASE_TTL_SECONDS)
        try:
            subscription = self.store.get_subscription(payment.subscription_id)
            failure_status = (
                SubscriptionStatus.EXPIRED
                if payment.kind == PaymentKind.TRIAL_CONVERSION
                else SubscriptionStatus.INACTIVE
            )
            if can_transition(subscription.status, failure_status):
                self.store.settle_failure(
                    payment.id, subscription.id, failure_status, event.reason, lease_token=token
                )
            else:
                self.store.record_payment_outcome(payment.id, PaymentStatus.FAILED, reason=event.reason)
            logger.info(f"[Webhook] Pago #{payment.id} marcado failed: {event.reason}")
            return {"status": "reconciled", "payment_id": payment.id}
        finally:
            self.store.release_lease(payment.subscription_id, token)

    def _subscription_deleted(self, event: GatewayEvent) -> Dict[str, Any]:
        subscription = self.store.get_subscription_by_remote_ref(event.subscription_ref or "")
        if subscription is None:
            return {"status": "ignored", "reason": "unknown_subscription"}
        if subscription.is_terminal or subscription.cancel_at_period_end:
            return {"status": "duplicate", "subscription_id": subscription.id}
        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
            return {"status": "ignored", "reason": f"status={subscription.status.value}"}

        self.store.update_subscription(subscription.id, **cancellation_values(subscription, self.clock()))
        logger.info(f"[Webhook] Suscripción {subscription.id} se cancelará al final del periodo")
        return {"status": "reconciled", "subscription_id": subscription.id}
