"""
Procesador de cobros de suscripciones

Protocolo por suscripción (con lease exclusivo):
1. Crear el pago 'pending' y confirmarlo antes de llamar a la pasarela
2. Cobrar
3. Éxito: pago completed + suscripción ACTIVE con el periodo avanzado
4. Fallo: pago failed + suscripción INACTIVE (renovación) o EXPIRED (trial)
5. En curso: el pago queda pending; el próximo sweep lo resuelve con get_charge

Los pasos 3 y 4 escriben pago y suscripción en una sola transacción.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from dineflow.core.config import Settings, settings as default_settings
from dineflow.core.dates import add_billing_cycle, end_of_day, utcnow
from dineflow.core.exceptions import ChargeInFlightError, GatewayError, InvalidTransitionError
from dineflow.models.subscription import (
    PaymentKind,
    PaymentStatus,
    Subscription,
    SubscriptionPayment,
    SubscriptionStatus,
)
from dineflow.services.payment_gateway import ChargeResult, PaymentGateway
from dineflow.services.subscription_state import RENEWABLE_STATES
from dineflow.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class DispatchOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class DispatchResult:
    subscription_id: int
    outcome: DispatchOutcome
    status: Optional[SubscriptionStatus] = None
    payment_id: Optional[int] = None
    reason: Optional[str] = None


class BillingProcessor:
    """Renovación de suscripciones ACTIVE / INACTIVE"""

    kind = PaymentKind.RENEWAL
    eligible_states = RENEWABLE_STATES
    failure_status = SubscriptionStatus.INACTIVE
    tag = "[Billing]"

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
    # REGLAS QUE CAMBIAN EN EL TRIAL
    # ============================================

    def period_start(self, subscription: Subscription) -> date:
        return subscription.next_billing_date.date()

    def is_due(self, subscription: Subscription, today: date) -> bool:
        return (
            subscription.status in self.eligible_states
            and not subscription.cancel_at_period_end
            and subscription.next_billing_date < end_of_day(today)
        )

    # ============================================
    # PROTOCOLO
    # ============================================

    async def process(self, subscription_id: int, today: Optional[date] = None) -> DispatchResult:
        """
        Procesa una suscripción. Lanza ConflictError si otro worker tiene el
        lease; en ese caso no se escribe nada.
        """
        now = self.clock()
        today = today or now.date()
        token = self.store.acquire_lease(subscription_id, now, self.config.LEASE_TTL_SECONDS)
        try:
            return await self._process_leased(subscription_id, today, token)
        finally:
            self.store.release_lease(subscription_id, token)

    async def _process_leased(self, subscription_id: int, today: date, token: str) -> DispatchResult:
        subscription = self.store.get_subscription(subscription_id)

        if subscription.is_terminal:
            raise InvalidTransitionError(
                f"Suscripción {subscription_id} en estado terminal {subscription.status.value}",
                details={"subscription_id": subscription_id}
            )

        # Se vuelve a evaluar con el lease tomado: otro sweep pudo haberla procesado
        if not self.is_due(subscription, today):
            return DispatchResult(subscription_id, DispatchOutcome.SKIPPED, subscription.status, reason="not_due")

        period_start = self.period_start(subscription)

        completed = self.store.find_period_payment(subscription_id, period_start, PaymentStatus.COMPLETED)
        if completed:
            logger.warning(
                f"{self.tag} Suscripción {subscription_id} ya tiene pago completado #{completed.id} "
                f"para el periodo {period_start}"
            )
            return DispatchResult(
                subscription_id, DispatchOutcome.SKIPPED, subscription.status,
                payment_id=completed.id, reason="already_paid"
            )

        payment = self.store.find_period_payment(subscription_id, period_start, PaymentStatus.PENDING)
        if payment:
            # Quedó un cobro en vuelo (caída del proceso): se pregunta a la pasarela
            logger.warning(f"{self.tag} Pago #{payment.id} en vuelo para suscripción {subscription_id}")
            previous = await self._lookup(payment)
            if previous is not None:
                return self._settle(subscription, payment, previous, token)
            # La pasarela no lo conoce: se reusa la fila y la idempotency key
        else:
            payment = self.store.open_pending_payment(
                subscription_id=subscription_id,
                amount=subscription.plan.price,
                currency=self.config.BILLING_CURRENCY,
                payment_method=self.gateway.name,
                period_start=period_start,
                kind=self.kind,
            )

        logger.info(f"{self.tag} 💳 Cobrando suscripción {subscription_id} (pago #{payment.id})")
        result = await self._charge(subscription, payment)
        return self._settle(subscription, payment, result, token)

    async def _lookup(self, payment: SubscriptionPayment) -> Optional[ChargeResult]:
        try:
            return await self.gateway.get_charge(payment.idempotency_key)
        except GatewayError as e:
            logger.warning(f"{self.tag} No se pudo consultar el pago #{payment.id}: {str(e)}")
            return None

    async def _charge(self, subscription: Subscription, payment: SubscriptionPayment) -> ChargeResult:
        if not subscription.payment_method_ref:
            return ChargeResult(success=False, error_reason="No payment method on file")

        try:
            return await self.gateway.charge(
                subscription.id,
                payment.amount,
                payment.currency,
                subscription.payment_method_ref,
                payment.idempotency_key,
                customer_ref=subscription.gateway_customer_ref,
                metadata={
                    "payment_id": str(payment.id),
                    "idempotency_key": payment.idempotency_key,
                },
            )
        except ChargeInFlightError as e:
            return ChargeResult(success=False, in_flight=True, error_reason=str(e))
        except GatewayError as e:
            # Timeout o red caída tras los reintentos: cuenta como rechazo
            logger.error(f"{self.tag} Error de pasarela para suscripción {subscription.id}: {str(e)}")
            return ChargeResult(success=False, error_reason=str(e))

    def _settle(
        self,
        subscription: Subscription,
        payment: SubscriptionPayment,
        result: ChargeResult,
        token: str,
    ) -> DispatchResult:
        if result.in_flight:
            # Sin resultado todavía: no se toca el pago ni la suscripción
            logger.warning(
                f"{self.tag} ⏳ Pago #{payment.id} sigue en curso en la pasarela "
                f"({result.error_reason}), queda pending"
            )
            return DispatchResult(
                subscription.id, DispatchOutcome.SKIPPED, subscription.status,
                payment_id=payment.id, reason="in_flight"
            )

        if result.success:
            now = self.clock()
            next_billing_date = add_billing_cycle(now, subscription.plan.billing_cycle)
            self.store.settle_success(
                payment_id=payment.id,
                subscription_id=subscription.id,
                transaction_id=result.transaction_id,
                paid_at=now,
                next_billing_date=next_billing_date,
                lease_token=token,
            )
            logger.info(
                f"{self.tag} ✅ Pago #{payment.id} completado, suscripción {subscription.id} "
                f"ACTIVE hasta {next_billing_date:%Y-%m-%d}"
            )
            return DispatchResult(
                subscription.id, DispatchOutcome.SUCCEEDED, SubscriptionStatus.ACTIVE, payment_id=payment.id
            )

        self.store.settle_failure(
            payment_id=payment.id,
            subscription_id=subscription.id,
            new_status=self.failure_status,
            reason=result.error_reason,
            lease_token=token,
        )
        logger.error(
            f"{self.tag} ❌ Pago #{payment.id} falló para suscripción {subscription.id}: "
            f"{result.error_reason} -> {self.failure_status.value}"
        )
        return DispatchResult(
            subscription.id, DispatchOutcome.FAILED, self.failure_status,
            payment_id=payment.id, reason=result.error_reason
        )


class TrialExpirationHandler(BillingProcessor):
    """
    Primer cobro al terminar el trial. Si falla la suscripción pasa a EXPIRED
    (terminal): sin método de pago válido no se recupera sola.
    """

    kind = PaymentKind.TRIAL_CONVERSION
    eligible_states = (SubscriptionStatus.TRIAL,)
    failure_status = SubscriptionStatus.EXPIRED
    tag = "[Trial]"

    def period_start(self, subscription: Subscription) -> date:
        return subscription.trial_ends_at.date()

    def is_due(self, subscription: Subscription, today: date) -> bool:
        return (
            subscription.status == SubscriptionStatus.TRIAL
            and not subscription.cancel_at_period_end
            and subscription.trial_ends_at is not None
            and subscription.trial_ends_at < end_of_day(today)
        )
