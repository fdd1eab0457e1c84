"""
Cierre de suscripciones canceladas al final del periodo
"""
import logging
from datetime import date, datetime
from typing import Callable, Optional

from dineflow.core.config import Settings, settings as default_settings
from dineflow.core.dates import end_of_day, utcnow
from dineflow.core.exceptions import GatewayError
from dineflow.models.subscription import SubscriptionStatus
from dineflow.services.billing_processor import DispatchOutcome, DispatchResult
from dineflow.services.payment_gateway import PaymentGateway
from dineflow.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


class CancellationFinalizer:
    """Sin cobro: status -> CANCELLED y cancel_at_period_end -> False"""

    def __init__(
        self,
        store: SubscriptionStore,
        gateway: Optional[PaymentGateway] = None,
        config: Settings = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config or default_settings
        self.clock = clock

    async def process(self, subscription_id: int, today: Optional[date] = None) -> DispatchResult:
        now = self.clock()
        today = today or now.date()
        token = self.store.acquire_lease(subscription_id, now, self.config.LEASE_TTL_SECONDS)
        try:
            subscription = self.store.get_subscription(subscription_id)
            if subscription.end_date >= end_of_day(today):
                return DispatchResult(subscription_id, DispatchOutcome.SKIPPED, subscription.status, reason="not_due")
            finalized = self.store.finalize_cancellation(subscription_id, lease_token=token)
        finally:
            self.store.release_lease(subscription_id, token)

        if not finalized:
            return DispatchResult(subscription_id, DispatchOutcome.SKIPPED, subscription.status, reason="not_cancellable")

        logger.info(f"[Cancel] ✅ Suscripción {subscription_id} cancelada")

        if subscription.remote_subscription_ref and self.gateway is not None:
            try:
                await self.gateway.cancel_remote_subscription(subscription.remote_subscription_ref)
            except GatewayError as e:
                # La cancelación local ya quedó confirmada
                logger.warning(
                    f"[Cancel] No se pudo cancelar {subscription.remote_subscription_ref} en la pasarela: {str(e)}"
                )

        return DispatchResult(subscription_id, DispatchOutcome.SUCCEEDED, SubscriptionStatus.CANCELLED)
