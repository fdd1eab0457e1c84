"""
Billing Sweep: punto de entrada diario del motor de facturación

Tres búsquedas en orden (renovaciones, trials vencidos, cancelaciones); cada
una termina por completo antes de empezar la siguiente. Dentro de una búsqueda
las suscripciones se procesan en paralelo con un pool acotado y el error de
una no corta el sweep de las demás.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Callable, List, Optional

from dineflow.core.config import Settings, settings as default_settings
from dineflow.core.dates import utcnow
from dineflow.core.exceptions import ConflictError, InvalidTransitionError
from dineflow.services.billing_processor import (
    BillingProcessor,
    DispatchOutcome,
    DispatchResult,
    TrialExpirationHandler,
)
from dineflow.services.cancellation_finalizer import CancellationFinalizer
from dineflow.services.payment_gateway import PaymentGateway
from dineflow.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    renewals_processed: int = 0
    renewals_failed: int = 0
    trials_converted: int = 0
    trials_expired: int = 0
    cancellations_finalized: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class BillingSweepDriver:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentGateway,
        config: Settings = None,
        clock: Callable[[], datetime] = utcnow,
        max_workers: Optional[int] = None,
    ):
        self.store = store
        self.config = config or default_settings
        self.clock = clock
        self.max_workers = max_workers or self.config.SWEEP_MAX_WORKERS

        self.renewals = BillingProcessor(store, gateway, self.config, clock)
        self.trials = TrialExpirationHandler(store, gateway, self.config, clock)
        self.finalizer = CancellationFinalizer(store, gateway, self.config, clock)

    async def run(self, today: Optional[date] = None) -> SweepSummary:
        today = today or self.clock().date()
        summary = SweepSummary()
        logger.info(f"[Sweep] 🔄 Iniciando sweep de facturación para {today}")

        # 1. Renovaciones
        results = await self._scan("renovaciones", self.store.find_due_renewals(today), self.renewals, today)
        for result in results:
            if result.outcome == DispatchOutcome.SUCCEEDED:
                summary.renewals_processed += 1
            elif result.outcome in (DispatchOutcome.FAILED, DispatchOutcome.ERROR):
                summary.renewals_failed += 1
        self._count_common(summary, results)

        # 2. Trials vencidos
        results = await self._scan("trials", self.store.find_expired_trials(today), self.trials, today)
        for result in results:
            if result.outcome == DispatchOutcome.SUCCEEDED:
                summary.trials_converted += 1
            elif result.outcome == DispatchOutcome.FAILED:
                summary.trials_expired += 1
        self._count_common(summary, results)

        # 3. Cancelaciones al final del periodo
        results = await self._scan(
            "cancelaciones", self.store.find_due_cancellations(today), self.finalizer, today
        )
        for result in results:
            if result.outcome == DispatchOutcome.SUCCEEDED:
                summary.cancellations_finalized += 1
        self._count_common(summary, results)

        logger.info(f"[Sweep] ✅ Sweep completado: {summary.to_dict()}")
        return summary

    @staticmethod
    def _count_common(summary: SweepSummary, results: List[DispatchResult]) -> None:
        for result in results:
            if result.outcome == DispatchOutcome.SKIPPED:
                summary.skipped += 1
            elif result.outcome == DispatchOutcome.ERROR:
                summary.errors += 1

    async def _scan(self, name: str, subscription_ids: List[int], handler, today: date) -> List[DispatchResult]:
        logger.info(f"[Sweep] 📊 {len(subscription_ids)} suscripciones para {name}")
        semaphore = asyncio.Semaphore(self.max_workers)

        async def dispatch(subscription_id: int) -> DispatchResult:
            async with semaphore:
                try:
                    return await handler.process(subscription_id, today)
                except ConflictError:
                    logger.info(f"[Sweep] Suscripción {subscription_id} con lease tomado, se difiere")
                    return DispatchResult(subscription_id, DispatchOutcome.SKIPPED, reason="lease_held")
                except InvalidTransitionError as e:
                    logger.warning(f"[Sweep] Suscripción {subscription_id} omitida: {e.message}")
                    return DispatchResult(subscription_id, DispatchOutcome.SKIPPED, reason="terminal")
                except Exception as e:
                    logger.exception(f"[Sweep] Error procesando suscripción {subscription_id}: {e}")
                    return DispatchResult(subscription_id, DispatchOutcome.ERROR, reason=str(e))

        results = list(await asyncio.gather(*(dispatch(sid) for sid in subscription_ids)))

        succeeded = sum(1 for r in results if r.outcome == DispatchOutcome.SUCCEEDED)
        failed = sum(1 for r in results if r.outcome in (DispatchOutcome.FAILED, DispatchOutcome.ERROR))
        logger.info(
            f"[Sweep] {name}: consideradas={len(results)} exitosas={succeeded} fallidas={failed} "
            f"omitidas={len(results) - succeeded - failed}"
        )
        return results
