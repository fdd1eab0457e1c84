# dineflow/api/v1/billing.py
"""
Router de Facturación Automática
Trigger manual del sweep diario (cron externo o acción del admin)
"""
import logging

from fastapi import APIRouter, Depends

from dineflow.api.dependencies import get_sweep_driver, require_admin_token
from dineflow.schemas.subscription import SweepSummaryResponse
from dineflow.services.billing_sweep import BillingSweepDriver

router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger(__name__)


@router.post(
    "/sweep",
    response_model=SweepSummaryResponse,
    dependencies=[Depends(require_admin_token)]
)
async def run_billing_sweep(
    driver: BillingSweepDriver = Depends(get_sweep_driver)
):
    """Ejecuta el sweep de suscripciones vencidas y devuelve el resumen"""
    logger.info("[Billing] 🔧 Trigger manual del sweep")
    summary = await driver.run()
    return summary.to_dict()
