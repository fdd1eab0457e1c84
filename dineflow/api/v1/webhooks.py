# dineflow/api/v1/webhooks.py
"""
Webhooks de la pasarela de pagos
"""
import logging

from fastapi import APIRouter, Depends, Request

from dineflow.api.dependencies import get_webhook_service
from dineflow.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/payments")
async def payment_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service)
):
    """
    Recibe eventos asíncronos de la pasarela. La firma se verifica antes de
    conciliar; un lease ocupado responde 409 para que la pasarela reintente.
    """
    payload = await request.body()
    return service.process(payload, request.headers)
