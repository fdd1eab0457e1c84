"""
Dependencias compartidas por los routers
"""
import hmac
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from dineflow.core.config import Settings, settings
from dineflow.core.database import SessionLocal
from dineflow.services.billing_sweep import BillingSweepDriver
from dineflow.services.payment_gateway import PaymentGateway, get_payment_gateway
from dineflow.services.subscription_service import SubscriptionService
from dineflow.services.subscription_store import SubscriptionStore
from dineflow.services.webhook_service import WebhookService


def get_config() -> Settings:
    return settings


def get_store() -> SubscriptionStore:
    return SubscriptionStore(SessionLocal)


@lru_cache()
def _default_gateway() -> PaymentGateway:
    return get_payment_gateway(settings)


def get_gateway() -> PaymentGateway:
    return _default_gateway()


def get_subscription_service(
    store: SubscriptionStore = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
    config: Settings = Depends(get_config),
) -> SubscriptionService:
    return SubscriptionService(store, gateway, config)


def get_sweep_driver(
    store: SubscriptionStore = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
    config: Settings = Depends(get_config),
) -> BillingSweepDriver:
    return BillingSweepDriver(store, gateway, config)


def get_webhook_service(
    store: SubscriptionStore = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
    config: Settings = Depends(get_config),
) -> WebhookService:
    return WebhookService(store, gateway, config)


def require_admin_token(
    x_admin_token: Optional[str] = Header(None),
    config: Settings = Depends(get_config),
) -> None:
    """Protege el trigger manual del sweep con un token compartido"""
    if not config.ADMIN_API_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="ADMIN_API_TOKEN no configurado"
        )
    if not x_admin_token or not hmac.compare_digest(x_admin_token, config.ADMIN_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token de administrador inválido"
        )
