# dineflow/api/v1/subscriptions.py
"""
Router de Suscripciones
Catálogo de planes y operaciones del dueño sobre la suscripción del restaurante
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from dineflow.api.dependencies import get_subscription_service, require_admin_token
from dineflow.models.subscription import SubscriptionStatus
from dineflow.schemas.subscription import (
    PaymentResponse,
    PlanResponse,
    RestaurantSubscriptionResponse,
    SelectPlanRequest,
    SubscriptionResponse,
)
from dineflow.services.payment_gateway import CardDetails
from dineflow.services.subscription_service import SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


# ============================================
# ENDPOINTS - PLANES
# ============================================

@router.get("/plans", response_model=List[PlanResponse])
async def get_subscription_plans(
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Planes activos ordenados por precio"""
    return service.list_plans()


@router.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_subscription_plan(
    plan_id: int,
    service: SubscriptionService = Depends(get_subscription_service)
):
    return service.get_plan(plan_id)


# ============================================
# ENDPOINTS - SUSCRIPCIÓN DEL RESTAURANTE
# ============================================

@router.get("/restaurant/{restaurant_id}", response_model=RestaurantSubscriptionResponse)
async def get_restaurant_subscription(
    restaurant_id: int,
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Suscripción con sus últimos 10 pagos"""
    subscription, payments = service.get_restaurant_subscription(restaurant_id)
    # payments se arma aparte: la relación no está cargada en el objeto desacoplado
    data = SubscriptionResponse.model_validate(subscription).model_dump()
    return RestaurantSubscriptionResponse(
        **data,
        payments=[PaymentResponse.model_validate(p) for p in payments]
    )


@router.post("/restaurant", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def select_plan(
    data: SelectPlanRequest,
    service: SubscriptionService = Depends(get_subscription_service)
):
    """
    El dueño elige un plan:
    - Sin suscripción o con una terminada: empieza un trial
    - Con suscripción vigente: cambia el plan
    """
    return service.select_plan(data.restaurant_id, data.plan_id)


@router.post("/restaurant/{restaurant_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    restaurant_id: int,
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Cancela al final del periodo actual (el sweep la cierra)"""
    return service.request_cancellation(restaurant_id)


@router.post("/restaurant/{restaurant_id}/payment-method", response_model=SubscriptionResponse)
async def attach_payment_method(
    restaurant_id: int,
    card: CardDetails,
    service: SubscriptionService = Depends(get_subscription_service)
):
    return await service.attach_payment_method(restaurant_id, card)


@router.post("/restaurant/{restaurant_id}/remote", response_model=SubscriptionResponse)
async def link_remote_subscription(
    restaurant_id: int,
    service: SubscriptionService = Depends(get_subscription_service)
):
    return await service.link_remote_subscription(restaurant_id)


# ============================================
# ENDPOINTS - ADMINISTRACIÓN
# ============================================

@router.get(
    "",
    response_model=List[SubscriptionResponse],
    dependencies=[Depends(require_admin_token)]
)
async def list_subscriptions(
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    service: SubscriptionService = Depends(get_subscription_service)
):
    """Todas las suscripciones (solo lectura, requiere X-Admin-Token)"""
    return service.list_subscriptions(status=status_filter, skip=skip, limit=limit)
