from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime, date
from decimal import Decimal

from dineflow.models.subscription import BillingCycle, PaymentKind, PaymentStatus, SubscriptionStatus


class PlanResponse(BaseModel):
    id: int
    name: str
    type: str
    description: Optional[str] = None
    price: Decimal
    billing_cycle: BillingCycle
    features: Optional[List[str]] = None
    max_tables: Optional[int] = None
    max_menu_items: Optional[int] = None
    max_orders: Optional[int] = None
    ai_features: bool
    support_level: str
    is_active: bool

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: int
    amount: Decimal
    currency: str
    payment_method: str
    period_start: date
    kind: PaymentKind
    status: PaymentStatus
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SubscriptionResponse(BaseModel):
    id: int
    restaurant_id: int
    plan_id: int
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    next_billing_date: datetime
    trial_ends_at: Optional[datetime] = None
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime] = None
    payment_method_last4: Optional[str] = None
    payment_method_brand: Optional[str] = None
    plan: Optional[PlanResponse] = None

    class Config:
        from_attributes = True


class RestaurantSubscriptionResponse(SubscriptionResponse):
    payments: List[PaymentResponse] = []


class SelectPlanRequest(BaseModel):
    """El dueño elige un plan: entra en TRIAL"""
    restaurant_id: int
    plan_id: int


class SweepSummaryResponse(BaseModel):
    renewals_processed: int
    renewals_failed: int
    trials_converted: int
    trials_expired: int
    cancellations_finalized: int
    skipped: int
    errors: int
