"""
Exportar todos los modelos
"""
from dineflow.models.restaurant import Restaurant
from dineflow.models.subscription import (
    BillingCycle,
    PaymentKind,
    PaymentStatus,
    Subscription,
    SubscriptionPayment,
    SubscriptionPlan,
    SubscriptionStatus,
)

__all__ = [
    "Restaurant",
    "BillingCycle",
    "PaymentKind",
    "PaymentStatus",
    "Subscription",
    "SubscriptionPayment",
    "SubscriptionPlan",
    "SubscriptionStatus",
]
