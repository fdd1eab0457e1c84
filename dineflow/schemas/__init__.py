from .subscription import (
    PlanResponse,
    PaymentResponse,
    SubscriptionResponse,
    RestaurantSubscriptionResponse,
    SelectPlanRequest,
    SweepSummaryResponse,
)
