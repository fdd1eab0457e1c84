"""
Máquina de estados de la suscripción
"""
from dineflow.core.exceptions import InvalidTransitionError
from dineflow.models.subscription import SubscriptionStatus

S = SubscriptionStatus

ALLOWED_TRANSITIONS = {
    S.TRIAL: {S.ACTIVE, S.EXPIRED, S.CANCELLED},
    S.ACTIVE: {S.ACTIVE, S.INACTIVE, S.CANCELLED},
    S.INACTIVE: {S.ACTIVE, S.INACTIVE},
    S.EXPIRED: set(),
    S.CANCELLED: set(),
}

TERMINAL_STATES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)
# Estados que entran en la búsqueda de renovaciones
RENEWABLE_STATES = frozenset({S.ACTIVE, S.INACTIVE})


def can_transition(current, target) -> bool:
    return SubscriptionStatus(target) in ALLOWED_TRANSITIONS[SubscriptionStatus(current)]


def ensure_transition(current, target) -> SubscriptionStatus:
    """Valida la transición y devuelve el estado destino normalizado"""
    current = SubscriptionStatus(current)
    target = SubscriptionStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Transición no permitida: {current.value} -> {target.value}",
            details={"from": current.value, "to": target.value}
        )
    return target
