"""
Excepciones del motor de facturación
"""
from http import HTTPStatus
from typing import Any, Dict, Optional


class BillingError(Exception):
    """
    Error base de la aplicación.

    Attributes:
        message: Mensaje del error
        status_code: Código HTTP al exponerlo por la API
        code: Código de aplicación
        details: Datos adicionales
    """

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            "details": self.details
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(BillingError):
    """Plan inválido, falta método de pago, etc. No lo reintenta el motor."""
    status_code = HTTPStatus.BAD_REQUEST


class NotFoundError(BillingError):
    status_code = HTTPStatus.NOT_FOUND


class InvalidTransitionError(BillingError):
    """Transición de estado no permitida (p.ej. desde EXPIRED o CANCELLED)"""
    status_code = HTTPStatus.CONFLICT


class ConflictError(BillingError):
    """Otro worker tiene el lease de la suscripción; se difiere al próximo sweep"""
    status_code = HTTPStatus.CONFLICT


class StoreConsistencyError(BillingError):
    """Falló la escritura atómica pago + suscripción"""
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR


class WebhookVerificationError(BillingError):
    status_code = HTTPStatus.BAD_REQUEST


class GatewayError(BillingError):
    """Error base de la pasarela de pagos"""
    status_code = HTTPStatus.BAD_GATEWAY


class GatewayDeclinedError(GatewayError):
    """Tarjeta rechazada, fondos insuficientes. No se reintenta en el mismo sweep."""
    status_code = HTTPStatus.PAYMENT_REQUIRED


class TransientGatewayError(GatewayError):
    """Red caída o respuesta 5xx: se reintenta con backoff"""
    status_code = HTTPStatus.SERVICE_UNAVAILABLE


class GatewayTimeoutError(TransientGatewayError):
    status_code = HTTPStatus.GATEWAY_TIMEOUT


class ChargeInFlightError(TransientGatewayError):
    """La pasarela sigue procesando otra petición con la misma idempotency key"""
    status_code = HTTPStatus.CONFLICT
