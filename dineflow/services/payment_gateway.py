"""
Pasarela de pagos: interfaz común, implementación mock y wrapper con
timeout + reintentos.

La implementación real (Stripe) está en stripe_gateway.py. Se elige con
settings.PAYMENT_GATEWAY.
"""
import asyncio
import hashlib
import hmac
import json
import logging
import random
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dineflow.core.config import Settings, settings as default_settings
from dineflow.core.exceptions import (
    GatewayDeclinedError,
    GatewayTimeoutError,
    TransientGatewayError,
    ValidationError,
    WebhookVerificationError,
)

logger = logging.getLogger(__name__)


# ============================================
# MODELOS
# ============================================

class ChargeResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    error_reason: Optional[str] = None
    # Aceptado pero sin resultado definitivo (processing, requires_action)
    in_flight: bool = False


class CardDetails(BaseModel):
    number: str = Field(..., min_length=12, max_length=19)
    exp_month: int = Field(..., ge=1, le=12)
    exp_year: int
    cvc: str = Field(..., min_length=3, max_length=4)


class PaymentMethodInfo(BaseModel):
    method_ref: str
    last4: str
    brand: str


class GatewayEvent(BaseModel):
    """Evento de webhook normalizado, independiente del proveedor"""
    kind: str  # payment_succeeded | payment_failed | subscription_deleted | ignored
    event_type: str
    transaction_id: Optional[str] = None
    payment_id: Optional[int] = None
    subscription_ref: Optional[str] = None
    reason: Optional[str] = None


# Eventos con formato Stripe: {"type": ..., "data": {"object": {...}}}
PAYMENT_SUCCEEDED_EVENTS = {"payment_intent.succeeded", "invoice.payment_succeeded"}
PAYMENT_FAILED_EVENTS = {"payment_intent.payment_failed", "invoice.payment_failed"}
SUBSCRIPTION_DELETED_EVENTS = {"customer.subscription.deleted"}


def to_minor_units(amount: Decimal) -> int:
    """12.50 -> 1250"""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


# ============================================
# INTERFAZ
# ============================================

class PaymentGateway(ABC):
    """Capacidad de cobro sin estado: no persiste nada de la aplicación"""

    name = "abstract"

    @abstractmethod
    async def charge(
        self,
        subscription_id: int,
        amount: Decimal,
        currency: str,
        payment_method_ref: Optional[str],
        idempotency_key: str,
        customer_ref: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """
        Cobra un monto. Un rechazo se devuelve como ChargeResult(success=False);
        errores de red o timeout se lanzan como TransientGatewayError.
        """

    @abstractmethod
    async def get_charge(self, idempotency_key: str) -> Optional[ChargeResult]:
        """
        Estado de un intento previo, o None si la pasarela nunca lo recibió.
        Un intento que sigue en curso vuelve con in_flight=True.
        """

    @abstractmethod
    async def create_customer(self, email: str, name: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def create_payment_method(
        self, card: CardDetails, customer_ref: Optional[str] = None
    ) -> PaymentMethodInfo:
        pass

    @abstractmethod
    async def create_remote_subscription(
        self, customer_ref: str, plan_ref: str, method_ref: str
    ) -> str:
        pass

    @abstractmethod
    async def cancel_remote_subscription(self, remote_subscription_ref: str) -> bool:
        pass

    @abstractmethod
    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> Tuple[str, Dict[str, Any]]:
        """Verifica la firma y devuelve (event_type, payload)"""

    def handle_webhook(self, event_type: str, payload: Dict[str, Any]) -> GatewayEvent:
        """Normaliza un evento para la conciliación contra el libro de pagos"""
        obj = (payload.get("data") or {}).get("object") or payload
        metadata = obj.get("metadata") or {}

        payment_id = metadata.get("payment_id")
        try:
            payment_id = int(payment_id) if payment_id not in (None, "") else None
        except (TypeError, ValueError):
            # Se concilia por transaction_id
            logger.warning(f"[Gateway] payment_id inválido en metadata: {payment_id!r}")
            payment_id = None

        if event_type in PAYMENT_SUCCEEDED_EVENTS:
            return GatewayEvent(
                kind="payment_succeeded",
                event_type=event_type,
                transaction_id=obj.get("id"),
                payment_id=payment_id,
                subscription_ref=obj.get("subscription"),
            )
        if event_type in PAYMENT_FAILED_EVENTS:
            error = obj.get("last_payment_error") or {}
            return GatewayEvent(
                kind="payment_failed",
                event_type=event_type,
                transaction_id=obj.get("id"),
                payment_id=payment_id,
                subscription_ref=obj.get("subscription"),
                reason=error.get("message") or obj.get("failure_message") or "payment_failed",
            )
        if event_type in SUBSCRIPTION_DELETED_EVENTS:
            return GatewayEvent(
                kind="subscription_deleted",
                event_type=event_type,
                subscription_ref=obj.get("id"),
            )

        logger.info(f"[Gateway] Evento no manejado: {event_type}")
        return GatewayEvent(kind="ignored", event_type=event_type)


# ============================================
# MOCK
# ============================================

class MockPaymentGateway(PaymentGateway):
    """
    Pasarela simulada para desarrollo y tests.

    Resultado de cada cobro, en orden de prioridad:
    1. `outcomes[subscription_id]`: lista de resultados que se consumen en orden
    2. `default_outcome`
    3. aleatorio con `success_rate`, reproducible si se pasa `seed`

    Resultados posibles: 'success', 'decline', 'timeout', 'unavailable'.
    """

    name = "mock"
    OUTCOMES = ("success", "decline", "timeout", "unavailable")

    def __init__(
        self,
        success_rate: float = 0.9,
        seed: Optional[int] = None,
        latency: float = 0.0,
        outcomes: Optional[Dict[int, List[str]]] = None,
        default_outcome: Optional[str] = None,
        webhook_secret: str = "whsec_mock",
    ):
        self.success_rate = success_rate
        self.latency = latency
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.default_outcome = default_outcome
        self.webhook_secret = webhook_secret
        self._rng = random.Random(seed)

        # Intentos recibidos (para asserts en tests) y resultados por idempotency key
        self.charges: List[Dict[str, Any]] = []
        self.results: Dict[str, ChargeResult] = {}
        self.cancelled_refs: List[str] = []

    def set_outcomes(self, subscription_id: int, *outcomes: str) -> None:
        self.outcomes[subscription_id] = list(outcomes)

    def _next_outcome(self, subscription_id: int) -> str:
        queue = self.outcomes.get(subscription_id)
        if queue:
            outcome = queue.pop(0)
        elif self.default_outcome:
            outcome = self.default_outcome
        else:
            outcome = "success" if self._rng.random() < self.success_rate else "decline"
        if outcome not in self.OUTCOMES:
            raise ValueError(f"Resultado mock desconocido: {outcome}")
        return outcome

    async def _simulate_latency(self, factor: float = 1.0) -> None:
        if self.latency:
            await asyncio.sleep(self.latency * factor)

    async def charge(
        self,
        subscription_id,
        amount,
        currency,
        payment_method_ref,
        idempotency_key,
        customer_ref=None,
        metadata=None,
    ):
        logger.info(
            f"[MockGateway] Cobro sub={subscription_id} monto={amount} {currency} key={idempotency_key}"
        )
        await self._simulate_latency()

        # Misma idempotency key = misma respuesta, sin cobrar de nuevo
        previous = self.results.get(idempotency_key)
        if previous is not None:
            return previous

        self.charges.append({
            "subscription_id": subscription_id,
            "amount": Decimal(amount),
            "currency": currency,
            "payment_method_ref": payment_method_ref,
            "idempotency_key": idempotency_key,
        })

        outcome = self._next_outcome(subscription_id)
        if outcome == "timeout":
            raise GatewayTimeoutError("Mock gateway timeout")
        if outcome == "unavailable":
            raise TransientGatewayError("Mock gateway unavailable")

        if outcome == "success" and payment_method_ref:
            result = ChargeResult(success=True, transaction_id=f"txn_{uuid.uuid4().hex[:16]}")
        elif not payment_method_ref:
            result = ChargeResult(success=False, error_reason="No payment method on file")
        else:
            result = ChargeResult(success=False, error_reason="Payment failed: Insufficient funds")

        self.results[idempotency_key] = result
        return result

    async def get_charge(self, idempotency_key):
        return self.results.get(idempotency_key)

    async def create_customer(self, email, name=None):
        await self._simulate_latency(0.6)
        return f"cus_{uuid.uuid4().hex[:14]}"

    async def create_payment_method(self, card, customer_ref=None):
        await self._simulate_latency(0.8)
        if card.number.endswith("0002"):
            raise GatewayDeclinedError("Your card was declined.", code="card_declined")
        return PaymentMethodInfo(
            method_ref=f"pm_{uuid.uuid4().hex[:14]}",
            last4=card.number[-4:],
            brand="visa" if card.number.startswith("4") else "mastercard",
        )

    async def create_remote_subscription(self, customer_ref, plan_ref, method_ref):
        await self._simulate_latency()
        return f"sub_{uuid.uuid4().hex[:14]}"

    async def cancel_remote_subscription(self, remote_subscription_ref):
        await self._simulate_latency(0.6)
        self.cancelled_refs.append(remote_subscription_ref)
        return True

    def sign(self, body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    def verify_webhook(self, body, headers):
        signature = headers.get("x-mock-signature") or headers.get("X-Mock-Signature")
        if not signature:
            raise WebhookVerificationError("Falta la cabecera X-Mock-Signature")
        if not hmac.compare_digest(self.sign(body), signature):
            raise WebhookVerificationError("Firma de webhook inválida")
        try:
            event = json.loads(body)
        except ValueError as e:
            raise WebhookVerificationError(f"Payload inválido: {e}")
        return event.get("type", ""), event


# ============================================
# TIMEOUT + REINTENTOS
# ============================================

class ResilientGateway(PaymentGateway):
    """
    Envuelve cualquier pasarela: cada llamada tiene timeout y se reintenta con
    backoff exponencial ante TransientGatewayError. Si se agotan los intentos
    se relanza el último error.
    """

    def __init__(
        self,
        inner: PaymentGateway,
        timeout: float = 15.0,
        max_attempts: int = 3,
        backoff_min: float = 0.5,
        backoff_max: float = 8.0,
    ):
        self.inner = inner
        self.name = inner.name
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max

    async def _call(self, operation: str, func, *args, **kwargs):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception_type(TransientGatewayError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
                except asyncio.TimeoutError:
                    raise GatewayTimeoutError(
                        f"{self.name}.{operation} excedió {self.timeout}s",
                        details={"attempt": attempt.retry_state.attempt_number}
                    )

    async def charge(self, subscription_id, amount, currency, payment_method_ref,
                     idempotency_key, customer_ref=None, metadata=None):
        return await self._call(
            "charge", self.inner.charge,
            subscription_id, amount, currency, payment_method_ref, idempotency_key,
            customer_ref=customer_ref, metadata=metadata,
        )

    async def get_charge(self, idempotency_key):
        return await self._call("get_charge", self.inner.get_charge, idempotency_key)

    async def create_customer(self, email, name=None):
        return await self._call("create_customer", self.inner.create_customer, email, name)

    async def create_payment_method(self, card, customer_ref=None):
        return await self._call(
            "create_payment_method", self.inner.create_payment_method, card, customer_ref
        )

    async def create_remote_subscription(self, customer_ref, plan_ref, method_ref):
        return await self._call(
            "create_remote_subscription", self.inner.create_remote_subscription,
            customer_ref, plan_ref, method_ref,
        )

    async def cancel_remote_subscription(self, remote_subscription_ref):
        return await self._call(
            "cancel_remote_subscription", self.inner.cancel_remote_subscription,
            remote_subscription_ref,
        )

    def verify_webhook(self, body, headers):
        return self.inner.verify_webhook(body, headers)

    def handle_webhook(self, event_type, payload):
        return self.inner.handle_webhook(event_type, payload)


# ============================================
# FACTORY
# ============================================

def get_payment_gateway(config: Settings = None) -> PaymentGateway:
    """Construye la pasarela configurada, ya envuelta con timeout y reintentos"""
    config = config or default_settings
    provider = config.PAYMENT_GATEWAY.lower()

    if provider == "mock":
        inner = MockPaymentGateway(
            success_rate=config.MOCK_GATEWAY_SUCCESS_RATE,
            seed=config.MOCK_GATEWAY_SEED,
            latency=config.MOCK_GATEWAY_LATENCY,
            webhook_secret=config.MOCK_WEBHOOK_SECRET,
        )
    elif provider == "stripe":
        from dineflow.services.stripe_gateway import StripePaymentGateway

        if not config.STRIPE_SECRET_KEY:
            raise ValidationError("STRIPE_SECRET_KEY no configurada", code="CONFIGURATION_ERROR")
        inner = StripePaymentGateway(
            api_key=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        )
    else:
        raise ValidationError(f"Pasarela desconocida: {config.PAYMENT_GATEWAY}", code="CONFIGURATION_ERROR")

    logger.info(f"[Gateway] Usando pasarela '{inner.name}'")
    return ResilientGateway(
        inner,
        timeout=config.GATEWAY_TIMEOUT_SECONDS,
        max_attempts=config.GATEWAY_MAX_ATTEMPTS,
        backoff_min=config.GATEWAY_BACKOFF_MIN,
        backoff_max=config.GATEWAY_BACKOFF_MAX,
    )
