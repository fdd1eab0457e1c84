"""
Stripe: implementación de producción de PaymentGateway

El SDK de Stripe es síncrono; cada llamada se ejecuta en un thread para no
bloquear el event loop del sweep.
"""
import asyncio
import json
import logging
from typing import Optional

import stripe

from dineflow.core.exceptions import (
    ChargeInFlightError,
    GatewayDeclinedError,
    TransientGatewayError,
    WebhookVerificationError,
)
from dineflow.services.payment_gateway import (
    ChargeResult,
    PaymentGateway,
    PaymentMethodInfo,
    to_minor_units,
)

logger = logging.getLogger(__name__)

# Errores de Stripe que vale la pena reintentar
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)

# PaymentIntent aceptado pero todavía sin resultado
IN_FLIGHT_STATUSES = ("processing", "requires_action", "requires_confirmation", "requires_capture")


class StripePaymentGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: Optional[str] = None):
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret

    async def _run(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.IdempotencyError as e:
            # Otra petición con la misma key sigue en curso en Stripe
            logger.warning(f"[Stripe] Cobro en curso con la misma key: {str(e)}")
            raise ChargeInFlightError(str(e))
        except TRANSIENT_ERRORS as e:
            logger.warning(f"[Stripe] Error transitorio: {str(e)}")
            raise TransientGatewayError(str(e))
        except stripe.APIError as e:
            # 5xx de Stripe
            logger.warning(f"[Stripe] Error de API: {str(e)}")
            raise TransientGatewayError(str(e))

    async def charge(self, subscription_id, amount, currency, payment_method_ref,
                     idempotency_key, customer_ref=None, metadata=None):
        if not payment_method_ref:
            return ChargeResult(success=False, error_reason="No payment method on file")

        try:
            intent = await self._run(
                stripe.PaymentIntent.create,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                payment_method=payment_method_ref,
                customer=customer_ref,
                confirm=True,
                off_session=True,
                description=f"Subscription payment for {subscription_id}",
                metadata={
                    "subscription_id": str(subscription_id),
                    "idempotency_key": idempotency_key,
                    **(metadata or {}),
                },
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.info(f"[Stripe] Cobro rechazado sub={subscription_id}: {e.user_message}")
            return ChargeResult(success=False, error_reason=e.user_message or str(e))
        except stripe.StripeError as e:
            logger.error(f"[Stripe] Error cobrando sub={subscription_id}: {str(e)}")
            return ChargeResult(success=False, error_reason=str(e))

        return self._to_result(intent)

    @staticmethod
    def _to_result(intent) -> ChargeResult:
        if intent.status == "succeeded":
            return ChargeResult(success=True, transaction_id=intent.id)
        if intent.status in IN_FLIGHT_STATUSES:
            # El resultado llega por webhook o en la próxima consulta
            return ChargeResult(
                success=False,
                in_flight=True,
                transaction_id=intent.id,
                error_reason=f"status={intent.status}",
            )
        error = getattr(intent, "last_payment_error", None)
        return ChargeResult(
            success=False,
            transaction_id=intent.id,
            error_reason=error.message if error else f"status={intent.status}",
        )

    async def get_charge(self, idempotency_key):
        # Stripe no permite buscar por idempotency key; la key va también en metadata
        result = await self._run(
            stripe.PaymentIntent.search,
            query=f"metadata['idempotency_key']:'{idempotency_key}'",
            limit=1,
        )
        if not result.data:
            return None
        return self._to_result(result.data[0])

    async def create_customer(self, email, name=None):
        customer = await self._run(
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"source": "dineflow"},
        )
        logger.info(f"[Stripe] Cliente creado {customer.id}")
        return customer.id

    async def create_payment_method(self, card, customer_ref=None):
        try:
            method = await self._run(
                stripe.PaymentMethod.create,
                type="card",
                card={
                    "number": card.number,
                    "exp_month": card.exp_month,
                    "exp_year": card.exp_year,
                    "cvc": card.cvc,
                },
            )
            if customer_ref:
                await self._run(stripe.PaymentMethod.attach, method.id, customer=customer_ref)
        except stripe.CardError as e:
            raise GatewayDeclinedError(e.user_message or str(e), code=e.code or "card_declined")

        return PaymentMethodInfo(method_ref=method.id, last4=method.card.last4, brand=method.card.brand)

    async def create_remote_subscription(self, customer_ref, plan_ref, method_ref):
        subscription = await self._run(
            stripe.Subscription.create,
            customer=customer_ref,
            items=[{"price": plan_ref}],
            default_payment_method=method_ref,
        )
        logger.info(f"[Stripe] Suscripción remota creada {subscription.id}")
        return subscription.id

    async def cancel_remote_subscription(self, remote_subscription_ref):
        subscription = await self._run(stripe.Subscription.cancel, remote_subscription_ref)
        return subscription.status == "canceled"

    def verify_webhook(self, body, headers):
        if not self.webhook_secret:
            raise WebhookVerificationError("STRIPE_WEBHOOK_SECRET no configurado")
        signature = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not signature:
            raise WebhookVerificationError("Falta la cabecera Stripe-Signature")
        try:
            event = stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookVerificationError(f"Payload inválido: {e}")
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(f"Firma inválida: {e}")
        # El body ya fue verificado; se usa el JSON crudo como payload
        return event["type"], json.loads(body)
