"""
Modelos para sistema de suscripciones
"""
import enum

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Date, ForeignKey, Numeric, JSON, Text,
    Enum, Index, text
)
from sqlalchemy.orm import relationship

from dineflow.core.database import Base
from dineflow.core.dates import utcnow


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, enum.Enum):
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"   # cobro fallido, se reintenta en el próximo sweep
    EXPIRED = "EXPIRED"     # terminal
    CANCELLED = "CANCELLED"  # terminal


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentKind(str, enum.Enum):
    RENEWAL = "renewal"
    TRIAL_CONVERSION = "trial_conversion"


def _enum_column(enum_cls, **kwargs):
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
            validate_strings=True,
        ),
        **kwargs
    )


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False)  # 'basic', 'pro', 'enterprise'
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    billing_cycle = _enum_column(BillingCycle, nullable=False)

    features = Column(JSON, default=list)

    # Límites (NULL = ilimitado)
    max_tables = Column(Integer, nullable=True)
    max_menu_items = Column(Integer, nullable=True)
    max_orders = Column(Integer, nullable=True)

    ai_features = Column(Boolean, default=False)
    support_level = Column(String(20), default="basic")

    # Precio equivalente en la pasarela (price_xxx en Stripe)
    gateway_price_ref = Column(String(100), nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    subscriptions = relationship("Subscription", back_populates="plan")

    def __repr__(self):
        return f"<SubscriptionPlan {self.name} {self.price} {self.billing_cycle}>"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.id"), unique=True, nullable=False)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)

    # Estado
    status = _enum_column(SubscriptionStatus, nullable=False, default=SubscriptionStatus.TRIAL, index=True)

    # Fechas
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)  # fin del periodo pagado / trial
    next_billing_date = Column(DateTime, nullable=False, index=True)
    trial_ends_at = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)

    # Pasarela
    gateway_customer_ref = Column(String(100), nullable=True)
    payment_method_ref = Column(String(100), nullable=True)
    payment_method_last4 = Column(String(4), nullable=True)
    payment_method_brand = Column(String(20), nullable=True)
    remote_subscription_ref = Column(String(100), nullable=True, index=True)

    # Lease: marca de procesamiento para que dos sweeps no cobren a la vez
    lease_token = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relaciones
    restaurant = relationship("Restaurant", back_populates="subscription")
    plan = relationship("SubscriptionPlan", back_populates="subscriptions")
    payments = relationship(
        "SubscriptionPayment",
        back_populates="subscription",
        order_by="SubscriptionPayment.id"
    )

    def __repr__(self):
        return f"<Subscription #{self.id} Restaurant:{self.restaurant_id} {self.status}>"

    @property
    def is_terminal(self):
        return self.status in (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)


class SubscriptionPayment(Base):
    """
    Libro de pagos (append-only). La fila se crea en 'pending' antes de llamar
    a la pasarela y sólo la actualiza el procesador o la conciliación de webhooks.
    """
    __tablename__ = "subscription_payments"
    __table_args__ = (
        # Máximo un pago completado por suscripción y periodo
        Index(
            "uq_subscription_payments_completed_period",
            "subscription_id",
            "period_start",
            unique=True,
            sqlite_where=text("status = 'completed'"),
            postgresql_where=text("status = 'completed'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)

    # Monto
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    payment_method = Column(String(20), nullable=False)  # 'mock', 'stripe'

    # Periodo que paga este intento
    period_start = Column(Date, nullable=False)
    kind = _enum_column(PaymentKind, nullable=False, default=PaymentKind.RENEWAL)

    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING, index=True)
    idempotency_key = Column(String(100), unique=True, nullable=False)
    transaction_id = Column(String(100), nullable=True, index=True)
    failure_reason = Column(String(255), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    subscription = relationship("Subscription", back_populates="payments")

    def __repr__(self):
        return f"<SubscriptionPayment #{self.id} Subscription:{self.subscription_id} {self.status}>"
