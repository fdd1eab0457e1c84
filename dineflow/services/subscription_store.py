"""
Subscription Store: único dueño de planes, suscripciones y pagos.

Cada operación abre una sesión corta y hace commit antes de devolver, así el
pago 'pending' queda persistido antes de cualquier llamada de red. Las
escrituras dobles (pago + suscripción) van en una sola transacción.
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from dineflow.core.dates import end_of_day
from dineflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    StoreConsistencyError,
)
from dineflow.models.restaurant import Restaurant
from dineflow.models.subscription import (
    PaymentKind,
    PaymentStatus,
    Subscription,
    SubscriptionPayment,
    SubscriptionPlan,
    SubscriptionStatus,
)
from dineflow.services.subscription_state import RENEWABLE_STATES, ensure_transition

logger = logging.getLogger(__name__)

CANCELLABLE_STATES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)


class SubscriptionStore:
    """
    Repositorio inyectable. `session_factory` debe crear sesiones con
    expire_on_commit=False (como SessionLocal) porque los objetos se devuelven
    desacoplados de la sesión.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session(self):
        db: Session = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ============================================
    # CATÁLOGO Y RESTAURANTES
    # ============================================

    def add_plan(self, **fields) -> SubscriptionPlan:
        with self.session() as db:
            plan = SubscriptionPlan(**fields)
            db.add(plan)
            db.commit()
            return plan

    def get_plan(self, plan_id: int) -> Optional[SubscriptionPlan]:
        with self.session() as db:
            return db.get(SubscriptionPlan, plan_id)

    def list_active_plans(self) -> List[SubscriptionPlan]:
        with self.session() as db:
            return db.query(SubscriptionPlan).filter(
                SubscriptionPlan.is_active == True  # noqa: E712
            ).order_by(SubscriptionPlan.price.asc()).all()

    def add_restaurant(self, name: str, email: Optional[str] = None) -> Restaurant:
        with self.session() as db:
            restaurant = Restaurant(name=name, email=email)
            db.add(restaurant)
            db.commit()
            return restaurant

    def get_restaurant(self, restaurant_id: int) -> Optional[Restaurant]:
        with self.session() as db:
            return db.get(Restaurant, restaurant_id)

    # ============================================
    # SUSCRIPCIONES
    # ============================================

    def _subscription_query(self, db: Session):
        return db.query(Subscription).options(
            joinedload(Subscription.plan),
            joinedload(Subscription.restaurant),
        )

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        with self.session() as db:
            return self._subscription_query(db).filter(Subscription.id == subscription_id).first()

    def get_subscription_by_restaurant(self, restaurant_id: int) -> Optional[Subscription]:
        with self.session() as db:
            return self._subscription_query(db).filter(
                Subscription.restaurant_id == restaurant_id
            ).first()

    def get_subscription_by_remote_ref(self, remote_ref: str) -> Optional[Subscription]:
        with self.session() as db:
            return self._subscription_query(db).filter(
                Subscription.remote_subscription_ref == remote_ref
            ).first()

    def list_subscriptions(
        self,
        status: Optional[SubscriptionStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Subscription]:
        """Listado de solo lectura para administración"""
        with self.session() as db:
            query = self._subscription_query(db)
            if status:
                query = query.filter(Subscription.status == status)
            return query.order_by(Subscription.id).offset(skip).limit(limit).all()

    def save_subscription(self, subscription: Subscription) -> Subscription:
        """Inserta o actualiza (merge) una suscripción completa"""
        with self.session() as db:
            merged = db.merge(subscription)
            db.commit()
            return self._subscription_query(db).filter(Subscription.id == merged.id).first()

    def update_subscription(self, subscription_id: int, **fields) -> Subscription:
        with self.session() as db:
            result = db.execute(
                update(Subscription).where(Subscription.id == subscription_id).values(**fields)
            )
            if result.rowcount != 1:
                raise NotFoundError(f"Suscripción {subscription_id} no encontrada")
            db.commit()
            return self._subscription_query(db).filter(Subscription.id == subscription_id).first()

    # ============================================
    # BÚSQUEDAS DEL SWEEP
    # ============================================

    def find_due_renewals(self, today: date) -> List[int]:
        """ACTIVE o INACTIVE con next_billing_date vencida y sin cancelación pedida"""
        with self.session() as db:
            rows = db.query(Subscription.id).filter(
                Subscription.status.in_(RENEWABLE_STATES),
                Subscription.next_billing_date < end_of_day(today),
                Subscription.cancel_at_period_end == False,  # noqa: E712
            ).order_by(Subscription.next_billing_date, Subscription.id).all()
            return [row.id for row in rows]

    def find_expired_trials(self, today: date) -> List[int]:
        with self.session() as db:
            rows = db.query(Subscription.id).filter(
                Subscription.status == SubscriptionStatus.TRIAL,
                Subscription.trial_ends_at < end_of_day(today),
                Subscription.cancel_at_period_end == False,  # noqa: E712
            ).order_by(Subscription.trial_ends_at, Subscription.id).all()
            return [row.id for row in rows]

    def find_due_cancellations(self, today: date) -> List[int]:
        with self.session() as db:
            rows = db.query(Subscription.id).filter(
                Subscription.cancel_at_period_end == True,  # noqa: E712
                Subscription.end_date < end_of_day(today),
                Subscription.status.in_(CANCELLABLE_STATES),
            ).order_by(Subscription.end_date, Subscription.id).all()
            return [row.id for row in rows]

    # ============================================
    # LEASE
    # ============================================

    def acquire_lease(self, subscription_id: int, now: datetime, ttl_seconds: int) -> str:
        """
        Compare-and-swap sobre lease_token. No bloquea: si otro worker tiene un
        lease vigente lanza ConflictError.
        """
        token = uuid.uuid4().hex
        with self.session() as db:
            result = db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    or_(
                        Subscription.lease_token.is_(None),
                        Subscription.lease_expires_at < now,
                    ),
                )
                .values(lease_token=token, lease_expires_at=now + timedelta(seconds=ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                if db.get(Subscription, subscription_id) is None:
                    raise NotFoundError(f"Suscripción {subscription_id} no encontrada")
                raise ConflictError(
                    f"Suscripción {subscription_id} en proceso por otro worker",
                    details={"subscription_id": subscription_id}
                )
            db.commit()
        return token

    def release_lease(self, subscription_id: int, token: str) -> None:
        with self.session() as db:
            db.execute(
                update(Subscription)
                .where(Subscription.id == subscription_id, Subscription.lease_token == token)
                .values(lease_token=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    # ============================================
    # LIBRO DE PAGOS
    # ============================================

    def get_payment(self, payment_id: int) -> Optional[SubscriptionPayment]:
        with self.session() as db:
            return db.get(SubscriptionPayment, payment_id)

    def find_payment_by_transaction(self, transaction_id: str) -> Optional[SubscriptionPayment]:
        with self.session() as db:
            return db.query(SubscriptionPayment).filter(
                SubscriptionPayment.transaction_id == transaction_id
            ).first()

    def find_period_payment(
        self, subscription_id: int, period_start: date, status: PaymentStatus
    ) -> Optional[SubscriptionPayment]:
        with self.session() as db:
            return db.query(SubscriptionPayment).filter(
                SubscriptionPayment.subscription_id == subscription_id,
                SubscriptionPayment.period_start == period_start,
                SubscriptionPayment.status == status,
            ).order_by(SubscriptionPayment.id.desc()).first()

    def list_payments(self, subscription_id: int, limit: Optional[int] = None) -> List[SubscriptionPayment]:
        with self.session() as db:
            query = db.query(SubscriptionPayment).filter(
                SubscriptionPayment.subscription_id == subscription_id
            ).order_by(SubscriptionPayment.created_at.desc(), SubscriptionPayment.id.desc())
            if limit:
                query = query.limit(limit)
            return query.all()

    def open_pending_payment(
        self,
        subscription_id: int,
        amount: Decimal,
        currency: str,
        payment_method: str,
        period_start: date,
        kind: PaymentKind,
    ) -> SubscriptionPayment:
        """Crea y confirma la fila 'pending' (ancla de idempotencia) antes de cobrar"""
        with self.session() as db:
            payment = SubscriptionPayment(
                subscription_id=subscription_id,
                amount=amount,
                currency=currency,
                payment_method=payment_method,
                period_start=period_start,
                kind=kind,
                status=PaymentStatus.PENDING,
                idempotency_key=f"sub{subscription_id}-{period_start:%Y%m%d}-{uuid.uuid4().hex[:10]}",
            )
            db.add(payment)
            db.commit()
            logger.info(f"[Store] Pago pending #{payment.id} para suscripción {subscription_id}")
            return payment

    def _update_payment(
        self,
        db: Session,
        payment_id: int,
        allowed: Iterable[PaymentStatus],
        **values
    ) -> None:
        result = db.execute(
            update(SubscriptionPayment)
            .where(
                SubscriptionPayment.id == payment_id,
                SubscriptionPayment.status.in_(list(allowed)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StoreConsistencyError(
                f"Pago {payment_id} ya no está en {[s.value for s in allowed]}",
                details={"payment_id": payment_id}
            )

    def _update_subscription(self, db: Session, subscription_id: int, lease_token: Optional[str], **values) -> None:
        conditions = [Subscription.id == subscription_id]
        if lease_token is not None:
            conditions.append(Subscription.lease_token == lease_token)
        result = db.execute(
            update(Subscription)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StoreConsistencyError(
                f"Suscripción {subscription_id} perdió el lease o no existe",
                details={"subscription_id": subscription_id}
            )

    def _commit_pair(self, db: Session, description: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[Store] ❌ Falló escritura atómica ({description}): {str(e)}")
            raise StoreConsistencyError(f"Falló escritura atómica: {description}") from e

    def settle_success(
        self,
        payment_id: int,
        subscription_id: int,
        transaction_id: str,
        paid_at: datetime,
        next_billing_date: datetime,
        lease_token: Optional[str] = None,
        allowed_payment_states: Iterable[PaymentStatus] = (PaymentStatus.PENDING,),
    ) -> None:
        """Pago -> completed y suscripción -> ACTIVE con el periodo avanzado, en una transacción"""
        with self.session() as db:
            subscription = db.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFoundError(f"Suscripción {subscription_id} no encontrada")
            target = ensure_transition(subscription.status, SubscriptionStatus.ACTIVE)
            try:
                self._update_payment(
                    db, payment_id, allowed_payment_states,
                    status=PaymentStatus.COMPLETED,
                    transaction_id=transaction_id,
                    paid_at=paid_at,
                    failure_reason=None,
                )
                self._update_subscription(
                    db, subscription_id, lease_token,
                    status=target,
                    next_billing_date=next_billing_date,
                    end_date=next_billing_date,
                )
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreConsistencyError(f"Falló escritura atómica: pago {payment_id} completed") from e
            self._commit_pair(db, f"pago {payment_id} completed")

    def settle_failure(
        self,
        payment_id: int,
        subscription_id: int,
        new_status: SubscriptionStatus,
        reason: Optional[str],
        lease_token: Optional[str] = None,
    ) -> None:
        """Pago -> failed y suscripción -> INACTIVE/EXPIRED; next_billing_date no cambia"""
        with self.session() as db:
            subscription = db.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFoundError(f"Suscripción {subscription_id} no encontrada")
            target = ensure_transition(subscription.status, new_status)
            values = {"status": target}
            if target == SubscriptionStatus.EXPIRED:
                values["cancel_at_period_end"] = False
            try:
                self._update_payment(
                    db, payment_id, (PaymentStatus.PENDING,),
                    status=PaymentStatus.FAILED,
                    failure_reason=(reason or "unknown")[:255],
                )
                self._update_subscription(db, subscription_id, lease_token, **values)
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreConsistencyError(f"Falló escritura atómica: pago {payment_id} failed") from e
            self._commit_pair(db, f"pago {payment_id} failed")

    def record_payment_outcome(
        self,
        payment_id: int,
        status: PaymentStatus,
        transaction_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        allowed: Iterable[PaymentStatus] = (PaymentStatus.PENDING,),
    ) -> None:
        """Actualiza sólo el pago (conciliación sobre suscripciones terminales)"""
        with self.session() as db:
            values = {"status": status}
            if transaction_id:
                values["transaction_id"] = transaction_id
            if paid_at:
                values["paid_at"] = paid_at
            if reason:
                values["failure_reason"] = reason[:255]
            try:
                self._update_payment(db, payment_id, allowed, **values)
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreConsistencyError(f"No se pudo actualizar el pago {payment_id}") from e
            self._commit_pair(db, f"pago {payment_id} {status.value}")

    def finalize_cancellation(self, subscription_id: int, lease_token: Optional[str] = None) -> bool:
        """
        Escritura condicional: sólo cancela si sigue cumpliendo el criterio.
        Devuelve False si ya no aplica (otro sweep la cerró).
        """
        with self.session() as db:
            subscription = db.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFoundError(f"Suscripción {subscription_id} no encontrada")
            if not subscription.cancel_at_period_end or subscription.status not in CANCELLABLE_STATES:
                return False
            target = ensure_transition(subscription.status, SubscriptionStatus.CANCELLED)
            self._update_subscription(
                db, subscription_id, lease_token,
                status=target,
                cancel_at_period_end=False,
            )
            self._commit_pair(db, f"cancelación suscripción {subscription_id}")
            return True
