"""
Subscription state engine

Every state change of a subscription goes through this module:
- generic transitions are checked against the transition table in states.py
- each write is a compare-and-swap on `actualizado_en` (see concurrency.py)
- payments and counters change in the same transaction as the state they accompany
- dunning writes (grace_period / suspendida) use the lock-guarded path and never raise on a lost race
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import GRACE_PERIOD_DAYS
from ...errors import ConflictError, NotFoundError, ValidationError
from ...models import Subscription, utcnow
from ...tenant import TenantExecutor, executor
from .concurrency import CasResult, compare_and_swap
from .entitlements import EntitlementSync
from .repository import (
    PaymentRepository,
    SubscriptionRepository,
    SubscriptionSnapshot,
    next_charge_date,
)
from .states import (
    CONVERSION_SOURCES,
    DUNNING_PROTECTED_STATES,
    SubscriptionState,
    parse_state,
    validate_transition,
)

logger = logging.getLogger(__name__)

S = SubscriptionState

# A failed charge in these states is only bookkept; dunning already owns the row
LAPSED_STATES = frozenset({S.VENCIDA, S.GRACE_PERIOD, S.SUSPENDIDA})


@dataclass(frozen=True)
class Actor:
    """Who is changing the subscription. No organization means a trusted system actor."""

    organizacion_id: Optional[int] = None
    usuario_id: Optional[int] = None

    @property
    def is_system(self) -> bool:
        return self.organizacion_id is None


SYSTEM_ACTOR = Actor()


@dataclass
class ActivationResult:
    subscription: Subscription
    activated: bool
    previous_state: str
    cancelled_ids: list = field(default_factory=list)


class SubscriptionStateEngine:
    def __init__(
        self,
        tenant_executor: TenantExecutor = executor,
        entitlements: Optional[EntitlementSync] = None,
        clock: Callable[[], datetime] = utcnow,
        grace_period_days: int = GRACE_PERIOD_DAYS,
    ):
        self.executor = tenant_executor
        self.entitlements = entitlements or EntitlementSync(tenant_executor)
        self.clock = clock
        self.grace_period_days = grace_period_days

    def _transaction(self, actor: Actor):
        if actor.is_system:
            return self.executor.transaction(bypass=True)
        return self.executor.transaction(tenant_id=actor.organizacion_id)

    def _today(self) -> date:
        return self.clock().date()

    def _swap(self, db: Session, sub: Subscription, current: S, mutation: dict) -> Subscription:
        """CAS the mutation onto `sub`; the generic engine surfaces a lost race as ConflictError"""
        outcome = compare_and_swap(
            db,
            sub.id,
            sub.actualizado_en,
            mutation,
            expected_state=current.value,
            now=self.clock(),
        )
        if outcome == CasResult.NOT_FOUND:
            raise NotFoundError("Subscription", sub.id)
        if outcome == CasResult.LOST:
            raise ConflictError(
                f"Subscription {sub.id} was modified concurrently",
                reason=ConflictError.LOST_RACE,
                details={"subscription_id": sub.id},
            )
        return SubscriptionRepository.reload(db, sub.id)

    def _mutation_for(self, sub: Subscription, current: S, target: S, actor: Actor, razon: Optional[str]) -> dict:
        today = self._today()
        mutation = {"estado": target.value}

        if target == S.CANCELADA:
            mutation.update(
                fecha_fin=today,
                auto_cobro=False,
                razon_cancelacion=razon,
                cancelado_por=actor.usuario_id,
            )
        elif target == S.ACTIVA:
            mutation["fecha_gracia"] = None
            if current in CONVERSION_SOURCES:
                mutation["es_trial"] = False
                if sub.fecha_proximo_cobro is None:
                    mutation["fecha_proximo_cobro"] = next_charge_date(today, sub.periodo)
        return mutation

    def change_state(
        self,
        subscription_id: int,
        new_state,
        actor: Actor = SYSTEM_ACTOR,
        razon: Optional[str] = None,
    ) -> Subscription:
        """
        Validate and apply a state change.

        Raises:
            ValidationError: transition not in the table (the row is left untouched)
            NotFoundError: subscription missing in the actor's tenant
            ConflictError: another writer changed the row between read and write
        """
        target = parse_state(new_state)
        with self._transaction(actor) as db:
            sub = SubscriptionRepository.get_or_404(db, subscription_id)
            current = parse_state(sub.estado)
            validate_transition(current, target)
            if current == target:
                return sub

            sub = self._swap(db, sub, current, self._mutation_for(sub, current, target, actor, razon))

        logger.info(f"🔄 Subscription {subscription_id}: {current.value} -> {target.value}")

        if target == S.ACTIVA and current in CONVERSION_SOURCES:
            self.entitlements.on_activation(subscription_id)
        return sub

    def cancel(self, subscription_id: int, actor: Actor = SYSTEM_ACTOR, razon: Optional[str] = None) -> Subscription:
        return self.change_state(subscription_id, S.CANCELADA, actor, razon)

    def pause(self, subscription_id: int, actor: Actor = SYSTEM_ACTOR) -> Subscription:
        return self.change_state(subscription_id, S.PAUSADA, actor)

    def reactivate(self, subscription_id: int, actor: Actor = SYSTEM_ACTOR) -> Subscription:
        return self.change_state(subscription_id, S.ACTIVA, actor)

    def register_failed_charge(
        self,
        subscription_id: int,
        error: Optional[str] = None,
        monto: Optional[float] = None,
        transaction_id: Optional[str] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Subscription:
        """Record a failed charge and move the subscription to `vencida` (day 0 of dunning)"""
        with self._transaction(actor) as db:
            sub = SubscriptionRepository.get_or_404(db, subscription_id)
            current = parse_state(sub.estado)

            if current not in LAPSED_STATES:
                validate_transition(current, S.VENCIDA)
                sub = self._swap(db, sub, current, {"estado": S.VENCIDA.value})
                logger.warning(f"⚠️ Subscription {subscription_id}: {current.value} -> vencida ({error})")

            PaymentRepository.create(
                db,
                sub,
                monto=sub.precio_actual if monto is None else monto,
                estado="fallido",
                transaction_id=transaction_id,
                error_mensaje=error,
            )
        return sub

    def _charge_mutation(self, sub: Subscription, amount: float) -> dict:
        today = self._today()
        base = sub.fecha_proximo_cobro if sub.fecha_proximo_cobro and sub.fecha_proximo_cobro >= today else today
        return {
            "estado": S.ACTIVA.value,
            "fecha_proximo_cobro": next_charge_date(base, sub.periodo),
            "meses_activo": Subscription.meses_activo + 1,
            "total_pagado": Subscription.total_pagado + amount,
            "es_trial": False,
            "fecha_gracia": None,
        }

    def _apply_charge(
        self,
        db: Session,
        sub: Subscription,
        current: S,
        monto: Optional[float],
        transaction_id: Optional[str],
    ) -> Subscription:
        validate_transition(current, S.ACTIVA)
        amount = sub.precio_actual if monto is None else monto
        sub = self._swap(db, sub, current, self._charge_mutation(sub, amount))
        PaymentRepository.create(db, sub, monto=amount, estado="completado", transaction_id=transaction_id)
        return sub

    def process_successful_charge(
        self,
        subscription_id: int,
        monto: Optional[float] = None,
        transaction_id: Optional[str] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Subscription:
        """Renewal or recovery payment: advance the cadence and move back to `activa`"""
        with self._transaction(actor) as db:
            sub = SubscriptionRepository.get_or_404(db, subscription_id)
            current = parse_state(sub.estado)

            if transaction_id and sub.gateway:
                if PaymentRepository.find_by_transaction(db, sub.gateway, transaction_id):
                    logger.info(f"⏭️ Payment {transaction_id} already applied to subscription {subscription_id}")
                    return sub

            sub = self._apply_charge(db, sub, current, monto, transaction_id)

        logger.info(
            f"💰 Subscription {subscription_id} charged ({current.value} -> activa), "
            f"next charge {sub.fecha_proximo_cobro}"
        )
        if current in CONVERSION_SOURCES:
            self.entitlements.on_activation(subscription_id)
        return sub

    def activate_from_gateway(
        self,
        subscription_id: int,
        transaction_id: Optional[str] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> ActivationResult:
        """
        First payment authorized by the gateway.

        `pendiente_pago` (or `trial`) -> `activa` with the cadence advanced and counters bumped;
        other trial/pending subscriptions of the same subscriber on different plans are
        cancelled in the same transaction (upgrade).
        """
        with self._transaction(actor) as db:
            sub = SubscriptionRepository.get_or_404(db, subscription_id)
            current = parse_state(sub.estado)

            if current == S.ACTIVA:
                logger.info(f"⏭️ Subscription {subscription_id} already active")
                return ActivationResult(sub, activated=False, previous_state=current.value)
            if current not in CONVERSION_SOURCES:
                raise ValidationError(
                    f"Invalid transition: {current.value} -> activa (gateway activation)",
                    {"from": current.value, "to": S.ACTIVA.value},
                )

            sub = self._apply_charge(db, sub, current, None, transaction_id)

            cancelled = []
            plan_nombre = sub.plan.nombre if sub.plan else sub.plan_id
            for other in SubscriptionRepository.list_other_pending_for_subscriber(db, sub):
                outcome = compare_and_swap(
                    db,
                    other.id,
                    other.actualizado_en,
                    {
                        "estado": S.CANCELADA.value,
                        "fecha_fin": self._today(),
                        "auto_cobro": False,
                        "razon_cancelacion": f"Upgrade a plan {plan_nombre}",
                    },
                    excluded_states=DUNNING_PROTECTED_STATES,
                    now=self.clock(),
                )
                if outcome == CasResult.APPLIED:
                    cancelled.append(other.id)

        logger.info(
            f"✅ Subscription {subscription_id} activated from gateway "
            f"(cancelled previous: {cancelled or 'none'})"
        )
        self.entitlements.on_activation(subscription_id)
        return ActivationResult(sub, activated=True, previous_state=current.value, cancelled_ids=cancelled)

    def dunning_transition(
        self,
        subscription_id: int,
        expected_version: datetime,
        new_state,
    ) -> CasResult:
        """
        Lock-guarded write used by the dunning sweep for `grace_period` and `suspendida`.

        Skips the generic validator (entering grace also stamps `fecha_gracia`) and refuses to
        overwrite rows already `activa` or `cancelada`. A lost race is returned, never raised.
        """
        target = parse_state(new_state)
        today = self._today()
        mutation = {"estado": target.value}
        if target == S.GRACE_PERIOD:
            mutation["fecha_gracia"] = today + timedelta(days=self.grace_period_days)

        with self.executor.transaction(bypass=True) as db:
            return compare_and_swap(
                db,
                subscription_id,
                expected_version,
                mutation,
                excluded_states=DUNNING_PROTECTED_STATES,
                now=self.clock(),
            )

    def expire_trial(self, subscription_id: int, expected_version: datetime) -> CasResult:
        """trial -> vencida for a trial past its end date, guarded like the dunning writes"""
        with self.executor.transaction(bypass=True) as db:
            return compare_and_swap(
                db,
                subscription_id,
                expected_version,
                {"estado": S.VENCIDA.value},
                expected_state=S.TRIAL.value,
                now=self.clock(),
            )

    def snapshot(self, subscription_id: int) -> SubscriptionSnapshot:
        """Plan/subscriber view used to build notifications"""
        with self.executor.bypass_scope() as db:
            sub = SubscriptionRepository.get_or_404(db, subscription_id)
            return SubscriptionSnapshot.from_row(sub, sub.plan, sub.cliente)
