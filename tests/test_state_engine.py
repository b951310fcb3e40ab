"""
Tests for the subscription state machine and the state engine
Run with: python -m pytest tests/test_state_engine.py -v
"""

from datetime import date, datetime

import pytest
from sqlalchemy import select

from nexo.domain.billing.concurrency import CasResult
from nexo.domain.billing.entitlements import EntitlementSync
from nexo.domain.billing.state_engine import Actor, SubscriptionStateEngine
from nexo.domain.billing.states import (
    TRANSITIONS,
    SubscriptionState,
    can_transition,
    parse_state,
    validate_transition,
)
from nexo.errors import ConflictError, NotFoundError, ValidationError
from nexo.models import Organization, Payment, Subscription
from nexo.tenant import executor

S = SubscriptionState


class TestTransitionTable:
    """The allowed transition graph"""

    def test_cancelled_is_terminal(self):
        assert TRANSITIONS[S.CANCELADA] == frozenset()
        for target in S:
            if target != S.CANCELADA:
                assert not can_transition(S.CANCELADA, target)

    def test_grace_period_is_never_a_generic_target(self):
        for source, targets in TRANSITIONS.items():
            assert S.GRACE_PERIOD not in targets, f"{source} must not reach grace_period directly"

    def test_self_transition_is_allowed(self):
        for state in S:
            assert can_transition(state, state)

    def test_expected_edges(self):
        assert can_transition("pendiente_pago", "activa")
        assert can_transition("trial", "pendiente_pago")
        assert can_transition("vencida", "suspendida")
        assert can_transition("grace_period", "cancelada")
        assert not can_transition("pausada", "vencida")
        assert not can_transition("vencida", "pausada")
        assert not can_transition("suspendida", "pausada")

    def test_table_matches_the_documented_lifecycle(self):
        assert dict(TRANSITIONS) == {
            S.TRIAL: {S.ACTIVA, S.CANCELADA, S.VENCIDA, S.PENDIENTE_PAGO},
            S.PENDIENTE_PAGO: {S.ACTIVA, S.CANCELADA, S.VENCIDA},
            S.ACTIVA: {S.PAUSADA, S.CANCELADA, S.VENCIDA, S.SUSPENDIDA},
            S.PAUSADA: {S.ACTIVA, S.CANCELADA},
            S.VENCIDA: {S.ACTIVA, S.SUSPENDIDA},
            S.GRACE_PERIOD: {S.ACTIVA, S.SUSPENDIDA, S.CANCELADA},
            S.SUSPENDIDA: {S.ACTIVA, S.CANCELADA},
            S.CANCELADA: set(),
        }

    def test_validate_transition_reports_both_states(self):
        with pytest.raises(ValidationError) as exc:
            validate_transition("pausada", "vencida")
        assert exc.value.details == {"from": "pausada", "to": "vencida"}

    def test_unknown_state_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_state("archivada")


class TestStateEngine:
    """Generic transitions through the engine"""

    @pytest.fixture(autouse=True)
    def setup(self, world, clock, make_subscription, fetch):
        self.clock = clock
        self.engine = SubscriptionStateEngine(clock=clock)
        self.make_subscription = make_subscription
        self.fetch = fetch

    def test_pause_and_reactivate(self):
        sub_id = self.make_subscription()

        paused = self.engine.pause(sub_id)
        assert paused.estado == "pausada"

        reactivated = self.engine.reactivate(sub_id)
        assert reactivated.estado == "activa"

    def test_illegal_transition_leaves_row_untouched(self):
        sub_id = self.make_subscription(estado="pausada")
        before = self.fetch(Subscription, sub_id)

        with pytest.raises(ValidationError):
            self.engine.change_state(sub_id, "vencida")

        after = self.fetch(Subscription, sub_id)
        assert after.estado == "pausada"
        assert after.actualizado_en == before.actualizado_en

    def test_every_unlisted_transition_is_rejected(self):
        for source in S:
            # No client: one row per state may coexist on the same plan
            sub_id = self.make_subscription(estado=source.value, cliente_id=None)
            version = self.fetch(Subscription, sub_id).actualizado_en

            for target in S:
                if target == source or target in TRANSITIONS[source]:
                    continue
                with pytest.raises(ValidationError):
                    self.engine.change_state(sub_id, target)

                after = self.fetch(Subscription, sub_id)
                assert after.estado == source.value, f"{source.value} -> {target.value}"
                assert after.actualizado_en == version

    def test_generic_path_cannot_enter_grace_period(self):
        sub_id = self.make_subscription(estado="vencida")
        with pytest.raises(ValidationError):
            self.engine.change_state(sub_id, "grace_period")
        assert self.fetch(Subscription, sub_id).estado == "vencida"

    def test_cancel_sets_end_date_and_is_final(self):
        sub_id = self.make_subscription()

        cancelled = self.engine.cancel(sub_id, Actor(organizacion_id=1, usuario_id=42), razon="Cierre del negocio")

        assert cancelled.estado == "cancelada"
        assert cancelled.fecha_fin == date(2026, 3, 10)
        assert cancelled.auto_cobro is False
        assert cancelled.razon_cancelacion == "Cierre del negocio"
        assert cancelled.cancelado_por == 42

        with pytest.raises(ValidationError):
            self.engine.reactivate(sub_id)
        assert self.fetch(Subscription, sub_id).estado == "cancelada"

    def test_self_transition_is_a_noop(self):
        sub_id = self.make_subscription()
        before = self.fetch(Subscription, sub_id)

        result = self.engine.change_state(sub_id, "activa")

        assert result.estado == "activa"
        assert self.fetch(Subscription, sub_id).actualizado_en == before.actualizado_en

    def test_every_write_bumps_the_version(self):
        sub_id = self.make_subscription()
        before = self.fetch(Subscription, sub_id).actualizado_en

        paused = self.engine.pause(sub_id)

        assert paused.actualizado_en > before

    def test_other_tenant_cannot_see_the_subscription(self):
        sub_id = self.make_subscription()
        with pytest.raises(NotFoundError):
            self.engine.cancel(sub_id, Actor(organizacion_id=3))
        assert self.fetch(Subscription, sub_id).estado == "activa"

    def test_reactivation_clears_grace_deadline(self):
        sub_id = self.make_subscription(estado="grace_period", fecha_gracia=date(2026, 3, 12))
        result = self.engine.reactivate(sub_id)
        assert result.estado == "activa"
        assert result.fecha_gracia is None

    def test_trial_conversion_syncs_modules(self):
        sub_id = self.make_subscription(
            plan_id=100,
            estado="trial",
            es_trial=True,
            fecha_fin_trial=date(2026, 3, 20),
            fecha_proximo_cobro=None,
        )

        result = self.engine.change_state(sub_id, "activa")

        assert result.es_trial is False
        assert result.fecha_proximo_cobro == date(2026, 4, 10)
        org = self.fetch(Organization, 2)
        assert org.plan_actual == "basic"
        assert org.modulos_activos == {"core": True, "agendamiento": True}

    def test_stale_read_surfaces_as_conflict(self):
        sub_id = self.make_subscription()

        class StaleEngine(SubscriptionStateEngine):
            def _swap(self, db, sub, current, mutation):
                # Another writer commits between our read and our write
                sub.actualizado_en = datetime(2020, 1, 1)
                return super()._swap(db, sub, current, mutation)

        engine = StaleEngine(clock=self.clock)
        with pytest.raises(ConflictError) as exc:
            engine.pause(sub_id)
        assert exc.value.reason == ConflictError.LOST_RACE
        assert self.fetch(Subscription, sub_id).estado == "activa"


class TestCharges:
    """Failed and successful charges"""

    @pytest.fixture(autouse=True)
    def setup(self, world, clock, make_subscription, fetch):
        self.engine = SubscriptionStateEngine(clock=clock)
        self.make_subscription = make_subscription
        self.fetch = fetch

    def _payments(self, sub_id):
        with executor.bypass_scope() as db:
            return list(
                db.execute(
                    select(Payment).where(Payment.suscripcion_id == sub_id).order_by(Payment.id)
                ).scalars()
            )

    def test_failed_charge_moves_active_to_overdue(self):
        sub_id = self.make_subscription()

        result = self.engine.register_failed_charge(sub_id, error="card_declined")

        assert result.estado == "vencida"
        payments = self._payments(sub_id)
        assert len(payments) == 1
        assert payments[0].estado == "fallido"
        assert payments[0].monto == 599.0
        assert payments[0].error_mensaje == "card_declined"

    def test_failed_charge_in_grace_only_records_payment(self):
        sub_id = self.make_subscription(estado="grace_period", fecha_gracia=date(2026, 3, 14))
        before = self.fetch(Subscription, sub_id)

        self.engine.register_failed_charge(sub_id, error="retry failed", monto=599.0)

        after = self.fetch(Subscription, sub_id)
        assert after.estado == "grace_period"
        assert after.actualizado_en == before.actualizado_en
        assert [p.estado for p in self._payments(sub_id)] == ["fallido"]

    def test_failed_charge_on_paused_subscription_is_rejected(self):
        sub_id = self.make_subscription(estado="pausada")
        with pytest.raises(ValidationError):
            self.engine.register_failed_charge(sub_id)
        assert self._payments(sub_id) == []

    def test_successful_charge_recovers_and_advances_cadence(self):
        sub_id = self.make_subscription(
            estado="vencida",
            fecha_proximo_cobro=date(2026, 3, 1),
            meses_activo=2,
            total_pagado=1198.0,
        )

        result = self.engine.process_successful_charge(sub_id, monto=599.0, transaction_id="pay_1")

        assert result.estado == "activa"
        assert result.meses_activo == 3
        assert result.total_pagado == 1797.0
        assert result.fecha_proximo_cobro == date(2026, 4, 10)
        assert [p.estado for p in self._payments(sub_id)] == ["completado"]

    def test_renewal_keeps_billing_anchor(self):
        sub_id = self.make_subscription(fecha_proximo_cobro=date(2026, 3, 31), periodo="trimestral")
        result = self.engine.process_successful_charge(sub_id, monto=1797.0)
        assert result.fecha_proximo_cobro == date(2026, 6, 30)

    def test_duplicate_transaction_is_applied_once(self):
        sub_id = self.make_subscription(gateway="dodo", meses_activo=1, total_pagado=599.0)

        self.engine.process_successful_charge(sub_id, monto=599.0, transaction_id="pay_dup")
        again = self.engine.process_successful_charge(sub_id, monto=599.0, transaction_id="pay_dup")

        assert again.meses_activo == 2
        assert len(self._payments(sub_id)) == 1


class TestLockGuardedTransitions:
    """Dunning and trial-expiry writes never raise on a lost race"""

    @pytest.fixture(autouse=True)
    def setup(self, world, clock, make_subscription, fetch):
        self.engine = SubscriptionStateEngine(clock=clock, grace_period_days=7)
        self.make_subscription = make_subscription
        self.fetch = fetch

    def test_entering_grace_stamps_deadline(self):
        sub_id = self.make_subscription(estado="vencida")
        version = self.fetch(Subscription, sub_id).actualizado_en

        outcome = self.engine.dunning_transition(sub_id, version, "grace_period")

        assert outcome == CasResult.APPLIED
        sub = self.fetch(Subscription, sub_id)
        assert sub.estado == "grace_period"
        assert sub.fecha_gracia == date(2026, 3, 17)

    def test_same_stale_version_applies_once(self):
        sub_id = self.make_subscription(estado="vencida")
        version = self.fetch(Subscription, sub_id).actualizado_en

        first = self.engine.dunning_transition(sub_id, version, "grace_period")
        second = self.engine.dunning_transition(sub_id, version, "suspendida")

        assert first == CasResult.APPLIED
        assert second == CasResult.LOST
        assert self.fetch(Subscription, sub_id).estado == "grace_period"

    def test_paid_subscription_is_never_suspended(self):
        sub_id = self.make_subscription(estado="activa")
        version = self.fetch(Subscription, sub_id).actualizado_en

        outcome = self.engine.dunning_transition(sub_id, version, "suspendida")

        assert outcome == CasResult.LOST
        assert self.fetch(Subscription, sub_id).estado == "activa"

    def test_missing_subscription(self):
        outcome = self.engine.dunning_transition(9999, datetime(2026, 3, 1), "suspendida")
        assert outcome == CasResult.NOT_FOUND

    def test_expire_trial_only_from_trial(self):
        trial_id = self.make_subscription(estado="trial", es_trial=True, fecha_fin_trial=date(2026, 3, 9))
        active_id = self.make_subscription(cliente_id=11)

        assert self.engine.expire_trial(trial_id, self.fetch(Subscription, trial_id).actualizado_en) == CasResult.APPLIED
        assert self.engine.expire_trial(active_id, self.fetch(Subscription, active_id).actualizado_en) == CasResult.LOST
        assert self.fetch(Subscription, trial_id).estado == "vencida"
        assert self.fetch(Subscription, active_id).estado == "activa"


class TestGatewayActivation:
    """First payment of a checkout, including the upgrade cleanup"""

    @pytest.fixture(autouse=True)
    def setup(self, world, clock, make_subscription, fetch):
        self.engine = SubscriptionStateEngine(clock=clock, entitlements=EntitlementSync())
        self.make_subscription = make_subscription
        self.fetch = fetch

    def test_pending_checkout_activates_and_cancels_other_pending_plans(self):
        basic_id = self.make_subscription(
            plan_id=100, estado="pendiente_pago", fecha_proximo_cobro=None, precio_actual=299.0, gateway="dodo"
        )
        pro_id = self.make_subscription(estado="pendiente_pago", fecha_proximo_cobro=None, gateway="dodo")

        result = self.engine.activate_from_gateway(pro_id, transaction_id="pay_first")

        assert result.activated is True
        assert result.previous_state == "pendiente_pago"
        assert result.cancelled_ids == [basic_id]

        pro = self.fetch(Subscription, pro_id)
        assert pro.estado == "activa"
        assert pro.meses_activo == 1
        assert pro.total_pagado == 599.0
        assert pro.fecha_proximo_cobro == date(2026, 4, 10)

        basic = self.fetch(Subscription, basic_id)
        assert basic.estado == "cancelada"
        assert basic.razon_cancelacion == "Upgrade a plan Pro"

        assert self.fetch(Organization, 2).plan_actual == "pro"

    def test_external_subscriber_upgrade_matches_by_email(self):
        eva = {"nombre": "Eva", "email": "eva@example.com"}
        pending = dict(cliente_id=None, estado="pendiente_pago", fecha_proximo_cobro=None, gateway="dodo")
        basic_id = self.make_subscription(plan_id=100, precio_actual=299.0, suscriptor_externo=eva, **pending)
        stranger_id = self.make_subscription(
            plan_id=100,
            precio_actual=299.0,
            suscriptor_externo={"nombre": "Otro", "email": "otro@example.com"},
            **pending,
        )
        pro_id = self.make_subscription(suscriptor_externo=eva, **pending)

        result = self.engine.activate_from_gateway(pro_id, transaction_id="pay_eva")

        assert result.cancelled_ids == [basic_id]
        assert self.fetch(Subscription, basic_id).estado == "cancelada"
        assert self.fetch(Subscription, stranger_id).estado == "pendiente_pago"
        assert self.fetch(Subscription, pro_id).estado == "activa"

    def test_already_active_is_not_applied_twice(self):
        sub_id = self.make_subscription(meses_activo=4)

        result = self.engine.activate_from_gateway(sub_id)

        assert result.activated is False
        assert self.fetch(Subscription, sub_id).meses_activo == 4

    def test_suspended_subscription_cannot_be_activated_by_checkout(self):
        sub_id = self.make_subscription(estado="suspendida")
        with pytest.raises(ValidationError):
            self.engine.activate_from_gateway(sub_id)
