"""Subscription service - Business logic for checkout, plan changes and checkout tokens"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import CHECKOUT_TOKEN_TTL_HOURS, PLATFORM_ORG_ID
from ...errors import ConflictError, GatewayError, NotFoundError, ValidationError
from ...models import CheckoutToken, Coupon, Plan, Subscription, utcnow
from .concurrency import CasResult, compare_and_swap
from .dodo_service import GATEWAY_NAME, GatewaySubscriptionRequest
from .entitlements import EntitlementSync
from .repository import (
    PERIODS,
    CheckoutTokenRepository,
    ClientRepository,
    CouponRepository,
    PaymentRepository,
    PlanRepository,
    SubscriptionRepository,
    next_charge_date,
    price_for_period,
)
from .state_engine import SYSTEM_ACTOR, Actor, SubscriptionStateEngine
from .states import SubscriptionState
from .strategies import BillingContext, select_strategy

logger = logging.getLogger(__name__)

S = SubscriptionState


class TokenExpiredError(ValidationError):
    """Checkout token found past its expiry (and marked `expirado`)"""


@dataclass(frozen=True)
class Quote:
    precio_base: float
    precio_final: float
    descuento_porcentaje: Optional[float] = None
    descuento_monto: Optional[float] = None
    coupon: Optional[Coupon] = None


@dataclass
class CheckoutResult:
    subscription: Subscription
    precio_final: float
    checkout_url: Optional[str] = None
    billing_type: str = "platform"


def _validate_period(periodo: str) -> None:
    if periodo not in PERIODS:
        raise ValidationError(f"Invalid billing period: {periodo}", {"periodo": periodo})


def quote(db: Session, plan: Plan, periodo: str, cupon_codigo: Optional[str] = None, today: Optional[date] = None) -> Quote:
    """Price of `plan` for one cadence after applying the coupon (the coupon is not redeemed)"""
    base = price_for_period(plan, periodo)
    if not cupon_codigo:
        return Quote(base, base)

    validation = CouponRepository.validate(db, cupon_codigo, plan, today)
    if not validation.valid:
        raise ValidationError(validation.reason, {"cupon": cupon_codigo})

    percentage, amount = CouponRepository.compute_discount(validation.coupon, base)
    final = max(round(base - amount, 2), 0.0)
    return Quote(base, final, percentage, amount, validation.coupon)


def bound_quote(db: Session, plan: Plan, periodo: str, precio_final: float, cupon_codigo: Optional[str] = None) -> Quote:
    """Quote for a price fixed earlier (checkout token); the coupon is only looked up for the record"""
    base = price_for_period(plan, periodo)
    coupon = CouponRepository.get_by_code(db, cupon_codigo) if cupon_codigo else None
    if coupon is None:
        return Quote(base, precio_final)
    percentage, amount = CouponRepository.compute_discount(coupon, base)
    return Quote(base, precio_final, percentage, amount, coupon)


class SubscriptionService:
    """Service for subscription management"""

    def __init__(
        self,
        gateway,
        engine: Optional[SubscriptionStateEngine] = None,
        entitlements: Optional[EntitlementSync] = None,
        platform_org_id: int = PLATFORM_ORG_ID,
    ):
        self.gateway = gateway
        self.engine = engine or SubscriptionStateEngine()
        self.executor = self.engine.executor
        self.entitlements = entitlements or self.engine.entitlements
        self.platform_org_id = platform_org_id

    # ========================================================================
    # CHECKOUT
    # ========================================================================

    async def checkout(
        self,
        context: BillingContext,
        plan_id: int,
        periodo: str = "mensual",
        cupon_codigo: Optional[str] = None,
        trial: bool = False,
        precio_final: Optional[float] = None,
    ) -> CheckoutResult:
        """
        Create a subscription for the subscriber resolved by the billing strategy.

        - price 0 after the coupon: created directly in `activa`
        - trial requested and the plan has trial days: `trial`
        - otherwise `pendiente_pago` plus a gateway subscription with a payment link

        Coupon redemption and the subscription insert share one transaction. A `precio_final`
        fixed by a checkout token replaces the quote; its coupon was redeemed when the token
        was issued and is not checked again.
        """
        _validate_period(periodo)
        strategy = select_strategy(context, self.platform_org_id)
        # Pre-flight before anything is written
        strategy.validate_subscriber(context)
        vendor_id = strategy.vendor_id(context)
        today = self.engine.clock().date()

        with self.executor.transaction(tenant_id=vendor_id) as db:
            plan = PlanRepository.get_or_404(db, plan_id)
            if not plan.activo:
                raise ValidationError(f"Plan {plan.codigo} is not available", {"plan_id": plan_id})

            cliente_id = strategy.client_id(context, db)
            externo = strategy.external_subscriber_payload(context)

            existing = SubscriptionRepository.find_non_terminal(
                db,
                vendor_id,
                plan.id,
                cliente_id=cliente_id,
                suscriptor_email=(externo or {}).get("email"),
            )
            if existing:
                raise ConflictError(
                    f"Subscriber already has a {existing.estado} subscription to plan {plan.codigo}",
                    reason=ConflictError.ALREADY_EXISTS,
                    details={"subscription_id": existing.id},
                )

            if precio_final is None:
                price = quote(db, plan, periodo, cupon_codigo, today)
                if price.coupon is not None:
                    CouponRepository.redeem(db, price.coupon)
            else:
                price = bound_quote(db, plan, periodo, precio_final, cupon_codigo)

            fields = dict(
                organizacion_id=vendor_id,
                plan_id=plan.id,
                cliente_id=cliente_id,
                suscriptor_externo=externo,
                periodo=periodo,
                fecha_inicio=today,
                precio_actual=price.precio_final,
                moneda=plan.moneda,
                cupon_aplicado_id=price.coupon.id if price.coupon else None,
                descuento_porcentaje=price.descuento_porcentaje,
                descuento_monto=price.descuento_monto,
                creado_por=context.usuario_id,
            )
            if price.precio_final <= 0:
                fields.update(estado=S.ACTIVA.value, fecha_proximo_cobro=next_charge_date(today, periodo))
            elif trial and plan.dias_trial > 0:
                trial_end = today + timedelta(days=plan.dias_trial)
                fields.update(
                    estado=S.TRIAL.value,
                    es_trial=True,
                    fecha_fin_trial=trial_end,
                    fecha_proximo_cobro=trial_end,
                    gateway=GATEWAY_NAME,
                )
            else:
                fields.update(estado=S.PENDIENTE_PAGO.value, gateway=GATEWAY_NAME)

            sub = SubscriptionRepository.create(db, **fields)

            payer_email = None
            payer_name = None
            if cliente_id is not None:
                client = ClientRepository.get(db, cliente_id)
                payer_email, payer_name = client.email, client.nombre
            elif externo:
                payer_email, payer_name = externo.get("email"), externo.get("nombre")
            plan_codigo, plan_nombre = plan.codigo, plan.nombre

        logger.info(
            f"✅ Checkout ({strategy.billing_type()}) created subscription {sub.id} "
            f"in {sub.estado} for vendor {vendor_id}, price {price.precio_final}"
        )
        result = CheckoutResult(sub, price.precio_final, billing_type=strategy.billing_type())

        if sub.estado == S.ACTIVA.value:
            self.entitlements.on_activation(sub.id)
            return result
        if sub.estado != S.PENDIENTE_PAGO.value:
            return result

        try:
            created = await self.gateway.create_subscription(
                GatewaySubscriptionRequest(
                    subscription_id=sub.id,
                    plan_codigo=plan_codigo,
                    plan_nombre=plan_nombre,
                    monto=price.precio_final,
                    moneda=sub.moneda,
                    periodo=periodo,
                    payer_email=payer_email or "",
                    payer_name=payer_name,
                    metadata={"billing_type": strategy.billing_type()},
                )
            )
        except GatewayError:
            # Free the (subscriber, plan) slot so the checkout can be retried
            self.engine.cancel(sub.id, razon="Error al crear la suscripción en el gateway")
            raise

        with self.executor.transaction(tenant_id=vendor_id) as db:
            sub = SubscriptionRepository.get_or_404(db, sub.id)
            SubscriptionRepository.update_gateway_ids(
                db,
                sub,
                subscription_id_gateway=created.get("subscription_id"),
                customer_id_gateway=created.get("customer_id"),
            )

        result.subscription = sub
        result.checkout_url = created.get("checkout_url")
        return result

    async def cancel(self, subscription_id: int, actor: Actor = SYSTEM_ACTOR, razon: Optional[str] = None) -> Subscription:
        """Cancel locally, then stop the recurring charge at the gateway"""
        sub = self.engine.cancel(subscription_id, actor, razon)

        if sub.subscription_id_gateway and self.gateway.is_available():
            try:
                await self.gateway.cancel_subscription(sub.subscription_id_gateway)
            except GatewayError as e:
                # The local cancellation stands; a later webhook reconciles the gateway side
                logger.error(f"❌ Gateway cancellation failed for subscription {subscription_id}: {e.message}")
        return sub

    # ========================================================================
    # PLAN CHANGES
    # ========================================================================

    def change_plan(self, subscription_id: int, new_plan_id: int, actor: Actor = SYSTEM_ACTOR) -> Subscription:
        """
        Move a live subscription to another plan of the same vendor on the same cadence.

        The coupon applied at checkout is kept as is; its plan allowlist is not re-checked.
        """
        scope = (
            self.executor.transaction(bypass=True)
            if actor.is_system
            else self.executor.transaction(tenant_id=actor.organizacion_id)
        )
        with scope as db:
            sub = SubscriptionRepository.get_or_404(db, subscription_id)
            if sub.estado == S.CANCELADA.value:
                raise ValidationError("Cannot change the plan of a cancelled subscription")
            if sub.plan_id == new_plan_id:
                raise ValidationError("Subscription is already on this plan")

            plan = PlanRepository.get_or_404(db, new_plan_id)
            if plan.organizacion_id != sub.organizacion_id or not plan.activo:
                raise ValidationError(f"Plan {new_plan_id} is not available for this subscription")

            existing = SubscriptionRepository.find_non_terminal(
                db,
                sub.organizacion_id,
                plan.id,
                cliente_id=sub.cliente_id,
                suscriptor_email=(sub.suscriptor_externo or {}).get("email"),
            )
            if existing:
                raise ConflictError(
                    f"Subscriber already has a subscription to plan {plan.codigo}",
                    details={"subscription_id": existing.id},
                )

            price = price_for_period(plan, sub.periodo)
            if sub.descuento_porcentaje:
                price = round(price * (1 - sub.descuento_porcentaje / 100), 2)
            elif sub.descuento_monto:
                price = max(round(price - sub.descuento_monto, 2), 0.0)

            try:
                outcome = compare_and_swap(
                    db,
                    sub.id,
                    sub.actualizado_en,
                    {"plan_id": plan.id, "precio_actual": price, "moneda": plan.moneda},
                    expected_state=sub.estado,
                    now=self.engine.clock(),
                )
            except IntegrityError as e:
                # A concurrent checkout took the slot on the new plan after the check above
                raise ConflictError(
                    f"Subscriber already has a subscription to plan {plan.codigo}",
                    details={"plan_id": plan.id},
                ) from e
            if outcome != CasResult.APPLIED:
                raise ConflictError(
                    f"Subscription {sub.id} was modified concurrently",
                    reason=ConflictError.LOST_RACE,
                    details={"subscription_id": sub.id},
                )
            sub = SubscriptionRepository.reload(db, sub.id)

        logger.info(f"🔀 Subscription {subscription_id} moved to plan {new_plan_id} at {price}")
        if sub.estado == S.ACTIVA.value:
            self.entitlements.on_activation(sub.id)
        return sub

    def update_plan_entitlements(
        self,
        plan_id: int,
        actor: Actor,
        modulos_habilitados: Optional[list] = None,
        limites: Optional[dict] = None,
        features: Optional[list] = None,
    ) -> Plan:
        """Administrative entitlement edit; platform plans cascade to every subscribed organization"""
        with self.executor.transaction(tenant_id=actor.organizacion_id) as db:
            plan = PlanRepository.get_or_404(db, plan_id)
            PlanRepository.update_entitlements(db, plan, modulos_habilitados, limites, features)

        if plan.organizacion_id == self.platform_org_id:
            self.entitlements.sync_by_plan(plan_id)
        return plan

    def refund_payment(self, payment_id: int, monto: float, actor: Actor, razon: Optional[str] = None):
        with self.executor.transaction(tenant_id=actor.organizacion_id) as db:
            payment = PaymentRepository.get(db, payment_id)
            if payment is None:
                raise NotFoundError("Payment", payment_id)
            payment = PaymentRepository.refund(db, payment, monto, razon)
        logger.info(f"↩️ Refunded {monto} of payment {payment_id}")
        return payment

    # ========================================================================
    # CHECKOUT TOKENS
    # ========================================================================

    def create_checkout_token(
        self,
        actor: Actor,
        cliente_id: int,
        plan_id: int,
        periodo: str = "mensual",
        cupon_codigo: Optional[str] = None,
        ttl_hours: int = CHECKOUT_TOKEN_TTL_HOURS,
    ) -> CheckoutToken:
        """
        Single-use public link binding a client to a plan at a computed price.

        The coupon, if any, is redeemed now: the token holds the discounted price until it
        is used, cancelled or expires.
        """
        _validate_period(periodo)
        with self.executor.transaction(tenant_id=actor.organizacion_id) as db:
            if ClientRepository.get(db, cliente_id) is None:
                raise NotFoundError("Client", cliente_id)
            plan = PlanRepository.get_or_404(db, plan_id)
            price = quote(db, plan, periodo, cupon_codigo, self.engine.clock().date())
            if price.coupon is not None:
                CouponRepository.redeem(db, price.coupon)

            token = CheckoutTokenRepository.create(
                db,
                organizacion_id=actor.organizacion_id,
                cliente_id=cliente_id,
                plan_id=plan.id,
                periodo=periodo,
                precio_calculado=price.precio_final,
                moneda=plan.moneda,
                cupon_codigo=cupon_codigo,
                expira_en=self.engine.clock() + timedelta(hours=ttl_hours),
                creado_por=actor.usuario_id,
            )
        logger.info(f"🔗 Checkout token {token.id} created for client {cliente_id}, plan {plan_id}")
        return token

    def _usable_token(self, db: Session, token_value: str) -> CheckoutToken:
        token = CheckoutTokenRepository.get_by_token(db, token_value)
        if token is None:
            raise NotFoundError("Checkout token")
        if token.estado != "pendiente":
            raise ValidationError(f"Checkout token is {token.estado}", {"estado": token.estado})
        if token.expira_en <= self.engine.clock():
            CheckoutTokenRepository.transition(db, token, "expirado")
            raise TokenExpiredError("Checkout token has expired", {"estado": "expirado"})
        return token

    def get_checkout_token(self, token_value: str) -> CheckoutToken:
        """Public lookup; an expired token is marked as such on first sight"""
        with self.executor.bypass_scope() as db:
            try:
                return self._usable_token(db, token_value)
            except TokenExpiredError as e:
                expired = e
        # Raised after the scope so the expiry mark is committed
        raise expired

    async def consume_checkout_token(self, token_value: str) -> CheckoutResult:
        """Claim the token and run a customer-billing checkout for its client and plan"""
        expired = None
        with self.executor.bypass_scope() as db:
            try:
                token = self._usable_token(db, token_value)
                claimed = CheckoutTokenRepository.transition(db, token, "usado", usado_en=self.engine.clock())
            except TokenExpiredError as e:
                expired = e
        if expired is not None:
            raise expired
        if not claimed:
            raise ValidationError("Checkout token was already used", {"estado": "usado"})

        context = BillingContext(
            organizacion_id=token.organizacion_id,
            customer_billing=True,
            cliente_id=token.cliente_id,
        )
        try:
            result = await self.checkout(
                context,
                token.plan_id,
                token.periodo,
                token.cupon_codigo,
                precio_final=token.precio_calculado,
            )
        except Exception:
            with self.executor.bypass_scope() as db:
                CheckoutTokenRepository.void(db, token)
            logger.warning(f"⚠️ Checkout token {token.id} cancelled after a failed checkout")
            raise

        with self.executor.bypass_scope() as db:
            token = CheckoutTokenRepository.get_by_token(db, token_value)
            token.suscripcion_id = result.subscription.id
        logger.info(f"🔗 Checkout token {token.id} used for subscription {result.subscription.id}")
        return result

    def cancel_checkout_token(self, token_id: int, actor: Actor) -> CheckoutToken:
        with self.executor.transaction(tenant_id=actor.organizacion_id) as db:
            token = db.get(CheckoutToken, token_id)
            if token is None or token.organizacion_id != actor.organizacion_id:
                raise NotFoundError("Checkout token", token_id)
            if not CheckoutTokenRepository.transition(db, token, "cancelado"):
                raise ValidationError(f"Checkout token is {token.estado}", {"estado": token.estado})
        return token
