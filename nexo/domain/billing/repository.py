"""Billing repository - Database operations for plans, subscriptions, coupons, payments and tokens"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import ConflictError, NotFoundError, ValidationError
from ...models import (
    CheckoutToken,
    Client,
    Coupon,
    Organization,
    Payment,
    Plan,
    Subscription,
    utcnow,
)
from .states import SubscriptionState

PERIODS = ("mensual", "trimestral", "semestral", "anual")
PERIOD_MONTHS = {"mensual": 1, "trimestral": 3, "semestral": 6, "anual": 12}


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping to the last day of the target month"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_charge_date(from_date: date, periodo: str) -> date:
    """Next charge date one billing cadence after `from_date`"""
    if periodo not in PERIOD_MONTHS:
        raise ValidationError(f"Invalid billing period: {periodo}", {"periodo": periodo})
    return add_months(from_date, PERIOD_MONTHS[periodo])


def price_for_period(plan: Plan, periodo: str) -> float:
    """Plan price for a cadence; missing cadence prices fall back to a multiple of the monthly one"""
    if periodo == "mensual":
        return float(plan.precio_mensual)
    if periodo == "trimestral":
        return float(plan.precio_trimestral or plan.precio_mensual * 3)
    if periodo == "semestral":
        return float(plan.precio_semestral or plan.precio_mensual * 6)
    if periodo == "anual":
        return float(plan.precio_anual or plan.precio_mensual * 12)
    raise ValidationError(f"Invalid billing period: {periodo}", {"periodo": periodo})


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Read-only view of a subscription joined with its plan and subscriber"""

    id: int
    organizacion_id: int
    plan_id: int
    plan_nombre: str
    cliente_id: Optional[int]
    cliente_nombre: Optional[str]
    cliente_email: Optional[str]
    estado: str
    periodo: str
    precio_actual: float
    moneda: str
    auto_cobro: bool
    fecha_proximo_cobro: Optional[date]
    fecha_gracia: Optional[date]
    fecha_fin_trial: Optional[date]
    gateway: Optional[str]
    subscription_id_gateway: Optional[str]
    actualizado_en: datetime

    @classmethod
    def from_row(cls, sub: Subscription, plan: Plan, client: Optional[Client]) -> "SubscriptionSnapshot":
        externo = sub.suscriptor_externo or {}
        return cls(
            id=sub.id,
            organizacion_id=sub.organizacion_id,
            plan_id=sub.plan_id,
            plan_nombre=plan.nombre,
            cliente_id=sub.cliente_id,
            cliente_nombre=client.nombre if client else externo.get("nombre"),
            cliente_email=client.email if client else externo.get("email"),
            estado=sub.estado,
            periodo=sub.periodo,
            precio_actual=sub.precio_actual,
            moneda=sub.moneda,
            auto_cobro=sub.auto_cobro,
            fecha_proximo_cobro=sub.fecha_proximo_cobro,
            fecha_gracia=sub.fecha_gracia,
            fecha_fin_trial=sub.fecha_fin_trial,
            gateway=sub.gateway,
            subscription_id_gateway=sub.subscription_id_gateway,
            actualizado_en=sub.actualizado_en,
        )


@dataclass(frozen=True)
class CouponValidation:
    valid: bool
    coupon: Optional[Coupon]
    reason: Optional[str] = None


class OrganizationRepository:
    @staticmethod
    def get(db: Session, organizacion_id: int) -> Optional[Organization]:
        return db.get(Organization, organizacion_id)

    @staticmethod
    def set_modules(db: Session, org: Organization, modulos: dict, plan_codigo: Optional[str] = None) -> Organization:
        org.modulos_activos = modulos
        if plan_codigo is not None:
            org.plan_actual = plan_codigo
        org.actualizado_en = utcnow()
        db.flush()
        return org


class ClientRepository:
    @staticmethod
    def get(db: Session, cliente_id: int) -> Optional[Client]:
        return db.execute(select(Client).where(Client.id == cliente_id)).scalar_one_or_none()

    @staticmethod
    def find_linked(db: Session, vendor_org_id: int, linked_org_id: int) -> Optional[Client]:
        """CRM row of `vendor_org_id` that represents the organization `linked_org_id`"""
        return db.execute(
            select(Client)
            .where(
                Client.organizacion_id == vendor_org_id,
                Client.organizacion_vinculada_id == linked_org_id,
            )
            .order_by(Client.id.asc())
        ).scalars().first()


class PlanRepository:
    @staticmethod
    def get(db: Session, plan_id: int) -> Optional[Plan]:
        return db.execute(select(Plan).where(Plan.id == plan_id)).scalar_one_or_none()

    @staticmethod
    def get_or_404(db: Session, plan_id: int) -> Plan:
        plan = PlanRepository.get(db, plan_id)
        if not plan:
            raise NotFoundError("Plan", plan_id)
        return plan

    @staticmethod
    def get_by_code(db: Session, codigo: str) -> Optional[Plan]:
        return db.execute(select(Plan).where(Plan.codigo == codigo)).scalar_one_or_none()

    @staticmethod
    def update_entitlements(
        db: Session,
        plan: Plan,
        modulos_habilitados: Optional[list] = None,
        limites: Optional[dict] = None,
        features: Optional[list] = None,
    ) -> Plan:
        """Administrative entitlement edit (pricing stays immutable once referenced)"""
        if modulos_habilitados is not None:
            plan.modulos_habilitados = list(modulos_habilitados)
        if limites is not None:
            plan.limites = dict(limites)
        if features is not None:
            plan.features = list(features)
        plan.actualizado_en = utcnow()
        db.flush()
        return plan


LIVE_SUBSCRIPTION_INDEX = "uq_suscripcion_viva_cliente_plan"


def _is_live_subscription_violation(error: IntegrityError) -> bool:
    # PostgreSQL names the index; SQLite lists the unique columns
    message = str(error.orig)
    return LIVE_SUBSCRIPTION_INDEX in message or "UNIQUE constraint failed: suscripciones_org" in message


class SubscriptionRepository:
    @staticmethod
    def get(db: Session, subscription_id: int) -> Optional[Subscription]:
        return db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        ).scalar_one_or_none()

    @staticmethod
    def get_or_404(db: Session, subscription_id: int) -> Subscription:
        sub = SubscriptionRepository.get(db, subscription_id)
        if not sub:
            raise NotFoundError("Subscription", subscription_id)
        return sub

    @staticmethod
    def reload(db: Session, subscription_id: int) -> Subscription:
        """Fresh copy of the row, bypassing the identity map"""
        sub = db.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not sub:
            raise NotFoundError("Subscription", subscription_id)
        return sub

    @staticmethod
    def get_by_gateway_id(db: Session, subscription_id_gateway: str) -> Optional[Subscription]:
        return db.execute(
            select(Subscription).where(Subscription.subscription_id_gateway == subscription_id_gateway)
        ).scalars().first()

    @staticmethod
    def find_non_terminal(
        db: Session,
        vendor_org_id: int,
        plan_id: int,
        cliente_id: Optional[int] = None,
        suscriptor_email: Optional[str] = None,
    ) -> Optional[Subscription]:
        """Live subscription of a subscriber to a plan (at most one may exist)"""
        query = select(Subscription).where(
            Subscription.organizacion_id == vendor_org_id,
            Subscription.plan_id == plan_id,
            Subscription.estado != SubscriptionState.CANCELADA.value,
        )
        if cliente_id is not None:
            query = query.where(Subscription.cliente_id == cliente_id)
        elif suscriptor_email:
            query = query.where(Subscription.cliente_id.is_(None))
            candidates = db.execute(query).scalars().all()
            for sub in candidates:
                if (sub.suscriptor_externo or {}).get("email") == suscriptor_email:
                    return sub
            return None
        else:
            return None
        return db.execute(query).scalars().first()

    @staticmethod
    def list_other_pending_for_subscriber(db: Session, sub: Subscription) -> list:
        """trial/pendiente_pago rows of the same subscriber on other plans"""
        query = select(Subscription).where(
            Subscription.organizacion_id == sub.organizacion_id,
            Subscription.id != sub.id,
            Subscription.plan_id != sub.plan_id,
            Subscription.estado.in_([SubscriptionState.TRIAL.value, SubscriptionState.PENDIENTE_PAGO.value]),
        )
        if sub.cliente_id is not None:
            return list(db.execute(query.where(Subscription.cliente_id == sub.cliente_id)).scalars())

        email = (sub.suscriptor_externo or {}).get("email")
        if not email:
            return []
        candidates = db.execute(query.where(Subscription.cliente_id.is_(None))).scalars()
        return [other for other in candidates if (other.suscriptor_externo or {}).get("email") == email]

    @staticmethod
    def create(db: Session, **fields) -> Subscription:
        """
        Insert a subscription row.

        The store allows one non-cancelled row per (organization, client, plan); a second one
        raises ConflictError and leaves the caller's transaction to be rolled back.
        """
        fields.setdefault("actualizado_en", utcnow())
        sub = Subscription(**fields)
        db.add(sub)
        try:
            db.flush()
        except IntegrityError as e:
            if not _is_live_subscription_violation(e):
                raise
            raise ConflictError(
                f"Client {sub.cliente_id} already has a live subscription to plan {sub.plan_id}",
                reason=ConflictError.ALREADY_EXISTS,
                details={"plan_id": sub.plan_id, "cliente_id": sub.cliente_id},
            ) from e
        return sub

    @staticmethod
    def update_gateway_ids(
        db: Session,
        sub: Subscription,
        subscription_id_gateway: Optional[str] = None,
        customer_id_gateway: Optional[str] = None,
    ) -> Subscription:
        if subscription_id_gateway is not None:
            sub.subscription_id_gateway = subscription_id_gateway
        if customer_id_gateway is not None:
            sub.customer_id_gateway = customer_id_gateway
        sub.actualizado_en = utcnow()
        db.flush()
        return sub

    @staticmethod
    def _snapshot_query():
        return (
            select(Subscription, Plan, Client)
            .join(Plan, Subscription.plan_id == Plan.id)
            .outerjoin(Client, Subscription.cliente_id == Client.id)
        )

    @staticmethod
    def list_snapshots_by_state(db: Session, estado: str) -> list:
        """Subscriptions in `estado`, oldest change first"""
        query = SubscriptionRepository._snapshot_query().where(Subscription.estado == estado)
        if estado == SubscriptionState.GRACE_PERIOD.value:
            query = query.order_by(Subscription.fecha_gracia.asc(), Subscription.id.asc())
        else:
            query = query.order_by(Subscription.actualizado_en.asc(), Subscription.id.asc())
        return [SubscriptionSnapshot.from_row(*row) for row in db.execute(query).all()]

    @staticmethod
    def list_upcoming_charges(db: Session, charge_date: date) -> list:
        """Active auto-charged subscriptions whose next charge falls on `charge_date`"""
        query = (
            SubscriptionRepository._snapshot_query()
            .where(
                Subscription.estado == SubscriptionState.ACTIVA.value,
                Subscription.auto_cobro.is_(True),
                Subscription.fecha_proximo_cobro == charge_date,
            )
            .order_by(Subscription.organizacion_id, Subscription.id)
        )
        return [SubscriptionSnapshot.from_row(*row) for row in db.execute(query).all()]

    @staticmethod
    def list_trials_ending_on(db: Session, end_date: date) -> list:
        query = SubscriptionRepository._snapshot_query().where(
            Subscription.estado == SubscriptionState.TRIAL.value,
            Subscription.fecha_fin_trial == end_date,
        )
        return [SubscriptionSnapshot.from_row(*row) for row in db.execute(query).all()]

    @staticmethod
    def list_expired_trials(db: Session, today: date) -> list:
        query = (
            SubscriptionRepository._snapshot_query()
            .where(
                Subscription.estado == SubscriptionState.TRIAL.value,
                Subscription.fecha_fin_trial.isnot(None),
                Subscription.fecha_fin_trial < today,
            )
            .order_by(Subscription.fecha_fin_trial.asc())
        )
        return [SubscriptionSnapshot.from_row(*row) for row in db.execute(query).all()]

    @staticmethod
    def list_pending_for_polling(db: Session, created_before: datetime) -> list:
        """Checkouts still awaiting the first payment that the gateway already knows about"""
        query = (
            SubscriptionRepository._snapshot_query()
            .where(
                Subscription.estado == SubscriptionState.PENDIENTE_PAGO.value,
                Subscription.subscription_id_gateway.isnot(None),
                Subscription.creado_en <= created_before,
            )
            .order_by(Subscription.creado_en.asc())
        )
        return [SubscriptionSnapshot.from_row(*row) for row in db.execute(query).all()]


class CouponRepository:
    @staticmethod
    def get(db: Session, coupon_id: int) -> Optional[Coupon]:
        return db.execute(select(Coupon).where(Coupon.id == coupon_id)).scalar_one_or_none()

    @staticmethod
    def get_by_code(db: Session, codigo: str) -> Optional[Coupon]:
        return db.execute(select(Coupon).where(Coupon.codigo == codigo)).scalar_one_or_none()

    @staticmethod
    def validate(db: Session, codigo: str, plan: Optional[Plan] = None, today: Optional[date] = None) -> CouponValidation:
        """Check a coupon code against activity, validity window, usage cap and plan allowlist"""
        today = today or utcnow().date()
        coupon = CouponRepository.get_by_code(db, codigo)

        if not coupon:
            return CouponValidation(False, None, "Coupon not found")
        if not coupon.activo:
            return CouponValidation(False, coupon, "Coupon is inactive")
        if coupon.fecha_inicio and today < coupon.fecha_inicio:
            return CouponValidation(False, coupon, "Coupon is not valid yet")
        if coupon.fecha_expiracion and today > coupon.fecha_expiracion:
            return CouponValidation(False, coupon, "Coupon has expired")
        if coupon.usos_maximos is not None and coupon.usos_actuales >= coupon.usos_maximos:
            return CouponValidation(False, coupon, "Coupon usage limit reached")
        if plan is not None and coupon.planes_aplicables:
            if plan.codigo not in coupon.planes_aplicables:
                return CouponValidation(False, coupon, "Coupon does not apply to this plan")

        return CouponValidation(True, coupon, None)

    @staticmethod
    def compute_discount(coupon: Coupon, price: float) -> tuple:
        """Returns (discount_percentage or None, discount_amount) capped at the price"""
        if coupon.tipo_descuento == "porcentaje":
            percentage = float(coupon.porcentaje_descuento or 0)
            amount = round(price * percentage / 100, 2)
            return percentage, min(amount, price)
        amount = float(coupon.monto_descuento or 0)
        return None, min(amount, price)

    @staticmethod
    def redeem(db: Session, coupon: Coupon) -> Coupon:
        """
        Increment the usage counter without ever exceeding the cap.
        Check and increment happen in one conditional UPDATE inside the caller's transaction.
        """
        result = db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                Coupon.activo.is_(True),
                or_(Coupon.usos_maximos.is_(None), Coupon.usos_actuales < Coupon.usos_maximos),
            )
            .values(usos_actuales=Coupon.usos_actuales + 1, actualizado_en=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError(
                f"Coupon {coupon.codigo} has reached its usage limit",
                {"cupon": coupon.codigo},
            )
        db.refresh(coupon)
        return coupon


class PaymentRepository:
    @staticmethod
    def get(db: Session, payment_id: int) -> Optional[Payment]:
        return db.execute(select(Payment).where(Payment.id == payment_id)).scalar_one_or_none()

    @staticmethod
    def create(
        db: Session,
        sub: Subscription,
        monto: float,
        estado: str = "pendiente",
        gateway: Optional[str] = None,
        transaction_id: Optional[str] = None,
        error_mensaje: Optional[str] = None,
    ) -> Payment:
        payment = Payment(
            organizacion_id=sub.organizacion_id,
            suscripcion_id=sub.id,
            monto=monto,
            moneda=sub.moneda,
            estado=estado,
            gateway=gateway or sub.gateway,
            transaction_id=transaction_id,
            error_mensaje=error_mensaje,
            fecha_pago=utcnow() if estado == "completado" else None,
        )
        db.add(payment)
        db.flush()
        return payment

    @staticmethod
    def find_by_transaction(db: Session, gateway: str, transaction_id: str) -> Optional[Payment]:
        return db.execute(
            select(Payment).where(Payment.gateway == gateway, Payment.transaction_id == transaction_id)
        ).scalars().first()

    @staticmethod
    def refund(db: Session, payment: Payment, monto: float, razon: Optional[str] = None) -> Payment:
        if payment.estado != "completado":
            raise ValidationError(
                f"Only completed payments can be refunded (payment is {payment.estado})"
            )
        already_refunded = payment.monto_reembolsado or 0
        if monto <= 0 or already_refunded + monto > payment.monto:
            raise ValidationError("Refund amount exceeds the refundable balance")
        payment.monto_reembolsado = round(already_refunded + monto, 2)
        payment.razon_reembolso = razon
        if payment.monto_reembolsado >= payment.monto:
            payment.estado = "reembolsado"
        payment.actualizado_en = utcnow()
        db.flush()
        return payment


class CheckoutTokenRepository:
    @staticmethod
    def create(db: Session, **fields) -> CheckoutToken:
        token = CheckoutToken(**fields)
        db.add(token)
        db.flush()
        return token

    @staticmethod
    def get_by_token(db: Session, token: str) -> Optional[CheckoutToken]:
        return db.execute(select(CheckoutToken).where(CheckoutToken.token == token)).scalar_one_or_none()

    @staticmethod
    def transition(db: Session, token: CheckoutToken, new_state: str, **values) -> bool:
        """Move a token out of `pendiente`; False if it was no longer pending"""
        result = db.execute(
            update(CheckoutToken)
            .where(CheckoutToken.id == token.id, CheckoutToken.estado == "pendiente")
            .values(estado=new_state, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.refresh(token)
            return True
        return False

    @staticmethod
    def void(db: Session, token: CheckoutToken) -> None:
        """Close a claimed token whose checkout failed; it never goes back to `pendiente`"""
        db.execute(
            update(CheckoutToken)
            .where(
                CheckoutToken.id == token.id,
                CheckoutToken.estado == "usado",
                CheckoutToken.suscripcion_id.is_(None),
            )
            .values(estado="cancelado")
            .execution_options(synchronize_session=False)
        )
