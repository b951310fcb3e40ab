"""
Notification dispatcher - lifecycle emails for subscribers

Best effort: every method returns a NotificationResult and never raises.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable, Optional

from ...config import FRONTEND_URL
from ...email_service import base_template, send_email
from .repository import SubscriptionSnapshot

logger = logging.getLogger(__name__)

Sender = Callable[..., Awaitable[dict]]


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    reason: Optional[str] = None


def _money(amount: float, currency: str) -> str:
    return f"${amount:,.2f} {currency}"


class NotificationDispatcher:
    def __init__(self, sender: Sender = send_email):
        self.sender = sender

    async def _dispatch(
        self,
        kind: str,
        sub: SubscriptionSnapshot,
        subject: str,
        paragraphs: list,
        cta_label: Optional[str] = None,
    ) -> NotificationResult:
        if not sub.cliente_email:
            logger.warning(f"⚠️ No recipient for {kind} email of subscription {sub.id}")
            return NotificationResult(False, "Subscriber has no email")

        try:
            await self.sender(
                to=sub.cliente_email,
                subject=subject,
                mjml_content=base_template(
                    subject,
                    paragraphs,
                    cta_url=f"{FRONTEND_URL}/mi-plan" if cta_label else None,
                    cta_label=cta_label,
                ),
            )
            logger.info(f"📧 {kind} email sent for subscription {sub.id}")
            return NotificationResult(True)
        except Exception as e:
            logger.error(f"❌ {kind} email failed for subscription {sub.id} (org {sub.organizacion_id}): {e}")
            return NotificationResult(False, str(e))

    async def send_payment_failed(self, sub: SubscriptionSnapshot, stage: str = "initial") -> NotificationResult:
        """`stage` is one of initial, reminder, urgent"""
        subjects = {
            "initial": f"No pudimos procesar tu pago de {sub.plan_nombre}",
            "reminder": f"Recordatorio: pago pendiente de {sub.plan_nombre}",
            "urgent": f"Urgente: tu suscripción {sub.plan_nombre} será suspendida",
        }
        return await self._dispatch(
            f"payment_failed[{stage}]",
            sub,
            subjects.get(stage, subjects["initial"]),
            [
                f"Hola {sub.cliente_nombre or ''}, el cobro de {_money(sub.precio_actual, sub.moneda)} no se pudo completar.",
                "Actualiza tu método de pago para mantener el acceso.",
            ],
            cta_label="Actualizar método de pago",
        )

    async def send_payment_success(self, sub: SubscriptionSnapshot, monto: Optional[float] = None) -> NotificationResult:
        amount = sub.precio_actual if monto is None else monto
        next_charge = f" Tu próximo cobro será el {sub.fecha_proximo_cobro}." if sub.fecha_proximo_cobro else ""
        return await self._dispatch(
            "payment_success",
            sub,
            f"Pago recibido: {sub.plan_nombre}",
            [f"Recibimos tu pago de {_money(amount, sub.moneda)}.{next_charge}"],
        )

    async def send_grace_period(self, sub: SubscriptionSnapshot, days_left: Optional[int] = None) -> NotificationResult:
        deadline = f"el {sub.fecha_gracia}" if sub.fecha_gracia else "pronto"
        paragraphs = [f"Tu suscripción {sub.plan_nombre} está en periodo de gracia y se suspenderá {deadline}."]
        if days_left is not None:
            paragraphs.append(f"Quedan {days_left} días para regularizar tu pago.")
        return await self._dispatch(
            "grace_period",
            sub,
            f"Tu suscripción {sub.plan_nombre} está en periodo de gracia",
            paragraphs,
            cta_label="Pagar ahora",
        )

    async def send_suspension(self, sub: SubscriptionSnapshot) -> NotificationResult:
        return await self._dispatch(
            "suspension",
            sub,
            f"Tu suscripción {sub.plan_nombre} fue suspendida",
            ["Suspendimos tu suscripción por falta de pago. Puedes reactivarla pagando el saldo pendiente."],
            cta_label="Reactivar suscripción",
        )

    async def send_cancellation(self, sub: SubscriptionSnapshot, razon: Optional[str] = None) -> NotificationResult:
        paragraphs = [f"Tu suscripción {sub.plan_nombre} fue cancelada."]
        if razon:
            paragraphs.append(f"Motivo: {razon}")
        return await self._dispatch("cancellation", sub, f"Suscripción {sub.plan_nombre} cancelada", paragraphs)

    async def send_trial_ending(self, sub: SubscriptionSnapshot, days_left: int) -> NotificationResult:
        return await self._dispatch(
            "trial_ending",
            sub,
            f"Tu prueba de {sub.plan_nombre} termina en {days_left} días",
            [
                f"Tu periodo de prueba termina el {sub.fecha_fin_trial}.",
                f"Después se cobrarán {_money(sub.precio_actual, sub.moneda)} por periodo {sub.periodo}.",
            ],
            cta_label="Elegir método de pago",
        )

    async def send_upcoming_charge(self, sub: SubscriptionSnapshot, charge_date: Optional[date] = None) -> NotificationResult:
        when = charge_date or sub.fecha_proximo_cobro
        return await self._dispatch(
            "upcoming_charge",
            sub,
            f"Próximo cobro de {sub.plan_nombre}",
            [f"El {when} se cobrarán {_money(sub.precio_actual, sub.moneda)} de tu suscripción {sub.plan_nombre}."],
        )
