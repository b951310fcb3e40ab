"""
Webhook processor - Dodo Payments events

The gateway gets its answer as soon as the delivery is recorded in the ledger;
the subscription changes run afterwards in a background task. A delivery whose
request id is already in the ledger never reaches the state engine.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ...errors import BillingError, IdempotencyShortCircuit
from .dodo_service import GATEWAY_NAME, STATUS_AUTHORIZED, STATUS_CANCELLED
from .ledger import (
    OUTCOME_ERROR,
    OUTCOME_IGNORED,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCESS,
    WebhookLedger,
)
from .notifications import NotificationDispatcher
from .repository import SubscriptionRepository
from .state_engine import SubscriptionStateEngine
from .states import CONVERSION_SOURCES, SubscriptionState

logger = logging.getLogger(__name__)

S = SubscriptionState

SUBSCRIPTION_EVENT_PREFIX = "subscription."
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"


def is_handled(event_type: Optional[str]) -> bool:
    if not event_type:
        return False
    return event_type.startswith(SUBSCRIPTION_EVENT_PREFIX) or event_type in (PAYMENT_SUCCEEDED, PAYMENT_FAILED)


@dataclass
class WebhookEvent:
    request_id: Optional[str]
    event_type: Optional[str]
    data: dict = field(default_factory=dict)

    @property
    def data_id(self) -> Optional[str]:
        return self.data.get("payment_id") or self.data.get("subscription_id")

    @property
    def gateway_subscription_id(self) -> Optional[str]:
        return self.data.get("subscription_id")

    @property
    def local_subscription_id(self) -> Optional[int]:
        metadata = self.data.get("metadata") or {}
        value = metadata.get("suscripcion_id")
        return int(value) if value not in (None, "") else None

    @classmethod
    def from_payload(cls, payload: dict, request_id: Optional[str]) -> "WebhookEvent":
        return cls(request_id=request_id, event_type=payload.get("type"), data=payload.get("data") or {})


@dataclass(frozen=True)
class _Target:
    id: int
    organizacion_id: int
    estado: str


class WebhookProcessor:
    def __init__(
        self,
        gateway,
        ledger: Optional[WebhookLedger] = None,
        engine: Optional[SubscriptionStateEngine] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger or WebhookLedger()
        self.engine = engine or SubscriptionStateEngine()
        self.notifier = notifier or NotificationDispatcher()

    def acknowledge(self, event: WebhookEvent) -> bool:
        """
        Check-then-record the delivery.

        Returns:
            True when the event must be processed, False when it is recorded as ignored

        Raises:
            IdempotencyShortCircuit: the delivery was already recorded
        """
        if not event.request_id:
            logger.warning(f"⚠️ Unguarded webhook {event.event_type}: no request id, processing without dedup")
            return is_handled(event.event_type)

        if self.ledger.already_processed(GATEWAY_NAME, event.request_id):
            logger.info(f"⏭️ Webhook {event.request_id} already processed")
            raise IdempotencyShortCircuit("Webhook already processed", {"request_id": event.request_id})

        handled = is_handled(event.event_type)
        receipt = self.ledger.record(
            gateway=GATEWAY_NAME,
            request_id=event.request_id,
            event_type=event.event_type,
            data_id=event.data_id,
            outcome=OUTCOME_SUCCESS if handled else OUTCOME_IGNORED,
        )
        if receipt is None:
            raise IdempotencyShortCircuit("Webhook recorded by a concurrent delivery", {"request_id": event.request_id})

        if not handled:
            logger.info(f"🔕 Webhook {event.event_type} ignored")
        return handled

    async def handle(self, event: WebhookEvent) -> str:
        """Acknowledge and process inline (used by the polling paths and tests)"""
        try:
            if not self.acknowledge(event):
                return OUTCOME_IGNORED
        except IdempotencyShortCircuit:
            return "duplicado"
        return await self.process(event)

    async def process(self, event: WebhookEvent) -> str:
        """Apply the event; runs in a background task, so it never raises"""
        tenant_id = None
        try:
            target = self._find_target(event)
            if target is None:
                logger.warning(f"⚠️ Webhook {event.event_type}: no subscription for {event.data_id}")
                return self._finish(event, OUTCOME_SKIPPED, "Subscription not found")
            tenant_id = target.organizacion_id

            if event.event_type.startswith(SUBSCRIPTION_EVENT_PREFIX):
                outcome, message = await self._on_subscription_event(event, target)
            elif event.event_type == PAYMENT_SUCCEEDED:
                outcome, message = await self._on_payment_succeeded(event, target)
            else:
                outcome, message = await self._on_payment_failed(event, target)
            return self._finish(event, outcome, message, tenant_id)
        except BillingError as e:
            logger.error(f"❌ Webhook {event.request_id} ({event.event_type}) rejected: {e.message}")
            return self._finish(event, OUTCOME_ERROR, e.message, tenant_id)
        except Exception as e:
            logger.error(f"❌ Webhook {event.request_id} ({event.event_type}) failed: {e}", exc_info=True)
            return self._finish(event, OUTCOME_ERROR, str(e), tenant_id)

    def _finish(self, event: WebhookEvent, outcome: str, message: Optional[str] = None, tenant_id: Optional[int] = None) -> str:
        if event.request_id:
            try:
                self.ledger.mark_outcome(GATEWAY_NAME, event.request_id, outcome, message, tenant_id)
            except Exception as e:
                logger.error(f"❌ Could not update webhook receipt {event.request_id}: {e}")
        return outcome

    def _find_target(self, event: WebhookEvent) -> Optional[_Target]:
        with self.engine.executor.bypass_scope() as db:
            sub = None
            if event.gateway_subscription_id:
                sub = SubscriptionRepository.get_by_gateway_id(db, event.gateway_subscription_id)
            if sub is None and event.local_subscription_id is not None:
                sub = SubscriptionRepository.get(db, event.local_subscription_id)
            if sub is None:
                return None
            return _Target(sub.id, sub.organizacion_id, sub.estado)

    async def _on_subscription_event(self, event: WebhookEvent, target: _Target):
        # The gateway is the source of truth for the subscription status
        status = (await self.gateway.get_subscription(event.gateway_subscription_id))["status"]

        if status == STATUS_AUTHORIZED:
            if S(target.estado) not in CONVERSION_SOURCES:
                return OUTCOME_SKIPPED, f"Subscription already {target.estado}"
            result = self.engine.activate_from_gateway(target.id, transaction_id=event.data.get("payment_id"))
            if not result.activated:
                return OUTCOME_SKIPPED, "Subscription already active"
            await self.notifier.send_payment_success(self.engine.snapshot(target.id))
            return OUTCOME_SUCCESS, f"Activated; cancelled {result.cancelled_ids}"

        if status == STATUS_CANCELLED:
            if target.estado == S.CANCELADA.value:
                return OUTCOME_SKIPPED, "Subscription already cancelled"
            self.engine.cancel(target.id, razon="Cancelada en el gateway de pago")
            await self.notifier.send_cancellation(self.engine.snapshot(target.id))
            return OUTCOME_SUCCESS, "Cancelled"

        return OUTCOME_SKIPPED, f"Gateway status {status}"

    async def _on_payment_succeeded(self, event: WebhookEvent, target: _Target):
        payment_id = event.data.get("payment_id")
        if S(target.estado) in CONVERSION_SOURCES:
            result = self.engine.activate_from_gateway(target.id, transaction_id=payment_id)
            if not result.activated:
                return OUTCOME_SKIPPED, "Subscription already active"
        else:
            amount = event.data.get("total_amount")
            self.engine.process_successful_charge(
                target.id,
                monto=amount / 100 if amount is not None else None,
                transaction_id=payment_id,
            )
        await self.notifier.send_payment_success(self.engine.snapshot(target.id))
        return OUTCOME_SUCCESS, f"Payment {payment_id} applied"

    async def _on_payment_failed(self, event: WebhookEvent, target: _Target):
        amount = event.data.get("total_amount")
        self.engine.register_failed_charge(
            target.id,
            error=event.data.get("error_message") or "Payment failed",
            monto=amount / 100 if amount is not None else None,
            transaction_id=event.data.get("payment_id"),
        )
        await self.notifier.send_payment_failed(self.engine.snapshot(target.id), stage="initial")
        return OUTCOME_SUCCESS, "Failed charge registered"
