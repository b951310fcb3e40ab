"""
Dunning scheduler and the other periodic billing sweeps

DunningScheduler (daily)
    1. `vencida` rows: days since they entered `vencida` select a step of the
       dunning sequence (email or lock-guarded state change)
    2. `grace_period` rows: suspend once `fecha_gracia` is reached; email steps
       of the sequence that fall inside the grace window (day 10 urgent) are sent
       from here, otherwise a reminder when the deadline is close
    3. `activa` rows with auto charge: reminder N days before the next charge
TrialSweep (daily)             trial-ending reminders, expiry of unpaid trials
PollingFallbackSweep (15 min)  asks the gateway about checkouts whose webhook never arrived
WebhookMonitor (hourly)        alerts on webhook error rates

Items are processed one at a time with a short pause between them; a failing
item is logged and counted, never allowed to stop the sweep.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from ...config import (
    DUNNING_REMINDER_DAY,
    DUNNING_URGENT_DAY,
    GRACE_PERIOD_DAYS,
    GRACE_URGENT_REMINDER_DAYS,
    POLLING_MIN_AGE_MINUTES,
    SUSPENSION_DAYS,
    SWEEP_ITEM_DELAY_SECONDS,
    TRIAL_REMINDER_DAYS,
    UPCOMING_CHARGE_DAYS,
    WEBHOOK_ERROR_CRITICAL_THRESHOLD,
    WEBHOOK_ERROR_WARNING_THRESHOLD,
)
from ...errors import ConflictError, GatewayError
from ...models import utcnow
from .concurrency import CasResult
from .dodo_service import STATUS_AUTHORIZED, STATUS_CANCELLED
from .ledger import OUTCOME_ERROR, WebhookLedger
from .notifications import NotificationDispatcher
from .repository import SubscriptionRepository, SubscriptionSnapshot
from .state_engine import SubscriptionStateEngine
from .states import SubscriptionState

logger = logging.getLogger(__name__)

S = SubscriptionState


class DunningAction(str, Enum):
    EMAIL = "email"
    STATE = "state"


@dataclass(frozen=True)
class DunningStep:
    day: int
    action: DunningAction
    email_stage: Optional[str] = None  # initial, reminder, urgent
    target_state: Optional[SubscriptionState] = None


def build_dunning_sequence(
    reminder_day: int = DUNNING_REMINDER_DAY,
    grace_day: int = GRACE_PERIOD_DAYS,
    urgent_day: int = DUNNING_URGENT_DAY,
    suspension_day: int = SUSPENSION_DAYS,
) -> Mapping[int, DunningStep]:
    """Day offset (since entering `vencida`) -> step"""
    steps = [
        DunningStep(0, DunningAction.EMAIL, email_stage="initial"),
        DunningStep(reminder_day, DunningAction.EMAIL, email_stage="reminder"),
        DunningStep(grace_day, DunningAction.STATE, target_state=S.GRACE_PERIOD),
        DunningStep(urgent_day, DunningAction.EMAIL, email_stage="urgent"),
        DunningStep(suspension_day, DunningAction.STATE, target_state=S.SUSPENDIDA),
    ]
    return MappingProxyType({step.day: step for step in steps})


DEFAULT_DUNNING_SEQUENCE = build_dunning_sequence()


@dataclass
class DunningRunSummary:
    processed: int = 0
    emails_sent: int = 0
    grace_transitions: int = 0
    suspensions: int = 0
    skipped_by_lock: int = 0
    errors: int = 0
    aborted: bool = False

    @property
    def transitions(self) -> int:
        return self.grace_transitions + self.suspensions


async def _sweep(items: list, handler, summary, delay: float, label: str) -> None:
    """Run `handler` over items sequentially; a failing item is counted and skipped"""
    for index, item in enumerate(items):
        if index and delay:
            await asyncio.sleep(delay)
        try:
            await handler(item, summary)
        except Exception as e:
            summary.errors += 1
            logger.error(
                f"❌ {label}: subscription {item.id} (org {item.organizacion_id}) failed: {e}",
                exc_info=True,
            )


class DunningScheduler:
    def __init__(
        self,
        engine: Optional[SubscriptionStateEngine] = None,
        notifier: Optional[NotificationDispatcher] = None,
        sequence: Mapping[int, DunningStep] = DEFAULT_DUNNING_SEQUENCE,
        clock: Optional[Callable[[], datetime]] = None,
        item_delay: float = SWEEP_ITEM_DELAY_SECONDS,
        upcoming_charge_days: int = UPCOMING_CHARGE_DAYS,
        urgent_reminder_days: int = GRACE_URGENT_REMINDER_DAYS,
    ):
        self.engine = engine or SubscriptionStateEngine()
        self.notifier = notifier or NotificationDispatcher()
        self.sequence = sequence
        self.clock = clock or self.engine.clock
        self.item_delay = item_delay
        self.upcoming_charge_days = upcoming_charge_days
        self.urgent_reminder_days = urgent_reminder_days

    def _load(self, loader, *args) -> list:
        # Re-read at the start of every pass; versions must never be reused across passes
        with self.engine.executor.bypass_scope() as db:
            return loader(db, *args)

    async def run(self) -> DunningRunSummary:
        summary = DunningRunSummary()
        logger.info("🔁 Dunning sweep started")
        try:
            overdue = self._load(SubscriptionRepository.list_snapshots_by_state, S.VENCIDA.value)
            await _sweep(overdue, self._process_overdue, summary, self.item_delay, "Dunning")

            in_grace = self._load(SubscriptionRepository.list_snapshots_by_state, S.GRACE_PERIOD.value)
            await _sweep(in_grace, self._process_grace, summary, self.item_delay, "Grace period")

            charge_date = self.clock().date() + timedelta(days=self.upcoming_charge_days)
            upcoming = self._load(SubscriptionRepository.list_upcoming_charges, charge_date)
            await _sweep(upcoming, self._process_upcoming, summary, self.item_delay, "Upcoming charge")
        except Exception as e:
            summary.aborted = True
            logger.error(f"❌ Dunning sweep aborted: {e}", exc_info=True)

        logger.info(f"📊 Dunning sweep finished: {asdict(summary)}")
        return summary

    async def _transition(self, snap: SubscriptionSnapshot, target: SubscriptionState, summary: DunningRunSummary) -> None:
        outcome = self.engine.dunning_transition(snap.id, snap.actualizado_en, target)

        if outcome == CasResult.LOST:
            summary.skipped_by_lock += 1
            logger.info(
                f"⏭️ Subscription {snap.id}: {target.value} omitted, webhook likely already processed"
            )
            return
        if outcome == CasResult.NOT_FOUND:
            logger.warning(f"⚠️ Subscription {snap.id} disappeared during the dunning sweep")
            return

        fresh = self.engine.snapshot(snap.id)
        if target == S.GRACE_PERIOD:
            summary.grace_transitions += 1
            logger.info(f"⏳ Subscription {snap.id} entered grace period until {fresh.fecha_gracia}")
            result = await self.notifier.send_grace_period(fresh)
        else:
            summary.suspensions += 1
            logger.info(f"⛔ Subscription {snap.id} suspended")
            result = await self.notifier.send_suspension(fresh)
        if result.success:
            summary.emails_sent += 1

    async def _process_overdue(self, snap: SubscriptionSnapshot, summary: DunningRunSummary) -> None:
        summary.processed += 1
        days = (self.clock().date() - snap.actualizado_en.date()).days
        step = self.sequence.get(days)
        if step is None:
            return

        if step.action == DunningAction.EMAIL:
            result = await self.notifier.send_payment_failed(snap, stage=step.email_stage)
            if result.success:
                summary.emails_sent += 1
        else:
            await self._transition(snap, step.target_state, summary)

    def _days_overdue_in_grace(self, snap: SubscriptionSnapshot, today) -> Optional[int]:
        """Day offset since entering `vencida` for a row that is now in grace"""
        grace_day = next(
            (step.day for step in self.sequence.values() if step.target_state == S.GRACE_PERIOD),
            None,
        )
        if grace_day is None:
            return None
        entered_grace = snap.fecha_gracia - timedelta(days=self.engine.grace_period_days)
        return grace_day + (today - entered_grace).days

    async def _process_grace(self, snap: SubscriptionSnapshot, summary: DunningRunSummary) -> None:
        summary.processed += 1
        today = self.clock().date()

        if snap.fecha_gracia is None or today >= snap.fecha_gracia:
            await self._transition(snap, S.SUSPENDIDA, summary)
            return

        days_left = (snap.fecha_gracia - today).days
        step = self.sequence.get(self._days_overdue_in_grace(snap, today))
        if step is not None and step.action == DunningAction.EMAIL:
            result = await self.notifier.send_payment_failed(snap, stage=step.email_stage)
        elif days_left <= self.urgent_reminder_days:
            result = await self.notifier.send_grace_period(snap, days_left=days_left)
        else:
            return
        if result.success:
            summary.emails_sent += 1

    async def _process_upcoming(self, snap: SubscriptionSnapshot, summary: DunningRunSummary) -> None:
        summary.processed += 1
        result = await self.notifier.send_upcoming_charge(snap)
        if result.success:
            summary.emails_sent += 1


@dataclass
class TrialSweepSummary:
    reminders_sent: int = 0
    expired: int = 0
    skipped_by_lock: int = 0
    errors: int = 0
    aborted: bool = False


class TrialSweep:
    def __init__(
        self,
        engine: Optional[SubscriptionStateEngine] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        item_delay: float = SWEEP_ITEM_DELAY_SECONDS,
        reminder_days: int = TRIAL_REMINDER_DAYS,
    ):
        self.engine = engine or SubscriptionStateEngine()
        self.notifier = notifier or NotificationDispatcher()
        self.clock = clock or self.engine.clock
        self.item_delay = item_delay
        self.reminder_days = reminder_days

    async def run(self) -> TrialSweepSummary:
        summary = TrialSweepSummary()
        today = self.clock().date()
        try:
            with self.engine.executor.bypass_scope() as db:
                ending = SubscriptionRepository.list_trials_ending_on(db, today + timedelta(days=self.reminder_days))
            await _sweep(ending, self._remind, summary, self.item_delay, "Trial reminder")

            with self.engine.executor.bypass_scope() as db:
                expired = SubscriptionRepository.list_expired_trials(db, today)
            await _sweep(expired, self._expire, summary, self.item_delay, "Trial expiry")
        except Exception as e:
            summary.aborted = True
            logger.error(f"❌ Trial sweep aborted: {e}", exc_info=True)

        logger.info(f"📊 Trial sweep finished: {asdict(summary)}")
        return summary

    async def _remind(self, snap: SubscriptionSnapshot, summary: TrialSweepSummary) -> None:
        result = await self.notifier.send_trial_ending(snap, days_left=self.reminder_days)
        if result.success:
            summary.reminders_sent += 1

    async def _expire(self, snap: SubscriptionSnapshot, summary: TrialSweepSummary) -> None:
        if snap.subscription_id_gateway:
            # The gateway charges at trial end; its webhook decides the outcome
            return
        outcome = self.engine.expire_trial(snap.id, snap.actualizado_en)
        if outcome == CasResult.APPLIED:
            summary.expired += 1
            logger.info(f"⌛ Trial of subscription {snap.id} expired (ended {snap.fecha_fin_trial})")
        elif outcome == CasResult.LOST:
            summary.skipped_by_lock += 1
            logger.info(f"⏭️ Trial expiry of subscription {snap.id} omitted, row changed concurrently")


@dataclass
class PollingSummary:
    checked: int = 0
    activated: int = 0
    cancelled: int = 0
    still_pending: int = 0
    skipped: int = 0
    gateway_errors: int = 0
    errors: int = 0
    aborted: bool = False


class PollingFallbackSweep:
    def __init__(
        self,
        gateway,
        engine: Optional[SubscriptionStateEngine] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        item_delay: float = SWEEP_ITEM_DELAY_SECONDS,
        min_age_minutes: int = POLLING_MIN_AGE_MINUTES,
    ):
        self.gateway = gateway
        self.engine = engine or SubscriptionStateEngine()
        self.notifier = notifier or NotificationDispatcher()
        self.clock = clock or self.engine.clock
        self.item_delay = item_delay
        self.min_age = timedelta(minutes=min_age_minutes)

    async def run(self) -> PollingSummary:
        summary = PollingSummary()
        try:
            with self.engine.executor.bypass_scope() as db:
                pending = SubscriptionRepository.list_pending_for_polling(db, self.clock() - self.min_age)
            await _sweep(pending, self._poll, summary, self.item_delay, "Polling fallback")
        except Exception as e:
            summary.aborted = True
            logger.error(f"❌ Polling fallback aborted: {e}", exc_info=True)

        logger.info(f"📊 Polling fallback finished: {asdict(summary)}")
        return summary

    async def _poll(self, snap: SubscriptionSnapshot, summary: PollingSummary) -> None:
        summary.checked += 1
        try:
            status = (await self.gateway.get_subscription(snap.subscription_id_gateway))["status"]
        except GatewayError as e:
            # Retried on the next run
            summary.gateway_errors += 1
            logger.warning(f"⚠️ Gateway lookup failed for subscription {snap.id}: {e}")
            return

        try:
            if status == STATUS_AUTHORIZED:
                result = self.engine.activate_from_gateway(snap.id)
                if result.activated:
                    summary.activated += 1
                    await self.notifier.send_payment_success(self.engine.snapshot(snap.id))
                else:
                    summary.skipped += 1
            elif status == STATUS_CANCELLED:
                self.engine.cancel(snap.id, razon="Cancelada en el gateway de pago")
                summary.cancelled += 1
                await self.notifier.send_cancellation(self.engine.snapshot(snap.id))
            else:
                summary.still_pending += 1
        except ConflictError:
            summary.skipped += 1
            logger.info(f"⏭️ Subscription {snap.id} changed while polling, webhook likely already processed")


@dataclass
class WebhookHealth:
    counts: dict
    level: str  # ok, warning, critical


class WebhookMonitor:
    def __init__(
        self,
        ledger: Optional[WebhookLedger] = None,
        clock: Callable[[], datetime] = utcnow,
        warning_threshold: int = WEBHOOK_ERROR_WARNING_THRESHOLD,
        critical_threshold: int = WEBHOOK_ERROR_CRITICAL_THRESHOLD,
        window: timedelta = timedelta(hours=1),
    ):
        self.ledger = ledger or WebhookLedger()
        self.clock = clock
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.window = window

    async def run(self) -> WebhookHealth:
        counts = self.ledger.count_by_outcome(self.clock() - self.window)
        errors = counts.get(OUTCOME_ERROR, 0)

        if errors >= self.critical_threshold:
            logger.critical(f"🚨 Webhook errors in the last hour: {errors} (critical >= {self.critical_threshold}) {counts}")
            return WebhookHealth(counts, "critical")
        if errors >= self.warning_threshold:
            logger.warning(f"⚠️ Webhook errors in the last hour: {errors} (warning >= {self.warning_threshold}) {counts}")
            return WebhookHealth(counts, "warning")

        logger.info(f"📊 Webhook receipts in the last hour: {counts}")
        return WebhookHealth(counts, "ok")
