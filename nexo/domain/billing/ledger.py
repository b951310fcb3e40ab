"""
Webhook idempotency ledger

One row per (gateway, request_id). The insert is conflict-safe, so of two
concurrent deliveries of the same event exactly one gets a receipt back;
the other gets None and must not touch any subscription.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ...models import WebhookReceipt, utcnow
from ...tenant import TenantExecutor, executor

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"
OUTCOME_SKIPPED = "skipped"
OUTCOME_DUPLICATE = "duplicado"
OUTCOME_IGNORED = "ignorado"

OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_ERROR, OUTCOME_SKIPPED, OUTCOME_DUPLICATE, OUTCOME_IGNORED)


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Conflict-safe insert not available for dialect {dialect}")


class WebhookLedger:
    def __init__(self, tenant_executor: TenantExecutor = executor):
        self.executor = tenant_executor

    def already_processed(self, gateway: str, request_id: str) -> bool:
        with self.executor.bypass_scope() as db:
            row = db.execute(
                select(WebhookReceipt.id).where(
                    WebhookReceipt.gateway == gateway,
                    WebhookReceipt.request_id == request_id,
                )
            ).first()
            return row is not None

    def record(
        self,
        gateway: str,
        request_id: str,
        event_type: Optional[str] = None,
        data_id: Optional[str] = None,
        tenant_id: Optional[int] = None,
        outcome: str = OUTCOME_SUCCESS,
        message: Optional[str] = None,
    ) -> Optional[WebhookReceipt]:
        """
        Insert the receipt unless one already exists.

        Returns:
            The new receipt, or None when a concurrent duplicate won the race
        """
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown webhook outcome: {outcome}")

        with self.executor.bypass_scope() as db:
            insert = _insert_for(db)
            stmt = (
                insert(WebhookReceipt)
                .values(
                    gateway=gateway,
                    request_id=request_id,
                    event_type=event_type,
                    data_id=data_id,
                    organizacion_id=tenant_id,
                    resultado=outcome,
                    mensaje=message,
                    creado_en=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["gateway", "request_id"])
                .returning(WebhookReceipt.id)
            )
            inserted_id = db.execute(stmt).scalar_one_or_none()
            if inserted_id is None:
                logger.info(f"⏭️ Webhook {gateway}:{request_id} already recorded by a concurrent delivery")
                return None
            return db.get(WebhookReceipt, inserted_id)

    def mark_outcome(
        self,
        gateway: str,
        request_id: str,
        outcome: str,
        message: Optional[str] = None,
        tenant_id: Optional[int] = None,
    ) -> bool:
        """Update the classification of an acknowledged webhook after background processing"""
        if outcome not in OUTCOMES:
            raise ValueError(f"Unknown webhook outcome: {outcome}")

        values = {"resultado": outcome, "mensaje": message}
        if tenant_id is not None:
            values["organizacion_id"] = tenant_id

        with self.executor.bypass_scope() as db:
            result = db.execute(
                update(WebhookReceipt)
                .where(WebhookReceipt.gateway == gateway, WebhookReceipt.request_id == request_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def count_by_outcome(self, since: datetime) -> dict:
        """Receipts created since `since`, grouped by outcome (every outcome present, zero-filled)"""
        with self.executor.bypass_scope() as db:
            rows = db.execute(
                select(WebhookReceipt.resultado, func.count(WebhookReceipt.id))
                .where(WebhookReceipt.creado_en >= since)
                .group_by(WebhookReceipt.resultado)
            ).all()

        counts = {outcome: 0 for outcome in OUTCOMES}
        for outcome, total in rows:
            counts[outcome] = total
        return counts
