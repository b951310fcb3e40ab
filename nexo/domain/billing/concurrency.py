"""
Optimistic concurrency guard

`actualizado_en` is the version token of a subscription row. A writer that read the
row at version V may only apply its change while the row is still at V:

    UPDATE suscripciones_org
    SET <mutation>, actualizado_en = <new version>
    WHERE id = :id AND actualizado_en = :V [AND extra predicates]

Zero affected rows means another actor (usually a payment webhook) changed the row
first. The caller decides what a lost race means; the dunning sweep logs and skips.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ...models import Subscription, utcnow

logger = logging.getLogger(__name__)


class CasResult(str, Enum):
    APPLIED = "applied"
    LOST = "lost"
    NOT_FOUND = "not_found"


def next_version(expected_version: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """New version token, strictly greater than the one being replaced"""
    now = now or utcnow()
    if expected_version is not None and now <= expected_version:
        return expected_version + timedelta(microseconds=1)
    return now


def compare_and_swap(
    db: Session,
    entity_id: int,
    expected_version: datetime,
    mutation: dict,
    *,
    expected_state: Optional[str] = None,
    excluded_states: Iterable[str] = (),
    now: Optional[datetime] = None,
    model=Subscription,
) -> CasResult:
    """
    Apply `mutation` to one row only if it is still at `expected_version`.

    Args:
        db: Scoped session (tenant or bypass)
        entity_id: Primary key of the row
        expected_version: `actualizado_en` value read by the caller
        mutation: Column values to write
        expected_state: Also require the row to still be in this state
        excluded_states: Refuse to write if the row is in any of these states
        now: Clock override for the new version token

    Returns:
        CasResult.APPLIED, CasResult.LOST or CasResult.NOT_FOUND
    """
    values = dict(mutation)
    values["actualizado_en"] = next_version(expected_version, now)

    stmt = (
        update(model)
        .where(model.id == entity_id, model.actualizado_en == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if expected_state is not None:
        stmt = stmt.where(model.estado == expected_state)
    excluded = list(excluded_states)
    if excluded:
        stmt = stmt.where(model.estado.notin_(excluded))

    result = db.execute(stmt)
    if result.rowcount == 1:
        return CasResult.APPLIED

    exists = db.execute(select(model.id).where(model.id == entity_id)).first()
    if exists is None:
        return CasResult.NOT_FOUND

    logger.info(
        f"⏭️ Optimistic lock lost for {model.__tablename__} {entity_id} "
        f"(expected version {expected_version})"
    )
    return CasResult.LOST
