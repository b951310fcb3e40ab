"""
Module entitlement sync

Maps `plan.modulos_habilitados` of a platform subscription onto
`organizacion.modulos_activos` of the subscribing organization.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import case, select

from ...cache import get_modules_cached, invalidate_modules_cache, set_modules_cached
from ...config import PLATFORM_ORG_ID
from ...models import Client, Organization, Plan, Subscription
from ...tenant import TenantExecutor, executor
from .repository import OrganizationRepository, PlanRepository, SubscriptionRepository
from .states import SubscriptionState

logger = logging.getLogger(__name__)

S = SubscriptionState

# Subscriptions that still grant modules, best first
ENTITLED_STATES = (S.ACTIVA.value, S.TRIAL.value, S.GRACE_PERIOD.value, S.PENDIENTE_PAGO.value)


def build_active_modules(enabled: Optional[list], current: Optional[dict] = None) -> dict:
    """
    Merge the plan's modules with the organization's current flags.

    - `core` is always on
    - modules no longer in the plan are dropped
    - modules still in the plan keep the organization's on/off choice
    - modules new to the plan start on
    """
    modules = {"core": True}
    current = current or {}
    for module in enabled or []:
        if module == "core":
            continue
        modules[module] = current[module] if module in current else True
    return modules


@dataclass
class SyncResult:
    success: bool
    organizacion_id: int
    plan_codigo: Optional[str] = None
    modulos: dict = field(default_factory=dict)
    mensaje: Optional[str] = None


@dataclass
class PlanSyncResult:
    plan_id: int
    sincronizadas: list = field(default_factory=list)
    errores: list = field(default_factory=list)


class EntitlementSync:
    def __init__(self, tenant_executor: TenantExecutor = executor, platform_org_id: int = PLATFORM_ORG_ID):
        self.executor = tenant_executor
        self.platform_org_id = platform_org_id

    def _entitling_rows(self, linked_org_id: Optional[int] = None, plan_id: Optional[int] = None):
        priority = case(
            {state: index for index, state in enumerate(ENTITLED_STATES)},
            value=Subscription.estado,
        )
        query = (
            select(Subscription, Plan, Client)
            .join(Plan, Subscription.plan_id == Plan.id)
            .join(Client, Subscription.cliente_id == Client.id)
            .where(
                Subscription.organizacion_id == self.platform_org_id,
                Client.organizacion_vinculada_id.isnot(None),
                Subscription.estado.in_(ENTITLED_STATES),
            )
            .order_by(Client.organizacion_vinculada_id, priority, Subscription.id.desc())
        )
        if linked_org_id is not None:
            query = query.where(Client.organizacion_vinculada_id == linked_org_id)
        if plan_id is not None:
            query = query.where(Subscription.plan_id == plan_id)
        return query

    def _apply(self, db, org: Organization, plan: Plan) -> dict:
        modules = build_active_modules(plan.modulos_habilitados, org.modulos_activos)
        OrganizationRepository.set_modules(db, org, modules, plan_codigo=plan.codigo)
        return modules

    def sync_organization(self, organizacion_id: int) -> SyncResult:
        """Resync one organization from its best platform subscription"""
        with self.executor.bypass_scope() as db:
            row = db.execute(self._entitling_rows(linked_org_id=organizacion_id)).first()
            if row is None:
                return SyncResult(False, organizacion_id, mensaje="No entitling subscription found")
            _sub, plan, _client = row

            org = OrganizationRepository.get(db, organizacion_id)
            if org is None:
                return SyncResult(False, organizacion_id, mensaje="Organization not found")

            modules = self._apply(db, org, plan)

        invalidate_modules_cache(organizacion_id)
        logger.info(f"🧩 Modules synced for org {organizacion_id} (plan {plan.codigo}): {sorted(modules)}")
        return SyncResult(True, organizacion_id, plan_codigo=plan.codigo, modulos=modules)

    def sync_by_plan(self, plan_id: int) -> PlanSyncResult:
        """Resync every organization subscribed to `plan_id` (after an entitlement edit)"""
        result = PlanSyncResult(plan_id=plan_id)

        with self.executor.bypass_scope() as db:
            plan = PlanRepository.get(db, plan_id)
            if plan is None or plan.organizacion_id != self.platform_org_id:
                logger.warning(f"⚠️ Plan {plan_id} is not a platform plan, nothing to sync")
                return result

            seen = set()
            for _sub, _plan, client in db.execute(self._entitling_rows(plan_id=plan_id)).all():
                org_id = client.organizacion_vinculada_id
                if org_id in seen:
                    continue
                seen.add(org_id)
                try:
                    org = OrganizationRepository.get(db, org_id)
                    if org is None:
                        raise LookupError(f"organization {org_id} does not exist")
                    modules = self._apply(db, org, plan)
                    result.sincronizadas.append({"org_id": org_id, "modulos": len(modules)})
                except Exception as e:
                    logger.error(f"❌ Module sync failed for org {org_id}: {e}")
                    result.errores.append({"org_id": org_id, "error": str(e)})

        for entry in result.sincronizadas:
            invalidate_modules_cache(entry["org_id"])

        logger.info(
            f"🧩 Plan {plan_id} sync complete: {len(result.sincronizadas)} synced, {len(result.errores)} errors"
        )
        return result

    def on_activation(self, subscription_id: int) -> Optional[SyncResult]:
        """Hook for a trial/checkout converting to `activa`; only platform subscriptions carry modules"""
        with self.executor.bypass_scope() as db:
            sub = SubscriptionRepository.get(db, subscription_id)
            if sub is None or sub.organizacion_id != self.platform_org_id or sub.cliente_id is None:
                return None
            client = db.get(Client, sub.cliente_id)
            linked_org_id = client.organizacion_vinculada_id if client else None

        if linked_org_id is None:
            return None
        return self.sync_organization(linked_org_id)

    def active_modules(self, organizacion_id: int) -> dict:
        """Modules map of an organization, served from Redis when cached"""
        cached = get_modules_cached(organizacion_id)
        if cached is not None:
            return cached

        with self.executor.bypass_scope() as db:
            org = OrganizationRepository.get(db, organizacion_id)
            modules = dict(org.modulos_activos or {}) if org else {}
        modules.setdefault("core", True)

        set_modules_cached(organizacion_id, modules)
        return modules
