"""
Tenant context executor

Every data access runs inside an explicit scope:
- tenant_scope(tenant_id): rows of other organizations are invisible and unwritable
- bypass_scope(): trusted system paths (cron sweeps, webhooks, cross-tenant lookups)

Isolation is enforced by the session itself, not by the callers:
- SELECTs get a `organizacion_id = :tenant` criteria on every tenant-scoped entity
- ORM UPDATE/DELETE statements get the same predicate appended
- flushes that would write a row into another tenant are rejected
- tenant-scoped access with no scope at all raises TenantContextError

On PostgreSQL the same markers are also pushed to the connection
(`app.current_tenant_id`, `app.bypass_rls`) so the row-level security policies
created by migrations/add_subscription_billing_tables.py apply as well.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import event, text
from sqlalchemy.orm import Session, with_loader_criteria

from .database import SessionLocal
from .errors import TenantContextError
from .models import TenantScoped

logger = logging.getLogger(__name__)

T = TypeVar("T")

TENANT_KEY = "tenant_id"
BYPASS_KEY = "bypass_rls"


def current_tenant(db: Session) -> Optional[int]:
    """Tenant the session is scoped to (None in bypass or when unscoped)"""
    return db.info.get(TENANT_KEY)


def is_bypass(db: Session) -> bool:
    return bool(db.info.get(BYPASS_KEY))


def _is_postgres(db: Session) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def _clear_markers(db: Session) -> None:
    """Remove every tenant marker from the session and its connection"""
    db.info.pop(TENANT_KEY, None)
    db.info.pop(BYPASS_KEY, None)
    if _is_postgres(db):
        db.execute(text("SELECT set_config('app.current_tenant_id', '', false)"))
        db.execute(text("SELECT set_config('app.bypass_rls', 'false', false)"))


def _apply_markers(db: Session, tenant_id: Optional[int], bypass: bool) -> None:
    if bypass:
        db.info[BYPASS_KEY] = True
    else:
        db.info[TENANT_KEY] = tenant_id
    if _is_postgres(db):
        # Transaction-local settings die with the transaction even if cleanup is skipped
        db.execute(
            text("SELECT set_config('app.current_tenant_id', :tid, true)"),
            {"tid": "" if tenant_id is None else str(tenant_id)},
        )
        db.execute(
            text("SELECT set_config('app.bypass_rls', :bypass, true)"),
            {"bypass": "true" if bypass else "false"},
        )


@event.listens_for(Session, "do_orm_execute")
def _enforce_tenant_criteria(orm_execute_state):
    """Scope ORM statements on tenant-owned tables to the session's tenant"""
    db = orm_execute_state.session
    if is_bypass(db):
        return

    tenant_id = current_tenant(db)

    if orm_execute_state.is_select:
        if orm_execute_state.is_column_load or orm_execute_state.is_relationship_load:
            # Lazy loads inherit the criteria from the parent query
            return
        touches_tenant_rows = any(
            issubclass(mapper.class_, TenantScoped) for mapper in orm_execute_state.all_mappers
        )
        if not touches_tenant_rows:
            return
        if tenant_id is None:
            raise TenantContextError("Tenant-scoped query executed outside of a tenant context")
        orm_execute_state.statement = orm_execute_state.statement.options(
            with_loader_criteria(
                TenantScoped,
                lambda cls: cls.organizacion_id == tenant_id,
                include_aliases=True,
            )
        )
        return

    if orm_execute_state.is_update or orm_execute_state.is_delete:
        mapper = orm_execute_state.bind_mapper
        if mapper is None or not issubclass(mapper.class_, TenantScoped):
            return
        if tenant_id is None:
            raise TenantContextError("Tenant-scoped write executed outside of a tenant context")
        orm_execute_state.statement = orm_execute_state.statement.where(
            mapper.class_.organizacion_id == tenant_id
        )


@event.listens_for(Session, "before_flush")
def _enforce_tenant_writes(db, _flush_context, _instances):
    """Reject pending rows that belong to another tenant"""
    if is_bypass(db):
        return

    tenant_id = current_tenant(db)
    for obj in list(db.new) + list(db.dirty) + list(db.deleted):
        if not isinstance(obj, TenantScoped):
            continue
        if tenant_id is None:
            raise TenantContextError(
                f"Write to {type(obj).__name__} outside of a tenant context"
            )
        if obj.organizacion_id is None and obj in db.new:
            obj.organizacion_id = tenant_id
        elif obj.organizacion_id != tenant_id:
            raise TenantContextError(
                f"Cross-tenant write rejected: {type(obj).__name__} belongs to "
                f"organization {obj.organizacion_id}, scope is {tenant_id}"
            )


class TenantExecutor:
    """Opens database sessions that are always bound to an explicit tenant scope"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _scope(self, tenant_id: Optional[int], bypass: bool) -> Iterator[Session]:
        db = self.session_factory()
        try:
            # A stale marker from a previous user of this connection must never leak in
            _clear_markers(db)
            _apply_markers(db, tenant_id, bypass)
            yield db
            db.flush()
            _clear_markers(db)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.info.pop(TENANT_KEY, None)
            db.info.pop(BYPASS_KEY, None)
            db.close()

    @contextmanager
    def tenant_scope(self, tenant_id: int) -> Iterator[Session]:
        """Session restricted to the rows of `tenant_id`"""
        if tenant_id is None:
            raise TenantContextError("tenant_id is required for a tenant scope")
        with self._scope(tenant_id, bypass=False) as db:
            yield db

    @contextmanager
    def bypass_scope(self) -> Iterator[Session]:
        """Session that sees every tenant. Trusted system paths only."""
        with self._scope(None, bypass=True) as db:
            yield db

    @contextmanager
    def transaction(self, tenant_id: Optional[int] = None, bypass: bool = False) -> Iterator[Session]:
        """Single transaction: every statement inside commits or rolls back together"""
        if tenant_id is None and not bypass:
            raise TenantContextError("transaction() needs a tenant_id or bypass=True")
        with self._scope(tenant_id, bypass=bypass) as db:
            yield db

    def with_tenant(self, tenant_id: int, fn: Callable[[Session], T]) -> T:
        with self.tenant_scope(tenant_id) as db:
            return fn(db)

    def with_bypass(self, fn: Callable[[Session], T]) -> T:
        with self.bypass_scope() as db:
            return fn(db)

    def in_transaction(self, tenant_id: Optional[int], fn: Callable[[Session], T], bypass: bool = False) -> T:
        with self.transaction(tenant_id, bypass=bypass) as db:
            return fn(db)


# Default executor bound to the application engine
executor = TenantExecutor()
