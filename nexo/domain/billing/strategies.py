"""
Billing strategies - who sells the plan in a checkout

PLATFORM (default): the platform operator is the vendor; the subscriber is the
    operator's CRM client linked to the calling organization.
CUSTOMER (opt-in): the calling organization sells its own plans to one of its
    clients, or to an external subscriber embedded in the request.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from ...config import PLATFORM_ORG_ID
from ...errors import NotFoundError, ValidationError
from .repository import ClientRepository

logger = logging.getLogger(__name__)


class BillingMode(str, Enum):
    PLATFORM = "platform"
    CUSTOMER = "customer"


@dataclass(frozen=True)
class BillingContext:
    """Request-level checkout context"""

    organizacion_id: int
    usuario_id: Optional[int] = None
    customer_billing: bool = False
    cliente_id: Optional[int] = None
    suscriptor_externo: Optional[dict] = None

    @property
    def mode(self) -> BillingMode:
        return BillingMode.CUSTOMER if self.customer_billing else BillingMode.PLATFORM


class PlatformBilling:
    mode = BillingMode.PLATFORM

    def __init__(self, platform_org_id: int = PLATFORM_ORG_ID):
        self.platform_org_id = platform_org_id

    def billing_type(self) -> str:
        return "platform"

    def vendor_id(self, context: BillingContext) -> int:
        return self.platform_org_id

    def client_id(self, context: BillingContext, db: Session) -> int:
        """Operator CRM client linked to the caller. `db` must be scoped to the operator."""
        client = ClientRepository.find_linked(db, self.platform_org_id, context.organizacion_id)
        if client is None:
            raise ValidationError(
                f"Organization {context.organizacion_id} has no linked client in the platform CRM",
                {"organizacion_id": context.organizacion_id},
            )
        return client.id

    def validate_subscriber(self, context: BillingContext, db: Optional[Session] = None) -> None:
        if context.organizacion_id == self.platform_org_id:
            raise ValidationError(
                "The platform organization cannot subscribe to its own plans",
                {"organizacion_id": context.organizacion_id},
            )
        if db is not None:
            self.client_id(context, db)

    def external_subscriber_payload(self, context: BillingContext) -> Optional[dict]:
        return None


class CustomerBilling:
    mode = BillingMode.CUSTOMER

    def billing_type(self) -> str:
        return "customer"

    def vendor_id(self, context: BillingContext) -> int:
        return context.organizacion_id

    def client_id(self, context: BillingContext, db: Session) -> Optional[int]:
        """Client supplied in the request; None when an external subscriber is embedded instead"""
        if context.cliente_id is None:
            if context.suscriptor_externo:
                return None
            raise ValidationError("cliente_id is required for customer billing")

        # The session is scoped to the vendor, so a client of another organization is invisible
        client = ClientRepository.get(db, context.cliente_id)
        if client is None:
            raise NotFoundError("Client", context.cliente_id)
        return client.id

    def validate_subscriber(self, context: BillingContext, db: Optional[Session] = None) -> None:
        if context.cliente_id is None:
            externo = context.suscriptor_externo or {}
            if not externo.get("email"):
                raise ValidationError(
                    "Customer billing needs a cliente_id or an external subscriber with an email"
                )
        if db is not None:
            self.client_id(context, db)

    def external_subscriber_payload(self, context: BillingContext) -> Optional[dict]:
        if context.cliente_id is not None:
            return None
        externo = context.suscriptor_externo or {}
        return {"nombre": externo.get("nombre"), "email": externo.get("email")}


def select_strategy(context: BillingContext, platform_org_id: int = PLATFORM_ORG_ID):
    """Resolve the strategy once per request"""
    if context.mode == BillingMode.CUSTOMER:
        strategy = CustomerBilling()
    else:
        strategy = PlatformBilling(platform_org_id)
    logger.debug(f"💳 Billing strategy for org {context.organizacion_id}: {strategy.billing_type()}")
    return strategy
