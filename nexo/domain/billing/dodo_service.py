"""Dodo Payments gateway - recurring subscriptions for the billing core"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from dodopayments import AsyncDodoPayments  # type: ignore

from ...config import (
    DODO_PAYMENTS_API_KEY,
    DODO_PAYMENTS_ENVIRONMENT,
    DODO_SUBSCRIPTION_PRODUCT_ID,
    DODO_TEST_PAYER_EMAIL,
    FRONTEND_URL,
)
from ...errors import GatewayError

logger = logging.getLogger(__name__)

GATEWAY_NAME = "dodo"

STATUS_AUTHORIZED = "authorized"
STATUS_CANCELLED = "cancelled"
STATUS_PENDING = "pending"

# Dodo subscription status -> status consumed by the billing core
_STATUS_MAP = {
    "active": STATUS_AUTHORIZED,
    "cancelled": STATUS_CANCELLED,
    "expired": STATUS_CANCELLED,
    "failed": STATUS_CANCELLED,
    "pending": STATUS_PENDING,
    "on_hold": STATUS_PENDING,
}


def normalize_dodo_environment(env: Optional[str]) -> str:
    """Normalize Dodo environment value to expected format"""
    value = (env or "test_mode").strip().lower()
    if value in {"live", "production", "prod"}:
        return "live_mode"
    if value in {"test", "sandbox", "staging", "dev", "development"}:
        return "test_mode"
    if value in {"test_mode", "live_mode"}:
        return value
    logger.warning(f"Unknown DODO environment '{env}', defaulting to test_mode")
    return "test_mode"


def normalize_status(raw_status: Optional[str]) -> str:
    return _STATUS_MAP.get((raw_status or "").lower(), STATUS_PENDING)


def _as_dict(response) -> dict:
    if response is None:
        return {}
    if isinstance(response, dict):
        return response
    if hasattr(response, "model_dump"):
        return response.model_dump()
    return dict(response)


@dataclass
class GatewaySubscriptionRequest:
    """What the billing core asks the gateway for when a checkout needs a payment"""

    subscription_id: int
    plan_codigo: str
    plan_nombre: str
    monto: float
    moneda: str
    periodo: str
    payer_email: str
    payer_name: Optional[str] = None
    metadata: dict = field(default_factory=dict)


class DodoGateway:
    """Payment gateway client backed by Dodo Payments"""

    name = GATEWAY_NAME

    def __init__(self, api_key: Optional[str] = DODO_PAYMENTS_API_KEY, environment: Optional[str] = DODO_PAYMENTS_ENVIRONMENT):
        self.api_key = api_key
        self.environment = normalize_dodo_environment(environment)
        self.client = None

        if not self.api_key:
            logger.warning(
                "DODO_PAYMENTS_API_KEY not set; billing endpoints will fail until configured"
            )
        else:
            try:
                self.client = AsyncDodoPayments(
                    bearer_token=self.api_key,
                    environment=self.environment,
                )
                logger.info(f"Dodo Payments client initialized (env={self.environment})")
            except Exception as e:
                logger.error(f"Failed to initialize Dodo client (env={self.environment}): {e}")
                self.client = None

    def is_available(self) -> bool:
        return self.client is not None

    def is_sandbox(self) -> bool:
        return self.environment == "test_mode"

    def test_payer_email(self) -> str:
        """Payer used instead of the real subscriber while in test_mode"""
        return DODO_TEST_PAYER_EMAIL

    def _require_client(self):
        if not self.client:
            raise GatewayError("Dodo Payments client not initialized")
        return self.client

    async def create_subscription(self, request: GatewaySubscriptionRequest) -> dict:
        """
        Create a pending subscription with a hosted payment link.

        Returns:
            {"subscription_id": ..., "checkout_url": ..., "customer_id": ...}
        """
        client = self._require_client()
        payer_email = self.test_payer_email() if self.is_sandbox() else request.payer_email

        try:
            response = await client.subscriptions.create(
                product_id=DODO_SUBSCRIPTION_PRODUCT_ID,
                quantity=1,
                payment_link=True,
                customer={"email": payer_email, "name": request.payer_name or payer_email},
                billing={"country": "MX"},
                return_url=f"{FRONTEND_URL}/suscripcion/resultado?suscripcion={request.subscription_id}",
                metadata={
                    "suscripcion_id": str(request.subscription_id),
                    "plan": request.plan_codigo,
                    "periodo": request.periodo,
                    "monto": f"{request.monto:.2f}",
                    "moneda": request.moneda,
                    **{k: str(v) for k, v in request.metadata.items()},
                },
            )
        except Exception as e:
            logger.error(f"Failed to create Dodo subscription for {request.subscription_id}: {e}")
            raise GatewayError(f"Failed to create gateway subscription: {e}") from e

        data = _as_dict(response)
        customer = data.get("customer") or {}
        return {
            "subscription_id": data.get("subscription_id"),
            "checkout_url": data.get("payment_link"),
            "customer_id": customer.get("customer_id") if isinstance(customer, dict) else None,
        }

    async def get_subscription(self, subscription_id: str) -> dict:
        """
        Returns:
            {"status": "authorized" | "cancelled" | "pending", "raw": <gateway payload>}
        """
        client = self._require_client()
        try:
            response = await client.subscriptions.retrieve(subscription_id)
        except Exception as e:
            logger.error(f"Failed to get subscription {subscription_id}: {e}")
            raise GatewayError(f"Failed to fetch gateway subscription {subscription_id}: {e}") from e

        data = _as_dict(response)
        return {"status": normalize_status(data.get("status")), "raw": data}

    async def cancel_subscription(self, subscription_id: str) -> dict:
        client = self._require_client()
        try:
            response = await client.subscriptions.update(subscription_id, status="cancelled")
        except Exception as e:
            logger.error(f"Failed to cancel subscription {subscription_id}: {e}")
            raise GatewayError(f"Failed to cancel gateway subscription {subscription_id}: {e}") from e
        return _as_dict(response)


# Singleton instance
dodo_gateway = DodoGateway()
