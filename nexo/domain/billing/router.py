"""Billing router - FastAPI endpoints for subscriptions, checkout tokens and gateway webhooks"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ...config import DODO_PAYMENTS_WEBHOOK_SECRET
from ...errors import IdempotencyShortCircuit
from ...webhook_security import verify_dodo_webhook
from .dodo_service import dodo_gateway
from .entitlements import EntitlementSync
from .schemas import (
    CancelRequest,
    ChangePlanRequest,
    ChangeStateRequest,
    CheckoutRequest,
    CheckoutResponse,
    CheckoutTokenRequest,
    CheckoutTokenResponse,
    PaymentResponse,
    PlanResponse,
    RefundRequest,
    SubscriptionResponse,
    UpdateEntitlementsRequest,
)
from .state_engine import Actor, SubscriptionStateEngine
from .strategies import BillingContext
from .subscription_service import CheckoutResult, SubscriptionService
from .webhooks import WebhookEvent, WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

_entitlements = EntitlementSync()
_engine = SubscriptionStateEngine(entitlements=_entitlements)
_service = SubscriptionService(dodo_gateway, engine=_engine, entitlements=_entitlements)
_processor = WebhookProcessor(dodo_gateway, engine=_engine)


def get_state_engine() -> SubscriptionStateEngine:
    return _engine


def get_entitlement_sync() -> EntitlementSync:
    return _entitlements


def get_subscription_service() -> SubscriptionService:
    return _service


def get_webhook_processor() -> WebhookProcessor:
    return _processor


def get_current_actor(request: Request) -> Actor:
    """Organization and user resolved by the authentication middleware"""
    organizacion_id: Optional[int] = getattr(request.state, "organizacion_id", None)
    if organizacion_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Actor(organizacion_id=organizacion_id, usuario_id=getattr(request.state, "usuario_id", None))


def _checkout_response(result: CheckoutResult) -> CheckoutResponse:
    return CheckoutResponse(
        subscription=SubscriptionResponse.model_validate(result.subscription),
        precio_final=result.precio_final,
        checkout_url=result.checkout_url,
        billing_type=result.billing_type,
    )


# ============================================================================
# CHECKOUT
# ============================================================================


@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def create_checkout(
    body: CheckoutRequest,
    actor: Actor = Depends(get_current_actor),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Subscribe the caller (platform billing) or one of its clients (customer billing)"""
    context = BillingContext(
        organizacion_id=actor.organizacion_id,
        usuario_id=actor.usuario_id,
        customer_billing=body.customer_billing,
        cliente_id=body.cliente_id,
        suscriptor_externo=body.suscriptor_externo.model_dump() if body.suscriptor_externo else None,
    )
    result = await service.checkout(context, body.plan_id, body.periodo, body.cupon_codigo, body.trial)
    return _checkout_response(result)


# ============================================================================
# SUBSCRIPTION LIFECYCLE
# ============================================================================


@router.post("/subscriptions/{subscription_id}/state", response_model=SubscriptionResponse)
async def change_subscription_state(
    subscription_id: int,
    body: ChangeStateRequest,
    actor: Actor = Depends(get_current_actor),
    engine: SubscriptionStateEngine = Depends(get_state_engine),
):
    return engine.change_state(subscription_id, body.estado, actor, body.razon)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: int,
    body: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.cancel(subscription_id, actor, body.razon)


@router.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionResponse)
async def pause_subscription(
    subscription_id: int,
    actor: Actor = Depends(get_current_actor),
    engine: SubscriptionStateEngine = Depends(get_state_engine),
):
    return engine.pause(subscription_id, actor)


@router.post("/subscriptions/{subscription_id}/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(
    subscription_id: int,
    actor: Actor = Depends(get_current_actor),
    engine: SubscriptionStateEngine = Depends(get_state_engine),
):
    return engine.reactivate(subscription_id, actor)


@router.post("/subscriptions/{subscription_id}/change-plan", response_model=SubscriptionResponse)
async def change_subscription_plan(
    subscription_id: int,
    body: ChangePlanRequest,
    actor: Actor = Depends(get_current_actor),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.change_plan(subscription_id, body.plan_id, actor)


@router.patch("/plans/{plan_id}/entitlements", response_model=PlanResponse)
async def update_plan_entitlements(
    plan_id: int,
    body: UpdateEntitlementsRequest,
    actor: Actor = Depends(get_current_actor),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.update_plan_entitlements(
        plan_id, actor, body.modulos_habilitados, body.limites, body.features
    )


@router.post("/payments/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: int,
    body: RefundRequest,
    actor: Actor = Depends(get_current_actor),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.refund_payment(payment_id, body.monto, actor, body.razon)


@router.get("/modules")
async def get_active_modules(
    actor: Actor = Depends(get_current_actor),
    entitlements: EntitlementSync = Depends(get_entitlement_sync),
):
    """Modules the caller's organization may use"""
    modules = entitlements.active_modules(actor.organizacion_id)
    return {"organizacion_id": actor.organizacion_id, "modulos": modules}


# ============================================================================
# CHECKOUT TOKENS
# ============================================================================


@router.post("/checkout-tokens", response_model=CheckoutTokenResponse, status_code=201)
async def create_checkout_token(
    body: CheckoutTokenRequest,
    actor: Actor = Depends(get_current_actor),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.create_checkout_token(actor, body.cliente_id, body.plan_id, body.periodo, body.cupon_codigo)


@router.delete("/checkout-tokens/{token_id}", response_model=CheckoutTokenResponse)
async def cancel_checkout_token(
    token_id: int,
    actor: Actor = Depends(get_current_actor),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.cancel_checkout_token(token_id, actor)


@router.get("/public/checkout/{token}", response_model=CheckoutTokenResponse)
async def get_public_checkout(token: str, service: SubscriptionService = Depends(get_subscription_service)):
    """Public: resolve a checkout link"""
    return service.get_checkout_token(token)


@router.post("/public/checkout/{token}", response_model=CheckoutResponse)
async def consume_public_checkout(token: str, service: SubscriptionService = Depends(get_subscription_service)):
    """Public: pay a checkout link (single use)"""
    result = await service.consume_checkout_token(token)
    return _checkout_response(result)


# ============================================================================
# WEBHOOKS
# ============================================================================


@webhooks_router.post("/dodo")
async def handle_dodo_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Verify, deduplicate and acknowledge a Dodo Payments event.

    The subscription changes run in a background task after the response is sent.
    """
    if not DODO_PAYMENTS_WEBHOOK_SECRET:
        logger.error("❌ DODO_PAYMENTS_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    raw_body = await verify_dodo_webhook(request, DODO_PAYMENTS_WEBHOOK_SECRET)

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except ValueError as e:
        logger.error(f"Failed to parse webhook JSON: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    event = WebhookEvent.from_payload(payload, request.headers.get("webhook-id") or None)
    logger.info(f"🔔 Webhook received id={event.request_id} type={event.event_type}")

    try:
        handled = processor.acknowledge(event)
    except IdempotencyShortCircuit:
        return {"status": "duplicado", "webhook_id": event.request_id}

    if not handled:
        return {"status": "ignorado", "webhook_id": event.request_id}

    background_tasks.add_task(processor.process, event)
    return {"status": "received", "webhook_id": event.request_id}
